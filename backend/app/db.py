from __future__ import annotations
from typing import AsyncGenerator
from sqlalchemy import JSON, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from app.config import settings

class Base(DeclarativeBase):
    pass

# JSONB on Postgres, plain JSON elsewhere (test databases)
JSONDoc = JSON().with_variant(JSONB(), "postgresql")

engine = create_async_engine(settings.database_url, future=True, echo=False)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session


async def advisory_lock(session: AsyncSession, key: str) -> None:
    """Transaction-scoped lock on Postgres; other dialects rely on row-level compare-and-set only."""
    if session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:k))"), {"k": key})
