from __future__ import annotations
import asyncio
from datetime import datetime
from app.db import SessionLocal
from app.services.closing import close_due


async def _run(session_factory=SessionLocal, now: datetime | None = None) -> dict:
    async with session_factory() as session:
        return await close_due(session, now)


def close_giveaways():
    # RQ entry point (sync); run the async coroutine
    return asyncio.run(_run())
