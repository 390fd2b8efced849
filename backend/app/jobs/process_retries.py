from __future__ import annotations
import asyncio
from datetime import datetime
from app.db import SessionLocal
from app.services import inbox


async def _run(session_factory=SessionLocal, now: datetime | None = None) -> dict:
    async with session_factory() as session:
        return await inbox.process_retries(session, now)


def process_webhook_retries():
    # RQ entry point (sync); run the async coroutine
    return asyncio.run(_run())
