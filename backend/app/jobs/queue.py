from __future__ import annotations
import structlog
from fastapi import Depends, Request
from redis import Redis
from redis.exceptions import RedisError
from rq import Queue
from app.config import settings
from app.jobs.publish_events import publish_events

log = structlog.get_logger()

_queue: Queue | None = None


def get_queue() -> Queue:
    global _queue
    if _queue is None:
        _queue = Queue("default", connection=Redis.from_url(settings.redis_url))
    return _queue


def enqueue_publish(queue: Queue) -> None:
    """Kick the outbox publisher. Events stay in the outbox for the next run if Redis is down."""
    try:
        queue.enqueue(publish_events, job_timeout=60)
    except RedisError as e:
        log.warning("enqueue_failed", job="publish_events", error=str(e))


def kick_publisher(request: Request, queue: Queue = Depends(get_queue)):
    """Route dependency: after a mutating request, schedule an outbox drain."""
    yield
    if request.method != "GET":
        enqueue_publish(queue)
