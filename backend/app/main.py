from __future__ import annotations
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.config import settings
from app.errors import FairdrawError
from app.logging_setup import configure_logging
from app.routes.system import router as system_router
from app.routes.fairness import router as fairness_router
from app.routes.admin import router as admin_router
from app.routes.stripe_webhooks import router as stripe_router
import structlog

configure_logging()
log = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log.info("startup", env=settings.environment, version=settings.app_version, git_sha=settings.git_sha)
    yield
    # Shutdown
    log.info("shutdown")

app = FastAPI(
    title=f"{settings.app_display_name} API",
    version=settings.app_version,
    lifespan=lifespan,
    description=f"{settings.app_display_name} API for verifiable giveaway draws and escrowed payouts"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "dev" else settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(system_router)
app.include_router(fairness_router)
app.include_router(admin_router)
app.include_router(stripe_router)

def _plain(value):
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return str(value)

@app.exception_handler(FairdrawError)
async def fairdraw_error(request: Request, exc: FairdrawError):
    level = log.error if exc.kind == "consistency" else log.info
    level("request_failed", path=request.url.path, kind=exc.kind, error=exc.message)
    body = {"detail": exc.message}
    # operators get the error kind and ids; public callers only the message
    if request.url.path.startswith("/admin"):
        body["kind"] = exc.kind
        body.update({k: _plain(v) for k, v in exc.context.items()})
        for attr in ("proof", "payout"):
            obj = getattr(exc, attr, None)
            if obj is not None:
                body[f"{attr}_id"] = str(obj.id)
                if attr == "payout":
                    body["payout_status"] = obj.status
    return JSONResponse(status_code=exc.status_code, content=body)

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    structlog.contextvars.bind_contextvars(request_id=rid)
    response: Response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    structlog.contextvars.clear_contextvars()
    return response
