from contextlib import asynccontextmanager
import importlib
import logging
import uuid

from fastapi import FastAPI, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from redis.exceptions import RedisError
import sentry_sdk
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

from dotke.config import settings
from dotke.deps import attempt_registry
from dotke.logging_setup import setup_logging, TRACE_ID_CTX
from dotke.metrics import update_queue_depth
from dotke.redis_client import redis_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # leave no attempt waiting on a socket after shutdown
    await attempt_registry.shutdown()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# initialize logging and Sentry
setup_logging(logging.DEBUG if settings.DEBUG else logging.INFO)
if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN)
    app.add_middleware(SentryAsgiMiddleware)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    TRACE_ID_CTX.set(trace_id)
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response

# Feature modules, each exposing `router`
MODULES = [
    "bookings",
    "payments",
]


for mod in MODULES:
    pkg = importlib.import_module(f"dotke.modules.{mod}.router")
    app.include_router(pkg.router, prefix=f"/{mod}", tags=[mod])


@app.get("/")
async def root():
    return {"app": settings.APP_NAME, "status": "ok"}


@app.get("/metrics")
async def metrics():
    # update dynamic gauges before scraping
    try:
        await update_queue_depth()
    except RedisError:
        logger.warning("could not refresh manual reconciliation depth")
    content = generate_latest()
    return Response(content=content, media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready():
    # simple readiness: check redis
    try:
        await redis_client.ping()
    except (RedisError, OSError):
        return Response(status_code=503, content="redis unavailable")
    return {"status": "ready"}
