import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from redis.exceptions import RedisError

from friendsync.core.config import settings
from friendsync.core.database import Base, engine
from friendsync.core.redis import redis_client
import friendsync.models  # noqa: F401
from friendsync.api.v1.router import api_router
from friendsync.api.v1.endpoints.realtime import websocket_endpoint
from friendsync.core.websocket import connection_manager
from friendsync.utils.exceptions import (
    AuthenticationError, AuthorizationError, ConflictError, FetchFailedError,
    FriendSyncException, MutationFailedError, NotFoundError, ValidationError
)

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    logger.info("Starting up...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await redis_client.connect()

    yield

    logger.info("Shutting down...")
    await connection_manager.close_all()
    await redis_client.disconnect()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    openapi_url="/api/v1/openapi.json",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan
)

# Set up CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_CODES = [
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (FetchFailedError, 502),
    (MutationFailedError, 502),
]


@app.exception_handler(FriendSyncException)
async def friendsync_exception_handler(request: Request, exc: FriendSyncException):
    status_code = next((code for cls, code in STATUS_CODES if isinstance(exc, cls)), 500)
    kind = exc.kind.value if exc.kind else None
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "kind": kind})


# Include API router
app.include_router(api_router, prefix="/api/v1")

# WebSocket endpoint for friendship changes
app.websocket("/ws/friendships")(websocket_endpoint)


# Root endpoint
@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/api/docs",
        "health": "/health",
        "api": "/api/v1",
        "websocket": "/ws/friendships"
    }


# Health check endpoint
@app.get("/health")
async def health_check():
    redis_status = "healthy"
    try:
        if not await redis_client.ping():
            redis_status = "unhealthy"
    except RedisError:
        redis_status = "unhealthy"

    return {
        "status": "healthy" if redis_status == "healthy" else "degraded",
        "services": {
            "redis": redis_status
        }
    }
