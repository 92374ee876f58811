"""
FastAPI application entry point.

ARENA - autonomous trading agents that live on fuel
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response

from ..core.circuit_breaker import get_circuit_breaker_health
from ..core.config import get_settings
from ..core.errors import AppError, ErrorCode, sanitize_error_message
from ..db.database import AsyncSessionLocal, close_db, init_db
from ..monitoring.logs import configure_logging
from ..monitoring.metrics import get_metrics_collector
from ..services.engine import build_engine
from ..services.locks import AgentLockTimeout
from ..services.redis_service import close_redis, get_redis_service
from ..workers.queue import close_task_queue, get_task_queue
from .routes import agents, cron, investments, payouts


configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    settings = get_settings()

    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Environment: {settings.environment}")

    # Production schemas are managed outside the app
    if settings.is_debug:
        try:
            await init_db()
            logger.info("Database: Connected and initialized")
        except Exception as e:
            logger.error(f"Database: Connection failed - {e}")

    redis = None
    try:
        redis = await get_redis_service()
        if await redis.ping():
            logger.info("Redis: Connected")
        else:
            logger.warning("Redis: Connection failed (ping returned false)")
            redis = None
    except Exception as e:
        logger.error(f"Redis: Connection failed - {e}")
    app.state.redis = redis

    app.state.task_queue = None
    if redis is not None:
        try:
            app.state.task_queue = await get_task_queue()
            logger.info("Task Queue: Connected")
        except Exception as e:
            logger.error(f"Task Queue: Unavailable, payouts run in-process - {e}")

    collector = get_metrics_collector()
    collector.set_app_info(settings.app_version, settings.environment)

    engine = build_engine(AsyncSessionLocal, redis=redis, settings=settings)
    try:
        await engine.start()
    except Exception as e:
        logger.error(f"Engine: Exchange initialization failed - {e}")
    app.state.engine = engine

    yield

    logger.info(f"Shutting down {settings.app_name}")
    await engine.close()
    if app.state.task_queue is not None:
        await close_task_queue()
    await close_db()
    await close_redis()


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"[{exc.code.value}] {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(AgentLockTimeout)
    async def lock_timeout_handler(request: Request, exc: AgentLockTimeout) -> JSONResponse:
        logger.warning(f"{request.method} {request.url.path}: {exc}")
        error = AppError(
            ErrorCode.SERVICE_UNAVAILABLE,
            "Agent is busy, please retry",
            503,
            {"agent_id": str(exc.agent_id)},
        )
        return JSONResponse(status_code=503, content=error.to_dict(), headers={"Retry-After": "5"})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        error = AppError(ErrorCode.INTERNAL_ERROR, sanitize_error_message(exc, "Internal server error"))
        return JSONResponse(status_code=500, content=error.to_dict())


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Autonomous trading agents with fuel, settlement and payouts",
        lifespan=lifespan,
        docs_url="/api/v1/docs" if settings.is_debug else None,
        redoc_url="/api/v1/redoc" if settings.is_debug else None,
        openapi_url="/api/v1/openapi.json" if settings.is_debug else None,
    )

    register_exception_handlers(app)

    @app.middleware("http")
    async def track_requests(request: Request, call_next) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        get_metrics_collector().track_request(
            request.method, endpoint, response.status_code, time.perf_counter() - start
        )
        return response

    cors_origins = settings.get_cors_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept"],
    )

    app.include_router(agents.router, prefix="/api/v1")
    app.include_router(investments.router, prefix="/api/v1")
    app.include_router(payouts.router, prefix="/api/v1")
    app.include_router(cron.router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        breakers = get_circuit_breaker_health()
        return {
            "status": "healthy" if breakers["healthy"] else "degraded",
            "version": settings.app_version,
            "environment": settings.environment,
            "circuit_breakers": breakers,
        }

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        payload, content_type = get_metrics_collector().render()
        return Response(content=payload, media_type=content_type)

    return app


app = create_app()
