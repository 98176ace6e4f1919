import structlog
import logging
import contextlib
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from diffsync.cache import AnalysisStatusStore, close_redis, open_redis
from diffsync.config import Settings, get_settings
from diffsync.database import init_db, open_databases
from diffsync.exceptions import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from diffsync.middleware import LoggingMiddleware
from diffsync.repositories.checkpoints import CheckpointStore
from diffsync.repositories.control import ControlRepository
from diffsync.repositories.logs import DatabaseLogBackend, FileLogBackend, LogRepository
from diffsync.routers.admin import router as admin_router
from diffsync.routers.differential import router as differential_router
from diffsync.routers.logs import router as logs_router
from diffsync.services.detector import SqlChangeDetector
from diffsync.services.resolver import ConflictResolver
from diffsync.services.scheduler import SyncScheduler
from diffsync.services.synchronizer import Synchronizer

# ── Structured logging setup ──────────────────────────────────────────────────
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)
logging.basicConfig(level=logging.INFO)

log = structlog.get_logger(__name__)


async def build_services(app: FastAPI, settings: Settings) -> None:
    """Construct every client and service and hang them on ``app.state``."""
    databases = open_databases(settings)
    await init_db(databases)
    redis = open_redis(settings)

    log_repository = LogRepository(
        [DatabaseLogBackend(databases.sessionmaker), FileLogBackend(settings.LOG_DIR)],
        read_timeout=settings.QUERY_TIMEOUT_SECONDS,
        download_cap=settings.LOG_DOWNLOAD_CAP,
    )
    detector = SqlChangeDetector(
        databases.source,
        databases.destination,
        settings.ENTITY_MAPPINGS,
        log_repository,
        query_timeout=settings.QUERY_TIMEOUT_SECONDS,
        max_retries=settings.DB_MAX_RETRIES,
        default_batch_size=settings.DEFAULT_BATCH_SIZE,
        max_batch_size=settings.MAX_BATCH_SIZE,
    )
    synchronizer = Synchronizer(
        detector,
        CheckpointStore(databases.sessionmaker),
        ControlRepository(databases.sessionmaker),
        log_repository,
        ConflictResolver(),
    )

    app.state.databases = databases
    app.state.redis = redis
    app.state.log_repository = log_repository
    app.state.scheduler = SyncScheduler(
        detector,
        synchronizer,
        AnalysisStatusStore(redis, ttl=settings.STATUS_TTL_SECONDS),
        log_repository,
        settings,
    )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    log.info("app.starting", env=settings.ENVIRONMENT, version=settings.APP_VERSION)
    await build_services(app, settings)
    app.state.scheduler.start()
    log.info("app.ready")
    yield
    log.info("app.shutting_down")
    app.state.scheduler.stop()
    await app.state.scheduler.drain()
    await close_redis(app.state.redis)
    await app.state.databases.dispose()
    log.info("app.stopped")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
        redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ── Middleware (outermost first) ───────────────────────────
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["X-API-Key", "Content-Type"],
    )

    # ── Exception handlers ────────────────────────────────────────────────────
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # ── Routers ───────────────────────────────────────────────────────────────
    app.include_router(differential_router)
    app.include_router(logs_router)
    app.include_router(admin_router)
    return app


app = create_app()
