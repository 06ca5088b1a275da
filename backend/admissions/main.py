"""
Admissions Workflow Engine API

`app` is what uvicorn serves (see run.py); tests build their own instance
with create_app() and override the engine dependencies.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

from .api.middleware import CorrelationIdMiddleware, register_error_handlers
from .api.routes import api_router
from .config.settings import settings
from .repositories import mongo_client
from .scheduler.action_scheduler import is_scheduler_running, start_scheduler, stop_scheduler
from .utils.logger import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

APP_VERSION = "1.0.0"
SERVICE_NAME = "Admissions Workflow Engine"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Indexes and background jobs up on startup; jobs and Mongo down on shutdown"""
    logger.info(f"Starting {SERVICE_NAME} {APP_VERSION} ({settings.environment})")

    try:
        mongo_client.create_indexes()
    except PyMongoError as e:
        # The API still serves reads; writes that rely on unique keys will fail loudly
        logger.error(f"Index creation failed: {e}")

    if settings.scheduler_enabled:
        start_scheduler()
    else:
        logger.info("Background jobs disabled for this process")

    yield

    stop_scheduler()
    mongo_client.close_connection()
    logger.info(f"{SERVICE_NAME} stopped")


health_router = APIRouter(tags=["Health"])


@health_router.get("/health")
async def health() -> Dict[str, Any]:
    """Liveness plus Mongo reachability and whether this process runs the jobs"""
    mongo = mongo_client.health_check()
    return {
        "status": "healthy" if mongo["status"] == "healthy" else "degraded",
        "version": APP_VERSION,
        "environment": settings.environment,
        "mongo": mongo,
        "scheduler_running": is_scheduler_running(),
    }


@health_router.get("/")
async def root() -> Dict[str, Any]:
    return {
        "name": SERVICE_NAME,
        "version": APP_VERSION,
        "docs": "/api/docs" if settings.debug else None,
    }


def create_app() -> FastAPI:
    docs_enabled = settings.debug
    application = FastAPI(
        title=SERVICE_NAME,
        description="Configurable admissions workflows: stages, guarded transitions, history and side effects",
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url="/api/redoc" if docs_enabled else None,
        openapi_url="/api/openapi.json" if docs_enabled else None,
    )

    # Credentials cannot be combined with a wildcard origin
    wildcard = settings.cors_origins.strip() == "*"
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if wildcard else settings.cors_origins_list,
        allow_credentials=not wildcard,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )
    application.add_middleware(CorrelationIdMiddleware)

    register_error_handlers(application)
    application.include_router(api_router, prefix="/api/v1")
    application.include_router(health_router)
    return application


app = create_app()
