"""
Storefront Microservice
Order placement, catalog and PhonePe payments for the jewelry storefront
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import subprocess
import os

from sqlalchemy.engine import Engine

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from app.api.routes import router as storefront_router
from app.api.payments import router as payments_router
from app.application.errors import StorefrontError
from app.core_settings import Settings, get_settings
from app.infrastructure.db import build_engine, build_session_factory, init_models
from app.infrastructure.phonepe import PhonePeClient

# Service configuration
SERVICE_NAME = "storefront-service"
SERVICE_VERSION = os.getenv("SERVICE_VERSION", "1.0.0")
SERVICE_DESCRIPTION = "Jewelry storefront orders and payments microservice"

logger = get_logger(__name__)


def run_migrations() -> None:
    logger.info("Running database migrations")
    result = subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=os.path.join(os.path.dirname(__file__), ".."),
        capture_output=True,
        text=True,
        check=False
    )
    if result.returncode != 0:
        logger.warning(f"Migration output: {result.stderr}")
    else:
        logger.info("Database migrations completed")


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    gateway: Optional[PhonePeClient] = None,
    migrate: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    engine = engine or build_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifecycle management"""
        logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")
        if migrate:
            try:
                run_migrations()
            except OSError as e:
                logger.error(f"Migration error: {e}")

        try:
            init_models(engine)
            logger.info("Database models initialized")
        except Exception as e:
            logger.error(f"Failed to initialize database models: {e}")
            raise
        logger.info(f"{SERVICE_NAME} started successfully")

        yield

        logger.info(f"Shutting down {SERVICE_NAME}")
        if app.state.gateway is not None:
            app.state.gateway.close()
        engine.dispose()

    app = FastAPI(
        title=SERVICE_NAME,
        description=SERVICE_DESCRIPTION,
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.APP_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            f"{exc.kind.value}: {exc.message}",
            extra={'extra_fields': {'path': request.url.path, 'status_code': exc.status_code, **exc.details}}
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    health_service = ServiceHealth(SERVICE_NAME, engine, SERVICE_VERSION)
    app.include_router(health_service.create_health_router())

    app.include_router(storefront_router)
    app.include_router(payments_router)

    @app.get("/")
    async def root():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "running",
            "docs": "/api/docs"
        }

    return app


setup_logging(
    service_name=SERVICE_NAME,
    level=get_settings().LOG_LEVEL
)

app = create_app()
