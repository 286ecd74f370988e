"""
Bulk merge service application.

FastAPI application factory with structured logging, error handling
and the background merge runner.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Optional

from fastapi import FastAPI

from bulkmerge import __version__
from bulkmerge.api import router as api_router
from bulkmerge.core import (
    RequestIdMiddleware,
    Settings,
    get_logger,
    get_settings,
    setup_exception_handlers,
    setup_logging,
)
from bulkmerge.db import create_all, make_engine, make_session_factory
from bulkmerge.providers import ProviderRegistry
from bulkmerge.services import OperationRunner, StatusReporter

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ProviderRegistry] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    `registry` replaces the provider registry built from settings; tests pass
    one wrapping a MockProvider.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        setup_logging(
            level=settings.log_level,
            json_output=not settings.debug,
            log_file=settings.log_file or None,
        )
        logger.info(
            "Starting bulk merge service",
            data={
                "environment": settings.environment,
                "host": settings.host,
                "port": settings.port,
                "max_batch_size": settings.max_batch_size,
                "max_concurrent_groups": settings.max_concurrent_groups,
                "max_concurrent_operations": settings.max_concurrent_operations,
            },
        )

        engine = make_engine(settings.database_url, echo=settings.debug)
        session_factory = make_session_factory(engine)
        if settings.auto_create_tables:
            await create_all(engine)
            logger.info("Database tables created")

        # Initialize provider registry unless provided (useful in tests)
        registry_created = registry is None
        providers = registry if registry is not None else ProviderRegistry(settings)

        runner = OperationRunner(session_factory, providers, settings)

        _app.state.start_time = datetime.now(UTC)
        _app.state.engine = engine
        _app.state.session_factory = session_factory
        _app.state.registry = providers
        _app.state.runner = runner
        _app.state.status_reporter = StatusReporter(session_factory, settings)

        if settings.recover_orphaned_operations:
            await runner.recover_orphans()

        yield

        # Shutdown
        logger.info("Shutting down bulk merge service")
        await runner.shutdown()
        if registry_created:
            await providers.aclose()
        await engine.dispose()

    app = FastAPI(
        title="Bulk Merge",
        description="Bulk pull request merge orchestration across Git hosting providers",
        version=__version__,
        lifespan=lifespan,
        docs_url=settings.docs_url,
    )
    app.state.settings = settings

    # Setup exception handlers (must be before middleware)
    setup_exception_handlers(app)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router)
    return app
