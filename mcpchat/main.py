"""
MCP tool-execution backend.

``create_app`` builds the FastAPI application around an AppFactory; the
factory's managers are started in the lifespan and reached by routes through
``app.state``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mcpchat.core.log_sanitizer import sanitize_for_logging
from mcpchat.core.logging_config import setup_logging
from mcpchat.core.metrics_logger import log_metric
from mcpchat.domain.errors import (
    ConfigurationError,
    DomainError,
    ExecutionNotFoundError,
    ServerNotFoundError,
    ValidationError,
)
from mcpchat.infrastructure.app_factory import AppFactory
from mcpchat.routes.health_routes import router as health_router
from mcpchat.routes.mcp_routes import router as mcp_router
from mcpchat.routes.tool_routes import router as tool_router
from mcpchat.version import VERSION

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again or contact support if the issue persists."


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    factory: AppFactory = app.state.app_factory
    config = factory.get_config_manager()
    logger.info(f"MCP servers configured: {len(config.mcp_config.servers)}")

    try:
        await factory.initialize()
    except Exception as e:
        logger.error(f"Error during MCP initialization: {e}", exc_info=True)
        logger.warning("Continuing startup without MCP tools")

    yield

    logger.info("Shutting down MCP tool-execution backend")
    await factory.shutdown()


async def _not_found_handler(request: Request, exc: DomainError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": exc.message, "error_type": "not_found"})


async def _client_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.warning(f"Rejected request to {request.url.path}: {sanitize_for_logging(exc.message)}")
    error_type = "validation" if isinstance(exc, ValidationError) else "configuration"
    log_metric("error", None, error_type=error_type, path=request.url.path)
    return JSONResponse(status_code=400, content={"detail": exc.message, "error_type": error_type})


async def _domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.error(f"Domain error handling {request.url.path}: {sanitize_for_logging(exc.message)}", exc_info=exc)
    log_metric("error", None, error_type="domain", path=request.url.path)
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR_MESSAGE, "error_type": "domain"})


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unexpected error handling {request.url.path}: {exc}", exc_info=exc)
    log_metric("error", None, error_type="unexpected", path=request.url.path)
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR_MESSAGE, "error_type": "unexpected"})


def create_app(app_factory: Optional[AppFactory] = None, configure_logging: bool = True) -> FastAPI:
    """Build the FastAPI app.

    Args:
        app_factory: Pre-built factory (tests pass one with a fake channel factory).
        configure_logging: Install JSON file logging and OpenTelemetry.
    """
    if app_factory is None:
        load_dotenv()
        app_factory = AppFactory()

    settings = app_factory.get_config_manager().app_settings
    logging_config = None
    if configure_logging:
        logging_config = setup_logging(settings.log_level, settings.debug_mode)

    app = FastAPI(
        title="MCP Chat Core",
        description="MCP server connection management and tool execution tracking",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.app_factory = app_factory

    # Starlette picks the handler of the nearest class in the MRO
    app.add_exception_handler(ServerNotFoundError, _not_found_handler)
    app.add_exception_handler(ExecutionNotFoundError, _not_found_handler)
    app.add_exception_handler(ValidationError, _client_error_handler)
    app.add_exception_handler(ConfigurationError, _client_error_handler)
    app.add_exception_handler(DomainError, _domain_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)

    app.include_router(health_router)
    app.include_router(mcp_router)
    app.include_router(tool_router)

    if logging_config is not None:
        logging_config.instrument_fastapi(app)
    return app
