import logging

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.api.v1.api_router import api_router
from storefront.core.config import Settings, settings
from storefront.core.database import async_session_maker, engine
from storefront.core.exceptions import StorefrontError
from storefront.core.logging_config import configure_logging
from storefront.core.services import Services, build_services

logger = logging.getLogger(__name__)


def _serializable_validation_errors(errors: list) -> list:
    """Convert validation error dicts to JSON-serializable form (e.g. ctx may contain Exception)."""
    out = []
    for e in errors:
        item = {"type": e.get("type"), "loc": e.get("loc"), "msg": e.get("msg")}
        if "ctx" in e and e["ctx"]:
            item["ctx"] = {k: str(v) for k, v in e["ctx"].items()}
        out.append(item)
    return out


def create_app(config: Settings = settings, services: Services | None = None) -> FastAPI:
    """Build the API. Tests pass their own services (in-memory gateway/transport, temp database)."""
    app = FastAPI(
        title="Storefront Orders API",
        description="Payment reconciliation and notification dispatch for the storefront order backend",
        version="1.0.0",
        openapi_url="/openapi.json",
    )
    app.state.services = services or build_services(config, async_session_maker)
    app.state.background_tasks = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, replace with actual storefront domains
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_router, prefix="/api/v1")

    @app.on_event("startup")
    async def startup_event():
        """Application startup event."""
        from storefront.core.cron_runner import start_background_tasks
        from storefront.core.startup import ensure_default_templates, ensure_tables

        if services is None:
            await ensure_tables(engine, config)
        await ensure_default_templates(app.state.services.session_maker)
        if config.BACKGROUND_WORKERS_ENABLED:
            app.state.background_tasks = start_background_tasks(app.state.services)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown event."""
        from storefront.core.cron_runner import stop_background_tasks

        await stop_background_tasks(app.state.background_tasks)
        await app.state.services.aclose()

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        if exc.http_status >= 500:
            logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content={"message": exc.message, "code": exc.code})

    @app.exception_handler(HTTPException)
    async def custom_http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        errors_serializable = _serializable_validation_errors(exc.errors())
        logger.info(
            "Validation error 422: method=%s path=%s errors=%s",
            request.method,
            request.url.path,
            errors_serializable,
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"message": "Validation error", "errors": errors_serializable},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": "Internal server error"})

    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()
