"""
Document-tools backend: request-trust control plane.

create_app() builds the FastAPI application:
- security gateway middleware (block list, burst, limiter, bot checks, audit)
- security headers on every response
- CORS
- trusted-proxy client address rewriting (FORWARDED_ALLOW_IPS)
- admin, security, analytics and health routers
- JSON error envelopes {success: false, error}
"""
import time
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from doctools_server.analytics import AnalyticsImportError, AnalyticsPersistenceError
from doctools_server.analytics_routes import router as analytics_router
from doctools_server.auth import AuthError
from doctools_server.auth_routes import router as auth_router
from doctools_server.bot_detection import RequestMetadata
from doctools_server.config import Settings, get_settings, validate_environment
from doctools_server.gateway import is_exempt
from doctools_server.health import router as health_router
from doctools_server.logging_config import (
    get_logger,
    log_exception,
    log_request_end,
    setup_logging,
)
from doctools_server.rate_limiting import get_client_ip, login_limiter, rate_limit_exceeded_handler
from doctools_server.request_log import generate_request_id
from doctools_server.security_routes import router as security_router
from doctools_server.services import PeriodicSweeper, TrustServices, build_services

logger = get_logger("api")

# Context variable for request ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def _request_id(request: Request) -> str:
    # The context var set in middleware is not visible to outer error handlers
    return getattr(request.state, "request_id", None) or request_id_var.get("")


def _validation_details(exc: RequestValidationError):
    details = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
        details.append({"field": ".".join(loc) or "body", "message": error.get("msg", "Invalid value")})
    return details


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Validation error", "details": _validation_details(exc)},
        )

    @app.exception_handler(AuthError)
    async def auth_exception_handler(request: Request, exc: AuthError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_response_body())

    @app.exception_handler(AnalyticsImportError)
    async def import_exception_handler(request: Request, exc: AnalyticsImportError):
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(AnalyticsPersistenceError)
    async def persistence_exception_handler(request: Request, exc: AnalyticsPersistenceError):
        log_exception(exc, context={"path": request.url.path, "request_id": _request_id(request)})
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to persist analytics data"},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            message = "Endpoint not found"
        else:
            message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": message},
            headers=getattr(exc, "headers", None),
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions"""
        request_id = _request_id(request)
        log_exception(
            exc,
            context={
                "method": request.method,
                "path": request.url.path,
                "request_id": request_id,
            },
        )
        message = "Internal server error" if settings.is_production else str(exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": message, "requestId": request_id},
            headers={"X-Request-ID": request_id},
        )


def register_middleware(app: FastAPI, settings: Settings) -> None:
    """Starlette runs the last registered middleware first."""

    @app.middleware("http")
    async def security_gateway_middleware(request: Request, call_next):
        """Admit or reject the request, then audit it with timing"""
        services: TrustServices = request.app.state.services
        request_id = request.headers.get(settings.request_id_header) or generate_request_id()
        request_id_var.set(request_id)
        request.state.request_id = request_id

        start_time = time.perf_counter()
        path = request.url.path
        client_ip = get_client_ip(request)

        if is_exempt(path):
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

        meta = RequestMetadata.from_request(request, client_ip)
        decision = services.gateway.evaluate(meta)

        if decision.allowed:
            try:
                response = await call_next(request)
            except Exception as e:
                duration_ms = (time.perf_counter() - start_time) * 1000
                services.gateway.complete(meta, request_id, 500, duration_ms)
                log_exception(
                    e,
                    context={
                        "method": request.method,
                        "path": path,
                        "request_id": request_id,
                        "duration_ms": duration_ms,
                    },
                )
                # Re-raise exception to let the global handler answer
                raise
        else:
            rejection = decision.rejection
            response = JSONResponse(
                status_code=rejection.status_code,
                content=rejection.to_response_body(),
                headers=rejection.headers(),
            )

        duration_ms = (time.perf_counter() - start_time) * 1000
        try:
            content_length = int(response.headers.get("content-length") or 0)
        except ValueError:
            content_length = 0

        services.gateway.complete(meta, request_id, response.status_code, duration_ms, content_length)
        log_request_end(
            method=request.method,
            path=path,
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=duration_ms,
            client_ip=client_ip,
        )

        response.headers["X-Request-ID"] = request_id
        return response

    # Add security headers middleware
    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        """Add security headers to all responses"""
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "no-referrer"

        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_origins != ["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Visitor-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[TrustServices] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration (defaults to the cached environment settings)
        services: Prebuilt service container; built from settings when omitted
    """
    settings = settings or (services.settings if services is not None else get_settings())
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file_path if settings.log_file_enabled else None,
        log_max_bytes=settings.log_file_max_size,
        log_backup_count=settings.log_file_backup_count,
    )
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.auth.ensure_initialized()
        services.audit_log.restore()

        sweeper = None
        if settings.background_sweeps_enabled:
            sweeper = PeriodicSweeper(
                services,
                block_interval=settings.block_sweep_interval_seconds,
                retention_interval=settings.retention_sweep_interval_seconds,
            )
            sweeper.start()

        logger.info(
            "startup",
            app=settings.app_name,
            environment=settings.environment,
            version=settings.app_version,
            port=settings.port,
        )
        try:
            yield
        finally:
            if sweeper is not None:
                await sweeper.stop()
            await services.audit_log.flush()
            logger.info("shutdown")

    app = FastAPI(
        title="Document Tools Backend",
        description="Request-trust control plane: rate limiting, bot detection, audit log and analytics.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.limiter = login_limiter

    register_exception_handlers(app, settings)
    register_middleware(app, settings)
    if settings.forwarded_allow_ips:
        # Outermost, so every layer below sees the forwarded client address
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.forwarded_allow_ips)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(security_router)
    app.include_router(analytics_router)

    return app


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = validate_environment()
    uvicorn.run(
        "doctools_server.main_api:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        proxy_headers=False,
    )


if __name__ == "__main__":
    run()
