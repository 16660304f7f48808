"""
Base service class for PTO Connect API services.
"""

import os
import time
import traceback
from typing import Dict, Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.config import get_config
from shared.envelope import EnvelopeRoute, envelope_response
from shared.errors import APIError, ErrorCode, classify_exception
from shared.logging import configure_logging, get_logger, set_request_id, clear_context
from shared.metrics import get_metrics_collector
from shared.tasks import TaskSupervisor


HTTP_STATUS_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.METHOD_NOT_ALLOWED,
    409: ErrorCode.CONFLICT,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, **config_overrides):
        self.service_name = service_name
        self.port = port
        self.config = get_config(service_name, port, **config_overrides)
        self.logger = get_logger(f"api.{service_name}")
        self.metrics = get_metrics_collector(service_name)
        self.tasks = TaskSupervisor(self.metrics)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level)

        self.app = self._create_app()
        self.app.state.api_version = self.config.api_version

        self._setup_middleware()
        self._setup_exception_handlers()
        self._setup_routes()

        @self.app.on_event("shutdown")
        async def _drain_background_tasks():
            await self.tasks.drain(timeout=5.0)

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        local = self.config.env in ("local", "development")
        app = FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"PTO Connect - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/api/docs" if local else None,
            redoc_url=None,
            openapi_url="/api/docs/openapi.json" if local else None,
        )
        app.router.route_class = EnvelopeRoute
        return app

    def _setup_middleware(self):
        """Set up middleware."""

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def request_context(request: Request, call_next):
            inbound = request.headers.get("X-Request-ID")
            request_id = set_request_id(inbound)
            request.state.request_id = request_id
            start_time = time.time()

            try:
                response = await call_next(request)
            except Exception as exc:
                response = self._render_unexpected(request, exc)

            duration = time.time() - start_time
            response.headers["X-Request-ID"] = request_id

            for callback in getattr(request.state, "response_callbacks", []):
                callback(response.status_code)

            route = request.scope.get("route")
            endpoint = getattr(route, "path", None) or "unmatched"
            self.metrics.record_http_request(
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code,
                duration=duration
            )

            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2)
            )
            clear_context()
            return response

    def _setup_exception_handlers(self):
        """Render every failure as an envelope."""

        @self.app.exception_handler(APIError)
        async def api_error_handler(request: Request, exc: APIError):
            log = self.logger.error if exc.status_code >= 500 else self.logger.warning
            log(
                "Request failed",
                code=exc.code.value,
                message=exc.message,
                status_code=exc.status_code,
                path=request.url.path,
            )
            self.metrics.record_error(exc.code.value)
            return envelope_response(
                request,
                exc.status_code,
                exc,
                meta=getattr(exc, "meta", None),
                headers=exc.headers,
            )

        @self.app.exception_handler(RequestValidationError)
        async def validation_error_handler(request: Request, exc: RequestValidationError):
            errors = []
            for error in exc.errors():
                location = [str(part) for part in error.get("loc", ())]
                errors.append({
                    "code": ErrorCode.VALIDATION_ERROR.value,
                    "message": error.get("msg", "Invalid value"),
                    "field": ".".join(location[1:]) or None,
                    "details": {"location": location[0] if location else None, "type": error.get("type")},
                })
            self.logger.warning("Request validation failed", path=request.url.path, error_count=len(errors))
            self.metrics.record_error(ErrorCode.VALIDATION_ERROR.value)
            return envelope_response(request, 400, errors)

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            code = HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.UNKNOWN_ERROR)
            message = exc.detail if isinstance(exc.detail, str) else "Request failed"
            if exc.status_code == 404 and exc.detail == "Not Found":
                code = ErrorCode.ROUTE_NOT_FOUND
                message = f"Route not found: {request.method} {request.url.path}"
            return envelope_response(
                request,
                exc.status_code,
                {"code": code.value, "message": message},
                headers=getattr(exc, "headers", None),
            )

    def _render_unexpected(self, request: Request, exc: Exception) -> Response:
        """Boundary adapter for anything that escaped the typed handlers."""
        error = classify_exception(exc)
        if not self.config.is_production:
            error.details = {
                **(error.details or {}),
                "error": str(exc),
                "type": type(exc).__name__,
                "stack": traceback.format_exception(type(exc), exc, exc.__traceback__),
            }
        self.logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            code=error.code.value,
            path=request.url.path,
            exc_info=True,
        )
        self.metrics.record_error(error.code.value)
        return envelope_response(request, error.status_code, error)

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/api/health")
        async def health_check():
            """Health check endpoint."""
            dependencies = await self._check_dependencies()
            status = "ok" if all(value == "ok" for value in dependencies.values()) else "degraded"
            self.metrics.record_health_check(status)
            return {
                "service": self.service_name,
                "status": status,
                "uptime_seconds": round(self._get_uptime(), 3),
                "dependencies": dependencies,
                "version": "1.0.0",
                "commit": os.getenv("GIT_COMMIT", "unknown")
            }

        @self.app.get("/metrics", include_in_schema=False)
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=generate_latest(self.metrics.registry),
                media_type=CONTENT_TYPE_LATEST
            )

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
