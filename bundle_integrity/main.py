import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from bundle_integrity.api import routes
from bundle_integrity.utils.errors import (
    BundleIntegrityError,
    ErrorCode,
    build_error_payload,
    error_code_for_http_status,
)
from bundle_integrity.utils.logging_setup import configure_logging, detach_file_logging
from bundle_integrity.utils.metrics import (
    Timer,
    inc_counter,
    observe_histogram,
    render_prometheus,
)
from bundle_integrity.utils.observability import get_request_id_from_headers, log_event
from bundle_integrity.utils.settings import get_settings

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> Optional[str]:
    return getattr(
        getattr(request, "state", None), "request_id", None
    ) or get_request_id_from_headers(request.headers)


def _validate_cors(settings) -> None:
    env = str(getattr(settings, "app_env", "dev") or "dev").strip().lower()
    origins = getattr(settings, "allow_origins", None) or []
    if not isinstance(origins, list):
        origins = [str(origins)]
    origins_norm = [str(o or "").strip() for o in origins if str(o or "").strip()]
    if env in {"prod", "production"}:
        if not origins_norm or any(o == "*" for o in origins_norm):
            raise RuntimeError(
                "CORS is not explicitly configured for production. "
                "Set ALLOW_ORIGINS to an explicit allowlist (no '*')."
            )


def create_app() -> FastAPI:
    settings = get_settings()
    _validate_cors(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ARG001
        # File logging is on by default (disable with LOG_TO_FILE=0).
        log_path = configure_logging(settings)
        if log_path is not None:
            log_event(logger, "file_logging_enabled", path=str(log_path))
        yield
        if log_path is not None:
            detach_file_logging()

    app = FastAPI(title="Bundle Integrity Service", version="1.0.0", lifespan=lifespan)

    @app.middleware("http")
    async def _request_id_middleware(request: Request, call_next):
        t = Timer()
        request_id = _request_id(request) or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = str(request_id)

        response = await call_next(request)
        response.headers["X-Request-Id"] = str(request_id)

        # Best-effort request metrics (do not raise).
        try:
            route = request.scope.get("route")
            path = str(getattr(route, "path", None) or request.url.path or "")
            method = str(request.method or "")
            status_code = str(getattr(response, "status_code", 0))
            inc_counter(
                "http_requests_total",
                labels={"path": path, "method": method, "status": status_code},
            )
            observe_histogram(
                "http_request_duration_seconds",
                value=t.elapsed_seconds(),
                buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
                labels={"path": path, "method": method},
            )
        except Exception as e:
            logger.debug("request metrics failed: %s", e)
        return response

    @app.get("/healthz")
    async def healthz():
        return {"ok": True, "document_store": str(get_settings().document_store)}

    @app.get("/metrics")
    async def metrics(
        x_metrics_token: Optional[str] = Header(default=None, alias="X-Metrics-Token")
    ):
        settings = get_settings()
        if not getattr(settings, "metrics_enabled", False):
            return PlainTextResponse("metrics disabled\n", status_code=404)
        expected = str(getattr(settings, "metrics_token", "") or "").strip()
        if expected and str(x_metrics_token or "").strip() != expected:
            return PlainTextResponse("forbidden\n", status_code=403)
        return PlainTextResponse(
            render_prometheus(), media_type="text/plain; version=0.0.4"
        )

    @app.exception_handler(BundleIntegrityError)
    async def _integrity_error_handler(request: Request, exc: BundleIntegrityError):
        status_code = int(exc.http_status)
        log_event(
            logger,
            "request_failed",
            level="warning" if status_code < 500 else "error",
            request_id=_request_id(request),
            path=str(request.url.path),
            error_type=exc.__class__.__name__,
            error_code=exc.code.value,
            error=str(exc),
        )
        payload = build_error_payload(
            code=exc.code,
            message=str(exc),
            details=exc.details(),
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=status_code, content=payload)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        code = error_code_for_http_status(int(exc.status_code))
        detail = exc.detail
        # Keep FastAPI's default `detail` next to the canonical payload.
        if isinstance(detail, dict):
            message = str(detail.get("error") or detail.get("message") or detail)
            details = detail
        else:
            message = str(detail)
            details = None
        payload = {"detail": detail}
        payload.update(
            build_error_payload(
                code=code,
                message=message,
                details=details,
                request_id=_request_id(request),
            )
        )
        return JSONResponse(status_code=int(exc.status_code), content=payload)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        # `ctx` may hold the raised exception object, which is not JSON.
        errors = jsonable_encoder(
            [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]
        )
        payload = {"detail": errors}
        payload.update(
            build_error_payload(
                code=ErrorCode.VALIDATION_ERROR,
                message="Validation error",
                details={"errors": errors},
                request_id=_request_id(request),
            )
        )
        return JSONResponse(status_code=422, content=payload)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        payload = build_error_payload(
            code=ErrorCode.SERVICE_ERROR,
            message="Internal server error",
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=500, content=payload)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(routes.router, prefix="/api/v1")
    return app


app = create_app()
