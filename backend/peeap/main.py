from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from .db.dynamodb.errors import (
    DdbConflict,
    DdbError,
    DdbNotFound,
    DdbThrottled,
    DdbUnavailable,
    DdbValidation,
)
from .errors import DomainError, Forbidden, InvalidState, NotFound, UpstreamError, ValidationFailed
from .infrastructure.monime.client import MonimeError
from .middleware.access_log import AccessLogMiddleware
from .middleware.auth import AuthMiddleware
from .middleware.cors import build_allowed_origin_regex, build_allowed_origins
from .middleware.normalize_path import NormalizePathMiddleware
from .middleware.public_rate_limit import PublicRateLimitMiddleware
from .middleware.request_context import RequestContextMiddleware
from .observability.logging import configure_logging, get_logger
from .problem_details import problem_response
from .routers.admin import router as admin_router
from .routers.analytics import router as analytics_router
from .routers.businesses import router as businesses_router
from .routers.cards import router as cards_router
from .routers.checkout import router as checkout_router
from .routers.health import router as health_router
from .routers.invoices import router as invoices_router
from .routers.me import router as me_router
from .routers.mobile_money import router as mobile_money_router
from .routers.multivendor import router as multivendor_router
from .routers.notifications import router as notifications_router
from .routers.public import router as public_router
from .routers.school import router as school_router
from .routers.wallets import router as wallets_router
from .routers.webhooks import router as webhooks_router
from .settings import settings


def create_app() -> FastAPI:
    # Logging must be configured before the app starts handling requests.
    configure_logging(level="INFO")
    log = get_logger("startup")

    app = FastAPI(
        title="Peeap API",
        version="1.0.0",
        default_response_class=ORJSONResponse,
        redirect_slashes=False,
    )

    allowed_origins = build_allowed_origins(
        frontend_base_url=settings.frontend_base_url,
        frontend_urls=settings.frontend_urls,
    )

    log.info("app_starting", settings=settings.to_log_safe_dict())

    # Middlewares (order matters; last added is outermost)
    # Auth runs inside CORS so auth failures still get CORS headers.
    app.add_middleware(AuthMiddleware)
    # Unauthenticated checkout, invoice links and webhooks are throttled per client.
    app.add_middleware(PublicRateLimitMiddleware)
    app.add_middleware(AccessLogMiddleware, exclude_paths={"/"})
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_origin_regex=build_allowed_origin_regex(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Public-Key"],
        max_age=3000,
    )
    app.add_middleware(RequestContextMiddleware)
    # Outermost: trailing-slash paths are rewritten before routing or auth sees them.
    app.add_middleware(NormalizePathMiddleware)

    # Error handlers
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(DdbError, _ddb_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(DomainError, _domain_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(MonimeError, _monime_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_exception_handler)

    # Routes
    app.include_router(health_router)
    app.include_router(me_router, prefix="/api/me")
    app.include_router(wallets_router, prefix="/api")
    app.include_router(cards_router, prefix="/api/cards")
    app.include_router(businesses_router, prefix="/api/businesses")
    app.include_router(invoices_router, prefix="/api")
    app.include_router(multivendor_router, prefix="/api/multivendor")
    app.include_router(checkout_router, prefix="/api/checkout")
    app.include_router(mobile_money_router, prefix="/api/mobile-money")
    app.include_router(school_router, prefix="/api/schools")
    app.include_router(notifications_router, prefix="/api/notifications")
    app.include_router(analytics_router, prefix="/api/analytics")
    app.include_router(admin_router, prefix="/api/admin")
    app.include_router(public_router, prefix="/api/public")
    app.include_router(webhooks_router, prefix="/api/webhooks")

    return app


def _ddb_error_handler(request: Request, exc: DdbError) -> Response:
    # Map storage-layer errors to stable HTTP semantics.
    status_code = 500
    title = "Storage Error"
    if isinstance(exc, DdbValidation):
        status_code = 400
        title = "Bad Request"
    elif isinstance(exc, DdbNotFound):
        status_code = 404
        title = "Not Found"
    elif isinstance(exc, DdbConflict):
        status_code = 409
        title = "Conflict"
    elif isinstance(exc, (DdbThrottled, DdbUnavailable)):
        status_code = 503
        title = "Service Unavailable"

    # In production, problem_response already suppresses 5xx detail.
    return problem_response(
        request=request,
        status_code=status_code,
        title=title,
        detail=exc.message,
        extensions=exc.to_extensions() or None,
    )


_DOMAIN_STATUS: tuple[tuple[type[DomainError], int, str], ...] = (
    (NotFound, 404, "Not Found"),
    (Forbidden, 403, "Forbidden"),
    (ValidationFailed, 400, "Bad Request"),
    (InvalidState, 409, "Conflict"),
    (UpstreamError, 502, "Bad Gateway"),
)


def _domain_error_handler(request: Request, exc: DomainError) -> Response:
    status_code, title = 400, "Bad Request"
    for cls, code, name in _DOMAIN_STATUS:
        if isinstance(exc, cls):
            status_code, title = code, name
            break
    if isinstance(exc, UpstreamError):
        get_logger("upstream").warning(
            "upstream_error", code=exc.code, upstream_status=exc.status, path=request.url.path
        )
    return problem_response(
        request=request,
        status_code=status_code,
        title=title,
        detail=exc.message,
        code=exc.code,
        extensions=exc.details,
    )


def _monime_error_handler(request: Request, exc: MonimeError) -> Response:
    get_logger("upstream").warning("monime_error", code=exc.code, upstream_status=exc.status, path=request.url.path)
    return problem_response(
        request=request,
        status_code=502,
        title="Bad Gateway",
        detail=exc.message,
        code=exc.code,
    )


def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    status_code = int(getattr(exc, "status_code", 500) or 500)
    detail = getattr(exc, "detail", None)

    title: str | None = None
    extensions: dict | None = None
    safe_detail: str | None = None

    if isinstance(detail, dict):
        extensions = detail
        if isinstance(detail.get("error"), str):
            title = detail.get("error")
        msg = detail.get("message")
        if isinstance(msg, str) and msg.strip():
            safe_detail = msg.strip()
    elif detail is not None:
        safe_detail = str(detail)

    if status_code == 404:
        title = title or "Not Found"
        safe_detail = safe_detail or "Route not found"

    return problem_response(
        request=request,
        status_code=status_code,
        title=title,
        detail=safe_detail,
        extensions=extensions,
    )


def _validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
    errors: list[dict[str, object]] = []
    for e in exc.errors():
        loc = e.get("loc") or ()
        loc_path = ".".join([str(x) for x in loc if x != "body"])
        errors.append(
            {
                "location": list(loc) if isinstance(loc, (list, tuple)) else [],
                "path": loc_path,
                "message": e.get("msg", "Invalid value"),
                "type": e.get("type"),
            }
        )

    return problem_response(
        request=request,
        status_code=422,
        title="Validation Failed",
        detail="Request validation failed",
        errors=errors,
    )


def _unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    # The response stays generic in production (see problem_response); the log keeps the traceback.
    user = getattr(request.state, "user", None)
    get_logger("unhandled").exception(
        "unhandled_exception",
        request_id=getattr(request.state, "request_id", None),
        http_method=request.method,
        path=request.url.path,
        user_sub=getattr(user, "sub", None),
    )
    return problem_response(
        request=request,
        status_code=500,
        title="Internal Server Error",
        detail=str(exc) if exc else None,
    )


app = create_app()
