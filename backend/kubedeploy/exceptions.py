from typing import Any, Dict, List, Optional
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class ReconcileError(Exception):
    """Base error of the reconciliation engine.

    Each layer that handles the error on its way out calls ``prefix`` with the
    step it was attempting, so the final message reads as a breadcrumb trail:
    ``upserting ns/app: creating deployment ns/app: <cause>``.
    """

    status_code = 500
    code = "RECONCILE_ERROR"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def prefix(self, description: str) -> "ReconcileError":
        self.message = f"{description}: {self.message}"
        self.args = (self.message,)
        return self

    def __str__(self) -> str:
        return self.message


class DescriptorValidationError(ReconcileError):
    """Malformed descriptor or overlay. Raised before any cluster mutation."""

    status_code = 422
    code = "VALIDATION_ERROR"


class RouteConflictError(ReconcileError):
    """An ingress (host, path) is owned by a different backend service."""

    status_code = 409
    code = "ROUTE_CONFLICT"

    def __init__(self, host: Optional[str], path: str, owner: str, requested: str) -> None:
        super().__init__(
            f"ingress path {host or '*'}{path} is routed to service {owner}, not {requested}",
            details={"host": host, "path": path, "owner": owner, "requested": requested},
        )


class KubeApiError(ReconcileError):
    """A Kubernetes API call failed for a reason other than not found."""

    status_code = 502
    code = "KUBE_API_ERROR"

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message, details={"status": status} if status is not None else None)
        self.status = status

    @property
    def is_conflict(self) -> bool:
        return self.status == 409


class RetryExhaustedError(ReconcileError):
    """A mutation kept failing after every attempt allowed by its retry policy."""

    status_code = 502
    code = "RETRY_EXHAUSTED"

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message, details={"attempts": attempts})
        self.attempts = attempts


class AggregateDeleteError(ReconcileError):
    """One or more of the concurrent sub-deletions failed."""

    status_code = 502
    code = "DELETE_FAILED"

    def __init__(self, message: str, *, code: int, failed: List[str]) -> None:
        super().__init__(message, details={"code": code, "failed": failed})
        self.failed = failed


def _build_error_payload(
    *,
    message: str,
    status_code: int,
    code: str = "APP_ERROR",
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the standard error envelope."""
    rid = request_id or str(uuid.uuid4())
    payload: Dict[str, Any] = {
        "success": False,
        "error": {
            "message": message,
            "code": code,
            **({"details": details} if details else {}),
        },
        "request_id": rid,
        "status_code": status_code,
    }
    return payload


def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers that render every error in the standard envelope."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        message = exc.detail if isinstance(exc.detail, str) else "request failed"
        payload = _build_error_payload(
            message=message,
            status_code=exc.status_code,
            code="HTTP_ERROR",
            request_id=req_id,
        )
        return JSONResponse(status_code=exc.status_code, content=payload, headers={"X-Request-ID": req_id})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        errors = exc.errors()
        payload = _build_error_payload(
            message="descriptor validation failed",
            status_code=422,
            code="VALIDATION_ERROR",
            details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors]},
            request_id=req_id,
        )
        logger.info(
            "ValidationError: path=%s errors=%d request_id=%s",
            request.url.path,
            len(errors),
            req_id,
        )
        return JSONResponse(status_code=422, content=payload, headers={"X-Request-ID": req_id})

    @app.exception_handler(ReconcileError)
    async def reconcile_exception_handler(request: Request, exc: ReconcileError):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        payload = _build_error_payload(
            message=exc.message,
            status_code=exc.status_code,
            code=exc.code,
            details=exc.details,
            request_id=req_id,
        )
        logger.warning(
            "ReconcileError: status=%s code=%s path=%s request_id=%s",
            exc.status_code,
            exc.code,
            request.url.path,
            req_id,
        )
        return JSONResponse(status_code=exc.status_code, content=payload, headers={"X-Request-ID": req_id})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        logger.exception("UnhandledException: path=%s request_id=%s", request.url.path, req_id)
        payload = _build_error_payload(
            message="internal server error",
            status_code=500,
            code="INTERNAL_SERVER_ERROR",
            request_id=req_id,
        )
        return JSONResponse(status_code=500, content=payload, headers={"X-Request-ID": req_id})
