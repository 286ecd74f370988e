"""Error taxonomy and FastAPI exception handlers."""

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from bulkmerge.core.logging import get_logger, log_context

logger = get_logger(__name__)


class BulkMergeError(Exception):
    """Base exception for the bulk merge service."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        code: str = "E5000",
        details: dict = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        super().__init__(message)


class AuthenticationRequired(BulkMergeError):
    """No requester identity on the request."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=status.HTTP_401_UNAUTHORIZED, code="E2000")


class SubmissionRejected(BulkMergeError):
    """A bulk merge request failed validation. Nothing was persisted."""

    EMPTY = "empty"
    TOO_MANY = "too_many"
    NOT_FOUND = "not_found"
    NOT_OWNED = "not_owned"

    _STATUS = {
        EMPTY: status.HTTP_400_BAD_REQUEST,
        TOO_MANY: status.HTTP_400_BAD_REQUEST,
        NOT_FOUND: status.HTTP_404_NOT_FOUND,
        NOT_OWNED: status.HTTP_403_FORBIDDEN,
    }

    def __init__(self, reason: str, message: str, **details):
        self.reason = reason
        super().__init__(
            message,
            status_code=self._STATUS.get(reason, status.HTTP_400_BAD_REQUEST),
            code="E4000",
            details={"reason": reason, **details},
        )

    @classmethod
    def empty(cls) -> "SubmissionRejected":
        return cls(cls.EMPTY, "No pull requests specified")

    @classmethod
    def too_many(cls, maximum: int) -> "SubmissionRejected":
        return cls(cls.TOO_MANY, f"Cannot merge more than {maximum} PRs at once", max=maximum)

    @classmethod
    def not_found(cls, pull_request_id: str) -> "SubmissionRejected":
        return cls(
            cls.NOT_FOUND,
            f"Pull request {pull_request_id} not found",
            pull_request_id=pull_request_id,
        )

    @classmethod
    def not_owned(cls, pull_request_id: str) -> "SubmissionRejected":
        return cls(
            cls.NOT_OWNED,
            f"Pull request {pull_request_id} does not belong to the requester",
            pull_request_id=pull_request_id,
        )


class OperationNotFound(BulkMergeError):
    """Unknown operation id, or one owned by a different requester."""

    def __init__(self, operation_id: str):
        super().__init__(
            "Merge operation not found",
            status_code=status.HTTP_404_NOT_FOUND,
            code="E4040",
            details={"reason": "not_found", "operation_id": operation_id},
        )


class PersistenceFault(BulkMergeError):
    """The operation store could not be read or written."""

    def __init__(self, message: str, operation_id: str = None):
        super().__init__(
            message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="E5030",
            details={"operation_id": operation_id} if operation_id else {},
        )


class ProviderError(BulkMergeError):
    """A Git hosting provider rejected or failed a call.

    Recorded against a single item; never escalated to the operation.
    """

    CONFLICT = "conflict"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    NETWORK = "network"
    VALIDATION = "validation"
    NOT_CONNECTED = "not_connected"
    UNKNOWN = "unknown"

    def __init__(self, message: str, kind: str = UNKNOWN, provider: str = None):
        self.kind = kind
        self.provider = provider
        details = {"kind": kind}
        if provider:
            details["provider"] = provider
        super().__init__(
            message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            code="E3000",
            details=details,
        )


def _request_id() -> str | None:
    return log_context.get().get("request_id")


def setup_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers with FastAPI app."""

    @app.exception_handler(BulkMergeError)
    async def bulk_merge_exception_handler(
        request: Request, exc: BulkMergeError
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                f"Service error: {exc.message}",
                data={"status_code": exc.status_code, "details": exc.details},
            )
        else:
            logger.info(
                f"Request rejected: {exc.message}",
                data={"status_code": exc.status_code, "details": exc.details},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.message,
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "request_id": _request_id(),
                },
                **exc.details,
            },
        )

    @app.exception_handler(RequestValidationError)
    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc) -> JSONResponse:
        logger.warning("Validation error", data={"errors": exc.errors()})
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": "Validation error",
                "errors": [
                    {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
                    for e in exc.errors()
                ],
                "error": {
                    "code": "E4220",
                    "message": "Validation error",
                    "request_id": _request_id(),
                },
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error": {
                    "code": f"E{exc.status_code}0",
                    "message": exc.detail,
                    "request_id": _request_id(),
                },
            },
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            f"Unhandled exception: {type(exc).__name__}: {exc}",
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Internal server error",
                "error": {
                    "code": "E5000",
                    "message": "Internal server error",
                    "request_id": _request_id(),
                },
            },
        )
