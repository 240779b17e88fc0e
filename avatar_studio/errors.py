# avatar_studio/errors.py
"""
Error taxonomy shared by the ingest server and the capture client.

Every server-side failure is rendered as {"code": ..., "message": ...} with
the HTTP status attached to its class. The client raises the same
validation classes for pre-flight failures so they never reach the network.
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from avatar_studio.logger import console
from avatar_studio.models import ErrorResponse


class AvatarError(Exception):
    code = "SERVER_ERROR"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {"code": self.code, "message": self.message}


class ValidationError(AvatarError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request"


class FileTooLargeError(AvatarError):
    code = "FILE_TOO_LARGE"
    status_code = 413
    default_message = "File size exceeds the upload limit"


class UnauthorizedError(AvatarError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Unauthorized"


class InvalidSessionError(AvatarError):
    code = "INVALID_SESSION"
    status_code = 401
    default_message = "Session is invalid or has expired"


class InvalidCredentialsError(AvatarError):
    code = "INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid username or password"


class ServerError(AvatarError):
    pass


# ==========================
# CLIENT-SIDE ERRORS
# ==========================

class CaptureError(Exception):
    """Base for errors raised by the capture flow itself."""


class TransitionError(CaptureError):
    """An event arrived in a stage that does not accept it."""

    def __init__(self, stage: str, event: str):
        self.stage = stage
        self.event = event
        super().__init__(f"{event} is not allowed in stage '{stage}'")


class BudgetExceededError(CaptureError):
    def __init__(self, size: int, budget: int):
        self.size = size
        self.budget = budget
        super().__init__(
            f"Compressed avatar is {size} bytes, over the {budget} byte budget; "
            "lower the quality and try again"
        )


class UploadError(CaptureError):
    """
    Terminal upload failure.

    status_code is None for network-level failures (timeouts, refused
    connections, cancellation).
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        cancelled: bool = False,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.cancelled = cancelled
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        # Auth and validation rejections will fail again with the same artifact
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code in (408, 429)


# ==========================
# FASTAPI HANDLERS
# ==========================

async def _avatar_error_handler(request: Request, exc: AvatarError) -> JSONResponse:
    console.log(
        f"[red]{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}[/red]"
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    return JSONResponse(status_code=400, content=ValidationError(message).to_dict())


_CODE_BY_STATUS = {
    400: ValidationError.code,
    401: UnauthorizedError.code,
    413: FileTooLargeError.code,
}


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _CODE_BY_STATUS.get(exc.status_code)
    if code is None:
        code = "SERVER_ERROR" if exc.status_code >= 500 else "HTTP_ERROR"
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": code, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    console.log(f"[red]Unhandled error on {request.method} {request.url.path}: {exc!r}[/red]")
    return JSONResponse(status_code=500, content=ServerError().to_dict())


# OpenAPI docs for the shared {code, message} error body
ERROR_RESPONSES = {
    status: {"model": ErrorResponse}
    for status in (400, 401, 413, 500)
}


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AvatarError, _avatar_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
