# --------------------------------------------------
# errors.py
# --------------------------------------------------
# Error taxonomy shared by storage, gateway and routes.
#
#   ValidationError  -> 400  malformed / missing request fields
#   NotFoundError    -> 404  unknown id, prefix or resource
#   AmbiguousError   -> 400  id prefix matches more than one row
#   UpstreamError    -> 502  proxy server or relay rejected / unreachable
#   NoDeviceError    -> 502  private mode has nobody to deliver to
#   AuthError        -> 401  missing / invalid credentials
#
# Mobile endpoints answer {"message": ...}, everything else
# answers {"error": ...}; the Android app depends on the former.
# --------------------------------------------------

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class SmsInboxError(Exception):
    status_code = 500
    body_key = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SmsInboxError):
    status_code = 400


class NotFoundError(SmsInboxError):
    status_code = 404


class AmbiguousError(SmsInboxError):
    status_code = 400


class UpstreamError(SmsInboxError):
    status_code = 502


class NoDeviceError(UpstreamError):
    pass


class AuthError(SmsInboxError):
    status_code = 401


class DeviceAuthError(AuthError):
    body_key = "message"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


async def handle_app_error(request: Request, exc: SmsInboxError) -> JSONResponse:
    headers = None
    if isinstance(exc, AuthError) and not isinstance(exc, DeviceAuthError):
        headers = {"WWW-Authenticate": 'Basic realm="sms-server"'}

    if exc.status_code >= 500:
        logger.warning({
            "msg": "request_failed",
            "path": request.url.path,
            "error": exc.message,
        })

    return JSONResponse(
        {exc.body_key: exc.message},
        status_code=exc.status_code,
        headers=headers,
    )


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Query/path parameter errors; JSON bodies are parsed by the handlers.
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("query", "path"))
    detail = first.get("msg", "invalid request")
    message = f"{field}: {detail}" if field else detail
    return JSONResponse({"error": message}, status_code=400)


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(SmsInboxError, handle_app_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
