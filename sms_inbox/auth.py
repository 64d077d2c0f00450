# --------------------------------------------------
# auth.py
# --------------------------------------------------
# FastAPI dependencies guarding the private-mode APIs.
#
#   require_registration_secret  shared PRIVATE_TOKEN, either as
#                                "Authorization: Bearer <t>" or
#                                "ServerKey: <t>"
#   try_device_auth              soft: device or None, never fails
#   device_auth                  hard: 401 unless the bearer token
#                                belongs to a device
#   user_auth                    HTTP Basic login/password against
#                                the bcrypt hash (3rd-party API)
#
# Both device checks refresh the device's last_seen.
# --------------------------------------------------

import base64
import binascii
import hmac
from typing import Any, Dict, Optional

import bcrypt
from fastapi import Header, Request
from starlette.concurrency import run_in_threadpool

from .errors import AuthError, DeviceAuthError
from .storage import Storage

# bcrypt only looks at the first 72 bytes; longer input is rejected.
BCRYPT_MAX_BYTES = 72


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    raw = password.encode("utf-8")
    if len(raw) > BCRYPT_MAX_BYTES:
        return False
    return bcrypt.checkpw(raw, password_hash.encode("utf-8"))


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):]
    return None


def _matches(candidate: Optional[str], secret: str) -> bool:
    if not candidate or not secret:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


async def require_registration_secret(
    request: Request,
    authorization: Optional[str] = Header(None),
    server_key: Optional[str] = Header(None, alias="ServerKey"),
):
    secret = request.app.state.settings.PRIVATE_TOKEN
    if not (_matches(server_key, secret) or _matches(_bearer(authorization), secret)):
        raise DeviceAuthError()


async def _resolve_device(request: Request, authorization: Optional[str]) -> Optional[Dict[str, Any]]:
    token = _bearer(authorization)
    if not token:
        return None

    storage = get_storage(request)
    device = await storage.get_device_by_token(token)
    if device is None:
        return None

    await storage.touch_device(device["id"])
    return device


async def try_device_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[Dict[str, Any]]:
    return await _resolve_device(request, authorization)


async def device_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Dict[str, Any]:
    device = await _resolve_device(request, authorization)
    if device is None:
        raise DeviceAuthError()
    return device


async def user_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Basic "):
        raise AuthError("Missing or invalid Authorization header")

    try:
        decoded = base64.b64decode(authorization[len("Basic "):], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise AuthError("Invalid credentials format")

    login, sep, password = decoded.partition(":")
    if not sep:
        raise AuthError("Invalid credentials format")

    user = await get_storage(request).get_user_by_login(login)
    if user is None:
        raise AuthError("Invalid credentials")

    # bcrypt is slow; keep it off the event loop.
    valid = await run_in_threadpool(verify_password, password, user["password_hash"])
    if not valid:
        raise AuthError("Invalid credentials")

    return user
