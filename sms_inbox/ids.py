"""
Identifier helpers.

Messages get a deterministic content hash so redelivered webhooks collide;
everything else (queued sends, devices, webhooks, credentials) gets a
random url-safe string.
"""

import hashlib
import secrets
import string
from datetime import datetime, timezone

URL_SAFE_ALPHABET = string.ascii_letters + string.digits + "_-"
LOGIN_ALPHABET = string.ascii_uppercase + string.digits


def message_id(phone: str, text: str, timestamp: str, direction: str) -> str:
    """First 32 hex chars of sha256("phone|text|timestamp|direction")."""
    raw = f"{phone}|{text}|{timestamp}|{direction}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:32]


def _generate(size: int, alphabet: str = URL_SAFE_ALPHABET) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(size))


def new_id() -> str:
    """21-char id for gateway messages, devices and webhooks."""
    return _generate(21)


def new_token() -> str:
    """32-char device bearer token."""
    return _generate(32)


def new_login() -> str:
    return _generate(6, LOGIN_ALPHABET)


def new_password() -> str:
    return _generate(16)


def utc_string(moment: datetime) -> str:
    """ISO-8601 UTC with microseconds, so stored times sort as strings."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def utc_now() -> str:
    return utc_string(datetime.now(timezone.utc))
