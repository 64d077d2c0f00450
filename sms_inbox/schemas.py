# --------------------------------------------------
# schemas.py
# --------------------------------------------------
# Pydantic models for every JSON body the service accepts,
# plus the view helpers that shape rows for responses.
#
# Wire names:
#   - core API (/send, /contacts, ...) uses snake_case
#   - mobile + 3rd-party APIs use camelCase, matching the
#     SMS Gateway Android app and its server contract
#
# parse_body() is used by every handler so malformed JSON and
# missing fields both surface as a 400 ValidationError.
# --------------------------------------------------

import json
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .ids import utc_string

ProcessingState = Literal["Pending", "Processed", "Sent", "Delivered", "Failed"]

MessageEvent = Literal[
    "sms:received",
    "sms:sent",
    "sms:delivered",
    "sms:failed",
    "system:ping",
]


# --------------------------------------------------
# Core API
# --------------------------------------------------

class SendRequest(BaseModel):
    phone: str = Field(min_length=1)
    text: str = Field(min_length=1)
    sim: int = Field(default=1, ge=1)


class ContactRequest(BaseModel):
    phone: str = Field(min_length=1)
    name: str = Field(min_length=1)


class ReceivedSms(BaseModel):
    """Payload of an sms:received event."""

    phoneNumber: str = Field(min_length=1)
    message: str
    receivedAt: str = Field(min_length=1)
    simNumber: int = Field(default=1, ge=1)


class WebhookEnvelope(BaseModel):
    """
    Envelope posted by the Android app. Only sms:received carries a
    payload this service understands; other events are acknowledged.
    """

    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    deviceId: Optional[str] = None
    id: Optional[str] = None
    webhookId: Optional[str] = None


# --------------------------------------------------
# Mobile API
# --------------------------------------------------

class DeviceRegisterRequest(BaseModel):
    name: str = ""
    pushToken: Optional[str] = None


class DevicePatchRequest(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    pushToken: Optional[str] = None


class RecipientState(BaseModel):
    phoneNumber: str
    state: ProcessingState
    error: Optional[str] = None


class MessageStateUpdate(BaseModel):
    id: str
    state: ProcessingState
    recipients: List[RecipientState] = Field(default_factory=list)


MessageStateUpdates = TypeAdapter(List[MessageStateUpdate])


# --------------------------------------------------
# 3rd-party API
# --------------------------------------------------

class TextMessage(BaseModel):
    text: str


class ThirdPartySendRequest(BaseModel):
    message: Optional[str] = None
    textMessage: Optional[TextMessage] = None
    phoneNumbers: List[Annotated[str, Field(min_length=1)]] = Field(default_factory=list)
    simNumber: int = Field(default=1, ge=1)
    withDeliveryReport: bool = False
    isEncrypted: bool = False
    ttl: Optional[int] = Field(default=None, ge=1)
    validUntil: Optional[datetime] = None

    @model_validator(mode="after")
    def require_text_and_recipients(self):
        if not self.text or not self.phoneNumbers:
            raise ValueError("phoneNumbers and message text are required")
        return self

    @property
    def text(self) -> Optional[str]:
        if self.textMessage is not None:
            return self.textMessage.text
        return self.message

    def valid_until(self, now: Optional[datetime] = None) -> Optional[str]:
        """Absolute expiry; an explicit validUntil wins over ttl."""
        if self.validUntil is not None:
            return utc_string(self.validUntil)
        if self.ttl is not None:
            now = now or datetime.now(timezone.utc)
            return utc_string(now + timedelta(seconds=self.ttl))
        return None


class WebhookCreateRequest(BaseModel):
    url: str = Field(min_length=1)
    event: MessageEvent
    deviceId: Optional[str] = None


# --------------------------------------------------
# Parsing
# --------------------------------------------------

def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    field = ".".join(str(p) for p in first.get("loc", ()))
    msg = first.get("msg", "invalid value")
    return f"{field}: {msg}" if field else msg


def parse_json(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid JSON")


def validate_data(model, data: Any):
    """Validate decoded JSON against a model (or TypeAdapter)."""
    try:
        if isinstance(model, TypeAdapter):
            return model.validate_python(data)
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(_describe(e))


def parse_body(model, raw: bytes, allow_empty: bool = False):
    """
    Validate a raw request body against a model (or TypeAdapter).
    Raises ValidationError (400) for bad JSON or bad fields.
    """
    if allow_empty and not raw.strip():
        return validate_data(model, {})
    return validate_data(model, parse_json(raw))


# --------------------------------------------------
# Response views
# --------------------------------------------------

def device_view(device: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": device["id"],
        "name": device["name"],
        "createdAt": device["created_at"],
        "updatedAt": device["updated_at"],
        "lastSeen": device["last_seen"],
    }


def recipient_view(recipient: Dict[str, Any]) -> Dict[str, Any]:
    view = {"phoneNumber": recipient["phone_number"], "state": recipient["state"]}
    if recipient.get("error"):
        view["error"] = recipient["error"]
    return view


def message_state_view(message: Dict[str, Any], recipients: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": message["id"],
        "state": message["state"],
        "isHashed": False,
        "isEncrypted": message["is_encrypted"],
        "recipients": [recipient_view(r) for r in recipients],
    }


def mobile_message_view(message: Dict[str, Any]) -> Dict[str, Any]:
    view = {
        "id": message["id"],
        "message": message["text"],
        "phoneNumbers": message["phone_numbers"],
        "simNumber": message["sim_number"],
        "withDeliveryReport": message["with_delivery_report"],
        "isEncrypted": message["is_encrypted"],
    }
    if message.get("valid_until"):
        view["validUntil"] = message["valid_until"]
    return view
