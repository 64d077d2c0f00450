# --------------------------------------------------
# gateway.py
# --------------------------------------------------
# The single send entrypoint used by POST /send and the
# 3rd-party API. Two implementations, picked once at startup:
#
#   ProxyGateway    forwards to an always-on SMS Gateway server;
#                   the queue lives there, so no id is tracked here
#   PrivateGateway  queues the message for the registered Android
#                   device and wakes it over the live channel and
#                   the upstream push relay
#
# send() returns once the message is accepted (proxy) or durably
# queued (private); notification outcome never affects it.
# --------------------------------------------------

import json
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx

from .errors import NoDeviceError, UpstreamError
from .events import Event, EventBus
from .ids import new_id
from .logging_utils import preview
from .metrics import metrics
from .push import UpstreamPushClient
from .storage import Storage

logger = logging.getLogger(__name__)

ENQUEUED_EVENT = "MessageEnqueued"


class SmsGateway(ABC):
    mode = ""

    @abstractmethod
    async def send(
        self,
        phone_numbers: List[str],
        text: str,
        sim_number: int = 1,
        with_delivery_report: bool = False,
        is_encrypted: bool = False,
        valid_until: Optional[str] = None,
    ) -> str:
        """
        Deliver or queue one SMS to one or more recipients.
        Returns the gateway message id, or "" when not tracked here.
        Raises UpstreamError when delivery cannot be attempted.
        """


class ProxyGateway(SmsGateway):
    mode = "proxy"

    def __init__(
        self,
        endpoint: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = endpoint.rstrip("/")
        self.auth = (username, password)
        self.timeout = timeout
        self.transport = transport

    async def send(
        self,
        phone_numbers: List[str],
        text: str,
        sim_number: int = 1,
        with_delivery_report: bool = False,
        is_encrypted: bool = False,
        valid_until: Optional[str] = None,
    ) -> str:
        url = f"{self.base_url}/3rdparty/v1/messages"
        body = {
            "textMessage": {"text": text},
            "phoneNumbers": phone_numbers,
            "simNumber": sim_number,
        }
        if with_delivery_report:
            body["withDeliveryReport"] = True
        if is_encrypted:
            body["isEncrypted"] = True
        if valid_until:
            body["validUntil"] = valid_until

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=body, auth=self.auth)
        except httpx.HTTPError as e:
            metrics.inc_gateway(self.mode, "error")
            raise UpstreamError(f"SMS Gateway unreachable: {e}") from e

        if not response.is_success:
            metrics.inc_gateway(self.mode, "error")
            raise UpstreamError(f"SMS Gateway error {response.status_code}: {response.text}")

        metrics.inc_gateway(self.mode, "ok")
        logger.info({"msg": "gateway_proxied", "recipients": len(phone_numbers)})
        return ""


class PrivateGateway(SmsGateway):
    mode = "private"

    def __init__(
        self,
        storage: Storage,
        event_bus: EventBus,
        push_client: UpstreamPushClient,
        user_id: str,
    ):
        self.storage = storage
        self.event_bus = event_bus
        self.push_client = push_client
        self.user_id = user_id

    async def send(
        self,
        phone_numbers: List[str],
        text: str,
        sim_number: int = 1,
        with_delivery_report: bool = False,
        is_encrypted: bool = False,
        valid_until: Optional[str] = None,
    ) -> str:
        user = await self.storage.get_user(self.user_id)
        if user is None:
            metrics.inc_gateway(self.mode, "no_device")
            raise NoDeviceError("No registered device. Register a device first.")

        # None until some device registers; the message then waits
        # for whichever device of this user polls first.
        device = await self.storage.get_active_device(user["id"])

        message_id = new_id()
        await self.storage.enqueue_gateway_message(
            message_id,
            user["id"],
            phone_numbers,
            text,
            device_id=device["id"] if device else None,
            sim_number=sim_number,
            is_encrypted=is_encrypted,
            with_delivery_report=with_delivery_report,
            valid_until=valid_until,
        )
        metrics.inc_gateway(self.mode, "ok")
        logger.info({
            "msg": "gateway_enqueued",
            "id": message_id,
            "device_id": device["id"] if device else None,
            "recipients": len(phone_numbers),
            "text": preview(text),
        })

        if device:
            self._notify(device, message_id)

        return message_id

    def _notify(self, device: dict, message_id: str):
        if device.get("push_token"):
            self.push_client.notify(device["push_token"], ENQUEUED_EVENT)

        delivered = self.event_bus.publish(
            device["id"],
            Event(ENQUEUED_EVENT, json.dumps({"id": message_id})),
        )
        logger.debug({"msg": "live_published", "device_id": device["id"], "listeners": delivered})


def build_gateway(settings, storage: Storage, event_bus: EventBus, push_client: UpstreamPushClient) -> SmsGateway:
    """
    Pick the gateway implementation from configuration.
    Raises RuntimeError when the chosen mode is missing settings.
    """
    if settings.GATEWAY_MODE == "private":
        if not settings.PRIVATE_TOKEN:
            raise RuntimeError("PRIVATE_TOKEN is required in private mode")
        if not settings.PUBLIC_URL:
            raise RuntimeError("PUBLIC_URL is required in private mode")
        return PrivateGateway(storage, event_bus, push_client, settings.PRIMARY_USER_ID)

    if settings.GATEWAY_MODE == "proxy":
        if not settings.ASG_ENDPOINT:
            raise RuntimeError("ASG_ENDPOINT is required in proxy mode")
        return ProxyGateway(
            settings.ASG_ENDPOINT,
            settings.ASG_USERNAME,
            settings.ASG_PASSWORD,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    raise RuntimeError(f"unknown GATEWAY_MODE: {settings.GATEWAY_MODE}")
