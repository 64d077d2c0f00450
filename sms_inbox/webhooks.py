"""
Re-broadcast of inbound SMS reports to registered subscribers.

Each subscriber gets the original request body as-is. With a signing
key configured the body is signed:

    X-Webhook-Signature: sha256=<hex HMAC-SHA256 of the body>

Deliveries run in parallel, are attempted once, and a failing
subscriber never affects the others or the ingesting request.
"""
import asyncio
import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMEOUT = 10.0


def sign_payload(body: bytes, signing_key: str) -> str:
    return hmac.new(signing_key.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookDispatcher:
    def __init__(
        self,
        signing_key: str = "",
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.signing_key = signing_key
        self.timeout = timeout
        self.transport = transport

    def headers_for(self, body: bytes) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.signing_key:
            headers[SIGNATURE_HEADER] = f"sha256={sign_payload(body, self.signing_key)}"
        return headers

    async def fan_out(self, body: bytes, subscribers: List[Dict[str, Any]]) -> List[bool]:
        """POST body to every subscriber concurrently; one bool per subscriber."""
        if not subscribers:
            return []

        headers = self.headers_for(body)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            results = await asyncio.gather(
                *(self._deliver(client, hook, body, headers) for hook in subscribers),
                return_exceptions=True,
            )

        outcome = []
        for hook, result in zip(subscribers, results):
            if isinstance(result, BaseException):
                logger.error({
                    "msg": "webhook_delivery_crashed",
                    "webhook_id": hook.get("id"),
                    "error": repr(result),
                })
                outcome.append(False)
            else:
                outcome.append(result)
        return outcome

    async def _deliver(self, client: httpx.AsyncClient, hook: Dict[str, Any], body: bytes, headers: Dict[str, str]) -> bool:
        try:
            response = await client.post(hook["url"], content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning({
                "msg": "webhook_delivery_failed",
                "webhook_id": hook.get("id"),
                "url": hook["url"],
                "error": str(e),
            })
            return False

        if not response.is_success:
            logger.warning({
                "msg": "webhook_delivery_failed",
                "webhook_id": hook.get("id"),
                "url": hook["url"],
                "status": response.status_code,
            })
            return False

        logger.info({"msg": "webhook_delivered", "webhook_id": hook.get("id")})
        return True
