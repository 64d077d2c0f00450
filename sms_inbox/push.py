"""
Upstream push relay client.

Wakes offline devices through the SMS Gateway push relay. The push
carries only an event name; the device polls for the real content.
All failures are logged and swallowed, a push never fails a send.

Two policies:
  immediate - one relay call per notify()
  debounced - notify() calls for the same push token inside the quiet
              window collapse into one call, made with the arguments of
              the last notify() once the window passes
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Set

import httpx

from .metrics import metrics

logger = logging.getLogger(__name__)

DEFAULT_PUSH_URL = "https://api.sms-gate.app/upstream/v1/push"
DEBOUNCE_SECONDS = 5.0
TIMEOUT = 10.0

POLICY_IMMEDIATE = "immediate"
POLICY_DEBOUNCED = "debounced"


class UpstreamPushClient:
    def __init__(
        self,
        url: str = DEFAULT_PUSH_URL,
        policy: str = POLICY_DEBOUNCED,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if policy not in (POLICY_IMMEDIATE, POLICY_DEBOUNCED):
            raise ValueError(f"unknown push policy: {policy}")
        self.url = url
        self.policy = policy
        self.debounce_seconds = debounce_seconds
        self.timeout = timeout
        self.transport = transport
        # push token -> scheduled (not yet fired) debounced push
        self._pending: Dict[str, asyncio.Task] = {}
        # relay calls already running
        self._inflight: Set[asyncio.Task] = set()

    async def send(self, push_token: str, event: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """POST one push to the relay. Returns False on any failure."""
        entry = {"token": push_token, "event": event}
        if data is not None:
            entry["data"] = data
        payload = [entry]
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            metrics.inc_push("failed")
            logger.warning({"msg": "push_failed", "event": event, "error": str(e)})
            return False

        if response.is_success:
            metrics.inc_push("sent")
            logger.info({"msg": "push_sent", "event": event})
            return True

        metrics.inc_push("failed")
        logger.warning({
            "msg": "push_failed",
            "event": event,
            "status": response.status_code,
            "body": response.text[:200],
        })
        return False

    def notify(self, push_token: str, event: str, data: Optional[Dict[str, Any]] = None):
        """Schedule a push according to the configured policy. Never blocks."""
        if self.policy == POLICY_IMMEDIATE:
            self._track(asyncio.create_task(self.send(push_token, event, data)))
        else:
            self.send_debounced(push_token, event, data)

    def send_debounced(self, push_token: str, event: str, data: Optional[Dict[str, Any]] = None):
        """Restart the quiet window for this token; only the last call fires."""
        existing = self._pending.pop(push_token, None)
        if existing is not None:
            existing.cancel()
        self._pending[push_token] = asyncio.create_task(
            self._fire_later(push_token, event, data)
        )

    async def _fire_later(self, push_token: str, event: str, data: Optional[Dict[str, Any]]):
        await asyncio.sleep(self.debounce_seconds)
        if self._pending.get(push_token) is asyncio.current_task():
            del self._pending[push_token]
        await self.send(push_token, event, data)

    def _track(self, task: asyncio.Task):
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def pending_count(self) -> int:
        return len(self._pending)

    def clear_all(self):
        """Cancel every scheduled debounced push (shutdown, test teardown)."""
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()

    async def drain(self):
        """Wait for immediate pushes already on the wire."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
