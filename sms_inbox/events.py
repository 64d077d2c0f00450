# --------------------------------------------------
# events.py
# --------------------------------------------------
# Live channel for connected devices.
#
#   EventBus      registry: device_id -> set of Subscription
#   Subscription  one asyncio.Queue per open connection
#   event_stream  SSE body for GET /api/mobile/v1/events,
#                 with a heartbeat that ignores message traffic
#
# The registry lives in this process only: publishing to a device
# without an open connection is a no-op and nothing is buffered for
# later subscribers or survives a restart. Events are wake-ups; the
# device re-fetches real content from the poll endpoint.
# --------------------------------------------------

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterator, Set

logger = logging.getLogger(__name__)

# Per-connection backlog; a wake-up dropped on overflow is harmless
# because the device polls for everything pending anyway.
QUEUE_SIZE = 100

# How often an idle stream checks whether the client went away.
DISCONNECT_POLL_SECONDS = 1.0


@dataclass(frozen=True)
class Event:
    event: str
    data: str = ""


class Subscription:
    """A single listener; owns the queue its connection reads from."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        self.queue: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=QUEUE_SIZE)

    def deliver(self, event: Event) -> bool:
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.warning({
                "msg": "live_event_dropped",
                "device_id": self.device_id,
                "event": event.event,
            })
            return False


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, Set[Subscription]] = {}

    def subscribe(self, device_id: str) -> Subscription:
        subscription = Subscription(device_id)
        self._subscribers.setdefault(device_id, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        listeners = self._subscribers.get(subscription.device_id)
        if not listeners:
            return
        listeners.discard(subscription)
        if not listeners:
            del self._subscribers[subscription.device_id]

    @contextmanager
    def listen(self, device_id: str) -> Iterator[Subscription]:
        """Subscribe for the duration of a block; always unsubscribes."""
        subscription = self.subscribe(device_id)
        try:
            yield subscription
        finally:
            self.unsubscribe(subscription)

    def publish(self, device_id: str, event: Event) -> int:
        """
        Hand the event to every current listener of the device.
        Returns how many listeners accepted it (0 when nobody listens).
        """
        delivered = 0
        for subscription in list(self._subscribers.get(device_id, ())):
            if subscription.deliver(event):
                delivered += 1
        return delivered

    def listener_count(self, device_id: str) -> int:
        return len(self._subscribers.get(device_id, ()))


def format_sse(event: str, data: str = "") -> str:
    lines = [f"event: {event}"]
    for chunk in (data.splitlines() or [""]):
        lines.append(f"data: {chunk}")
    return "\n".join(lines) + "\n\n"


async def event_stream(
    bus: EventBus,
    device_id: str,
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat_seconds: float = 30.0,
):
    """
    Yield SSE frames for one device connection until the client leaves.

    A "ping" frame goes out every heartbeat_seconds regardless of how
    many events were sent in between. The subscription is removed as
    soon as the generator finishes, is closed, or is cancelled.
    """
    loop = asyncio.get_running_loop()

    with bus.listen(device_id) as subscription:
        logger.info({"msg": "live_connected", "device_id": device_id})
        next_ping = loop.time() + heartbeat_seconds
        try:
            while not await is_disconnected():
                remaining = next_ping - loop.time()
                if remaining <= 0:
                    next_ping = loop.time() + heartbeat_seconds
                    yield format_sse("ping")
                    continue

                try:
                    event = await asyncio.wait_for(
                        subscription.queue.get(),
                        timeout=min(remaining, DISCONNECT_POLL_SECONDS),
                    )
                except asyncio.TimeoutError:
                    continue

                yield format_sse(event.event, event.data)
        finally:
            logger.info({"msg": "live_disconnected", "device_id": device_id})
