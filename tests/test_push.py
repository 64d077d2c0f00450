"""
Tests for the upstream push relay client.
Covers: debounce coalescing, immediate policy, swallowed failures, shutdown.
"""
import asyncio
import json

import httpx
import pytest

from sms_inbox.metrics import metrics
from sms_inbox.push import UpstreamPushClient

PUSH_URL = "http://push.test/upstream/v1/push"


class Recorder:
    """httpx.MockTransport handler that remembers every request body."""

    def __init__(self, status=202, error=None):
        self.status = status
        self.error = error
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(json.loads(request.content))
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status, json={})


def _client(recorder, **kwargs):
    return UpstreamPushClient(PUSH_URL, transport=httpx.MockTransport(recorder), **kwargs)


class TestDebounced:
    @pytest.mark.asyncio
    async def test_burst_collapses_into_last_call(self):
        recorder = Recorder()
        client = _client(recorder, debounce_seconds=0.05)

        for n in range(3):
            client.notify("token-1", "MessageEnqueued", {"n": n})
            await asyncio.sleep(0.01)

        assert recorder.calls == []
        assert client.pending_count() == 1

        await asyncio.sleep(0.2)
        assert recorder.calls == [[{"token": "token-1", "event": "MessageEnqueued", "data": {"n": 2}}]]
        assert client.pending_count() == 0

    @pytest.mark.asyncio
    async def test_tokens_are_debounced_independently(self):
        recorder = Recorder()
        client = _client(recorder, debounce_seconds=0.05)

        client.notify("token-1", "MessageEnqueued")
        client.notify("token-2", "MessageEnqueued")
        await asyncio.sleep(0.2)

        assert sorted(call[0]["token"] for call in recorder.calls) == ["token-1", "token-2"]

    @pytest.mark.asyncio
    async def test_clear_all_cancels_scheduled_pushes(self):
        recorder = Recorder()
        client = _client(recorder, debounce_seconds=0.05)

        client.notify("token-1", "MessageEnqueued")
        client.clear_all()
        await asyncio.sleep(0.15)

        assert recorder.calls == []
        assert client.pending_count() == 0


class TestImmediate:
    @pytest.mark.asyncio
    async def test_every_notify_is_sent(self):
        recorder = Recorder()
        client = _client(recorder, policy="immediate")

        client.notify("token-1", "MessageEnqueued")
        client.notify("token-1", "MessageEnqueued")
        await client.drain()

        assert len(recorder.calls) == 2
        assert metrics.value("push_requests_total", result="sent") == 2

    @pytest.mark.asyncio
    async def test_event_without_data_sends_no_payload(self):
        recorder = Recorder()
        client = _client(recorder, policy="immediate")

        assert await client.send("token-1", "MessageEnqueued") is True
        assert recorder.calls == [[{"token": "token-1", "event": "MessageEnqueued"}]]


class TestFailures:
    @pytest.mark.asyncio
    async def test_relay_error_status_is_swallowed(self):
        client = _client(Recorder(status=500))
        assert await client.send("token-1", "MessageEnqueued") is False
        assert metrics.value("push_requests_total", result="failed") == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_swallowed(self):
        client = _client(Recorder(error=httpx.ConnectError("refused")))
        assert await client.send("token-1", "MessageEnqueued") is False

    @pytest.mark.asyncio
    async def test_failed_debounced_push_does_not_raise(self):
        recorder = Recorder(error=httpx.ConnectError("refused"))
        client = _client(recorder, debounce_seconds=0.01)

        client.notify("token-1", "MessageEnqueued")
        await asyncio.sleep(0.1)

        assert len(recorder.calls) == 1
        assert client.pending_count() == 0


def test_unknown_policy_is_rejected():
    with pytest.raises(ValueError):
        UpstreamPushClient(PUSH_URL, policy="sometimes")
