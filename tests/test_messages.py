# --------------------------------------------------
# test_messages.py
# --------------------------------------------------
# Purpose:
#   - Validate the core inbox API in proxy mode
#   - Ensure:
#       • /send forwards to the upstream gateway and records
#         the outbound message
#       • message listing, prefix lookup, read state, delete
#       • conversations, search, contacts
#       • health, readiness and metrics endpoints
#
# Test Strategy:
#   Inbound messages arrive through /webhook; the upstream
#   gateway is replaced by an httpx.MockTransport.
# --------------------------------------------------

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from sms_inbox.gateway import ProxyGateway
from sms_inbox.main import create_app
from sms_inbox.storage import Storage


def receive(client, phone, text, ts):
    payload = {"phoneNumber": phone, "message": text, "receivedAt": ts}
    response = client.post("/webhook", json={"event": "sms:received", "payload": payload})
    assert response.status_code == 200
    return response.json()["id"]


def use_upstream(client, handler):
    client.app.state.gateway = ProxyGateway(
        "http://asg.test", "asg-user", "asg-pass", transport=httpx.MockTransport(handler)
    )


# --------------------------------------------------
# /send
# --------------------------------------------------

def test_send_records_outbound_message(proxy_client):
    sent = []

    def handler(request):
        sent.append(json.loads(request.content))
        return httpx.Response(202, json={"id": "remote"})

    use_upstream(proxy_client, handler)

    response = proxy_client.post("/send", json={"phone": "+15550001", "text": "on my way"})
    assert response.status_code == 201
    msg = response.json()
    assert msg["direction"] == "out"
    assert msg["read"] is True
    assert msg["gateway_message_id"] is None
    assert len(msg["id"]) == 32

    assert sent == [{"textMessage": {"text": "on my way"}, "phoneNumbers": ["+15550001"], "simNumber": 1}]
    assert proxy_client.get(f"/messages/{msg['id']}").json()["text"] == "on my way"


def test_send_upstream_failure_is_502(proxy_client):
    use_upstream(proxy_client, lambda request: httpx.Response(503, text="maintenance"))

    response = proxy_client.post("/send", json={"phone": "+15550001", "text": "hi"})
    assert response.status_code == 502
    assert response.json() == {"error": "SMS Gateway error 503: maintenance"}
    assert proxy_client.get("/messages").json() == []


@pytest.mark.parametrize("body", [{"phone": "+15550001"}, {"text": "hi"}, {"phone": "", "text": "hi"}])
def test_send_requires_phone_and_text(proxy_client, body):
    response = proxy_client.post("/send", json=body)
    assert response.status_code == 400
    assert "error" in response.json()


# --------------------------------------------------
# /messages
# --------------------------------------------------

def test_listing_filters(proxy_client):
    receive(proxy_client, "+15550001", "Earlier", "2025-01-15T09:00:00Z")
    receive(proxy_client, "+15550002", "Later", "2025-01-15T10:00:00Z")

    texts = [m["text"] for m in proxy_client.get("/messages").json()]
    assert texts == ["Later", "Earlier"]

    filtered = proxy_client.get("/messages", params={"phone": "+15550001"}).json()
    assert [m["text"] for m in filtered] == ["Earlier"]

    assert proxy_client.get("/messages", params={"direction": "out"}).json() == []
    assert len(proxy_client.get("/messages", params={"limit": 1}).json()) == 1

    assert proxy_client.get("/messages", params={"limit": 0}).status_code == 400
    assert proxy_client.get("/messages", params={"direction": "sideways"}).status_code == 400


def test_prefix_read_unread_delete(proxy_client):
    msg_id = receive(proxy_client, "+15550001", "hello", "2025-01-15T09:00:00Z")
    prefix = msg_id[:6]

    assert proxy_client.get(f"/messages/{prefix}").json()["id"] == msg_id

    assert proxy_client.post(f"/messages/{prefix}/read").status_code == 204
    assert proxy_client.get(f"/messages/{msg_id}").json()["read"] is True
    assert proxy_client.get("/messages", params={"unread": "true"}).json() == []

    assert proxy_client.post(f"/messages/{prefix}/unread").status_code == 204
    assert proxy_client.get(f"/messages/{msg_id}").json()["read"] is False

    assert proxy_client.delete(f"/messages/{prefix}").status_code == 204
    missing = proxy_client.get(f"/messages/{msg_id}")
    assert missing.status_code == 404
    assert missing.json() == {"error": "Message not found"}
    assert proxy_client.post(f"/messages/{msg_id}/read").status_code == 404


def test_ambiguous_prefix(proxy_client):
    for n in range(20):
        receive(proxy_client, "+15550001", f"msg {n}", "2025-01-15T09:00:00Z")

    # Twenty hex ids always share some first character.
    ids = [m["id"] for m in proxy_client.get("/messages").json()]
    first_chars = [i[0] for i in ids]
    shared = next(c for c in first_chars if first_chars.count(c) > 1)

    response = proxy_client.get(f"/messages/{shared}")
    assert response.status_code == 400
    assert "Ambiguous" in response.json()["error"]


# --------------------------------------------------
# Conversations / search / contacts
# --------------------------------------------------

def test_conversations(proxy_client):
    receive(proxy_client, "+15550001", "one", "2025-01-15T09:00:00Z")
    receive(proxy_client, "+15550001", "two", "2025-01-15T09:05:00Z")
    receive(proxy_client, "+15550002", "other", "2025-01-15T08:00:00Z")
    proxy_client.post("/contacts", json={"phone": "+15550001", "name": "Alice"})

    summaries = proxy_client.get("/conversations").json()
    assert [s["phone_number"] for s in summaries] == ["+15550001", "+15550002"]
    assert summaries[0]["name"] == "Alice"
    assert summaries[0]["unread_count"] == 2
    assert summaries[0]["last_message"] == "two"

    thread = proxy_client.get("/conversations/+15550001").json()
    assert [m["text"] for m in thread] == ["one", "two"]

    assert proxy_client.post("/conversations/+15550001/read").status_code == 204
    assert proxy_client.get("/conversations").json()[0]["unread_count"] == 0

    empty = proxy_client.get("/conversations/+19999999")
    assert empty.status_code == 404
    assert empty.json() == {"error": "No messages for this number"}


def test_search(proxy_client):
    receive(proxy_client, "+15550001", "Your CODE is 1234", "2025-01-15T09:00:00Z")
    receive(proxy_client, "+15550001", "lunch?", "2025-01-15T09:05:00Z")

    result = proxy_client.get("/search", params={"q": "code"}).json()
    assert result["total"] == 1
    assert result["messages"][0]["text"] == "Your CODE is 1234"

    missing = proxy_client.get("/search")
    assert missing.status_code == 400
    assert missing.json() == {"error": "q parameter is required"}


def test_contacts(proxy_client):
    assert proxy_client.post("/contacts", json={"phone": "+15550001", "name": "Alice"}).status_code == 201
    assert proxy_client.post("/contacts", json={"phone": "+15550001", "name": "Alice B"}).status_code == 201
    assert proxy_client.get("/contacts").json() == [{"phone_number": "+15550001", "name": "Alice B"}]

    assert proxy_client.post("/contacts", json={"phone": "+15550002"}).status_code == 400

    assert proxy_client.delete("/contacts/+15550001").status_code == 204
    assert proxy_client.get("/contacts").json() == []


# --------------------------------------------------
# Health / metrics / startup
# --------------------------------------------------

def test_health_counts(proxy_client):
    receive(proxy_client, "+15550001", "one", "2025-01-15T09:00:00Z")
    msg_id = receive(proxy_client, "+15550001", "two", "2025-01-15T09:05:00Z")
    proxy_client.post(f"/messages/{msg_id}/read")

    assert proxy_client.get("/health").json() == {
        "status": "ok",
        "unread_count": 1,
        "total_messages": 2,
    }
    assert proxy_client.get("/health/ready").text == "OK"


def test_not_ready_when_database_unreachable(proxy_client):
    with patch.object(Storage, "ping", AsyncMock(return_value=False)):
        response = proxy_client.get("/health/ready")
    assert response.status_code == 503
    assert response.text == "SERVICE UNAVAILABLE"


def test_metrics_exposition(proxy_client):
    receive(proxy_client, "+15550001", "one", "2025-01-15T09:00:00Z")
    text = proxy_client.get("/metrics").text

    assert 'webhook_requests_total{result="created"} 1' in text
    assert 'http_requests_total{path="/webhook",status="200"} 1' in text
    assert "request_latency_ms_count" in text


def test_http_metrics_are_labelled_by_route(proxy_client):
    for msg_id in ("deadbeef0001", "deadbeef0002"):
        assert proxy_client.get(f"/messages/{msg_id}").status_code == 404
    proxy_client.get("/no/such/route")
    text = proxy_client.get("/metrics").text

    assert 'http_requests_total{path="/messages/{id_or_prefix}",status="404"} 2' in text
    assert 'http_requests_total{path="unmatched",status="404"} 1' in text
    assert "deadbeef" not in text


def test_private_routes_absent_in_proxy_mode(proxy_client):
    assert proxy_client.get("/api/mobile/v1/device").status_code == 404
    assert proxy_client.get("/3rdparty/v1/health").status_code == 404


def test_startup_refuses_incomplete_configuration(make_settings, monkeypatch):
    monkeypatch.delenv("ASG_ENDPOINT", raising=False)
    app = create_app(make_settings(GATEWAY_MODE="proxy"))
    with pytest.raises(RuntimeError):
        with TestClient(app):
            pass
