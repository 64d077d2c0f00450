# --------------------------------------------------
# conftest.py (Test bootstrap)
# --------------------------------------------------
# Shared fixtures for unit and end-to-end tests.
#
# Responsibilities:
#   - Give every test its own SQLite file under tmp_path
#   - Build settings for proxy and private mode from env
#   - Start the app through TestClient (runs startup/shutdown)
#   - Reset the process-wide metrics between tests
#
# Note:
#   Outbound HTTP (upstream gateway, push relay, subscriber
#   fan-out) is always routed to httpx.MockTransport handlers.
# --------------------------------------------------

import base64

import pytest
from fastapi.testclient import TestClient

from sms_inbox.config import SimpleSettings
from sms_inbox.main import create_app
from sms_inbox.metrics import metrics
from sms_inbox.models import init_db
from sms_inbox.storage import Storage

PRIVATE_TOKEN = "test-private-token"
SIGNING_KEY = "test-signing-key"
PUBLIC_URL = "https://inbox.example.com"


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def make_settings(tmp_path, monkeypatch):
    """Build a SimpleSettings from env overrides, DB under tmp_path."""

    def _make(**env):
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'messages.db'}")
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        return SimpleSettings()

    return _make


@pytest.fixture
def proxy_settings(make_settings):
    return make_settings(
        GATEWAY_MODE="proxy",
        ASG_ENDPOINT="http://asg.test",
        ASG_USERNAME="asg-user",
        ASG_PASSWORD="asg-pass",
    )


@pytest.fixture
def private_settings(make_settings):
    return make_settings(
        GATEWAY_MODE="private",
        PRIVATE_TOKEN=PRIVATE_TOKEN,
        PUBLIC_URL=PUBLIC_URL + "/",
        WEBHOOK_SIGNING_KEY=SIGNING_KEY,
        PUSH_URL="http://push.test/upstream/v1/push",
    )


@pytest.fixture
def proxy_client(proxy_settings):
    with TestClient(create_app(proxy_settings)) as client:
        yield client


@pytest.fixture
def private_client(private_settings):
    with TestClient(create_app(private_settings)) as client:
        yield client


@pytest.fixture
async def storage(tmp_path):
    path = str(tmp_path / "storage.db")
    await init_db(path)
    return Storage(path)


@pytest.fixture
def register(private_client):
    """Register a device through the mobile API; returns its credentials."""

    def _register(name="Pixel 8", push_token=None):
        body = {"name": name}
        if push_token:
            body["pushToken"] = push_token
        response = private_client.post(
            "/api/mobile/v1/device",
            json=body,
            headers={"Authorization": f"Bearer {PRIVATE_TOKEN}"},
        )
        assert response.status_code == 201
        return response.json()

    return _register


def basic_auth(login: str, password: str) -> dict:
    token = base64.b64encode(f"{login}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
