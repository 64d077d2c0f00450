# --------------------------------------------------
# main.py
# --------------------------------------------------
# This file assembles the FastAPI service:
#
# ✔ Inbound SMS webhook with content-hash dedup + subscriber fan-out
# ✔ Message inbox: listing, prefix lookup, read state, search
# ✔ Conversations and contacts
# ✔ /send through the configured gateway (proxy | private)
# ✔ Private mode: mobile API for the Android device + 3rd-party API
# ✔ /metrics Prometheus monitoring
# ✔ Structured JSON logs for each request
#
# Notes:
#   - SQLite only, location controlled via DATABASE_URL env
#   - gateway mode is fixed at startup; a mode with missing
#     settings refuses to start
#   - All logic is async, and uses aiosqlite for DB operations
# --------------------------------------------------

import time
import logging
from uuid import uuid4
from typing import Optional, Literal

from fastapi import BackgroundTasks, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import mobile_api, thirdparty_api
from .config import SimpleSettings, settings
from .errors import ValidationError, register_error_handlers
from .events import EventBus
from .gateway import build_gateway
from .ids import message_id, new_token, utc_now
from .logging_utils import preview, setup_logging
from .metrics import metrics
from .models import init_db
from .push import UpstreamPushClient
from .schemas import (
    ContactRequest,
    ReceivedSms,
    SendRequest,
    WebhookEnvelope,
    parse_body,
    parse_json,
    validate_data,
)
from .storage import Storage
from .webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

RECEIVED_EVENT = "sms:received"


# --------------------------------------------------
# Request Logging Middleware (JSON structured)
# --------------------------------------------------

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Wraps every HTTP request to:
      - Generate a unique request_id
      - Measure latency
      - Emit structured JSON logs
      - Track basic http metrics
    Handlers may leave request.state.message_id for the log line.
    """

    async def dispatch(self, request: Request, call_next):
        start = time.time()
        request.state.request_id = str(uuid4())
        status = 500

        try:
            response = await call_next(request)
            status = response.status_code
            return response

        finally:
            latency_ms = (time.time() - start) * 1000.0

            # Label by route template; raw paths carry ids and phone numbers.
            route = getattr(request.scope.get("route"), "path", "unmatched")
            metrics.observe_latency(latency_ms)
            metrics.inc_http(route, status)

            log_record = {
                "request_id": request.state.request_id,
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "latency_ms": latency_ms,
            }
            message = getattr(request.state, "message_id", None)
            if message:
                log_record["message_id"] = message

            logger.info(log_record)


# --------------------------------------------------
# App factory
# --------------------------------------------------

def create_app(config: Optional[SimpleSettings] = None) -> FastAPI:
    """
    Build the service for one configuration. Shared components live
    on app.state; the gateway is chosen (and the configuration
    checked) when the app starts.
    """
    config = config or settings
    private = config.GATEWAY_MODE == "private"

    app = FastAPI(title="sms-inbox")

    signing_key = config.WEBHOOK_SIGNING_KEY
    if private and not signing_key:
        signing_key = new_token()

    app.state.settings = config
    app.state.storage = Storage(config.db_path)
    app.state.event_bus = EventBus()
    app.state.push_client = UpstreamPushClient(
        config.PUSH_URL,
        policy=config.PUSH_POLICY,
        debounce_seconds=config.PUSH_DEBOUNCE_SECONDS,
        timeout=config.HTTP_TIMEOUT_SECONDS,
    )
    app.state.webhook_dispatcher = WebhookDispatcher(
        signing_key, timeout=config.HTTP_TIMEOUT_SECONDS
    )
    app.state.gateway = None

    @app.on_event("startup")
    async def startup():
        try:
            app.state.gateway = build_gateway(
                config, app.state.storage, app.state.event_bus, app.state.push_client
            )
        except RuntimeError as e:
            logger.error({"msg": "invalid configuration", "error": str(e)})
            raise

        await init_db(app.state.storage.db_path)

        logger.info({
            "msg": "startup complete",
            "gateway_mode": config.GATEWAY_MODE,
            "webhook_signing": "env" if config.WEBHOOK_SIGNING_KEY else (
                f"generated:{signing_key[:8]}..." if signing_key else "off"
            ),
        })

    @app.on_event("shutdown")
    async def shutdown():
        app.state.push_client.clear_all()

    app.add_middleware(RequestLoggingMiddleware)
    register_error_handlers(app)
    register_core_routes(app)

    if private:
        app.include_router(mobile_api.router)
        app.include_router(thirdparty_api.router)

    return app


def register_core_routes(app: FastAPI):

    def storage() -> Storage:
        return app.state.storage

    # --------------------------------------------------
    # Health
    # --------------------------------------------------

    @app.get("/health")
    async def health():
        unread, total = await storage().counts()
        return {"status": "ok", "unread_count": unread, "total_messages": total}

    @app.get("/health/ready")
    async def ready():
        """Ready once the gateway is built and the DB answers."""
        if app.state.gateway is None or not await storage().ping():
            return PlainTextResponse("SERVICE UNAVAILABLE", status_code=503)
        return PlainTextResponse("OK", status_code=200)

    # --------------------------------------------------
    # Messages
    # --------------------------------------------------

    @app.get("/messages")
    async def list_messages(
        direction: Optional[Literal["in", "out"]] = None,
        unread: Optional[bool] = None,
        phone: Optional[str] = None,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        """Newest first. unread=true -> unread only, unread=false -> read only."""
        return await storage().list_messages(direction, unread, phone, limit, offset)

    @app.get("/messages/{id_or_prefix}")
    async def get_message(id_or_prefix: str):
        return await storage().get_message_by_prefix(id_or_prefix)

    @app.post("/messages/{id_or_prefix}/read", status_code=204)
    async def mark_read(id_or_prefix: str):
        msg = await storage().get_message_by_prefix(id_or_prefix)
        await storage().set_read(msg["id"], True)
        return Response(status_code=204)

    @app.post("/messages/{id_or_prefix}/unread", status_code=204)
    async def mark_unread(id_or_prefix: str):
        msg = await storage().get_message_by_prefix(id_or_prefix)
        await storage().set_read(msg["id"], False)
        return Response(status_code=204)

    @app.delete("/messages/{id_or_prefix}", status_code=204)
    async def delete_message(id_or_prefix: str):
        msg = await storage().get_message_by_prefix(id_or_prefix)
        await storage().delete_message(msg["id"])
        return Response(status_code=204)

    # --------------------------------------------------
    # Conversations / search / contacts
    # --------------------------------------------------

    @app.get("/conversations")
    async def conversations():
        return await storage().get_conversations()

    @app.get("/conversations/{phone}")
    async def conversation(phone: str):
        messages = await storage().get_conversation(phone)
        if not messages:
            return JSONResponse({"error": "No messages for this number"}, status_code=404)
        return messages

    @app.post("/conversations/{phone}/read", status_code=204)
    async def conversation_read(phone: str):
        await storage().mark_conversation_read(phone)
        return Response(status_code=204)

    @app.get("/search")
    async def search(q: Optional[str] = None):
        if not q:
            raise ValidationError("q parameter is required")
        messages = await storage().search(q)
        return {"messages": messages, "total": len(messages)}

    @app.get("/contacts")
    async def list_contacts():
        return await storage().list_contacts()

    @app.post("/contacts", status_code=201)
    async def upsert_contact(request: Request):
        body = parse_body(ContactRequest, await request.body())
        await storage().upsert_contact(body.phone, body.name)
        return Response(status_code=201)

    @app.delete("/contacts/{phone}", status_code=204)
    async def delete_contact(phone: str):
        await storage().delete_contact(phone)
        return Response(status_code=204)

    # --------------------------------------------------
    # POST /send
    # --------------------------------------------------

    @app.post("/send")
    async def send(request: Request):
        """
        Hand the SMS to the gateway, then record it as an outbound
        (already read) message linked to the queued gateway message.
        """
        body = parse_body(SendRequest, await request.body())

        gateway_message_id = await app.state.gateway.send([body.phone], body.text, sim_number=body.sim)

        timestamp = utc_now()
        msg = {
            "id": message_id(body.phone, body.text, timestamp, "out"),
            "phone_number": body.phone,
            "text": body.text,
            "direction": "out",
            "timestamp": timestamp,
            "read": True,
            "sim_number": body.sim,
            "gateway_message_id": gateway_message_id or None,
        }
        await storage().insert_message(msg)
        request.state.message_id = msg["id"]

        logger.info({
            "msg": "sms_sent",
            "id": msg["id"],
            "gateway_message_id": gateway_message_id,
            "text": preview(body.text),
        })
        return JSONResponse(msg, status_code=201)

    # --------------------------------------------------
    # POST /webhook
    # --------------------------------------------------

    @app.post("/webhook")
    async def webhook(request: Request, background: BackgroundTasks):
        """
        Ingest an inbound SMS report from the device.
        The same (phone, text, receivedAt) always maps to the same id;
        subscribers are notified only the first time it is stored.
        """
        raw = await request.body()

        try:
            data = parse_json(raw)
        except ValidationError:
            metrics.inc_webhook("invalid_json")
            raise

        envelope = validate_data(WebhookEnvelope, data)
        if envelope.event != RECEIVED_EVENT:
            metrics.inc_webhook("ignored")
            logger.info({"msg": "webhook_ignored", "event": envelope.event})
            return {"ignored": True, "reason": f"unhandled event: {envelope.event}"}

        sms = validate_data(ReceivedSms, envelope.payload)
        msg_id = message_id(sms.phoneNumber, sms.message, sms.receivedAt, "in")
        request.state.message_id = msg_id

        inserted = await storage().insert_message({
            "id": msg_id,
            "phone_number": sms.phoneNumber,
            "text": sms.message,
            "direction": "in",
            "timestamp": sms.receivedAt,
            "read": False,
            "sim_number": sms.simNumber,
        })

        subscribers = 0
        if inserted:
            hooks = await storage().list_webhooks_by_event(RECEIVED_EVENT)
            subscribers = len(hooks)
            if hooks:
                # Runs after the response is sent.
                background.add_task(app.state.webhook_dispatcher.fan_out, raw, hooks)

        metrics.inc_webhook("created" if inserted else "duplicate")
        logger.info({
            "msg": "webhook_processed",
            "id": msg_id,
            "dup": not inserted,
            "subscribers": subscribers,
            "text": preview(sms.message),
        })

        return {"id": msg_id, "duplicate": not inserted}

    # --------------------------------------------------
    # Metrics
    # --------------------------------------------------

    @app.get("/metrics")
    async def get_metrics():
        """Prometheus exposition format output."""
        return PlainTextResponse(
            metrics.render_prometheus(),
            media_type="text/plain; version=0.0.4"
        )


# --------------------------------------------------
# Module-level app for `uvicorn sms_inbox.main:app`
# --------------------------------------------------

setup_logging(settings.LOG_LEVEL)
app = create_app(settings)
