# --------------------------------------------------
# mobile_api.py
# --------------------------------------------------
# /api/mobile/v1: the contract spoken by the SMS Gateway
# Android app in private mode.
#
#   POST  /device     register (shared secret)
#   GET   /device     self-info, soft auth (device: null => re-register)
#   PATCH /device     push token / name
#   GET   /message    poll pending queue (FIFO | LIFO)
#   PATCH /message    report delivery state
#   GET   /events     live wake-up stream (SSE)
#   GET   /settings   device settings
#   GET   /webhooks   where the device should report inbound SMS
# --------------------------------------------------

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from .auth import (
    device_auth,
    get_storage,
    hash_password,
    require_registration_secret,
    try_device_auth,
)
from .events import event_stream
from .ids import new_id, new_login, new_password, new_token
from .schemas import (
    DevicePatchRequest,
    DeviceRegisterRequest,
    MessageStateUpdates,
    device_view,
    mobile_message_view,
    parse_body,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mobile/v1")


@router.post("/device", dependencies=[Depends(require_registration_secret)])
async def register_device(request: Request):
    """
    Register a new device under the single user, creating the user on
    first registration. Every call issues a fresh password for the
    user's login; older passwords stop working.
    """
    body = parse_body(DeviceRegisterRequest, await request.body(), allow_empty=True)
    storage = get_storage(request)
    user_id = request.app.state.settings.PRIMARY_USER_ID

    password = new_password()
    password_hash = await run_in_threadpool(hash_password, password)

    created = False
    if await storage.get_user(user_id) is None:
        created = await storage.create_user(user_id, new_login(), password_hash)
    if not created:
        await storage.update_user_password(user_id, password_hash)
    user = await storage.get_user(user_id)

    device_id = new_id()
    token = new_token()
    await storage.create_device(device_id, user_id, token, body.name, body.pushToken)

    logger.info({
        "msg": "device_registered",
        "device_id": device_id,
        "new_user": created,
    })

    return JSONResponse(
        {"id": device_id, "token": token, "login": user["login"], "password": password},
        status_code=201,
    )


@router.get("/device")
async def get_device(request: Request, device: Optional[Dict[str, Any]] = Depends(try_device_auth)):
    ip = request.headers.get("x-forwarded-for") or request.headers.get("x-real-ip") or ""
    return {
        "externalIP": ip,
        "device": device_view(device) if device else None,
    }


@router.patch("/device")
async def patch_device(request: Request, device: Dict[str, Any] = Depends(device_auth)):
    body = parse_body(DevicePatchRequest, await request.body())
    storage = get_storage(request)

    if body.pushToken is not None:
        await storage.update_device_push_token(device["id"], body.pushToken)
    if body.name is not None:
        await storage.update_device_name(device["id"], body.name)

    return device_view(await storage.get_device(device["id"]))


@router.get("/message")
async def poll_messages(
    request: Request,
    order: str = "FIFO",
    device: Dict[str, Any] = Depends(device_auth),
):
    order = "LIFO" if order.upper() == "LIFO" else "FIFO"
    pending = await get_storage(request).list_pending_messages(device["id"], order)
    return [mobile_message_view(m) for m in pending]


@router.patch("/message")
async def report_message_state(request: Request, device: Dict[str, Any] = Depends(device_auth)):
    """
    Apply device-reported states. The reporting device claims each
    message; ids that do not exist are skipped.
    """
    updates = parse_body(MessageStateUpdates, await request.body())
    storage = get_storage(request)

    applied = 0
    for update in updates:
        if await storage.get_gateway_message(update.id) is None:
            continue

        await storage.update_gateway_message_state(update.id, update.state, device["id"])
        for recipient in update.recipients:
            await storage.update_recipient_state(
                update.id, recipient.phoneNumber, recipient.state, recipient.error
            )
        applied += 1

    logger.info({
        "msg": "message_states_reported",
        "device_id": device["id"],
        "received": len(updates),
        "applied": applied,
    })
    return {"updated": len(updates)}


@router.get("/events")
async def live_events(request: Request, device: Dict[str, Any] = Depends(device_auth)):
    stream = event_stream(
        request.app.state.event_bus,
        device["id"],
        request.is_disconnected,
        heartbeat_seconds=request.app.state.settings.SSE_HEARTBEAT_SECONDS,
    )
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/settings")
async def device_settings(request: Request, device: Dict[str, Any] = Depends(device_auth)):
    settings = request.app.state.settings
    return {
        "messages": {"processingOrder": "FIFO"},
        "ping": {"intervalSeconds": int(settings.SSE_HEARTBEAT_SECONDS)},
        "webhooks": {
            "signingKey": request.app.state.webhook_dispatcher.signing_key,
            "retryCount": 3,
            "retryIntervalSeconds": 10,
        },
    }


@router.get("/webhooks")
async def device_webhooks(request: Request, device: Dict[str, Any] = Depends(device_auth)):
    # The device always reports inbound SMS back to our own /webhook.
    public_url = request.app.state.settings.PUBLIC_URL.rstrip("/")
    hooks = [{"id": "self", "url": f"{public_url}/webhook", "event": "sms:received"}]

    for hook in await get_storage(request).list_webhooks(device["user_id"]):
        hooks.append({"id": hook["id"], "url": hook["url"], "event": hook["event"]})
    return hooks
