# --------------------------------------------------
# thirdparty_api.py
# --------------------------------------------------
# /3rdparty/v1: the server side of the SMS Gateway public API,
# so existing clients can send through a private-mode device.
# Everything except /health requires HTTP Basic credentials
# issued at device registration.
# --------------------------------------------------

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from .auth import get_storage, user_auth
from .errors import NotFoundError
from .ids import new_id
from .schemas import (
    ProcessingState,
    ThirdPartySendRequest,
    WebhookCreateRequest,
    device_view,
    message_state_view,
    parse_body,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/3rdparty/v1")


async def _state_snapshot(storage, message: Dict[str, Any]) -> Dict[str, Any]:
    recipients = await storage.get_message_recipients(message["id"])
    return message_state_view(message, recipients)


# --------------------------------------------------
# Messages
# --------------------------------------------------

@router.post("/messages")
async def send_message(request: Request, user: Dict[str, Any] = Depends(user_auth)):
    """
    Queue one SMS for one or more recipients. Answers with the
    state snapshot of the queued message (every recipient Pending).
    """
    body = parse_body(ThirdPartySendRequest, await request.body())
    storage = get_storage(request)

    message_id = await request.app.state.gateway.send(
        body.phoneNumbers,
        body.text,
        sim_number=body.simNumber,
        with_delivery_report=body.withDeliveryReport,
        is_encrypted=body.isEncrypted,
        valid_until=body.valid_until(),
    )

    message = await storage.get_gateway_message(message_id)
    return JSONResponse(await _state_snapshot(storage, message), status_code=201)


@router.get("/messages")
async def list_messages(
    request: Request,
    state: Optional[ProcessingState] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: Dict[str, Any] = Depends(user_auth),
):
    storage = get_storage(request)
    messages = await storage.list_gateway_messages(user["id"], state, limit, offset)
    return [await _state_snapshot(storage, m) for m in messages]


@router.get("/messages/{message_id}")
async def get_message(request: Request, message_id: str, user: Dict[str, Any] = Depends(user_auth)):
    storage = get_storage(request)
    message = await storage.get_gateway_message_by_prefix(message_id)
    return await _state_snapshot(storage, message)


# --------------------------------------------------
# Devices
# --------------------------------------------------

@router.get("/devices")
async def list_devices(request: Request, user: Dict[str, Any] = Depends(user_auth)):
    devices = await get_storage(request).list_devices(user["id"])
    return [device_view(d) for d in devices]


@router.delete("/devices/{device_id}", status_code=204)
async def delete_device(request: Request, device_id: str, user: Dict[str, Any] = Depends(user_auth)):
    storage = get_storage(request)
    device = await storage.get_device(device_id)
    if device is None or device["user_id"] != user["id"]:
        raise NotFoundError("Device not found")

    await storage.delete_device(device_id)
    logger.info({"msg": "device_deleted", "device_id": device_id})
    return Response(status_code=204)


# --------------------------------------------------
# Webhooks
# --------------------------------------------------

@router.get("/webhooks")
async def list_webhooks(request: Request, user: Dict[str, Any] = Depends(user_auth)):
    hooks = await get_storage(request).list_webhooks(user["id"])
    return [{"id": h["id"], "url": h["url"], "event": h["event"]} for h in hooks]


@router.post("/webhooks")
async def create_webhook(request: Request, user: Dict[str, Any] = Depends(user_auth)):
    body = parse_body(WebhookCreateRequest, await request.body())

    webhook_id = new_id()
    await get_storage(request).create_webhook(
        webhook_id, user["id"], body.url, body.event, body.deviceId
    )
    logger.info({"msg": "webhook_created", "webhook_id": webhook_id, "event": body.event})

    return JSONResponse(
        {"id": webhook_id, "url": body.url, "event": body.event},
        status_code=201,
    )


@router.delete("/webhooks/{webhook_id}", status_code=204)
async def delete_webhook(request: Request, webhook_id: str, user: Dict[str, Any] = Depends(user_auth)):
    storage = get_storage(request)
    hook = await storage.get_webhook(webhook_id)
    if hook is None or hook["user_id"] != user["id"]:
        raise NotFoundError("Webhook not found")

    await storage.delete_webhook(webhook_id)
    return Response(status_code=204)


# --------------------------------------------------
# Health (no auth)
# --------------------------------------------------

@router.get("/health")
async def health(request: Request):
    unread, total = await get_storage(request).counts()
    return {"status": "ok", "unread_count": unread, "total_messages": total}
