import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from crm_sync.api.dependencies import get_webhook_receiver
from crm_sync.sync.webhooks import WebhookReceiver

# Set up logging
logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Webhook body is not JSON: {e}")
        return {}
    return body if isinstance(body, dict) else {}


@router.post("/calendar/webhook")
async def calendar_webhook(
    request: Request,
    receiver: WebhookReceiver = Depends(get_webhook_receiver)
):
    """Google Calendar push notification"""
    return await receiver.handle_calendar_notification(request.headers)


@router.get("/calendar/webhook")
async def calendar_webhook_verification():
    return {"success": True}


@router.post("/webhooks/gmail")
async def gmail_webhook(
    request: Request,
    receiver: WebhookReceiver = Depends(get_webhook_receiver)
):
    """Gmail notification delivered by a Cloud Pub/Sub push subscription"""
    return await receiver.handle_gmail_push(await _json_body(request))


@router.post("/webhooks/outlook")
async def outlook_webhook(
    request: Request,
    validation_token: Optional[str] = Query(None, alias="validationToken"),
    receiver: WebhookReceiver = Depends(get_webhook_receiver)
):
    """Microsoft Graph change notification, or the subscription validation handshake"""
    if validation_token:
        return PlainTextResponse(validation_token, status_code=status.HTTP_200_OK)

    result = await receiver.handle_outlook_notification(await _json_body(request))
    return JSONResponse(result, status_code=status.HTTP_202_ACCEPTED)
