"""Inbound push-notification endpoint.

Google expects a quick 2xx for every delivery, including the initial
``sync`` handshake.  The endpoint therefore never fails: it parses the
``X-Goog-*`` headers, queues the notification, and answers 200.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from calsync.api.deps import get_dispatcher
from calsync.sync.webhooks import WebhookDispatcher, WebhookNotification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/google")
async def receive_google_notification(
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> dict[str, str]:
    try:
        notification = WebhookNotification.from_headers(request.headers)
    except ValidationError:
        logger.warning("Ignoring webhook delivery without channel id or resource state")
        return {"status": "ignored"}

    if notification.is_handshake:
        logger.info("Webhook handshake for channel %s", notification.channel_id)
        return {"status": "ok"}

    job = dispatcher.submit(notification)
    if job is None:
        return {"status": "dropped"}
    return {"status": "accepted"}
