"""Payment gateway webhook handler."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from courtbook.services import webhook_service
from courtbook.services.connection_registry import ConnectionRegistry
from courtbook.services.exceptions import AuthenticationError
from courtbook.api.auth_dependencies import get_connection_registry
from courtbook.models.schemas import WebhookAck

logger = logging.getLogger(__name__)
router = APIRouter()

SIGNATURE_HEADER = "X-Razorpay-Signature"


@router.post("/api/webhooks/gateway", response_model=WebhookAck)
async def gateway_webhook(
    request: Request,
    registry: Optional[ConnectionRegistry] = Depends(get_connection_registry),
):
    """
    Signed gateway callback.

    200 for every applied, duplicate or deliberately ignored event, 401 on a
    bad signature, 500 only for unexpected errors.
    """
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    try:
        result = await webhook_service.process_webhook(raw_body, signature, registry=registry)
        return result.to_dict()
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail={"success": False, "message": e.message})
    except Exception as e:
        logger.error(f"Webhook error: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail={"success": False, "message": "An error occurred processing the webhook"},
        )
