"""Channel webhook routes - public endpoint for Booking.com reservation events.

Security rules:
- The signature is checked over the raw body bytes, never a re-serialised form.
- Never log the payload or the signature header.
- Domain errors map to status codes through the app's EngineError handler.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from roomledger.channels.booking_com import SIGNATURE_HEADER
from roomledger.domain.channel_inbound import process_webhook
from roomledger.observability.correlation import get_correlation_id
from roomledger.observability.logging import get_logger
from roomledger.observability.redaction import safe_log_context

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)


@router.post("/webhooks/channels/booking-com")
async def booking_com_webhook(request: Request) -> JSONResponse:
    """Receive a Booking.com reservation notification.

    Returns:
        200 with the processing outcome (including duplicates and ignored
        cancellations), 401 bad signature, 404 unknown hotel, 503 channel
        not configured, 4xx/409 for validation and inventory conflicts.
    """
    payload_bytes = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    outcome = process_webhook(payload_bytes, signature)

    logger.info(
        "booking.com webhook accepted",
        extra={
            "extra_fields": safe_log_context(
                correlationId=get_correlation_id(),
                event=outcome["event"],
                result=outcome["result"],
            )
        },
    )
    return JSONResponse(status_code=200, content={"ok": True, **outcome})
