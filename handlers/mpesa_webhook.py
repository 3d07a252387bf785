"""
M-Pesa STK Callback Webhook Handler

Flow: Provider callback → ReconciliationService → Ledger write → Group access → User notification

Response contract (Safaricom retries on non-2xx):
- 200 {success, message, error?} for every handled outcome, including
  unknown transactions and failed payments
- 400 only for a malformed body
- 500 for unexpected internal errors
"""

import json
import logging
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

# Create FastAPI router
router = APIRouter()


def _reconciliation(request: Request):
    return request.app.state.container.reconciliation


@router.post("/callback/mpesa")
async def mpesa_callback(request: Request):
    """Receive an STK push result from M-Pesa"""
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
        logger.warning("⚠️ MPESA_WEBHOOK: Body is not valid JSON")
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Invalid callback data structure"},
        )

    outcome = await _reconciliation(request).handle_provider_notification(payload)

    if outcome.reason == "MALFORMED_PAYLOAD":
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": outcome.message},
        )

    if outcome.reason == "CALLBACK_PROCESSING_ERROR":
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": outcome.message, "error": outcome.reason},
        )

    content = {"success": outcome.accepted, "message": outcome.message}
    if outcome.reason:
        content["error"] = outcome.reason
    logger.info(
        f"✅ MPESA_WEBHOOK: {outcome.checkout_request_id} -> "
        f"{'accepted' if outcome.accepted else outcome.reason}: {outcome.message}"
    )
    return JSONResponse(status_code=200, content=content)
