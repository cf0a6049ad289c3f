"""
Payment completion API endpoint
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import logging

from detective.config import settings
from detective.database import get_db
from detective.dependencies import get_auth_hub, get_gateway_factory
from detective.schemas.payment import PaymentCompleteResponse
from detective.services.auth_events import AuthEventHub
from detective.services.payment_service import PaymentConfigurationError, PaymentService

router = APIRouter(prefix="/api/payment", tags=["payment"])
logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@router.post("/complete", response_model=PaymentCompleteResponse)
async def complete_payment(
    request: Request,
    db: Session = Depends(get_db),
    hub: AuthEventHub = Depends(get_auth_hub),
    gateway_factory=Depends(get_gateway_factory)
):
    """
    Verify a gateway payment and credit the purchased coins

    Body: {"paymentId": str, "userId": str} or {"paymentId": str, "sessionId": str}
    when the client has not settled its session yet.

    - 500: gateway credentials missing
    - 400: malformed body, replayed payment or failed verification
    - 401: no authenticated principal
    """
    try:
        gateway = gateway_factory()
    except PaymentConfigurationError as e:
        message = "Payment gateway is not configured."
        if settings.ENVIRONMENT != "production":
            message = f"{message} Set PORTONE_API_SECRET. ({str(e)})"
        return _error(500, message)

    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Request body must be valid JSON.")
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object.")

    payment_id = body.get("paymentId")
    if not isinstance(payment_id, str) or not payment_id:
        return _error(400, "paymentId is required.")

    user_id = body.get("userId")
    if not isinstance(user_id, str) or not user_id:
        user_id = None
        session_id = body.get("sessionId")
        if isinstance(session_id, str) and session_id:
            user_id = await hub.wait_for_principal(session_id)
    if not user_id:
        return _error(401, "Authentication required.")

    try:
        outcome = await PaymentService(db, gateway).complete_payment(payment_id, user_id)
    except Exception as e:
        logger.error(f"Payment completion failed (payment={payment_id}): {str(e)}", exc_info=True)
        return _error(500, "Payment processing failed.")

    return JSONResponse(status_code=outcome.status_code, content=outcome.body())
