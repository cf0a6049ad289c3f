"""
Payment completion - server-side verification of coin purchases

The client only reports a payment id. Before any coins are credited the
payment is fetched from the gateway and checked against the product
catalog, and replayed payment ids are rejected.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote

import httpx
from sqlalchemy.orm import Session

from detective.config import settings
from detective.services.coin_products import CoinProduct, get_coin_product
from detective.services.coin_service import ERROR_PAYMENT_ALREADY_PROCESSED, CoinLedger

logger = logging.getLogger(__name__)

ALLOWED_CHANNEL_TYPES = {"LIVE", "TEST"}


class PaymentConfigurationError(RuntimeError):
    """Payment gateway credentials are missing"""


class PaymentGatewayError(RuntimeError):
    """Payment could not be fetched from the gateway"""


class PaymentGateway(Protocol):
    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        ...


class PortOneClient:
    """Minimal PortOne V2 REST client"""

    def __init__(
        self,
        api_secret: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_secret = api_secret
        self.base_url = (base_url or settings.PORTONE_API_URL).rstrip("/")
        self.timeout = timeout or settings.PORTONE_TIMEOUT_SECONDS
        self.transport = transport

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        """
        Fetch a payment by id

        Raises:
            PaymentGatewayError: on transport errors or non-2xx responses
        """
        url = f"{self.base_url}/payments/{quote(payment_id, safe='')}"
        headers = {"Authorization": f"PortOne {self.api_secret}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url, headers=headers)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PaymentGatewayError(f"Failed to fetch payment {payment_id}: {str(e)}") from e


def get_payment_gateway() -> PaymentGateway:
    """
    Build the gateway client from settings

    Raises:
        PaymentConfigurationError: if PORTONE_API_SECRET is not set
    """
    secret = settings.PORTONE_API_SECRET
    if not secret:
        logger.error(
            "PORTONE_API_SECRET is not set. Add PORTONE_API_SECRET=<your PortOne V2 API secret> "
            "to the environment or .env file."
        )
        raise PaymentConfigurationError("Payment gateway is not configured.")
    return PortOneClient(secret)


def parse_product(payment: Dict[str, Any]) -> Optional[CoinProduct]:
    """Decode customData -> {"productId": ...} and look the product up"""
    custom_data = payment.get("customData")
    if not custom_data:
        return None
    try:
        data = json.loads(custom_data) if isinstance(custom_data, str) else custom_data
    except (TypeError, ValueError):
        logger.warning("Payment customData is not valid JSON")
        return None
    if not isinstance(data, dict):
        return None
    return get_coin_product(data.get("productId"))


def verify_payment(payment: Dict[str, Any], currency: Optional[str] = None) -> Optional[CoinProduct]:
    """
    Check a PAID payment against the product catalog

    Returns:
        The purchased product, or None when verification fails
    """
    channel = payment.get("channel") or {}
    if channel.get("type") not in ALLOWED_CHANNEL_TYPES:
        return None

    product = parse_product(payment)
    if product is None:
        return None

    amount = payment.get("amount") or {}
    if (
        payment.get("orderName") == product.name
        and amount.get("total") == product.price
        and payment.get("currency") == (currency or settings.PAYMENT_CURRENCY)
    ):
        return product
    return None


@dataclass
class PaymentOutcome:
    success: bool
    status_code: int = 200
    coins: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None

    def body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success}
        if self.coins is not None:
            body["coins"] = self.coins
        if self.message:
            body["message"] = self.message
        if self.error:
            body["error"] = self.error
        return body


class PaymentService:
    """Verifies a gateway payment and credits the purchased coins"""

    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.ledger = CoinLedger(db)

    async def complete_payment(self, payment_id: str, user_id: str) -> PaymentOutcome:
        """
        Claim, verify and credit a payment

        The claim is taken before the gateway call so a concurrent replay of
        the same payment id is rejected; it is released again whenever no
        coins were credited.
        """
        if self.ledger.is_payment_already_processed(user_id, payment_id):
            logger.warning(f"Replayed payment rejected: user={user_id}, payment={payment_id}")
            return PaymentOutcome(False, 400, error=ERROR_PAYMENT_ALREADY_PROCESSED)

        claim = self.ledger.claim_payment(user_id, payment_id)
        if not claim.success:
            if claim.error == ERROR_PAYMENT_ALREADY_PROCESSED:
                return PaymentOutcome(False, 400, error=ERROR_PAYMENT_ALREADY_PROCESSED)
            return PaymentOutcome(False, 500, error="Failed to record the payment.")

        try:
            outcome = await self._verify_and_charge(payment_id, user_id)
        except Exception:
            self.ledger.release_payment_claim(payment_id)
            raise

        if not outcome.success:
            self.ledger.release_payment_claim(payment_id)
        return outcome

    async def _verify_and_charge(self, payment_id: str, user_id: str) -> PaymentOutcome:
        try:
            payment = await self.gateway.get_payment(payment_id)
        except PaymentGatewayError as e:
            logger.error(str(e))
            return PaymentOutcome(False, 400, error="Could not retrieve the payment.")

        if payment.get("status") != "PAID":
            logger.info(f"Payment {payment_id} not paid (status={payment.get('status')})")
            return PaymentOutcome(False, 400, error="The payment has not been completed.")

        product = verify_payment(payment)
        if product is None:
            logger.warning(f"Payment verification failed: payment={payment_id}")
            return PaymentOutcome(False, 400, error="Payment verification failed.")

        result = self.ledger.charge_coins(user_id, product.total_coins, payment_id)
        if not result.success:
            return PaymentOutcome(False, 500, error=result.error or "Failed to charge coins.")

        logger.info(f"Payment {payment_id} completed: {product.total_coins} coins to {user_id}")
        return PaymentOutcome(
            True,
            coins=product.total_coins,
            message=f"{product.total_coins} coins have been added.",
        )
