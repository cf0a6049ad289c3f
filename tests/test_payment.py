import asyncio

import httpx
import pytest

from detective.config import settings
from detective.models import CoinTransaction, PaymentClaim
from detective.services.coin_service import CoinLedger, payment_reference_hash
from detective.services.payment_service import (
    PaymentConfigurationError,
    PaymentGatewayError,
    PaymentService,
    PortOneClient,
    get_payment_gateway,
    parse_product,
    verify_payment,
)
from tests.conftest import FakeGateway, paid_payment

USER = "user-1"


def test_verify_payment_accepts_matching_product():
    product = verify_payment(paid_payment())
    assert product.id == "COIN_PACK_A"
    assert product.total_coins == 11


@pytest.mark.parametrize(
    "overrides",
    [
        {"channel": {"type": "SANDBOX"}},
        {"channel": None},
        {"orderName": "코인 패키지 B"},
        {"amount": {"total": 999}},
        {"currency": "USD"},
        {"customData": '{"productId": "COIN_PACK_Z"}'},
        {"customData": "not json"},
        {"customData": None},
    ],
)
def test_verify_payment_rejects_mismatch(overrides):
    assert verify_payment(paid_payment(**overrides)) is None


def test_parse_product_accepts_decoded_custom_data():
    assert parse_product({"customData": {"productId": "COIN_PACK_F"}}).total_coins == 130
    assert parse_product({"customData": "[1, 2]"}) is None


async def test_complete_payment_credits_coins(db_session, gateway):
    gateway.payments["pay_abc123"] = paid_payment()

    outcome = await PaymentService(db_session, gateway).complete_payment("pay_abc123", USER)

    assert outcome.success
    assert outcome.status_code == 200
    assert outcome.coins == 11
    assert CoinLedger(db_session).get_user_coins(USER) == 11


async def test_replayed_payment_rejected_before_any_mutation(db_session, gateway):
    ledger = CoinLedger(db_session)
    ledger.charge_coins(USER, 11, "pay_abc123")
    gateway.payments["pay_abc123"] = paid_payment()

    outcome = await PaymentService(db_session, gateway).complete_payment("pay_abc123", USER)

    assert not outcome.success
    assert outcome.status_code == 400
    assert gateway.calls == []
    assert ledger.get_user_coins(USER) == 11
    assert db_session.query(CoinTransaction).filter(
        CoinTransaction.related_id == payment_reference_hash("pay_abc123")
    ).count() == 1


class SlowGateway(FakeGateway):
    """Holds every lookup open long enough for a second request to arrive"""

    async def get_payment(self, payment_id):
        await asyncio.sleep(0.05)
        return await super().get_payment(payment_id)


async def test_concurrent_completions_credit_once(session_factory):
    gateway = SlowGateway()
    gateway.payments["pay_abc123"] = paid_payment()
    first_db, second_db = session_factory(), session_factory()

    try:
        outcomes = await asyncio.gather(
            PaymentService(first_db, gateway).complete_payment("pay_abc123", USER),
            PaymentService(second_db, gateway).complete_payment("pay_abc123", USER),
        )
        assert sorted(outcome.status_code for outcome in outcomes) == [200, 400]
        assert [outcome.success for outcome in outcomes].count(True) == 1
        assert gateway.calls == ["pay_abc123"]

        first_db.expire_all()
        assert CoinLedger(first_db).get_user_coins(USER) == 11
        assert first_db.query(CoinTransaction).count() == 1
    finally:
        first_db.close()
        second_db.close()


async def test_failed_verification_releases_claim(db_session, gateway):
    gateway.payments["pay_1"] = paid_payment(status="READY")
    service = PaymentService(db_session, gateway)

    assert (await service.complete_payment("pay_1", USER)).status_code == 400
    assert db_session.query(PaymentClaim).count() == 0

    # The buyer finishes paying and retries
    gateway.payments["pay_1"] = paid_payment()
    outcome = await service.complete_payment("pay_1", USER)

    assert outcome.success
    assert CoinLedger(db_session).get_user_coins(USER) == 11


async def test_gateway_crash_releases_claim(db_session, gateway, monkeypatch):
    async def crash(payment_id):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(gateway, "get_payment", crash)

    with pytest.raises(RuntimeError):
        await PaymentService(db_session, gateway).complete_payment("pay_1", USER)
    assert db_session.query(PaymentClaim).count() == 0


async def test_charge_without_audit_row_still_blocks_replay(db_session, gateway, monkeypatch):
    monkeypatch.setattr(CoinLedger, "_log_transaction", lambda self, *args, **kwargs: None)
    gateway.payments["pay_abc123"] = paid_payment()
    service = PaymentService(db_session, gateway)

    first = await service.complete_payment("pay_abc123", USER)
    replay = await service.complete_payment("pay_abc123", USER)

    assert first.success
    assert db_session.query(CoinTransaction).count() == 0
    assert replay.status_code == 400
    assert replay.error == "This payment has already been processed."
    assert CoinLedger(db_session).get_user_coins(USER) == 11



async def test_unpaid_payment_rejected(db_session, gateway):
    gateway.payments["pay_1"] = paid_payment(status="READY")

    outcome = await PaymentService(db_session, gateway).complete_payment("pay_1", USER)

    assert outcome.status_code == 400
    assert CoinLedger(db_session).get_user_coins(USER) == 0


async def test_unknown_payment_rejected(db_session, gateway):
    outcome = await PaymentService(db_session, gateway).complete_payment("missing", USER)
    assert outcome.status_code == 400
    assert not outcome.success


async def test_tampered_payment_rejected(db_session, gateway):
    gateway.payments["pay_1"] = paid_payment(amount={"total": 10})

    outcome = await PaymentService(db_session, gateway).complete_payment("pay_1", USER)

    assert outcome.status_code == 400
    assert outcome.error == "Payment verification failed."


def test_gateway_requires_secret(monkeypatch):
    monkeypatch.setattr(settings, "PORTONE_API_SECRET", None)
    with pytest.raises(PaymentConfigurationError):
        get_payment_gateway()

    monkeypatch.setattr(settings, "PORTONE_API_SECRET", "secret")
    assert isinstance(get_payment_gateway(), PortOneClient)


async def test_portone_client_fetches_payment():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json=paid_payment())

    client = PortOneClient(
        "secret",
        base_url="https://api.portone.test",
        transport=httpx.MockTransport(handler),
    )
    payment = await client.get_payment("pay/1")

    assert payment["status"] == "PAID"
    assert seen["url"] == "https://api.portone.test/payments/pay%2F1"
    assert seen["auth"] == "PortOne secret"


async def test_portone_client_wraps_errors():
    client = PortOneClient(
        "secret",
        base_url="https://api.portone.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(404, json={"type": "NOT_FOUND"})),
    )
    with pytest.raises(PaymentGatewayError):
        await client.get_payment("pay_1")


# Endpoint

def test_complete_endpoint_success(client, gateway):
    gateway.payments["pay_ok"] = paid_payment("COIN_PACK_B", "코인 패키지 B", 2000)

    response = client.post("/api/payment/complete", json={"paymentId": "pay_ok", "userId": USER})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["coins"] == 23
    assert client.get(f"/api/users/{USER}/coins").json()["balance"] == 23

    replay = client.post("/api/payment/complete", json={"paymentId": "pay_ok", "userId": USER})
    assert replay.status_code == 400
    assert replay.json()["success"] is False


def test_complete_endpoint_validates_body(client):
    assert client.post(
        "/api/payment/complete", content="not json", headers={"Content-Type": "application/json"}
    ).status_code == 400
    assert client.post("/api/payment/complete", json={"userId": USER}).status_code == 400
    assert client.post("/api/payment/complete", json={"paymentId": 12, "userId": USER}).status_code == 400
    assert client.post("/api/payment/complete", json=["pay_1"]).status_code == 400


def test_complete_endpoint_requires_principal(client, hub):
    hub.poll_timeout_ms = 30

    response = client.post("/api/payment/complete", json={"paymentId": "pay_1"})
    assert response.status_code == 401

    response = client.post("/api/payment/complete", json={"paymentId": "pay_1", "sessionId": "nobody"})
    assert response.status_code == 401


def test_complete_endpoint_resolves_session_principal(client, gateway):
    gateway.payments["pay_s"] = paid_payment()
    client.post("/api/auth/events", json={
        "session_id": "tab-1", "event": "SIGNED_IN", "user_id": USER,
    })

    response = client.post("/api/payment/complete", json={"paymentId": "pay_s", "sessionId": "tab-1"})

    assert response.status_code == 200
    assert response.json()["coins"] == 11


def test_complete_endpoint_without_gateway_secret(client, monkeypatch):
    from detective.main import app

    monkeypatch.setattr(settings, "PORTONE_API_SECRET", None)
    app.state.payment_gateway_factory = get_payment_gateway

    response = client.post("/api/payment/complete", json={"paymentId": "pay_1", "userId": USER})

    assert response.status_code == 500
    assert response.json()["success"] is False
