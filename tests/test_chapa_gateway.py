import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from eventpass.core.errors import ErrorKind, ServiceError
from eventpass.services.payment_gateway import (
    EVENT_FAILED,
    EVENT_SUCCEEDED,
    PAY_FAILED,
    PAY_PENDING,
    PAY_SUCCESS,
    ChapaGateway,
    CheckoutRequest,
)


def _gateway(handler, webhook_secret=""):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ChapaGateway(
        "CHASECK_TEST-key",
        webhook_secret=webhook_secret,
        api_base="https://chapa.test/v1",
        client=client,
    )


def _request(**kw):
    data = dict(
        tx_ref="chapa-ord-1",
        amount=Decimal("1000.00"),
        currency="ETB",
        email="buyer@example.test",
        first_name="Sara",
        title="Jazz Night Tickets",
        success_url="https://shop.test/payments/success?orderId=ord-1",
    )
    data.update(kw)
    return CheckoutRequest(**data)


def test_initialize_returns_checkout_url():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"status": "success", "data": {"checkout_url": "https://checkout.chapa.co/abc"}},
        )

    session = _gateway(handler).initiate_checkout(_request())
    assert session.checkout_url == "https://checkout.chapa.co/abc"
    assert session.gateway_ref == "chapa-ord-1"
    assert seen["url"] == "https://chapa.test/v1/transaction/initialize"
    assert seen["auth"] == "Bearer CHASECK_TEST-key"
    body = seen["body"]
    assert body["amount"] == "1000.00"
    assert body["tx_ref"] == "chapa-ord-1"
    assert body["last_name"] == "User"
    assert body["customization"]["title"] == "Jazz Night Ticke"


def test_initialize_rejection_is_gateway_unavailable():
    def handler(request):
        return httpx.Response(400, json={"status": "failed", "message": "Invalid currency"})

    with pytest.raises(ServiceError) as ei:
        _gateway(handler).initiate_checkout(_request())
    assert ei.value.kind == ErrorKind.GATEWAY_UNAVAILABLE
    assert ei.value.extra["gatewayMessage"] == "Invalid currency"


def test_network_error_is_gateway_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ServiceError) as ei:
        _gateway(handler).initiate_checkout(_request())
    assert ei.value.kind == ErrorKind.GATEWAY_UNAVAILABLE


def test_missing_secret_key_is_gateway_unavailable():
    gw = ChapaGateway("", client=httpx.Client(transport=httpx.MockTransport(lambda r: None)))
    with pytest.raises(ServiceError) as ei:
        gw.verify_transaction("x")
    assert ei.value.kind == ErrorKind.GATEWAY_UNAVAILABLE


def test_verify_success():
    def handler(request):
        assert request.url.path == "/v1/transaction/verify/chapa-ord-1"
        return httpx.Response(
            200,
            json={
                "status": "success",
                "message": "Payment details",
                "data": {
                    "status": "success",
                    "amount": 1000,
                    "currency": "etb",
                    "reference": "APfS7Wq2",
                },
            },
        )

    v = _gateway(handler).verify_transaction("chapa-ord-1")
    assert v.verified is True
    assert v.status == PAY_SUCCESS
    assert v.amount == Decimal("1000.00")
    assert v.currency == "ETB"
    assert v.transaction_id == "APfS7Wq2"


def test_verify_failed_and_pending():
    outcomes = {"failed": "failed", "pending": "pending"}

    def handler(request):
        ref = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(200, json={"status": "success", "data": {"status": outcomes[ref]}})

    gw = _gateway(handler)
    failed = gw.verify_transaction("failed")
    assert failed.status == PAY_FAILED
    assert failed.definitive_failure is True
    pending = gw.verify_transaction("pending")
    assert pending.status == PAY_PENDING
    assert pending.verified is False


def test_verify_unknown_reference_is_pending():
    def handler(request):
        return httpx.Response(404, json={"status": "failed", "message": "Invalid transaction"})

    v = _gateway(handler).verify_transaction("nope")
    assert v.status == PAY_PENDING


def test_verify_server_error_is_gateway_unavailable():
    def handler(request):
        return httpx.Response(502, text="Bad Gateway")

    with pytest.raises(ServiceError) as ei:
        _gateway(handler).verify_transaction("chapa-ord-1")
    assert ei.value.kind == ErrorKind.GATEWAY_UNAVAILABLE


def _signed(secret, body):
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_webhook_signature_is_checked():
    body = json.dumps(
        {"event": "charge.success", "tx_ref": "chapa-ord-1", "status": "success", "reference": "R1"}
    ).encode()
    gw = _gateway(lambda r: httpx.Response(500), webhook_secret="whsec")

    event = gw.parse_webhook(body, {"Chapa-Signature": _signed("whsec", body)})
    assert event.kind == EVENT_SUCCEEDED
    assert event.tx_ref == "chapa-ord-1"
    assert event.event_id == "chapa:charge.success:R1"

    with pytest.raises(ServiceError) as ei:
        gw.parse_webhook(body, {"Chapa-Signature": _signed("other", body)})
    assert ei.value.kind == ErrorKind.VALIDATION
    with pytest.raises(ServiceError):
        gw.parse_webhook(body, {})


def test_unsigned_webhook_without_reference_gets_stable_id():
    body = json.dumps({"data": {"tx_ref": "chapa-ord-2", "status": "failed"}}).encode()
    gw = _gateway(lambda r: httpx.Response(500))
    first = gw.parse_webhook(body, {})
    second = gw.parse_webhook(body, {})
    assert first.kind == EVENT_FAILED
    assert first.tx_ref == "chapa-ord-2"
    assert first.event_id == second.event_id


def test_webhook_without_tx_ref_is_rejected():
    gw = _gateway(lambda r: httpx.Response(500))
    with pytest.raises(ServiceError) as ei:
        gw.parse_webhook(b'{"status": "success"}', {})
    assert ei.value.kind == ErrorKind.VALIDATION
