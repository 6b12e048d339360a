import base64
import hashlib
import hmac
import json

import pytest
import requests

from ums_app.errors import UpstreamGatewayError, ValidationError
from ums_app.payments.gateways import (
    GatewayConfig, CashfreeGateway, RazorpayGateway, build_gateways,
)

CONFIG = GatewayConfig(
    cashfree_app_id="cf-app",
    cashfree_secret_key="cf-secret",
    cashfree_webhook_secret="cf-hook",
    razorpay_key_id="rzp-key",
    razorpay_key_secret="rzp-secret",
    razorpay_webhook_secret="rzp-hook",
)


class StubResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class StubSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def test_config_from_mapping_defaults():
    cfg = GatewayConfig.from_mapping({"CASHFREE_SECRET_KEY": "s", "GATEWAY_TIMEOUT": "12"})
    assert cfg.cashfree_webhook_secret == "s"
    assert cfg.cashfree_base_url == "https://sandbox.cashfree.com/pg"
    assert cfg.cashfree_api_version == "2022-09-01"
    assert cfg.timeout == 12
    assert set(build_gateways(cfg)) == {"cashfree", "razorpay"}


def test_cashfree_create_order_sends_credentials():
    session = StubSession(StubResponse({"order_id": "CF_1", "payment_session_id": "sess_1"}))
    order = CashfreeGateway(CONFIG, session=session).create_order("CF_1", 1500, {"id": "21CS001", "name": "Asha"})
    assert order.order_id == "CF_1"
    assert order.token == "sess_1"
    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert url.endswith("/orders")
    assert kwargs["headers"]["x-client-id"] == "cf-app"
    assert kwargs["headers"]["x-api-version"] == "2022-09-01"
    assert kwargs["json"]["order_amount"] == 1500.0


def test_cashfree_fetch_outcome_success():
    session = StubSession(StubResponse([
        {"payment_status": "FAILED", "cf_payment_id": 11},
        {"payment_status": "SUCCESS", "cf_payment_id": 12},
    ]))
    outcome = CashfreeGateway(CONFIG, session=session).fetch_outcome("CF_1")
    assert outcome.succeeded
    assert outcome.transaction_id == "12"


def test_cashfree_fetch_outcome_pending_when_no_attempts():
    outcome = CashfreeGateway(CONFIG, session=StubSession(StubResponse([]))).fetch_outcome("CF_1")
    assert outcome.status == "pending"


@pytest.mark.parametrize("session", [
    StubSession(error=requests.exceptions.ConnectionError("down")),
    StubSession(StubResponse({"message": "nope"}, status=500)),
    StubSession(StubResponse(ValueError("not json"))),
    StubSession(StubResponse({"unexpected": "shape"})),
])
def test_cashfree_upstream_failures(session):
    with pytest.raises(UpstreamGatewayError):
        CashfreeGateway(CONFIG, session=session).fetch_outcome("CF_1")


def test_unconfigured_gateway_raises_upstream_error():
    gateway = RazorpayGateway(GatewayConfig(), session=StubSession(StubResponse({})))
    with pytest.raises(UpstreamGatewayError):
        gateway.create_order("RZP_1", 10, {})


def test_cashfree_webhook_signature():
    gateway = CashfreeGateway(CONFIG, session=StubSession())
    body = json.dumps({"orderId": "CF_1", "paymentStatus": "SUCCESS", "cfPaymentId": 77}).encode()
    ts = "1719830000"
    sig = base64.b64encode(hmac.new(b"cf-hook", ts.encode() + body, hashlib.sha256).digest()).decode()

    assert gateway.verify_webhook(body, {"x-webhook-signature": sig, "x-webhook-timestamp": ts})
    assert not gateway.verify_webhook(body + b" ", {"x-webhook-signature": sig, "x-webhook-timestamp": ts})
    assert not gateway.verify_webhook(body, {})

    outcome = gateway.parse_webhook(body)
    assert outcome.order_id == "CF_1"
    assert outcome.succeeded
    assert outcome.transaction_id == "77"


def test_razorpay_checkout_signature():
    gateway = RazorpayGateway(CONFIG, session=StubSession())
    sig = hmac.new(b"rzp-secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
    assert gateway.verify_payment_signature("order_1", "pay_1", sig)
    assert not gateway.verify_payment_signature("order_1", "pay_2", sig)


def test_razorpay_fetch_rejects_bad_signature_before_calling_api():
    session = StubSession(StubResponse({"id": "pay_1", "status": "captured"}))
    with pytest.raises(ValidationError):
        RazorpayGateway(CONFIG, session=session).fetch_outcome("order_1", "pay_1", "forged")
    assert session.calls == []


def test_razorpay_fetch_captured_payment():
    sig = hmac.new(b"rzp-secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
    session = StubSession(StubResponse({"id": "pay_1", "order_id": "order_1", "status": "captured"}))
    outcome = RazorpayGateway(CONFIG, session=session).fetch_outcome("order_1", "pay_1", sig)
    assert outcome.succeeded
    assert outcome.gateway_payment_id == "pay_1"
    assert session.calls[0][2]["auth"] == ("rzp-key", "rzp-secret")


def test_razorpay_order_amount_in_paise():
    session = StubSession(StubResponse({"id": "order_9"}))
    order = RazorpayGateway(CONFIG, session=session).create_order("RZP_1", "1250.50", {"id": "21CS001"})
    assert order.order_id == "order_9"
    assert session.calls[0][2]["json"]["amount"] == 125050


def test_razorpay_webhook_events():
    gateway = RazorpayGateway(CONFIG, session=StubSession())
    body = json.dumps({
        "event": "payment.failed",
        "payload": {"payment": {"entity": {"id": "pay_2", "order_id": "order_2", "status": "failed"}}},
    }).encode()
    sig = hmac.new(b"rzp-hook", body, hashlib.sha256).hexdigest()
    assert gateway.verify_webhook(body, {"X-Razorpay-Signature": sig})
    assert gateway.verify_webhook(body, {"x-razorpay-signature": sig})
    outcome = gateway.parse_webhook(body)
    assert outcome.failed
    assert outcome.order_id == "order_2"

    assert gateway.parse_webhook(json.dumps({"event": "order.paid"}).encode()) is None
    with pytest.raises(ValidationError):
        gateway.parse_webhook(b"not json")
