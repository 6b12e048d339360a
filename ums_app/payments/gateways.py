"""
HTTP clients for the Cashfree and Razorpay payment gateways.

Both clients expose the same small surface used by the ledger:

- ``create_order(order_id, amount, customer)`` -> ``GatewayOrder``
- ``fetch_outcome(order_id, gateway_payment_id=None, signature=None)`` -> ``GatewayOutcome``
- ``verify_webhook(raw_body, headers)`` -> bool
- ``parse_webhook(raw_body)`` -> ``GatewayOutcome`` or None for ignored events

Transport errors, non-2xx replies and undecodable bodies surface as
``UpstreamGatewayError``; nothing here retries.
"""
import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, Optional

import requests

from ..errors import UpstreamGatewayError, ValidationError

SUCCESS = "success"
FAILED = "failed"
PENDING = "pending"


@dataclass(frozen=True)
class GatewayConfig:
    cashfree_app_id: Optional[str] = None
    cashfree_secret_key: Optional[str] = None
    cashfree_base_url: str = "https://sandbox.cashfree.com/pg"
    cashfree_api_version: str = "2022-09-01"
    cashfree_webhook_secret: Optional[str] = None
    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_webhook_secret: Optional[str] = None
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    timeout: int = 30
    public_domain: str = "http://localhost:5173"

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "GatewayConfig":
        return cls(
            cashfree_app_id=cfg.get("CASHFREE_APP_ID"),
            cashfree_secret_key=cfg.get("CASHFREE_SECRET_KEY"),
            cashfree_base_url=(cfg.get("CASHFREE_BASE_URL") or cls.cashfree_base_url).rstrip("/"),
            cashfree_api_version=cfg.get("CASHFREE_API_VERSION") or cls.cashfree_api_version,
            cashfree_webhook_secret=cfg.get("CASHFREE_WEBHOOK_SECRET") or cfg.get("CASHFREE_SECRET_KEY"),
            razorpay_key_id=cfg.get("RAZORPAY_KEY_ID"),
            razorpay_key_secret=cfg.get("RAZORPAY_KEY_SECRET"),
            razorpay_webhook_secret=cfg.get("RAZORPAY_WEBHOOK_SECRET"),
            razorpay_base_url=(cfg.get("RAZORPAY_BASE_URL") or cls.razorpay_base_url).rstrip("/"),
            timeout=int(cfg.get("GATEWAY_TIMEOUT") or 30),
            public_domain=(cfg.get("PUBLIC_DOMAIN") or cls.public_domain).rstrip("/"),
        )


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str
    token: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayOutcome:
    order_id: Optional[str]
    status: str  # success | failed | pending
    gateway_payment_id: Optional[str] = None
    transaction_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS

    @property
    def failed(self) -> bool:
        return self.status == FAILED


def _header(headers, name):
    if headers is None:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    wanted = name.lower()
    for key, val in dict(headers).items():
        if key.lower() == wanted:
            return val
    return None


def _hmac_sha256(secret: str, payload: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()


def _as_bytes(raw_body) -> bytes:
    if isinstance(raw_body, bytes):
        return raw_body
    return (raw_body or "").encode("utf-8")


def _decode_json(raw_body) -> dict:
    try:
        data = json.loads(_as_bytes(raw_body) or b"{}")
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return data


class _GatewayClient:
    name = "gateway"

    def __init__(self, config: GatewayConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def _request(self, method, url, **kwargs) -> Any:
        kwargs.setdefault("timeout", self.config.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            raise UpstreamGatewayError(f"{self.name} request failed: {e}")
        except ValueError:
            raise UpstreamGatewayError(f"{self.name} returned an undecodable response")


class CashfreeGateway(_GatewayClient):
    name = "cashfree"

    def _headers(self):
        if not self.config.cashfree_app_id or not self.config.cashfree_secret_key:
            raise UpstreamGatewayError("Cashfree is not configured")
        return {
            "x-client-id": self.config.cashfree_app_id,
            "x-client-secret": self.config.cashfree_secret_key,
            "x-api-version": self.config.cashfree_api_version,
            "Content-Type": "application/json",
        }

    def create_order(self, order_id: str, amount: Decimal, customer: dict) -> GatewayOrder:
        payload = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": "INR",
            "customer_details": {
                "customer_id": customer.get("id"),
                "customer_name": customer.get("name"),
                "customer_email": customer.get("email"),
                "customer_phone": customer.get("phone") or "9999999999",
            },
            "order_meta": {
                "return_url": f"{self.config.public_domain}/payment/result?order_id={order_id}",
            },
        }
        data = self._request("POST", f"{self.config.cashfree_base_url}/orders", json=payload, headers=self._headers())
        try:
            return GatewayOrder(order_id=data.get("order_id") or order_id, token=data["payment_session_id"], raw=data)
        except (KeyError, TypeError, AttributeError):
            raise UpstreamGatewayError("Cashfree order response is missing payment_session_id")

    def fetch_outcome(self, order_id, gateway_payment_id=None, signature=None) -> GatewayOutcome:
        data = self._request("GET", f"{self.config.cashfree_base_url}/orders/{order_id}/payments", headers=self._headers())
        if not isinstance(data, list):
            raise UpstreamGatewayError("Cashfree payments response is not a list")
        if not data:
            return GatewayOutcome(order_id, PENDING)

        for attempt in data:
            if isinstance(attempt, dict) and attempt.get("payment_status") == "SUCCESS":
                cf_id = attempt.get("cf_payment_id")
                cf_id = str(cf_id) if cf_id is not None else None
                return GatewayOutcome(order_id, SUCCESS, gateway_payment_id=cf_id, transaction_id=cf_id)

        latest = data[0] if isinstance(data[0], dict) else {}
        if latest.get("payment_status") == "FAILED":
            cf_id = latest.get("cf_payment_id")
            return GatewayOutcome(order_id, FAILED, gateway_payment_id=str(cf_id) if cf_id is not None else None)
        return GatewayOutcome(order_id, PENDING)

    def verify_webhook(self, raw_body, headers) -> bool:
        secret = self.config.cashfree_webhook_secret
        signature = _header(headers, "x-webhook-signature")
        timestamp = _header(headers, "x-webhook-timestamp") or ""
        if not secret or not signature:
            return False
        expected = base64.b64encode(_hmac_sha256(secret, timestamp.encode("utf-8") + _as_bytes(raw_body))).decode()
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, raw_body) -> Optional[GatewayOutcome]:
        data = _decode_json(raw_body)
        order_id = data.get("orderId")
        if not order_id:
            raise ValidationError("Webhook body is missing orderId")
        status = {"SUCCESS": SUCCESS, "FAILED": FAILED}.get(str(data.get("paymentStatus") or "").upper(), PENDING)
        cf_id = data.get("cfPaymentId")
        cf_id = str(cf_id) if cf_id is not None else None
        return GatewayOutcome(
            order_id,
            status,
            gateway_payment_id=cf_id,
            transaction_id=data.get("transactionId") or cf_id,
        )


class RazorpayGateway(_GatewayClient):
    name = "razorpay"

    def _auth(self):
        if not self.config.razorpay_key_id or not self.config.razorpay_key_secret:
            raise UpstreamGatewayError("Razorpay is not configured")
        return (self.config.razorpay_key_id, self.config.razorpay_key_secret)

    def create_order(self, order_id: str, amount: Decimal, customer: dict) -> GatewayOrder:
        paise = int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        payload = {
            "amount": paise,
            "currency": "INR",
            "receipt": order_id,
            "notes": {"studentId": customer.get("id"), "paymentType": customer.get("payment_type")},
        }
        data = self._request("POST", f"{self.config.razorpay_base_url}/orders", json=payload, auth=self._auth())
        try:
            rzp_id = data["id"]
        except (KeyError, TypeError):
            raise UpstreamGatewayError("Razorpay order response is missing id")
        return GatewayOrder(order_id=rzp_id, token=rzp_id, raw=data)

    def verify_payment_signature(self, order_id, payment_id, signature) -> bool:
        secret = self.config.razorpay_key_secret
        if not secret or not signature:
            return False
        expected = _hmac_sha256(secret, f"{order_id}|{payment_id}".encode("utf-8")).hex()
        return hmac.compare_digest(expected, signature)

    def fetch_outcome(self, order_id, gateway_payment_id=None, signature=None) -> GatewayOutcome:
        if gateway_payment_id:
            if not self.verify_payment_signature(order_id, gateway_payment_id, signature):
                raise ValidationError("Invalid payment signature")
            entity = self._request(
                "GET", f"{self.config.razorpay_base_url}/payments/{gateway_payment_id}", auth=self._auth()
            )
            return self._outcome_from_entity(order_id, entity)

        data = self._request("GET", f"{self.config.razorpay_base_url}/orders/{order_id}/payments", auth=self._auth())
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise UpstreamGatewayError("Razorpay payments response is malformed")
        for entity in items:
            if isinstance(entity, dict) and entity.get("status") == "captured":
                return self._outcome_from_entity(order_id, entity)
        if items:
            return self._outcome_from_entity(order_id, items[0])
        return GatewayOutcome(order_id, PENDING)

    @staticmethod
    def _outcome_from_entity(order_id, entity) -> GatewayOutcome:
        if not isinstance(entity, dict):
            raise UpstreamGatewayError("Razorpay payment entity is malformed")
        status = {"captured": SUCCESS, "failed": FAILED}.get(entity.get("status"), PENDING)
        pay_id = entity.get("id")
        return GatewayOutcome(entity.get("order_id") or order_id, status, gateway_payment_id=pay_id, transaction_id=pay_id)

    def verify_webhook(self, raw_body, headers) -> bool:
        secret = self.config.razorpay_webhook_secret
        signature = _header(headers, "X-Razorpay-Signature")
        if not secret or not signature:
            return False
        expected = _hmac_sha256(secret, _as_bytes(raw_body)).hex()
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, raw_body) -> Optional[GatewayOutcome]:
        data = _decode_json(raw_body)
        event = data.get("event")
        if event not in ("payment.captured", "payment.failed"):
            return None
        try:
            entity = data["payload"]["payment"]["entity"]
        except (KeyError, TypeError):
            raise ValidationError("Webhook body is missing the payment entity")
        if not isinstance(entity, dict) or not entity.get("order_id"):
            raise ValidationError("Webhook payment entity is missing order_id")
        status = SUCCESS if event == "payment.captured" else FAILED
        return GatewayOutcome(entity["order_id"], status, gateway_payment_id=entity.get("id"), transaction_id=entity.get("id"))


def build_gateways(config: GatewayConfig) -> dict:
    return {
        "cashfree": CashfreeGateway(config),
        "razorpay": RazorpayGateway(config),
    }
