from __future__ import annotations

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import httpx

from eventpass.core.errors import gateway_unavailable, validation

logger = logging.getLogger("payments.gateway")

# Normalized transaction outcomes
PAY_SUCCESS = "success"
PAY_FAILED = "failed"
PAY_PENDING = "pending"

# Normalized webhook kinds
EVENT_SUCCEEDED = "succeeded"
EVENT_FAILED = "failed"
EVENT_OTHER = "other"


@dataclass
class CheckoutRequest:
    tx_ref: str
    amount: Decimal
    currency: str
    email: str
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    title: str = "Event Ticket"
    description: str = ""
    success_url: str = ""
    cancel_url: str = ""
    callback_url: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckoutSession:
    checkout_url: str
    gateway_ref: str


@dataclass
class Verification:
    verified: bool
    status: str  # success | failed | pending
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    transaction_id: Optional[str] = None
    message: str = ""

    @property
    def definitive_failure(self) -> bool:
        return self.status == PAY_FAILED


@dataclass
class WebhookEvent:
    event_id: str
    kind: str
    gateway_ref: Optional[str] = None
    tx_ref: Optional[str] = None
    event_type: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


class PaymentGateway(ABC):
    name = "abstract"

    @abstractmethod
    def initiate_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        """Open a hosted checkout session; raises GatewayUnavailable on any failure."""

    @abstractmethod
    def verify_transaction(self, gateway_ref: str) -> Verification:
        """Ask the gateway for the authoritative outcome of a transaction."""

    @abstractmethod
    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Check the signature and normalize a webhook delivery."""


# ----------------------------
# Chapa
# ----------------------------
class ChapaGateway(PaymentGateway):
    name = "chapa"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        api_base: str = "https://api.chapa.co/v1",
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def initiate_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        if not self.secret_key:
            raise gateway_unavailable("Payment gateway is not configured.")
        body = {
            "amount": str(request.amount),
            "currency": request.currency,
            "email": request.email,
            "first_name": request.first_name or "Guest",
            "last_name": request.last_name or "User",
            "phone_number": request.phone or "",
            "tx_ref": request.tx_ref,
            "callback_url": request.callback_url,
            "return_url": request.success_url,
            # Chapa caps the title at 16 characters
            "customization": {"title": request.title[:16], "description": request.description},
            "meta": request.metadata,
        }
        url = f"{self.api_base}/transaction/initialize"
        try:
            resp = self._client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error("chapa.initialize.network_error", extra={"tx_ref": request.tx_ref, "error": str(e)})
            raise gateway_unavailable("Payment gateway could not be reached.")

        data = self._json(resp)
        checkout_url = ((data.get("data") or {}).get("checkout_url")) if data else None
        if resp.status_code >= 300 or str(data.get("status")) != "success" or not checkout_url:
            logger.error(
                "chapa.initialize.failed",
                extra={
                    "tx_ref": request.tx_ref,
                    "status_code": resp.status_code,
                    "gateway_message": str(data.get("message") or ""),
                },
            )
            raise gateway_unavailable(
                "Payment gateway rejected the checkout request.",
                gatewayMessage=str(data.get("message") or ""),
            )
        logger.info("chapa.initialize.ok", extra={"tx_ref": request.tx_ref})
        # Chapa verifies by our own tx_ref
        return CheckoutSession(checkout_url=str(checkout_url), gateway_ref=request.tx_ref)

    def verify_transaction(self, gateway_ref: str) -> Verification:
        if not self.secret_key:
            raise gateway_unavailable("Payment gateway is not configured.")
        url = f"{self.api_base}/transaction/verify/{gateway_ref}"
        try:
            resp = self._client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error("chapa.verify.network_error", extra={"tx_ref": gateway_ref, "error": str(e)})
            raise gateway_unavailable("Payment gateway could not be reached.")
        if resp.status_code >= 500:
            raise gateway_unavailable("Payment gateway error while verifying.")

        data = self._json(resp)
        inner = data.get("data") or {}
        inner_status = str(inner.get("status") or "").lower()
        message = str(data.get("message") or "")
        if resp.status_code < 300 and data.get("status") == "success" and inner_status == "success":
            return Verification(
                verified=True,
                status=PAY_SUCCESS,
                amount=_decimal(inner.get("amount")),
                currency=(str(inner.get("currency") or "").upper() or None),
                transaction_id=str(inner.get("reference") or inner.get("transaction_id") or "")
                or None,
                message=message,
            )
        if inner_status in ("failed", "cancelled", "reversed"):
            return Verification(verified=False, status=PAY_FAILED, message=message or inner_status)
        # Unpaid yet, or unknown to the gateway so far
        return Verification(verified=False, status=PAY_PENDING, message=message)

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        lowered = {k.lower(): v for k, v in headers.items()}
        if self.webhook_secret:
            sig = lowered.get("x-chapa-signature") or lowered.get("chapa-signature")
            expected = hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()
            if not sig or not hmac.compare_digest(expected, sig):
                raise validation("Invalid webhook signature.")
        else:
            logger.warning("chapa.webhook.unsigned")
        try:
            event = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise validation("Invalid webhook payload.")
        if not isinstance(event, dict):
            raise validation("Invalid webhook payload.")

        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        tx_ref = event.get("tx_ref") or event.get("trx_ref") or data.get("tx_ref")
        if not tx_ref:
            raise validation("Webhook payload has no transaction reference.")
        status = str(event.get("status") or data.get("status") or "").lower()
        if status == "success":
            kind = EVENT_SUCCEEDED
        elif status in ("failed", "cancelled", "reversed"):
            kind = EVENT_FAILED
        else:
            kind = EVENT_OTHER
        reference = event.get("reference") or data.get("reference")
        event_type = str(event.get("event") or event.get("type") or f"charge.{status or 'unknown'}")
        if reference:
            event_id = f"chapa:{event_type}:{reference}"
        else:
            event_id = "chapa:" + hashlib.sha256(payload).hexdigest()
        return WebhookEvent(
            event_id=event_id,
            kind=kind,
            gateway_ref=str(tx_ref),
            tx_ref=str(tx_ref),
            event_type=event_type,
            payload=event,
        )

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


# ----------------------------
# Stripe
# ----------------------------
class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str = "") -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def _stripe(self):
        import stripe

        if not self.secret_key:
            raise gateway_unavailable("Payment gateway is not configured.")
        stripe.api_key = self.secret_key
        return stripe

    def initiate_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        stripe = self._stripe()
        amount_minor = int((Decimal(request.amount) * 100).to_integral_value())
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                success_url=request.success_url,
                cancel_url=request.cancel_url or request.success_url,
                customer_email=request.email or None,
                client_reference_id=request.tx_ref,
                line_items=[
                    {
                        "price_data": {
                            "currency": request.currency.lower(),
                            "product_data": {
                                "name": request.title,
                                "description": request.description or request.title,
                            },
                            "unit_amount": amount_minor,
                        },
                        "quantity": 1,
                    }
                ],
                metadata={k: str(v) for k, v in {**request.metadata, "tx_ref": request.tx_ref}.items()},
            )
        except stripe.StripeError as e:
            logger.error("stripe.checkout.error", extra={"tx_ref": request.tx_ref, "error": str(e)})
            raise gateway_unavailable("Payment gateway rejected the checkout request.")
        return CheckoutSession(checkout_url=str(session.get("url")), gateway_ref=str(session.get("id")))

    def verify_transaction(self, gateway_ref: str) -> Verification:
        stripe = self._stripe()
        try:
            sess = stripe.checkout.Session.retrieve(gateway_ref)
        except stripe.StripeError as e:
            logger.error("stripe.verify.error", extra={"session_id": gateway_ref, "error": str(e)})
            raise gateway_unavailable("Payment gateway error while verifying.")
        payment_status = str(sess.get("payment_status") or "").lower()
        amount_total = sess.get("amount_total")
        amount = (Decimal(int(amount_total)) / Decimal(100)).quantize(Decimal("0.01")) if amount_total is not None else None
        currency = str(sess.get("currency") or "").upper() or None
        if payment_status == "paid":
            pi = sess.get("payment_intent")
            return Verification(
                verified=True,
                status=PAY_SUCCESS,
                amount=amount,
                currency=currency,
                transaction_id=str(pi) if pi else str(sess.get("id")),
            )
        if str(sess.get("status") or "").lower() == "expired":
            return Verification(verified=False, status=PAY_FAILED, message="checkout session expired")
        return Verification(verified=False, status=PAY_PENDING, message=payment_status)

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        import stripe

        lowered = {k.lower(): v for k, v in headers.items()}
        sig_header = lowered.get("stripe-signature")
        try:
            if self.webhook_secret:
                event = stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
            else:
                logger.warning("stripe.webhook.unsigned")
                event = json.loads(payload.decode("utf-8"))
        except (ValueError, UnicodeDecodeError, stripe.SignatureVerificationError):
            raise validation("Invalid webhook signature or payload.")

        etype = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        if etype == "checkout.session.completed" and obj.get("payment_status") in ("paid", None):
            kind = EVENT_SUCCEEDED
        elif etype == "checkout.session.async_payment_succeeded":
            kind = EVENT_SUCCEEDED
        elif etype in ("checkout.session.async_payment_failed", "checkout.session.expired"):
            kind = EVENT_FAILED
        else:
            kind = EVENT_OTHER
        metadata = obj.get("metadata") or {}
        tx_ref = obj.get("client_reference_id") or metadata.get("tx_ref")
        return WebhookEvent(
            event_id=str(event.get("id") or ""),
            kind=kind,
            gateway_ref=obj.get("id"),
            tx_ref=tx_ref,
            event_type=etype,
            payload=dict(event),
        )


_gateway: Optional[PaymentGateway] = None


def build_gateway(settings) -> PaymentGateway:
    if settings.PAYMENT_GATEWAY == "stripe":
        return StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)
    return ChapaGateway(
        secret_key=settings.CHAPA_SECRET_KEY,
        webhook_secret=settings.CHAPA_WEBHOOK_SECRET,
        api_base=settings.CHAPA_API_BASE,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency; the gateway is built once from settings."""
    global _gateway
    if _gateway is None:
        from eventpass.core.settings import settings

        _gateway = build_gateway(settings)
    return _gateway


def set_payment_gateway(gateway: Optional[PaymentGateway]) -> None:
    global _gateway
    _gateway = gateway
