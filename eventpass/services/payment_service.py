from __future__ import annotations

import json
import logging
import secrets
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventpass.core.errors import ErrorKind, ServiceError, not_found, validation
from eventpass.core.settings import settings
from eventpass.models.billing import (
    PURPOSE_ORDER,
    PURPOSE_SUBSCRIPTION,
    TX_FAILED,
    TX_OPEN_STATUSES,
    TX_PENDING,
    TX_SUCCESS,
    TX_UNKNOWN,
    PaymentLog,
    PaymentTransaction,
)
from eventpass.models.event import Event
from eventpass.models.order import STATUS_PENDING, Order
from eventpass.models.user import utcnow
from eventpass.services import order_service
from eventpass.services.cache import get_cache
from eventpass.services.payment_gateway import (
    EVENT_OTHER,
    PAY_FAILED,
    CheckoutRequest,
    PaymentGateway,
)
from eventpass.services.subscription_service import SubscriptionService

logger = logging.getLogger("payments")
audit = logging.getLogger("audit")

UNKNOWN_STATUS_MESSAGE = "payment status unknown, contact support"


def new_order_tx_ref(gateway: PaymentGateway, order_id: str) -> str:
    # Suffix keeps same-millisecond retries unique
    return f"{gateway.name.upper()}-{order_id}-{int(time.time() * 1000)}{secrets.token_hex(2)}"


def _with_order_id(url: Optional[str], order_id: str, default_path: str) -> str:
    """Keep the caller's host and path but carry nothing except the orderId."""
    base = settings.BASE_URL.rstrip("/")
    parts = urlsplit(url or "")
    if parts.scheme not in ("http", "https") or not parts.netloc:
        parts = urlsplit(f"{base}{default_path}")
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode({"orderId": order_id}), ""))


def get_transaction(db: Session, tx_ref: str) -> PaymentTransaction:
    ref = (tx_ref or "").strip()
    tx = db.query(PaymentTransaction).filter(PaymentTransaction.TxRef == ref).first() if ref else None
    if not tx:
        raise not_found("Payment transaction not found.")
    return tx


def _log(
    db: Session,
    event_type: str,
    tx_ref: Optional[str] = None,
    payload: Any = None,
    error: Optional[str] = None,
    provider_event_id: Optional[str] = None,
    user_id: Optional[int] = None,
) -> PaymentLog:
    row = PaymentLog(
        UserID=user_id,
        EventType=event_type,
        ProviderEventID=provider_event_id,
        TxRef=tx_ref,
        Payload=payload if isinstance(payload, str) or payload is None else json.dumps(payload, default=str),
        ErrorMessage=error,
    )
    db.add(row)
    return row


def initiate_order_payment(
    db: Session,
    gateway: PaymentGateway,
    order: Order,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> PaymentTransaction:
    """Open a checkout session for a pending paid order.

    The gateway is called before anything is written, so a GatewayUnavailable
    leaves the order and its transactions untouched. The order stays pending.
    """
    if order.Status != STATUS_PENDING:
        raise validation(f"Order is {order.Status}; only pending orders can be paid.")
    amount = Decimal(str(order.TotalAmount or 0))
    if amount <= 0:
        raise validation("Free orders do not need payment.")
    event = db.query(Event).filter(Event.EventID == order.EventID).first()
    title = (event.Title if event else "") or "Event Ticket"

    tx_ref = new_order_tx_ref(gateway, order.OrderID)
    request = CheckoutRequest(
        tx_ref=tx_ref,
        amount=amount,
        currency=order.Currency,
        email=order.BuyerEmail,
        first_name=order.BuyerFirstName,
        last_name=order.BuyerLastName or "",
        phone=order.BuyerPhone or "",
        title=title,
        description=f"Payment for order {order.OrderID}",
        success_url=_with_order_id(success_url, order.OrderID, "/payments/success"),
        cancel_url=_with_order_id(cancel_url, order.OrderID, "/payments/cancelled"),
        callback_url=f"{settings.API_BASE_URL.rstrip('/')}/payments/callback",
        metadata={
            **{str(k): v for k, v in (metadata or {}).items()},
            "orderId": order.OrderID,
            "eventId": str(order.EventID),
            "purpose": PURPOSE_ORDER,
        },
    )
    try:
        session = gateway.initiate_checkout(request)
    except ServiceError as e:
        _log(db, "checkout_error", tx_ref=tx_ref, payload={"orderId": order.OrderID}, error=e.message)
        db.commit()
        audit.error(
            "payment.checkout.error",
            extra={"order_id": order.OrderID, "tx_ref": tx_ref, "error": e.message},
        )
        raise

    tx = PaymentTransaction(
        TxRef=tx_ref,
        Purpose=PURPOSE_ORDER,
        OrderID=order.OrderID,
        Gateway=gateway.name,
        GatewayRef=session.gateway_ref,
        CheckoutUrl=session.checkout_url,
        Amount=amount,
        Currency=order.Currency,
        Status=TX_PENDING,
    )
    db.add(tx)
    order.GatewayRef = session.gateway_ref
    db.commit()
    db.refresh(tx)
    audit.info(
        "payment.checkout.session_created",
        extra={"order_id": order.OrderID, "tx_ref": tx_ref, "gateway": gateway.name},
    )
    return tx


def _amount_matches(tx: PaymentTransaction, amount: Optional[Decimal], currency: Optional[str]) -> bool:
    if amount is None or not currency:
        return False
    expected = Decimal(str(tx.Amount)).quantize(Decimal("0.01"))
    return amount == expected and currency.upper() == str(tx.Currency).upper()


def _subscriptions(db: Session) -> SubscriptionService:
    return SubscriptionService(db, get_cache())


def _apply_success(db: Session, tx: PaymentTransaction) -> None:
    try:
        if tx.Purpose == PURPOSE_SUBSCRIPTION:
            _subscriptions(db).activate_subscription(tx.TxRef, tx.ProviderTransactionID or tx.TxRef)
        else:
            order_service.confirm_order(db, tx.OrderID, tx.TxRef)
    except ServiceError as e:
        if e.kind not in (ErrorKind.CONFLICT, ErrorKind.CAPACITY_EXCEEDED):
            raise
        # Paid, but the order or subscription can no longer take this payment
        audit.error(
            "payment.needs_refund",
            extra={
                "tx_ref": tx.TxRef,
                "order_id": tx.OrderID,
                "subscription_id": tx.SubscriptionID,
                "error": e.message,
            },
        )


def _apply_failure(db: Session, tx: PaymentTransaction) -> None:
    if tx.Purpose == PURPOSE_SUBSCRIPTION and tx.SubscriptionID is not None:
        _subscriptions(db).fail_pending_subscription(int(tx.SubscriptionID))
    # Orders stay pending so the buyer can retry checkout


def verify_and_apply(db: Session, gateway: PaymentGateway, tx_ref: str) -> PaymentTransaction:
    """Ask the gateway for the outcome of tx_ref and apply it.

    Gateway errors propagate as GatewayUnavailable before anything is written.
    """
    tx = get_transaction(db, tx_ref)
    if tx.Status == TX_SUCCESS:
        # Replays (duplicate webhooks, repeat polls) re-apply idempotently
        _apply_success(db, tx)
        return tx
    if tx.Status == TX_FAILED:
        return tx

    verification = gateway.verify_transaction(tx.GatewayRef or tx.TxRef)
    tx.LastVerifiedAt = utcnow()

    if verification.verified:
        if not _amount_matches(tx, verification.amount, verification.currency):
            tx.Status = TX_FAILED
            tx.AmountConfirmed = verification.amount
            tx.CurrencyConfirmed = verification.currency
            tx.FailureReason = "amount or currency mismatch"
            db.commit()
            audit.error(
                "payment.amount_mismatch",
                extra={
                    "tx_ref": tx.TxRef,
                    "expected": f"{tx.Amount} {tx.Currency}",
                    "received": f"{verification.amount} {verification.currency}",
                },
            )
            _apply_failure(db, tx)
            return tx
        tx.Status = TX_SUCCESS
        tx.AmountConfirmed = verification.amount
        tx.CurrencyConfirmed = verification.currency
        tx.ProviderTransactionID = verification.transaction_id
        tx.FailureReason = None
        db.commit()
        audit.info("payment.verified", extra={"tx_ref": tx.TxRef, "purpose": tx.Purpose})
        _apply_success(db, tx)
    elif verification.status == PAY_FAILED:
        tx.Status = TX_FAILED
        tx.FailureReason = verification.message or "payment failed"
        db.commit()
        audit.info("payment.failed", extra={"tx_ref": tx.TxRef, "reason": tx.FailureReason})
        _apply_failure(db, tx)
    else:
        if tx.Status != TX_UNKNOWN:
            tx.Status = TX_PENDING
        db.commit()
    db.refresh(tx)
    return tx


def handle_webhook(
    db: Session, gateway: PaymentGateway, payload: bytes, headers: Mapping[str, str]
) -> Dict[str, Any]:
    """Process one webhook delivery; deliveries are at-least-once."""
    event = gateway.parse_webhook(payload, headers)
    raw = payload.decode("utf-8", errors="replace")

    if event.event_id and (
        db.query(PaymentLog.LogID).filter(PaymentLog.ProviderEventID == event.event_id).first()
    ):
        logger.info("webhook.duplicate", extra={"event_id": event.event_id})
        return {"status": "duplicate", "eventId": event.event_id}

    tx = None
    if event.tx_ref:
        tx = db.query(PaymentTransaction).filter(PaymentTransaction.TxRef == event.tx_ref).first()
    if tx is None and event.gateway_ref:
        tx = (
            db.query(PaymentTransaction)
            .filter(PaymentTransaction.GatewayRef == event.gateway_ref)
            .first()
        )

    result = "ignored"
    if tx is None:
        logger.warning(
            "webhook.unknown_transaction",
            extra={"event_id": event.event_id, "tx_ref": event.tx_ref},
        )
    elif event.kind != EVENT_OTHER:
        # Never trust the webhook body; the gateway is asked again
        tx = verify_and_apply(db, gateway, tx.TxRef)
        result = tx.Status

    # Only a settled outcome consumes the event id; a redelivery after the
    # gateway settles must still be applied
    settled = result not in TX_OPEN_STATUSES
    _log(
        db,
        f"webhook.{event.event_type or 'unknown'}"[:64],
        tx_ref=tx.TxRef if tx is not None else event.tx_ref,
        payload=raw,
        provider_event_id=(event.event_id or None) if settled else None,
    )
    try:
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event got there first
        db.rollback()
        return {"status": "duplicate", "eventId": event.event_id}
    return {"status": result, "eventId": event.event_id}


def poll_payment(
    db: Session,
    gateway: PaymentGateway,
    tx_ref: str,
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PaymentTransaction:
    """Bounded polling fallback for when no webhook arrives.

    Delays grow exponentially from `backoff` up to the configured ceiling.
    Exhaustion marks the transaction unknown instead of polling forever.
    """
    attempts = int(attempts if attempts is not None else settings.PAYMENT_POLL_ATTEMPTS)
    delay = float(backoff if backoff is not None else settings.PAYMENT_POLL_BACKOFF_SECONDS)
    ceiling = float(settings.PAYMENT_POLL_MAX_BACKOFF_SECONDS)

    tx = get_transaction(db, tx_ref)
    for attempt in range(max(1, attempts)):
        try:
            tx = verify_and_apply(db, gateway, tx_ref)
        except ServiceError as e:
            if e.kind != ErrorKind.GATEWAY_UNAVAILABLE:
                raise
            logger.warning("payment.poll.gateway_error", extra={"tx_ref": tx_ref, "attempt": attempt + 1})
        if tx.Status in (TX_SUCCESS, TX_FAILED):
            return tx
        if attempt < attempts - 1:
            sleep(min(delay * (2**attempt), ceiling))

    tx.Status = TX_UNKNOWN
    tx.FailureReason = UNKNOWN_STATUS_MESSAGE
    db.commit()
    db.refresh(tx)
    audit.warning("payment.poll.exhausted", extra={"tx_ref": tx_ref, "attempts": attempts})
    return tx


def reconcile_pending(
    db: Session,
    gateway: PaymentGateway,
    older_than: timedelta = timedelta(minutes=10),
    now: Optional[datetime] = None,
    limit: int = 200,
) -> Dict[str, int]:
    """Re-verify open transactions whose webhooks may have been lost."""
    cutoff = (now or utcnow()) - older_than
    refs = [
        r[0]
        for r in db.query(PaymentTransaction.TxRef)
        .filter(
            PaymentTransaction.Status.in_(TX_OPEN_STATUSES),
            PaymentTransaction.CreatedAt < cutoff,
        )
        .order_by(PaymentTransaction.CreatedAt.asc())
        .limit(limit)
        .all()
    ]
    summary = {"checked": 0, "success": 0, "failed": 0, "pending": 0, "errors": 0}
    for ref in refs:
        summary["checked"] += 1
        try:
            tx = verify_and_apply(db, gateway, ref)
        except ServiceError as e:
            summary["errors"] += 1
            _log(db, "reconcile_error", tx_ref=ref, error=e.message)
            db.commit()
            continue
        if tx.Status == TX_SUCCESS:
            summary["success"] += 1
        elif tx.Status == TX_FAILED:
            summary["failed"] += 1
        else:
            summary["pending"] += 1
    _log(db, "reconcile_run", payload=summary)
    db.commit()
    logger.info("payment.reconcile", extra=summary)
    return summary


def transaction_to_dict(tx: PaymentTransaction) -> Dict[str, Any]:
    message = ""
    if tx.Status == TX_UNKNOWN:
        message = UNKNOWN_STATUS_MESSAGE
    elif tx.Status == TX_FAILED:
        message = tx.FailureReason or "payment failed"
    return {
        "txRef": tx.TxRef,
        "purpose": tx.Purpose,
        "orderId": tx.OrderID,
        "subscriptionId": tx.SubscriptionID,
        "gateway": tx.Gateway,
        "status": tx.Status,
        "amount": float(tx.Amount or 0),
        "currency": tx.Currency,
        "checkoutUrl": tx.CheckoutUrl,
        "lastVerifiedAt": tx.LastVerifiedAt.isoformat() if tx.LastVerifiedAt else None,
        "message": message,
    }
