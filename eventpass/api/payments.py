import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from eventpass.api.orders import buyer_from_payload
from eventpass.core.dependencies import read_json
from eventpass.core.errors import ErrorKind, ServiceError, validation
from eventpass.core.settings import settings
from eventpass.models.billing import PURPOSE_SUBSCRIPTION
from eventpass.models.order import ORDER_PAID_TICKET, STATUS_CONFIRMED
from eventpass.services import order_service, payment_service
from eventpass.services.auth import get_current_user_id
from eventpass.services.payment_gateway import PaymentGateway, get_payment_gateway
from db import get_db

router = APIRouter()
logger = logging.getLogger("payments")


def _success_redirect(order_id: str) -> str:
    return f"{settings.BASE_URL.rstrip('/')}/payments/success?orderId={order_id}"


def _parse_items(raw) -> list:
    if not isinstance(raw, list):
        raise validation("items must be a list of {ticketId, quantity}.", fields=["items"])
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise validation("items must be a list of {ticketId, quantity}.", fields=["items"])
        items.append(
            order_service.ItemRequest(
                ticket_id=str(entry.get("ticketId") or entry.get("id") or ""),
                quantity=entry.get("quantity", 1),
            )
        )
    return items


def _check_client_total(raw, expected) -> None:
    """A client-sent totalAmount is only a cross-check; the server price wins."""
    if raw in (None, ""):
        return
    try:
        claimed = Decimal(str(raw)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise validation("totalAmount must be a number.", fields=["totalAmount"])
    if claimed != Decimal(str(expected)).quantize(Decimal("0.01")):
        raise validation(
            "totalAmount does not match the current ticket prices.",
            fields=["totalAmount"],
            expected=float(expected),
        )


@router.post("/payments/initiate-payment")
async def initiate_payment(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user_id: Optional[int] = Depends(get_current_user_id),
):
    data = await read_json(request)
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

    resume_id = str(data.get("orderId") or "").strip()
    if resume_id:
        order = order_service.get_order(db, resume_id)
        if order.Status == STATUS_CONFIRMED:
            return {
                "redirectUrl": _success_redirect(order.OrderID),
                "orderId": order.OrderID,
                "txRef": order.TransactionRef,
                "status": order.Status,
            }
        if order.OrderType != ORDER_PAID_TICKET:
            raise validation("Only paid ticket orders can be paid for.")
    else:
        if data.get("eventId") in (None, ""):
            raise validation("eventId is required.", fields=["eventId"])
        items = _parse_items(data.get("items"))
        order, _ = order_service.place_order(
            db,
            data.get("eventId"),
            buyer_from_payload(data),
            ORDER_PAID_TICKET,
            items=items,
            user_id=user_id,
        )
        try:
            _check_client_total(data.get("totalAmount"), order.TotalAmount)
        except ServiceError:
            if order.Status != STATUS_CONFIRMED:
                order_service.cancel_order(db, order.OrderID, "client total mismatch")
            raise
        if order.Status == STATUS_CONFIRMED:
            # Zero-priced tickets never reach the gateway
            return {
                "redirectUrl": _success_redirect(order.OrderID),
                "orderId": order.OrderID,
                "txRef": order.TransactionRef,
                "status": order.Status,
            }

    tx = payment_service.initiate_order_payment(
        db,
        gateway,
        order,
        success_url=data.get("successUrl"),
        cancel_url=data.get("cancelUrl"),
        metadata=metadata,
    )
    return {
        "redirectUrl": tx.CheckoutUrl,
        "orderId": order.OrderID,
        "txRef": tx.TxRef,
        "status": order.Status,
    }


@router.get("/payments/callback")
def payment_callback(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Browser return from the gateway; the outcome is always re-verified server side."""
    params = request.query_params
    tx_ref = (params.get("tx_ref") or params.get("trx_ref") or params.get("txRef") or "").strip()
    if not tx_ref:
        raise validation("tx_ref is required.", fields=["tx_ref"])
    tx = payment_service.get_transaction(db, tx_ref)
    try:
        tx = payment_service.verify_and_apply(db, gateway, tx_ref)
    except ServiceError as e:
        if e.kind != ErrorKind.GATEWAY_UNAVAILABLE:
            raise
        # The success page keeps polling; reconciliation settles it otherwise
        logger.warning("payment.callback.gateway_unavailable", extra={"tx_ref": tx_ref})

    base = settings.BASE_URL.rstrip("/")
    if tx.Purpose == PURPOSE_SUBSCRIPTION:
        return RedirectResponse(
            url=f"{base}/organizer/subscribe/success?tx_ref={tx.TxRef}", status_code=303
        )
    return RedirectResponse(url=_success_redirect(tx.OrderID), status_code=303)


@router.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    payload = await request.body()
    result = payment_service.handle_webhook(db, gateway, payload, request.headers)
    return {"received": True, **result}


@router.get("/payments/{tx_ref}")
def get_payment(tx_ref: str, db: Session = Depends(get_db)):
    tx = payment_service.get_transaction(db, tx_ref)
    body = payment_service.transaction_to_dict(tx)
    if tx.OrderID:
        body["orderStatus"] = order_service.get_order(db, tx.OrderID).Status
    return body


@router.post("/payments/{tx_ref}/poll")
def poll_payment(
    tx_ref: str,
    attempts: Optional[int] = None,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    if attempts is not None:
        attempts = max(1, min(int(settings.PAYMENT_POLL_ATTEMPTS), attempts))
    tx = payment_service.poll_payment(db, gateway, tx_ref, attempts=attempts)
    body = payment_service.transaction_to_dict(tx)
    if tx.OrderID:
        body["orderStatus"] = order_service.get_order(db, tx.OrderID).Status
    return body
