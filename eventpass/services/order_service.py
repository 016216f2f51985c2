from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from eventpass.core.errors import ErrorKind, ServiceError, conflict, not_found, validation
from eventpass.core.settings import settings
from eventpass.models.event import Event, EventTicketType
from eventpass.models.order import (
    ORDER_FREE_LOCATION_RSVP,
    ORDER_FREE_VIRTUAL_RSVP,
    ORDER_PAID_TICKET,
    ORDER_TYPES,
    RSVP_TYPES,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    STATUS_FAILED,
    STATUS_PENDING,
    Order,
    OrderItem,
    _new_order_id,
)
from eventpass.models.user import utcnow

logger = logging.getLogger("orders")
audit = logging.getLogger("audit")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

RSVP_TICKET_ID = "rsvp_ticket"
STALE_ORDER_REASON = "payment not completed"
SOLD_OUT_REASON = "sold out"


@dataclass
class Buyer:
    first_name: str
    email: str
    last_name: str = ""
    phone: str = ""

    def normalized(self) -> "Buyer":
        return Buyer(
            first_name=(self.first_name or "").strip(),
            last_name=(self.last_name or "").strip(),
            email=(self.email or "").strip().lower(),
            phone=(self.phone or "").strip(),
        )


@dataclass
class ItemRequest:
    ticket_id: str
    quantity: int = 1


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def _validate_buyer(buyer: Buyer, order_type: str) -> Buyer:
    b = buyer.normalized()
    missing = [name for name, val in (("firstName", b.first_name), ("email", b.email)) if not val]
    if order_type in RSVP_TYPES and not b.last_name:
        missing.append("lastName")
    if missing:
        raise validation(
            "Missing required fields: " + ", ".join(missing), fields=missing
        )
    if not is_valid_email(b.email):
        raise validation("Invalid email format.", fields=["email"])
    return b


def _load_event(db: Session, event_id: Any) -> Event:
    try:
        eid = int(event_id)
    except (TypeError, ValueError):
        raise not_found("Event not found.")
    event = db.query(Event).filter(Event.EventID == eid).first()
    if not event or not event.Published:
        raise not_found("Event not found.")
    return event


def _free_ticket_type(event: Event) -> Optional[EventTicketType]:
    for tt in event.ticket_types:
        if _money(tt.Price) == 0:
            return tt
    return None


def _rsvp_lines(event: Event, order_type: str, quantity: Any) -> List[Dict[str, Any]]:
    if not event.IsFree:
        raise validation("This event is not free. RSVP is only for free events.")
    if order_type == ORDER_FREE_VIRTUAL_RSVP and not event.IsVirtual:
        raise validation("Order type is for virtual events, but this is not a virtual event.")
    if order_type == ORDER_FREE_LOCATION_RSVP and event.IsVirtual:
        raise validation("Order type is for location events, but this is a virtual event.")

    if order_type == ORDER_FREE_VIRTUAL_RSVP:
        qty = 1
    else:
        try:
            qty = int(quantity or 1)
        except (TypeError, ValueError):
            qty = 1
        qty = max(1, min(int(settings.MAX_RSVP_QUANTITY), qty))

    free_type = _free_ticket_type(event)
    if free_type is not None:
        name = free_type.Name
    else:
        name = "Free Virtual RSVP" if event.IsVirtual else "Free Admission"
    return [
        {
            "ticket_id": RSVP_TICKET_ID,
            "ticket_type": free_type,
            "name": name,
            "unit_price": Decimal("0.00"),
            "quantity": qty,
        }
    ]


def _paid_lines(event: Event, items: Sequence[ItemRequest]) -> Tuple[List[Dict[str, Any]], str]:
    if not items:
        raise validation("At least one ticket must be selected.", fields=["items"])
    catalog = {tt.Code: tt for tt in event.ticket_types}
    merged: Dict[str, int] = {}
    for item in items:
        tid = (item.ticket_id or "").strip()
        if not tid:
            raise validation("Every item needs a ticketId.", fields=["items"])
        try:
            qty = int(item.quantity)
        except (TypeError, ValueError):
            raise validation(f"Invalid quantity for ticket {tid}.", fields=["items"])
        if qty <= 0:
            raise validation(f"Quantity for ticket {tid} must be positive.", fields=["items"])
        if tid not in catalog:
            raise validation(f"Unknown ticket {tid} for this event.", fields=["items"])
        merged[tid] = merged.get(tid, 0) + qty

    lines = []
    currencies = set()
    for tid, qty in merged.items():
        tt = catalog[tid]
        currencies.add((tt.Currency or event.Currency or settings.DEFAULT_CURRENCY).upper())
        lines.append(
            {
                "ticket_id": tid,
                "ticket_type": tt,
                "name": tt.Name,
                "unit_price": _money(tt.Price),
                "quantity": qty,
            }
        )
    if len(currencies) != 1:
        raise validation("All tickets in an order must share one currency.")
    currency = currencies.pop()
    if currency not in settings.ALLOWED_CURRENCIES:
        raise validation(f"Currency {currency} is not supported.")
    return lines, currency


def _check_capacity(event: Event, lines: Iterable[Dict[str, Any]]) -> None:
    lines = list(lines)
    seats = sum(int(line["quantity"]) for line in lines)
    if event.MaxAttendees is not None and int(event.AttendeeCount or 0) + seats > int(
        event.MaxAttendees
    ):
        raise ServiceError(
            ErrorKind.CAPACITY_EXCEEDED,
            "This event is at capacity.",
            remaining=max(0, int(event.MaxAttendees) - int(event.AttendeeCount or 0)),
        )
    for line in lines:
        tt = line["ticket_type"]
        if tt is None or tt.Quantity is None:
            continue
        if int(tt.Sold or 0) + int(line["quantity"]) > int(tt.Quantity):
            raise ServiceError(
                ErrorKind.CAPACITY_EXCEEDED,
                f"Not enough '{tt.Name}' tickets left.",
                ticketId=tt.Code,
                remaining=max(0, int(tt.Quantity) - int(tt.Sold or 0)),
            )


def _apply_attendance(db: Session, order: Order) -> bool:
    """Count a confirmed order's seats against the event and its ticket types.

    Pending orders hold no seats, so every increment is conditional on the
    remaining capacity. Returns False when the event or a ticket type is
    full; the caller must roll back.
    """
    seats = order.seat_count
    updated = (
        db.query(Event)
        .filter(
            Event.EventID == order.EventID,
            or_(Event.MaxAttendees.is_(None), Event.AttendeeCount + seats <= Event.MaxAttendees),
        )
        .update({Event.AttendeeCount: Event.AttendeeCount + seats}, synchronize_session=False)
    )
    if not updated:
        return False
    for item in order.items:
        if item.TicketTypeID is None:
            continue
        qty = int(item.Quantity)
        updated = (
            db.query(EventTicketType)
            .filter(
                EventTicketType.TicketTypeID == item.TicketTypeID,
                or_(
                    EventTicketType.Quantity.is_(None),
                    EventTicketType.Sold + qty <= EventTicketType.Quantity,
                ),
            )
            .update({EventTicketType.Sold: EventTicketType.Sold + qty}, synchronize_session=False)
        )
        if not updated:
            return False
    return True


def _sold_out(order_id: str) -> ServiceError:
    return ServiceError(
        ErrorKind.CAPACITY_EXCEEDED, "Tickets sold out before the order was confirmed.", orderId=order_id
    )


def find_existing_virtual_rsvp(db: Session, event_id: int, email: str) -> Optional[Order]:
    return (
        db.query(Order)
        .filter(
            Order.EventID == event_id,
            Order.BuyerEmail == (email or "").strip().lower(),
            Order.OrderType == ORDER_FREE_VIRTUAL_RSVP,
            Order.Status == STATUS_CONFIRMED,
        )
        .order_by(Order.CreatedAt.asc())
        .first()
    )


def place_order(
    db: Session,
    event_id: Any,
    buyer: Buyer,
    order_type: str,
    items: Optional[Sequence[ItemRequest]] = None,
    quantity: Any = None,
    user_id: Optional[int] = None,
) -> Tuple[Order, bool]:
    """Create an order and return it with a flag telling whether it is new.

    A repeat virtual RSVP for the same email returns the existing confirmed
    order with the flag set to False. Zero-total orders come back confirmed.
    """
    if order_type not in ORDER_TYPES:
        raise validation(f"Invalid orderType: {order_type}", fields=["orderType"])
    b = _validate_buyer(buyer, order_type)
    event = _load_event(db, event_id)

    if order_type in RSVP_TYPES:
        lines = _rsvp_lines(event, order_type, quantity)
        currency = (event.Currency or settings.DEFAULT_CURRENCY).upper()
        if order_type == ORDER_FREE_VIRTUAL_RSVP:
            existing = find_existing_virtual_rsvp(db, int(event.EventID), b.email)
            if existing is not None:
                logger.info(
                    "order.rsvp_repeat",
                    extra={"order_id": existing.OrderID, "event_id": event.EventID},
                )
                return existing, False
    else:
        lines, currency = _paid_lines(event, items or [])

    _check_capacity(event, lines)

    total = sum((line["unit_price"] * int(line["quantity"]) for line in lines), Decimal("0.00"))
    order_id = _new_order_id()
    order = Order(
        OrderID=order_id,
        EventID=int(event.EventID),
        UserID=user_id,
        BuyerFirstName=b.first_name,
        BuyerLastName=b.last_name or None,
        BuyerEmail=b.email,
        BuyerPhone=b.phone or None,
        OrderType=order_type,
        TotalAmount=total,
        Currency=currency,
        Status=STATUS_PENDING,
        CreatedAt=utcnow(),
    )
    for pos, line in enumerate(lines):
        tt = line["ticket_type"]
        order.items.append(
            OrderItem(
                Position=pos,
                TicketID=line["ticket_id"],
                TicketTypeID=int(tt.TicketTypeID) if tt is not None else None,
                Name=line["name"],
                UnitPrice=line["unit_price"],
                Quantity=int(line["quantity"]),
            )
        )
    db.add(order)

    if total == 0:
        # Free path: no gateway involvement, confirmed in the same transaction
        prefix = "rsvp" if order_type in RSVP_TYPES else "free"
        order.Status = STATUS_CONFIRMED
        order.TransactionRef = f"{prefix}:{order_id}"
        order.ConfirmedAt = utcnow()
        db.flush()
        if not _apply_attendance(db, order):
            db.rollback()
            raise ServiceError(ErrorKind.CAPACITY_EXCEEDED, "This event is at capacity.")

    db.commit()
    db.refresh(order)
    audit.info(
        "order.created",
        extra={
            "order_id": order.OrderID,
            "event_id": order.EventID,
            "order_type": order_type,
            "total": str(total),
            "currency": currency,
            "status": order.Status,
        },
    )
    if order.Status == STATUS_CONFIRMED:
        audit.info(
            "order.confirmed",
            extra={"order_id": order.OrderID, "transaction_ref": order.TransactionRef},
        )
    return order, True


def create_order(
    db: Session,
    event_id: Any,
    buyer: Buyer,
    order_type: str,
    items: Optional[Sequence[ItemRequest]] = None,
    quantity: Any = None,
    user_id: Optional[int] = None,
) -> Order:
    order, _ = place_order(
        db, event_id, buyer, order_type, items=items, quantity=quantity, user_id=user_id
    )
    return order


def get_order(db: Session, order_id: Any) -> Order:
    oid = str(order_id or "").strip()
    order = db.query(Order).filter(Order.OrderID == oid).first() if oid else None
    if not order:
        raise not_found("Order not found.")
    return order


def _resolve_confirmed(order: Order, transaction_ref: str) -> Order:
    if order.Status == STATUS_CONFIRMED:
        if order.TransactionRef == transaction_ref:
            return order
        raise conflict(
            "Order is already confirmed with a different transaction reference.",
            orderId=order.OrderID,
        )
    raise conflict(f"Order is {order.Status} and cannot be confirmed.", orderId=order.OrderID)


def confirm_order(db: Session, order_id: Any, transaction_ref: str) -> Order:
    """Move a pending order to confirmed; idempotent for the same transaction_ref.

    The status change is a conditional update on Status == pending, so a
    webhook and a client poll racing on the same order confirm it once.
    """
    ref = (transaction_ref or "").strip()
    if not ref:
        raise validation("transactionRef is required.")
    order = get_order(db, order_id)
    if order.Status != STATUS_PENDING:
        return _resolve_confirmed(order, ref)

    now = utcnow()
    updated = (
        db.query(Order)
        .filter(Order.OrderID == order.OrderID, Order.Status == STATUS_PENDING)
        .update(
            {
                Order.Status: STATUS_CONFIRMED,
                Order.TransactionRef: ref,
                Order.ConfirmedAt: now,
                Order.FailureReason: None,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        # Lost the race; whoever won decides the outcome
        db.refresh(order)
        return _resolve_confirmed(order, ref)

    db.refresh(order)
    if not _apply_attendance(db, order):
        # Undo the status flip; the buyer paid for seats that are gone
        oid = order.OrderID
        db.rollback()
        fail_order(db, oid, SOLD_OUT_REASON)
        audit.error("order.sold_out", extra={"order_id": oid, "transaction_ref": ref})
        raise _sold_out(oid)
    db.commit()
    db.refresh(order)
    audit.info(
        "order.confirmed",
        extra={"order_id": order.OrderID, "transaction_ref": ref, "total": str(order.TotalAmount)},
    )
    return order


def _terminate_pending(db: Session, order_id: Any, status: str, reason: Optional[str]) -> Order:
    order = get_order(db, order_id)
    if order.Status == status:
        return order
    if order.Status != STATUS_PENDING:
        raise conflict(f"Order is {order.Status} and cannot be {status}.", orderId=order.OrderID)
    updated = (
        db.query(Order)
        .filter(Order.OrderID == order.OrderID, Order.Status == STATUS_PENDING)
        .update({Order.Status: status, Order.FailureReason: reason}, synchronize_session=False)
    )
    db.commit()
    db.refresh(order)
    if not updated and order.Status != status:
        raise conflict(f"Order is {order.Status} and cannot be {status}.", orderId=order.OrderID)
    audit.info(f"order.{status}", extra={"order_id": order.OrderID, "reason": reason})
    return order


def cancel_order(db: Session, order_id: Any, reason: str = "cancelled by buyer") -> Order:
    return _terminate_pending(db, order_id, STATUS_CANCELLED, reason)


def fail_order(db: Session, order_id: Any, reason: str) -> Order:
    return _terminate_pending(db, order_id, STATUS_FAILED, reason)


def expire_stale_orders(
    db: Session, max_age: timedelta, now: Optional[datetime] = None
) -> List[str]:
    """Fail pending orders older than max_age; returns the affected order ids."""
    cutoff = (now or utcnow()) - max_age
    stale = (
        db.query(Order.OrderID)
        .filter(Order.Status == STATUS_PENDING, Order.CreatedAt < cutoff)
        .all()
    )
    expired = []
    for (oid,) in stale:
        updated = (
            db.query(Order)
            .filter(Order.OrderID == oid, Order.Status == STATUS_PENDING)
            .update(
                {Order.Status: STATUS_FAILED, Order.FailureReason: STALE_ORDER_REASON},
                synchronize_session=False,
            )
        )
        if updated:
            expired.append(oid)
    db.commit()
    if expired:
        audit.info("order.expired", extra={"count": len(expired), "order_ids": expired})
    return expired


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": order.OrderID,
        "eventId": order.EventID,
        "buyer": {
            "firstName": order.BuyerFirstName,
            "lastName": order.BuyerLastName or "",
            "email": order.BuyerEmail,
            "phone": order.BuyerPhone or "",
        },
        "type": order.OrderType,
        "items": [
            {
                "ticketId": i.TicketID,
                "name": i.Name,
                "unitPrice": float(i.UnitPrice or 0),
                "quantity": int(i.Quantity),
            }
            for i in order.items
        ],
        "totalAmount": float(order.TotalAmount or 0),
        "currency": order.Currency,
        "status": order.Status,
        "transactionRef": order.TransactionRef,
        "failureReason": order.FailureReason,
        "createdAt": _iso(order.CreatedAt),
        "confirmedAt": _iso(order.ConfirmedAt),
        "ticketsIssued": order.TicketsIssuedAt is not None,
    }


def order_details(db: Session, order_id: Any) -> Dict[str, Any]:
    """Order plus the display fields a confirmation page needs, keyed on orderId alone."""
    order = get_order(db, order_id)
    event = db.query(Event).filter(Event.EventID == order.EventID).first()
    data = order_to_dict(order)
    if event is None:
        data["event"] = None
        return data
    virtual = bool(event.IsVirtual)
    data["event"] = {
        "id": event.EventID,
        "title": event.Title,
        "startsAt": _iso(event.StartsAt),
        "endsAt": _iso(event.EndsAt),
        "deliveryMode": event.delivery_mode,
        "isFree": bool(event.IsFree),
        "location": None if virtual else (event.Location or ""),
        # Only reveal the meeting link once the order is confirmed
        "meetingLink": event.MeetingLink
        if virtual and order.Status == STATUS_CONFIRMED
        else None,
        "streamingPlatform": event.StreamingPlatform if virtual else None,
    }
    data["deliveryMode"] = event.delivery_mode
    return data


__all__ = [
    "Buyer",
    "ItemRequest",
    "ORDER_FREE_LOCATION_RSVP",
    "ORDER_FREE_VIRTUAL_RSVP",
    "ORDER_PAID_TICKET",
    "cancel_order",
    "confirm_order",
    "create_order",
    "expire_stale_orders",
    "fail_order",
    "get_order",
    "order_details",
    "order_to_dict",
    "place_order",
]
