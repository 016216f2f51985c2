"""Tickets and meeting access derived from confirmed orders.

Tickets are not stored: every ticket id and QR payload is a pure function of
the order, so re-issuing returns the identical artifact. The only persisted
state is Order.TicketsIssuedAt (NO_TICKET -> ISSUED, stamped once).
"""

from __future__ import annotations

import io
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import jwt
import qrcode
from qrcode.constants import ERROR_CORRECT_M
from qrcode.image.pil import PilImage
from sqlalchemy.orm import Session

from eventpass.core.errors import ErrorKind, ServiceError, validation
from eventpass.core.settings import settings
from eventpass.models.event import Event
from eventpass.models.order import STATUS_CONFIRMED, Order
from eventpass.models.user import utcnow
from eventpass.services.pdf_utils import ReceiptPDF

logger = logging.getLogger("tickets")
audit = logging.getLogger("audit")

# Fixed namespace so ticket ids stay stable across processes and deploys
TICKET_NAMESPACE = uuid.UUID("6f1c9a52-3b1e-5d7a-9a4e-2c8f0b7d1e43")

JITSI_PLATFORMS = ("", "JITSI", "JAAS")


@dataclass(frozen=True)
class Ticket:
    ticket_id: str
    order_id: str
    event_id: int
    ticket_type: str
    holder_name: str
    holder_email: str
    seat: int
    qr_payload: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "ticketId": data["ticket_id"],
            "orderId": data["order_id"],
            "eventId": data["event_id"],
            "ticketType": data["ticket_type"],
            "holderName": data["holder_name"],
            "holderEmail": data["holder_email"],
            "seat": data["seat"],
            "qrPayload": data["qr_payload"],
        }


@dataclass
class TicketBundle:
    order_id: str
    event_id: int
    issued_at: Optional[datetime]
    tickets: List[Ticket] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "eventId": self.event_id,
            "issuedAt": self.issued_at.isoformat() if self.issued_at else None,
            "quantity": len(self.tickets),
            "tickets": [t.to_dict() for t in self.tickets],
        }


@dataclass
class MeetingAccess:
    join_url: str
    room_name: Optional[str]
    is_moderator: bool
    platform: str
    token: Optional[str] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "joinUrl": self.join_url,
            "roomName": self.room_name,
            "isModerator": self.is_moderator,
            "platform": self.platform,
            "token": self.token,
            "expiresAt": self.expires_at,
        }


def ticket_id_for(order_id: str, position: int, seat: int) -> str:
    return str(uuid.uuid5(TICKET_NAMESPACE, f"{order_id}:{position}:{seat}"))


def qr_payload_for(ticket_id: str, event_id: int, email: str) -> str:
    return f"{ticket_id}|{event_id}|{email}"


def _require_confirmed(order: Order) -> None:
    if order.Status != STATUS_CONFIRMED:
        raise validation(
            f"Order is {order.Status}; tickets are only available for confirmed orders.",
            orderId=order.OrderID,
        )


def _derive_tickets(order: Order) -> List[Ticket]:
    holder = f"{order.BuyerFirstName} {order.BuyerLastName or ''}".strip()
    tickets = []
    for item in order.items:
        for seat in range(int(item.Quantity)):
            tid = ticket_id_for(order.OrderID, int(item.Position), seat)
            tickets.append(
                Ticket(
                    ticket_id=tid,
                    order_id=order.OrderID,
                    event_id=int(order.EventID),
                    ticket_type=item.Name,
                    holder_name=holder,
                    holder_email=order.BuyerEmail,
                    seat=seat + 1,
                    qr_payload=qr_payload_for(tid, int(order.EventID), order.BuyerEmail),
                )
            )
    return tickets


def issue_ticket(db: Session, order: Order) -> TicketBundle:
    """One ticket per admitted seat; repeat calls return the same artifact."""
    _require_confirmed(order)
    tickets = _derive_tickets(order)

    if order.TicketsIssuedAt is None:
        stamped = (
            db.query(Order)
            .filter(Order.OrderID == order.OrderID, Order.TicketsIssuedAt.is_(None))
            .update({Order.TicketsIssuedAt: utcnow()}, synchronize_session=False)
        )
        db.commit()
        db.refresh(order)
        if stamped:
            audit.info(
                "ticket.issued",
                extra={"order_id": order.OrderID, "quantity": len(tickets)},
            )
    return TicketBundle(
        order_id=order.OrderID,
        event_id=int(order.EventID),
        issued_at=order.TicketsIssuedAt,
        tickets=tickets,
    )


def find_ticket(bundle: TicketBundle, ticket_id: str) -> Optional[Ticket]:
    for t in bundle.tickets:
        if t.ticket_id == ticket_id:
            return t
    return None


def render_qr_png(payload: str, box_size: int = 10, border: int = 4) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#ffffff", image_factory=PilImage)
    buf = io.BytesIO()
    img.get_image().save(buf, format="PNG")
    return buf.getvalue()


def _jaas_configured() -> bool:
    return bool(settings.JAAS_APP_ID and settings.JAAS_API_KEY_ID and settings.JAAS_PRIVATE_KEY)


def mint_jaas_token(
    room: str,
    user_id: str,
    name: str,
    email: Optional[str],
    moderator: bool,
    avatar: Optional[str] = None,
    now: Optional[int] = None,
) -> tuple[str, int]:
    """RS256 JaaS token for one room; returns (token, exp)."""
    issued = int(now if now is not None else time.time())
    expires = issued + int(settings.JAAS_TOKEN_TTL_SECONDS)
    payload = {
        "aud": "jitsi",
        "iss": "chat",
        "sub": settings.JAAS_APP_ID,
        "room": room,
        "iat": issued,
        "nbf": issued - 10,
        "exp": expires,
        "context": {
            "user": {
                "id": user_id,
                "name": name,
                "avatar": avatar,
                "email": email,
                "moderator": moderator,
            },
            "features": {
                "livestreaming": moderator,
                "recording": moderator,
                "transcription": True,
                "outbound-call": False,
            },
        },
    }
    # Env files often carry the PEM with literal \n sequences
    key = settings.JAAS_PRIVATE_KEY.replace("\\n", "\n").strip()
    try:
        token = jwt.encode(
            payload,
            key,
            algorithm="RS256",
            headers={"kid": settings.JAAS_API_KEY_ID, "typ": "JWT"},
        )
    except (ValueError, TypeError, jwt.PyJWTError) as e:
        logger.error("jaas.token_error", extra={"room": room, "error": str(e)})
        raise ServiceError(
            ErrorKind.CONFIGURATION_ERROR, "Meeting credentials are misconfigured."
        )
    return token, expires


def issue_meeting_access(
    order: Order, event: Event, user_id: Optional[int] = None
) -> MeetingAccess:
    _require_confirmed(order)
    if not event.IsVirtual:
        raise validation("Meeting access is only available for virtual events.")
    room = (event.RoomName or "").strip()
    link = (event.MeetingLink or "").strip()
    if not room and not link:
        raise ServiceError(
            ErrorKind.CONFIGURATION_ERROR,
            "This event has no meeting configured yet.",
            eventId=event.EventID,
        )

    is_moderator = user_id is not None and int(user_id) == int(event.OrganizerID)
    platform = (event.StreamingPlatform or "").upper()

    if room and platform in JITSI_PLATFORMS:
        if _jaas_configured():
            name = f"{order.BuyerFirstName} {order.BuyerLastName or ''}".strip() or "Guest"
            token, expires = mint_jaas_token(
                room=room,
                user_id=str(user_id) if user_id is not None else order.BuyerEmail,
                name=name,
                email=order.BuyerEmail,
                moderator=is_moderator,
            )
            base = settings.JAAS_BASE_URL.rstrip("/")
            join_url = f"{base}/{settings.JAAS_APP_ID}/{quote(room)}?jwt={token}"
            return MeetingAccess(
                join_url=join_url,
                room_name=room,
                is_moderator=is_moderator,
                platform="JAAS",
                token=token,
                expires_at=expires,
            )
        join_url = f"{settings.JITSI_BASE_URL.rstrip('/')}/{quote(room)}"
        return MeetingAccess(
            join_url=join_url, room_name=room, is_moderator=is_moderator, platform="JITSI"
        )

    return MeetingAccess(
        join_url=link or f"{settings.JITSI_BASE_URL.rstrip('/')}/{quote(room)}",
        room_name=room or None,
        is_moderator=is_moderator,
        platform=platform or "LINK",
    )


def build_receipt_pdf(order: Order, event: Optional[Event]) -> bytes:
    _require_confirmed(order)
    items = [(i.Name, Decimal(str(i.UnitPrice or 0)), int(i.Quantity)) for i in order.items]
    billed_to = f"{order.BuyerFirstName} {order.BuyerLastName or ''}".strip()
    return ReceiptPDF().build(
        receipt_no=order.OrderID,
        date=order.ConfirmedAt or order.CreatedAt or utcnow(),
        status=order.Status,
        billed_to=f"{billed_to} <{order.BuyerEmail}>",
        event_title=event.Title if event else f"Event {order.EventID}",
        event_date=event.StartsAt if event else None,
        items=items,
        currency=order.Currency,
        transaction_ref=order.TransactionRef or "",
    )
