import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from eventpass.core.dependencies import read_json
from eventpass.core.errors import not_found, validation
from eventpass.models.event import Event
from eventpass.models.order import ORDER_FREE_VIRTUAL_RSVP, RSVP_TYPES, Order
from eventpass.services import order_service, ticket_issuer
from eventpass.services.auth import get_current_user_id
from db import get_db

router = APIRouter()
logger = logging.getLogger("orders")


def buyer_from_payload(data: Dict[str, Any]) -> order_service.Buyer:
    # Buyer fields may arrive flat or under "buyer"
    src = data.get("buyer") if isinstance(data.get("buyer"), dict) else data
    return order_service.Buyer(
        first_name=str(src.get("firstName") or ""),
        last_name=str(src.get("lastName") or ""),
        email=str(src.get("email") or ""),
        phone=str(src.get("phone") or src.get("phoneNumber") or ""),
    )


def _load_owned_order(db: Session, order_id: str, user_id: Optional[int]) -> Order:
    """Orders placed by a signed-in user are only visible to that user and the organizer."""
    order = order_service.get_order(db, order_id)
    if order.UserID is not None and user_id != int(order.UserID):
        event = db.query(Event).filter(Event.EventID == order.EventID).first()
        if event is None or user_id != int(event.OrganizerID):
            raise not_found("Order not found.")
    return order


@router.post("/orders/rsvp")
async def create_rsvp(
    request: Request,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(get_current_user_id),
):
    data = await read_json(request)
    order_type = str(data.get("orderType") or "").strip()
    if order_type not in RSVP_TYPES:
        raise validation(
            "orderType must be FREE_VIRTUAL_RSVP or FREE_LOCATION_RSVP.", fields=["orderType"]
        )
    if data.get("eventId") in (None, ""):
        raise validation("eventId is required.", fields=["eventId"])

    order, created = order_service.place_order(
        db,
        data.get("eventId"),
        buyer_from_payload(data),
        order_type,
        quantity=data.get("quantity"),
        user_id=user_id,
    )
    body = {
        "success": True,
        "orderId": order.OrderID,
        "order": order_service.order_to_dict(order),
    }
    if not created and order_type == ORDER_FREE_VIRTUAL_RSVP:
        body["message"] = "You have already registered for this event."
        return JSONResponse(body, status_code=200)
    body["message"] = "RSVP confirmed."
    return JSONResponse(body, status_code=201)


@router.get("/orders/details")
def get_order_details(
    orderId: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(get_current_user_id),
):
    if not orderId or not orderId.strip():
        raise validation("information missing", fields=["orderId"])
    order = _load_owned_order(db, orderId.strip(), user_id)
    return order_service.order_details(db, order.OrderID)


@router.get("/orders/{order_id}")
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(get_current_user_id),
):
    order = _load_owned_order(db, order_id, user_id)
    return order_service.order_to_dict(order)


@router.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(get_current_user_id),
):
    data = await read_json(request)
    _load_owned_order(db, order_id, user_id)
    reason = str(data.get("reason") or "cancelled by buyer")[:255]
    order = order_service.cancel_order(db, order_id, reason)
    return order_service.order_to_dict(order)


@router.get("/orders/{order_id}/tickets")
def get_tickets(
    order_id: str,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(get_current_user_id),
):
    order = _load_owned_order(db, order_id, user_id)
    bundle = ticket_issuer.issue_ticket(db, order)
    return bundle.to_dict()


@router.get("/orders/{order_id}/tickets/{ticket_id}/qr.png")
def get_ticket_qr(
    order_id: str,
    ticket_id: str,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(get_current_user_id),
):
    order = _load_owned_order(db, order_id, user_id)
    bundle = ticket_issuer.issue_ticket(db, order)
    ticket = ticket_issuer.find_ticket(bundle, ticket_id)
    if ticket is None:
        raise not_found("Ticket not found.")
    png = ticket_issuer.render_qr_png(ticket.qr_payload)
    return Response(
        content=png,
        media_type="image/png",
        headers={"Cache-Control": "private, max-age=3600"},
    )


@router.get("/orders/{order_id}/meeting-access")
def get_meeting_access(
    order_id: str,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(get_current_user_id),
):
    order = _load_owned_order(db, order_id, user_id)
    event = db.query(Event).filter(Event.EventID == order.EventID).first()
    if event is None:
        raise not_found("Event not found.")
    access = ticket_issuer.issue_meeting_access(order, event, user_id=user_id)
    logger.info(
        "meeting.access_issued",
        extra={"order_id": order.OrderID, "event_id": event.EventID, "moderator": access.is_moderator},
    )
    return access.to_dict()


@router.get("/orders/{order_id}/receipt.pdf")
def get_receipt_pdf(
    order_id: str,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(get_current_user_id),
):
    order = _load_owned_order(db, order_id, user_id)
    event = db.query(Event).filter(Event.EventID == order.EventID).first()
    pdf = ticket_issuer.build_receipt_pdf(order, event)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="receipt-{order.OrderID}.pdf"'},
    )
