import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import or_
from sqlalchemy.orm import Session

from eventpass.core.errors import not_found
from eventpass.models.event import Event
from db import get_db

router = APIRouter()
logger = logging.getLogger("events")


def _iso(dt):
    return dt.isoformat() if dt else None


def event_to_dict(e: Event) -> dict:
    return {
        "id": e.EventID,
        "organizerId": e.OrganizerID,
        "title": e.Title,
        "description": e.Description or "",
        "startsAt": _iso(e.StartsAt),
        "endsAt": _iso(e.EndsAt),
        "isVirtual": bool(e.IsVirtual),
        "isFree": bool(e.IsFree),
        "deliveryMode": e.delivery_mode,
        # Location is public; the meeting link is only handed out per confirmed order
        "location": None if e.IsVirtual else (e.Location or ""),
        "streamingPlatform": e.StreamingPlatform if e.IsVirtual else None,
        "basePrice": float(e.BasePrice or 0),
        "currency": e.Currency,
        "maxAttendees": e.MaxAttendees,
        "attendeeCount": int(e.AttendeeCount or 0),
        "status": e.Status,
        "tickets": [
            {
                "ticketId": t.Code,
                "name": t.Name,
                "price": float(t.Price or 0),
                "currency": t.Currency,
                "available": None if t.Quantity is None else max(0, int(t.Quantity) - int(t.Sold or 0)),
            }
            for t in e.ticket_types
        ],
    }


@router.get("/events")
def list_events(
    isVirtual: Optional[bool] = None,
    isFree: Optional[bool] = None,
    q: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    query = db.query(Event).filter(Event.Published)
    if isVirtual is not None:
        query = query.filter(Event.IsVirtual == isVirtual)
    if isFree is not None:
        query = query.filter(Event.IsFree == isFree)
    if q and q.strip():
        like = f"%{q.strip()}%"
        query = query.filter(or_(Event.Title.ilike(like), Event.Description.ilike(like)))
    total = query.count()
    rows = (
        query.order_by(Event.StartsAt.asc(), Event.EventID.asc())
        .offset(max(0, offset))
        .limit(max(1, min(200, limit)))
        .all()
    )
    return {"total": total, "events": [event_to_dict(e) for e in rows]}


@router.get("/events/{event_id}")
def get_event(event_id: int, db: Session = Depends(get_db)):
    e = db.query(Event).filter(Event.EventID == event_id, Event.Published).first()
    if not e:
        raise not_found("Event not found.")
    return event_to_dict(e)
