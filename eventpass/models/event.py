from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from eventpass.models.user import Base

DELIVERY_VIRTUAL = "virtual"
DELIVERY_LOCATION = "location"


class Event(Base):
    __tablename__ = "Event"
    EventID = Column(Integer, primary_key=True, autoincrement=True)
    OrganizerID = Column(Integer, ForeignKey("Users.UserID"), nullable=False)
    Title = Column(String(255), nullable=False)
    Description = Column(Text, nullable=True)
    StartsAt = Column(DateTime, nullable=True)
    EndsAt = Column(DateTime, nullable=True)
    Location = Column(String(255), nullable=True)
    IsVirtual = Column(Boolean, nullable=False, default=False)
    # Single server-computed free-ness flag; call sites never re-derive it
    IsFree = Column(Boolean, nullable=False, default=False)
    MeetingLink = Column(String(500), nullable=True)
    RoomName = Column(String(255), nullable=True)
    StreamingPlatform = Column(String(32), nullable=True)  # 'JITSI' | 'ZOOM' | ...
    BasePrice = Column(Numeric(10, 2), nullable=False, default=0)
    Currency = Column(String(8), nullable=False, default="ETB")
    MaxAttendees = Column(Integer, nullable=True)  # null = unlimited
    AttendeeCount = Column(Integer, nullable=False, default=0)
    Status = Column(String(32), nullable=False, default="upcoming")
    Published = Column(Boolean, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())

    ticket_types = relationship(
        "EventTicketType",
        back_populates="event",
        order_by="EventTicketType.TicketTypeID",
        cascade="all, delete-orphan",
    )

    @property
    def delivery_mode(self) -> str:
        return DELIVERY_VIRTUAL if self.IsVirtual else DELIVERY_LOCATION


class EventTicketType(Base):
    __tablename__ = "EventTicketType"
    __table_args__ = (UniqueConstraint("EventID", "Code", name="uq_event_ticket_code"),)
    TicketTypeID = Column(Integer, primary_key=True, autoincrement=True)
    EventID = Column(Integer, ForeignKey("Event.EventID"), nullable=False)
    # Client-facing ticketId
    Code = Column(String(64), nullable=False)
    Name = Column(String(255), nullable=False)
    Price = Column(Numeric(10, 2), nullable=False, default=0)
    Currency = Column(String(8), nullable=False, default="ETB")
    Quantity = Column(Integer, nullable=True)  # null = unlimited
    Sold = Column(Integer, nullable=False, default=0)
    CreatedAt = Column(DateTime, server_default=func.now())

    event = relationship("Event", back_populates="ticket_types")
