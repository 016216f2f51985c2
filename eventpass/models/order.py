import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from eventpass.models.user import Base, utcnow

ORDER_FREE_VIRTUAL_RSVP = "FREE_VIRTUAL_RSVP"
ORDER_FREE_LOCATION_RSVP = "FREE_LOCATION_RSVP"
ORDER_PAID_TICKET = "PAID_TICKET"
ORDER_TYPES = (ORDER_FREE_VIRTUAL_RSVP, ORDER_FREE_LOCATION_RSVP, ORDER_PAID_TICKET)
RSVP_TYPES = (ORDER_FREE_VIRTUAL_RSVP, ORDER_FREE_LOCATION_RSVP)

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
TERMINAL_STATUSES = (STATUS_CONFIRMED, STATUS_FAILED, STATUS_CANCELLED)


def _new_order_id() -> str:
    return str(uuid.uuid4())


class Order(Base):
    __tablename__ = "Order"
    OrderID = Column(String(36), primary_key=True, default=_new_order_id)
    EventID = Column(Integer, ForeignKey("Event.EventID"), nullable=False, index=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=True)
    BuyerFirstName = Column(String(100), nullable=False)
    BuyerLastName = Column(String(100), nullable=True)
    BuyerEmail = Column(String(255), nullable=False, index=True)
    BuyerPhone = Column(String(32), nullable=True)
    OrderType = Column(String(32), nullable=False)
    TotalAmount = Column(Numeric(12, 2), nullable=False, default=0)
    Currency = Column(String(8), nullable=False, default="ETB")
    Status = Column(String(16), nullable=False, default=STATUS_PENDING, index=True)
    TransactionRef = Column(String(128), nullable=True)
    GatewayRef = Column(String(255), nullable=True)
    FailureReason = Column(String(255), nullable=True)
    # NO_TICKET -> ISSUED, stamped once
    TicketsIssuedAt = Column(DateTime, nullable=True)
    CreatedAt = Column(DateTime, nullable=False, default=utcnow)
    ConfirmedAt = Column(DateTime, nullable=True)
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.Position",
        cascade="all, delete-orphan",
    )

    @property
    def seat_count(self) -> int:
        return sum(int(i.Quantity or 0) for i in self.items)


class OrderItem(Base):
    __tablename__ = "OrderItem"
    OrderItemID = Column(Integer, primary_key=True, autoincrement=True)
    OrderID = Column(String(36), ForeignKey("Order.OrderID"), nullable=False, index=True)
    Position = Column(Integer, nullable=False, default=0)
    TicketID = Column(String(64), nullable=False)
    TicketTypeID = Column(Integer, ForeignKey("EventTicketType.TicketTypeID"), nullable=True)
    Name = Column(String(255), nullable=False)
    UnitPrice = Column(Numeric(10, 2), nullable=False, default=0)
    Quantity = Column(Integer, nullable=False, default=1)

    order = relationship("Order", back_populates="items")
