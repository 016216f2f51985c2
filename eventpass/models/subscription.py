from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from eventpass.models.user import Base, utcnow

SUB_PENDING = "pending"
SUB_ACTIVE = "active"
SUB_CANCELLED = "cancelled"
SUB_EXPIRED = "expired"


class PlanDefinition(Base):
    __tablename__ = "PlanDefinition"
    PlanID = Column(Integer, primary_key=True, autoincrement=True)
    Slug = Column(String(32), nullable=False, unique=True)
    Name = Column(String(100), nullable=False)
    Description = Column(Text, nullable=True)
    Price = Column(Numeric(10, 2), nullable=False, default=0)
    Currency = Column(String(8), nullable=False, default="ETB")
    DurationDays = Column(Integer, nullable=False, default=30)
    Limits = Column(Text, nullable=True)  # JSON string
    IsTrial = Column(Boolean, default=False)
    IsActive = Column(Boolean, default=True)
    DisplayOrder = Column(Integer, nullable=False, default=0)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Subscription(Base):
    __tablename__ = "Subscription"
    SubscriptionID = Column(Integer, primary_key=True, autoincrement=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    PlanSlug = Column(String(32), nullable=False)
    Status = Column(String(16), nullable=False, default=SUB_PENDING, index=True)
    StartDate = Column(DateTime, nullable=True)
    EndDate = Column(DateTime, nullable=True)
    TransactionRef = Column(String(128), nullable=True, index=True)
    Amount = Column(Numeric(10, 2), nullable=False, default=0)
    Currency = Column(String(8), nullable=False, default="ETB")
    CancelledAt = Column(DateTime, nullable=True)
    CancellationReason = Column(String(255), nullable=True)
    ReplacedSubscriptionID = Column(
        Integer, ForeignKey("Subscription.SubscriptionID"), nullable=True
    )
    CreatedAt = Column(DateTime, nullable=False, default=utcnow)
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())
