from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from eventpass.models.user import Base, utcnow

PURPOSE_ORDER = "order"
PURPOSE_SUBSCRIPTION = "subscription"

TX_INITIATED = "initiated"
TX_PENDING = "pending"
TX_SUCCESS = "success"
TX_FAILED = "failed"
TX_UNKNOWN = "unknown"
TX_OPEN_STATUSES = (TX_INITIATED, TX_PENDING, TX_UNKNOWN)


class PaymentTransaction(Base):
    """One row per checkout attempt against the payment gateway."""

    __tablename__ = "PaymentTransaction"
    TransactionID = Column(Integer, primary_key=True, autoincrement=True)
    # Our reference, sent to the gateway and echoed back on callbacks
    TxRef = Column(String(128), nullable=False, unique=True)
    Purpose = Column(String(16), nullable=False, default=PURPOSE_ORDER)
    OrderID = Column(String(36), ForeignKey("Order.OrderID"), nullable=True, index=True)
    SubscriptionID = Column(
        Integer, ForeignKey("Subscription.SubscriptionID"), nullable=True, index=True
    )
    Gateway = Column(String(16), nullable=False)
    GatewayRef = Column(String(255), nullable=True)
    CheckoutUrl = Column(String(1000), nullable=True)
    Amount = Column(Numeric(12, 2), nullable=False)
    Currency = Column(String(8), nullable=False)
    Status = Column(String(16), nullable=False, default=TX_INITIATED, index=True)
    AmountConfirmed = Column(Numeric(12, 2), nullable=True)
    CurrencyConfirmed = Column(String(8), nullable=True)
    ProviderTransactionID = Column(String(255), nullable=True)
    FailureReason = Column(String(255), nullable=True)
    LastVerifiedAt = Column(DateTime, nullable=True)
    CreatedAt = Column(DateTime, nullable=False, default=utcnow)
    UpdatedAt = Column(DateTime, server_default=func.now(), onupdate=func.now())


class PaymentLog(Base):
    __tablename__ = "PaymentLog"
    LogID = Column(Integer, primary_key=True, autoincrement=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=True)
    EventType = Column(String(64), nullable=False)
    # Webhook idempotency key
    ProviderEventID = Column(String(255), nullable=True, unique=True)
    TxRef = Column(String(128), nullable=True)
    Payload = Column(Text, nullable=True)
    ErrorMessage = Column(Text, nullable=True)
    CreatedAt = Column(DateTime, server_default=func.now())
