"""
Initial schema: users, events, orders, payments, plans and subscriptions.

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "Users",
        sa.Column("UserID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("FirstName", sa.String(length=100), nullable=False),
        sa.Column("LastName", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("Email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("ExternalID", sa.String(length=255), nullable=True, unique=True),
        sa.Column("IsActive", sa.Boolean(), nullable=True, server_default=sa.text("1")),
        sa.Column("DateCreated", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("LastUpdated", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "Event",
        sa.Column("EventID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("OrganizerID", sa.Integer(), sa.ForeignKey("Users.UserID"), nullable=False),
        sa.Column("Title", sa.String(length=255), nullable=False),
        sa.Column("Description", sa.Text(), nullable=True),
        sa.Column("StartsAt", sa.DateTime(), nullable=True),
        sa.Column("EndsAt", sa.DateTime(), nullable=True),
        sa.Column("Location", sa.String(length=255), nullable=True),
        sa.Column("IsVirtual", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("IsFree", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("MeetingLink", sa.String(length=500), nullable=True),
        sa.Column("RoomName", sa.String(length=255), nullable=True),
        sa.Column("StreamingPlatform", sa.String(length=32), nullable=True),
        sa.Column("BasePrice", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("Currency", sa.String(length=8), nullable=False, server_default="ETB"),
        sa.Column("MaxAttendees", sa.Integer(), nullable=True),
        sa.Column("AttendeeCount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("Status", sa.String(length=32), nullable=False, server_default="upcoming"),
        sa.Column("Published", sa.Boolean(), nullable=True, server_default=sa.text("1")),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "EventTicketType",
        sa.Column("TicketTypeID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("EventID", sa.Integer(), sa.ForeignKey("Event.EventID"), nullable=False),
        sa.Column("Code", sa.String(length=64), nullable=False),
        sa.Column("Name", sa.String(length=255), nullable=False),
        sa.Column("Price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("Currency", sa.String(length=8), nullable=False, server_default="ETB"),
        sa.Column("Quantity", sa.Integer(), nullable=True),
        sa.Column("Sold", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("EventID", "Code", name="uq_event_ticket_code"),
    )

    op.create_table(
        "Order",
        sa.Column("OrderID", sa.String(length=36), primary_key=True),
        sa.Column("EventID", sa.Integer(), sa.ForeignKey("Event.EventID"), nullable=False),
        sa.Column("UserID", sa.Integer(), sa.ForeignKey("Users.UserID"), nullable=True),
        sa.Column("BuyerFirstName", sa.String(length=100), nullable=False),
        sa.Column("BuyerLastName", sa.String(length=100), nullable=True),
        sa.Column("BuyerEmail", sa.String(length=255), nullable=False),
        sa.Column("BuyerPhone", sa.String(length=32), nullable=True),
        sa.Column("OrderType", sa.String(length=32), nullable=False),
        sa.Column("TotalAmount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("Currency", sa.String(length=8), nullable=False, server_default="ETB"),
        sa.Column("Status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("TransactionRef", sa.String(length=128), nullable=True),
        sa.Column("GatewayRef", sa.String(length=255), nullable=True),
        sa.Column("FailureReason", sa.String(length=255), nullable=True),
        sa.Column("TicketsIssuedAt", sa.DateTime(), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), nullable=False),
        sa.Column("ConfirmedAt", sa.DateTime(), nullable=True),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_Order_EventID", "Order", ["EventID"])
    op.create_index("ix_Order_BuyerEmail", "Order", ["BuyerEmail"])
    op.create_index("ix_Order_Status", "Order", ["Status"])

    op.create_table(
        "OrderItem",
        sa.Column("OrderItemID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("OrderID", sa.String(length=36), sa.ForeignKey("Order.OrderID"), nullable=False),
        sa.Column("Position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("TicketID", sa.String(length=64), nullable=False),
        sa.Column(
            "TicketTypeID",
            sa.Integer(),
            sa.ForeignKey("EventTicketType.TicketTypeID"),
            nullable=True,
        ),
        sa.Column("Name", sa.String(length=255), nullable=False),
        sa.Column("UnitPrice", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("Quantity", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_OrderItem_OrderID", "OrderItem", ["OrderID"])

    op.create_table(
        "PlanDefinition",
        sa.Column("PlanID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("Slug", sa.String(length=32), nullable=False, unique=True),
        sa.Column("Name", sa.String(length=100), nullable=False),
        sa.Column("Description", sa.Text(), nullable=True),
        sa.Column("Price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("Currency", sa.String(length=8), nullable=False, server_default="ETB"),
        sa.Column("DurationDays", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("Limits", sa.Text(), nullable=True),
        sa.Column("IsTrial", sa.Boolean(), nullable=True, server_default=sa.text("0")),
        sa.Column("IsActive", sa.Boolean(), nullable=True, server_default=sa.text("1")),
        sa.Column("DisplayOrder", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "Subscription",
        sa.Column("SubscriptionID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("UserID", sa.Integer(), sa.ForeignKey("Users.UserID"), nullable=False),
        sa.Column("PlanSlug", sa.String(length=32), nullable=False),
        sa.Column("Status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("StartDate", sa.DateTime(), nullable=True),
        sa.Column("EndDate", sa.DateTime(), nullable=True),
        sa.Column("TransactionRef", sa.String(length=128), nullable=True),
        sa.Column("Amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("Currency", sa.String(length=8), nullable=False, server_default="ETB"),
        sa.Column("CancelledAt", sa.DateTime(), nullable=True),
        sa.Column("CancellationReason", sa.String(length=255), nullable=True),
        sa.Column(
            "ReplacedSubscriptionID",
            sa.Integer(),
            sa.ForeignKey("Subscription.SubscriptionID"),
            nullable=True,
        ),
        sa.Column("CreatedAt", sa.DateTime(), nullable=False),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_Subscription_UserID", "Subscription", ["UserID"])
    op.create_index("ix_Subscription_Status", "Subscription", ["Status"])
    op.create_index("ix_Subscription_TransactionRef", "Subscription", ["TransactionRef"])

    op.create_table(
        "PaymentTransaction",
        sa.Column("TransactionID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("TxRef", sa.String(length=128), nullable=False, unique=True),
        sa.Column("Purpose", sa.String(length=16), nullable=False, server_default="order"),
        sa.Column("OrderID", sa.String(length=36), sa.ForeignKey("Order.OrderID"), nullable=True),
        sa.Column(
            "SubscriptionID",
            sa.Integer(),
            sa.ForeignKey("Subscription.SubscriptionID"),
            nullable=True,
        ),
        sa.Column("Gateway", sa.String(length=16), nullable=False),
        sa.Column("GatewayRef", sa.String(length=255), nullable=True),
        sa.Column("CheckoutUrl", sa.String(length=1000), nullable=True),
        sa.Column("Amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("Currency", sa.String(length=8), nullable=False),
        sa.Column("Status", sa.String(length=16), nullable=False, server_default="initiated"),
        sa.Column("AmountConfirmed", sa.Numeric(12, 2), nullable=True),
        sa.Column("CurrencyConfirmed", sa.String(length=8), nullable=True),
        sa.Column("ProviderTransactionID", sa.String(length=255), nullable=True),
        sa.Column("FailureReason", sa.String(length=255), nullable=True),
        sa.Column("LastVerifiedAt", sa.DateTime(), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), nullable=False),
        sa.Column("UpdatedAt", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_PaymentTransaction_OrderID", "PaymentTransaction", ["OrderID"])
    op.create_index("ix_PaymentTransaction_SubscriptionID", "PaymentTransaction", ["SubscriptionID"])
    op.create_index("ix_PaymentTransaction_Status", "PaymentTransaction", ["Status"])

    op.create_table(
        "PaymentLog",
        sa.Column("LogID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("UserID", sa.Integer(), sa.ForeignKey("Users.UserID"), nullable=True),
        sa.Column("EventType", sa.String(length=64), nullable=False),
        sa.Column("ProviderEventID", sa.String(length=255), nullable=True, unique=True),
        sa.Column("TxRef", sa.String(length=128), nullable=True),
        sa.Column("Payload", sa.Text(), nullable=True),
        sa.Column("ErrorMessage", sa.Text(), nullable=True),
        sa.Column("CreatedAt", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "AppErrorLog",
        sa.Column("ErrorID", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("OccurredAt", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("RequestID", sa.String(length=64), nullable=True),
        sa.Column("Path", sa.String(length=500), nullable=True),
        sa.Column("Method", sa.String(length=16), nullable=True),
        sa.Column("StatusCode", sa.Integer(), nullable=True),
        sa.Column("UserID", sa.Integer(), nullable=True),
        sa.Column("ClientIP", sa.String(length=45), nullable=True),
        sa.Column("UserAgent", sa.String(length=255), nullable=True),
        sa.Column("ErrorKind", sa.String(length=64), nullable=True),
        sa.Column("Message", sa.Text(), nullable=True),
        sa.Column("StackTrace", sa.Text(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("AppErrorLog")
    op.drop_table("PaymentLog")
    op.drop_table("PaymentTransaction")
    op.drop_table("Subscription")
    op.drop_table("PlanDefinition")
    op.drop_table("OrderItem")
    op.drop_table("Order")
    op.drop_table("EventTicketType")
    op.drop_table("Event")
    op.drop_table("Users")
