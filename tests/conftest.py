import json
import os
from decimal import Decimal

# Must be set before db/settings are imported anywhere
os.environ.setdefault("TEST_SQLITE", "1")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("PAYMENT_GATEWAY", "chapa")
os.environ.setdefault("CHAPA_SECRET_KEY", "CHASECK_TEST-not-a-real-key")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session as _Session  # noqa: E402

import eventpass.models  # noqa: E402,F401
from db import engine  # noqa: E402
from eventpass.core.errors import gateway_unavailable  # noqa: E402
from eventpass.models.event import Event, EventTicketType  # noqa: E402
from eventpass.models.user import Base, User  # noqa: E402
from eventpass.services.cache import MemoryCache, set_cache  # noqa: E402
from eventpass.services.payment_gateway import (  # noqa: E402
    EVENT_FAILED,
    EVENT_OTHER,
    EVENT_SUCCEEDED,
    PAY_FAILED,
    PAY_PENDING,
    PAY_SUCCESS,
    CheckoutSession,
    PaymentGateway,
    Verification,
    WebhookEvent,
    set_payment_gateway,
)
from eventpass.services.plan_catalog import seed_plans  # noqa: E402

# In-memory SQLite: build the schema straight from the models
if os.getenv("TEST_SQLITE") == "1":
    Base.metadata.create_all(bind=engine)


class FakeGateway(PaymentGateway):
    """In-memory stand-in for Chapa/Stripe; tests script each transaction's outcome."""

    name = "fake"

    def __init__(self):
        self.requests = {}
        self.outcomes = {}
        self.unavailable = False
        self.checkout_calls = 0
        self.verify_calls = 0

    def initiate_checkout(self, request):
        self.checkout_calls += 1
        if self.unavailable:
            raise gateway_unavailable("Payment gateway is temporarily unavailable.")
        self.requests[request.tx_ref] = request
        return CheckoutSession(
            checkout_url=f"https://checkout.test/pay/{request.tx_ref}",
            gateway_ref=request.tx_ref,
        )

    def verify_transaction(self, gateway_ref):
        self.verify_calls += 1
        if self.unavailable:
            raise gateway_unavailable("Payment gateway is temporarily unavailable.")
        return self.outcomes.get(gateway_ref, Verification(verified=False, status=PAY_PENDING))

    def parse_webhook(self, payload, headers):
        data = json.loads(payload or b"{}")
        status = data.get("status")
        kind = {"success": EVENT_SUCCEEDED, "failed": EVENT_FAILED}.get(status, EVENT_OTHER)
        return WebhookEvent(
            event_id=data.get("id", ""),
            kind=kind,
            tx_ref=data.get("tx_ref"),
            gateway_ref=data.get("tx_ref"),
            event_type=data.get("event", "charge.completed"),
            payload=data,
        )

    # Scripting helpers
    def succeed(self, tx_ref, amount=None, currency=None):
        req = self.requests[tx_ref]
        self.outcomes[tx_ref] = Verification(
            verified=True,
            status=PAY_SUCCESS,
            amount=Decimal(str(amount if amount is not None else req.amount)).quantize(
                Decimal("0.01")
            ),
            currency=currency or req.currency,
            transaction_id=f"fake-{tx_ref}",
        )

    def fail(self, tx_ref, message="card declined"):
        self.outcomes[tx_ref] = Verification(verified=False, status=PAY_FAILED, message=message)


@pytest.fixture
def db_session():
    """Per-test transaction; service-level commit()/rollback() only touch SAVEPOINTs.

    Everything a test (or a request handled through TestClient) writes is rolled
    back at teardown.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = _Session(bind=connection, join_transaction_mode="create_savepoint")

    # expose to db.get_db
    import db as dbmod

    dbmod._TEST_SESSION = session
    try:
        yield session
    finally:
        dbmod._TEST_SESSION = None
        session.close()
        if transaction.is_active:
            transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def cache():
    c = MemoryCache()
    set_cache(c)
    yield c
    set_cache(None)


@pytest.fixture(autouse=True)
def gateway():
    g = FakeGateway()
    set_payment_gateway(g)
    yield g
    set_payment_gateway(None)


@pytest.fixture
def client(db_session):
    # Import the app here so the TEST_SQLITE pre-setup above runs before the
    # application and its startup code are imported.
    from main import app

    return TestClient(app)


@pytest.fixture
def organizer(db_session):
    u = User(FirstName="Olga", LastName="Organizer", Email="organizer@example.test")
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


@pytest.fixture
def attendee(db_session):
    u = User(FirstName="Abebe", LastName="Kebede", Email="abebe@example.test")
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


def _event(db, organizer, **kw):
    ev = Event(OrganizerID=organizer.UserID, **kw)
    db.add(ev)
    db.commit()
    db.refresh(ev)
    return ev


@pytest.fixture
def free_virtual_event(db_session, organizer):
    return _event(
        db_session,
        organizer,
        Title="Intro to Python",
        IsVirtual=True,
        IsFree=True,
        RoomName="intro-to-python",
        StreamingPlatform="JITSI",
        MeetingLink="https://meet.jit.si/intro-to-python",
        Currency="ETB",
    )


@pytest.fixture
def free_location_event(db_session, organizer):
    return _event(
        db_session,
        organizer,
        Title="Community Meetup",
        IsVirtual=False,
        IsFree=True,
        Location="Addis Ababa, Bole",
        MaxAttendees=20,
        Currency="ETB",
    )


@pytest.fixture
def paid_event(db_session, organizer):
    ev = _event(
        db_session,
        organizer,
        Title="Jazz Night",
        IsVirtual=False,
        IsFree=False,
        Location="Addis Ababa, Piassa",
        BasePrice=Decimal("500.00"),
        Currency="ETB",
        MaxAttendees=100,
    )
    db_session.add_all(
        [
            EventTicketType(
                EventID=ev.EventID,
                Code="general",
                Name="General Admission",
                Price=Decimal("500.00"),
                Currency="ETB",
                Quantity=50,
            ),
            EventTicketType(
                EventID=ev.EventID,
                Code="vip",
                Name="VIP",
                Price=Decimal("1500.00"),
                Currency="ETB",
                Quantity=2,
            ),
        ]
    )
    db_session.commit()
    db_session.refresh(ev)
    return ev


@pytest.fixture
def plans(db_session):
    return seed_plans(db_session, currency="ETB")
