import io

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from PIL import Image

from eventpass.core.errors import ErrorKind, ServiceError
from eventpass.core.settings import settings
from eventpass.models.order import (
    ORDER_FREE_LOCATION_RSVP,
    ORDER_FREE_VIRTUAL_RSVP,
    ORDER_PAID_TICKET,
)
from eventpass.services import order_service, ticket_issuer
from eventpass.services.order_service import Buyer, ItemRequest


def _rsvp(db, event, order_type=ORDER_FREE_VIRTUAL_RSVP, email="a@x.com", user_id=None):
    order, _ = order_service.place_order(
        db,
        event.EventID,
        Buyer(first_name="Alem", last_name="Tesfaye", email=email),
        order_type,
        user_id=user_id,
    )
    return order


@pytest.fixture
def jaas_key(monkeypatch):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    monkeypatch.setattr(settings, "JAAS_APP_ID", "vpaas-magic-cookie-test")
    monkeypatch.setattr(settings, "JAAS_API_KEY_ID", "vpaas-magic-cookie-test/abc123")
    # Stored the way .env files usually carry it
    monkeypatch.setattr(settings, "JAAS_PRIVATE_KEY", pem.replace("\n", "\\n"))
    return key.public_key()


def test_paid_order_gets_one_ticket_per_seat(db_session, paid_event):
    order = order_service.create_order(
        db_session,
        paid_event.EventID,
        Buyer(first_name="Sara", last_name="Bekele", email="sara@example.test"),
        ORDER_PAID_TICKET,
        items=[ItemRequest("general", 2)],
    )
    assert float(order.TotalAmount) == 1000.0
    order = order_service.confirm_order(db_session, order.OrderID, "tx123")

    bundle = ticket_issuer.issue_ticket(db_session, order)
    assert len(bundle.tickets) == 2
    assert len({t.ticket_id for t in bundle.tickets}) == 2
    for t in bundle.tickets:
        assert t.qr_payload == f"{t.ticket_id}|{paid_event.EventID}|sara@example.test"
        assert t.ticket_type == "General Admission"
    assert bundle.to_dict()["quantity"] == 2


def test_issue_ticket_twice_is_identical(db_session, free_virtual_event):
    order = _rsvp(db_session, free_virtual_event)
    first = ticket_issuer.issue_ticket(db_session, order)
    assert first.issued_at is not None
    second = ticket_issuer.issue_ticket(db_session, order)
    assert [t.qr_payload for t in first.tickets] == [t.qr_payload for t in second.tickets]
    assert second.issued_at == first.issued_at


def test_pending_order_has_no_tickets(db_session, paid_event):
    order = order_service.create_order(
        db_session,
        paid_event.EventID,
        Buyer(first_name="Sara", email="sara@example.test"),
        ORDER_PAID_TICKET,
        items=[ItemRequest("general")],
    )
    with pytest.raises(ServiceError) as ei:
        ticket_issuer.issue_ticket(db_session, order)
    assert ei.value.kind == ErrorKind.VALIDATION
    db_session.refresh(order)
    assert order.TicketsIssuedAt is None


def test_qr_png_renders(db_session, free_virtual_event):
    order = _rsvp(db_session, free_virtual_event)
    ticket = ticket_issuer.issue_ticket(db_session, order).tickets[0]
    png = ticket_issuer.render_qr_png(ticket.qr_payload)
    assert png.startswith(b"\x89PNG")
    img = Image.open(io.BytesIO(png))
    assert img.size[0] == img.size[1]


def test_meeting_access_for_rsvp_without_jaas(db_session, free_virtual_event):
    order = _rsvp(db_session, free_virtual_event)
    access = ticket_issuer.issue_meeting_access(order, free_virtual_event)
    assert access.join_url == "https://meet.jit.si/intro-to-python"
    assert access.platform == "JITSI"
    assert access.is_moderator is False
    assert access.token is None


def test_meeting_access_mints_jaas_token(db_session, free_virtual_event, organizer, jaas_key):
    order = _rsvp(db_session, free_virtual_event, user_id=organizer.UserID)
    access = ticket_issuer.issue_meeting_access(order, free_virtual_event, user_id=organizer.UserID)

    assert access.platform == "JAAS"
    assert access.is_moderator is True
    assert access.join_url == (
        f"https://8x8.vc/vpaas-magic-cookie-test/intro-to-python?jwt={access.token}"
    )
    header = jwt.get_unverified_header(access.token)
    assert header["kid"] == "vpaas-magic-cookie-test/abc123"
    assert header["alg"] == "RS256"

    claims = jwt.decode(access.token, jaas_key, algorithms=["RS256"], audience="jitsi")
    assert claims["iss"] == "chat"
    assert claims["sub"] == "vpaas-magic-cookie-test"
    assert claims["room"] == "intro-to-python"
    assert claims["exp"] - claims["iat"] == 3 * 60 * 60
    assert claims["nbf"] == claims["iat"] - 10
    user = claims["context"]["user"]
    assert user["moderator"] is True
    assert user["email"] == "a@x.com"
    assert claims["context"]["features"]["recording"] is True


def test_attendee_is_not_moderator(db_session, free_virtual_event, attendee, jaas_key):
    order = _rsvp(db_session, free_virtual_event, user_id=attendee.UserID)
    access = ticket_issuer.issue_meeting_access(order, free_virtual_event, user_id=attendee.UserID)
    claims = jwt.decode(access.token, jaas_key, algorithms=["RS256"], audience="jitsi")
    assert claims["context"]["user"]["moderator"] is False
    assert claims["context"]["features"]["livestreaming"] is False


def test_bad_private_key_is_configuration_error(db_session, free_virtual_event, monkeypatch):
    monkeypatch.setattr(settings, "JAAS_APP_ID", "app")
    monkeypatch.setattr(settings, "JAAS_API_KEY_ID", "app/key")
    monkeypatch.setattr(settings, "JAAS_PRIVATE_KEY", "not a pem")
    order = _rsvp(db_session, free_virtual_event)
    with pytest.raises(ServiceError) as ei:
        ticket_issuer.issue_meeting_access(order, free_virtual_event)
    assert ei.value.kind == ErrorKind.CONFIGURATION_ERROR


def test_meeting_access_rejected_for_location_event(db_session, free_location_event):
    order = _rsvp(db_session, free_location_event, order_type=ORDER_FREE_LOCATION_RSVP)
    with pytest.raises(ServiceError) as ei:
        ticket_issuer.issue_meeting_access(order, free_location_event)
    assert ei.value.kind == ErrorKind.VALIDATION


def test_virtual_event_without_room_is_configuration_error(db_session, free_virtual_event):
    order = _rsvp(db_session, free_virtual_event)
    free_virtual_event.RoomName = None
    free_virtual_event.MeetingLink = None
    db_session.commit()
    with pytest.raises(ServiceError) as ei:
        ticket_issuer.issue_meeting_access(order, free_virtual_event)
    assert ei.value.kind == ErrorKind.CONFIGURATION_ERROR


def test_non_jitsi_platform_uses_meeting_link(db_session, free_virtual_event):
    free_virtual_event.StreamingPlatform = "ZOOM"
    free_virtual_event.MeetingLink = "https://zoom.us/j/123"
    db_session.commit()
    order = _rsvp(db_session, free_virtual_event)
    access = ticket_issuer.issue_meeting_access(order, free_virtual_event)
    assert access.join_url == "https://zoom.us/j/123"
    assert access.platform == "ZOOM"


def test_receipt_pdf(db_session, free_location_event):
    order = _rsvp(db_session, free_location_event, order_type=ORDER_FREE_LOCATION_RSVP)
    pdf = ticket_issuer.build_receipt_pdf(order, free_location_event)
    assert pdf.startswith(b"%PDF")
