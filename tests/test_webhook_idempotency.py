import json

from eventpass.models.billing import PaymentLog, PaymentTransaction
from eventpass.models.order import ORDER_PAID_TICKET, STATUS_CONFIRMED, Order
from eventpass.services import order_service, payment_service, ticket_issuer
from eventpass.services.order_service import Buyer, ItemRequest


def _checkout(db, event, gateway):
    order = order_service.create_order(
        db,
        event.EventID,
        Buyer(first_name="Hana", last_name="Girma", email="hana@example.test"),
        ORDER_PAID_TICKET,
        items=[ItemRequest("general", 2)],
    )
    tx = payment_service.initiate_order_payment(db, gateway, order)
    return order, tx


def test_webhook_idempotent(client, db_session, paid_event, gateway):
    order, tx = _checkout(db_session, paid_event, gateway)
    gateway.succeed(tx.TxRef)
    event = {"id": "evt_123", "event": "charge.success", "status": "success", "tx_ref": tx.TxRef}

    r1 = client.post("/payments/webhook", content=json.dumps(event))
    assert r1.status_code == 200
    assert r1.json()["status"] == "success"

    o1 = db_session.query(Order).filter(Order.OrderID == order.OrderID).first()
    assert o1.Status == STATUS_CONFIRMED
    confirmed_at = o1.ConfirmedAt
    logs = db_session.query(PaymentLog).filter(PaymentLog.ProviderEventID == "evt_123").all()
    assert len(logs) == 1

    # Gateway retry of the same delivery
    r2 = client.post("/payments/webhook", content=json.dumps(event))
    assert r2.status_code == 200
    assert r2.json()["status"] == "duplicate"

    logs2 = db_session.query(PaymentLog).filter(PaymentLog.ProviderEventID == "evt_123").all()
    assert len(logs2) == 1
    db_session.refresh(o1)
    assert o1.ConfirmedAt == confirmed_at
    db_session.refresh(paid_event)
    assert paid_event.AttendeeCount == 2


def test_second_event_for_confirmed_order_is_a_no_op(client, db_session, paid_event, gateway):
    order, tx = _checkout(db_session, paid_event, gateway)
    gateway.succeed(tx.TxRef)
    client.post(
        "/payments/webhook",
        content=json.dumps({"id": "evt_a", "status": "success", "tx_ref": tx.TxRef}),
    )
    first_bundle = ticket_issuer.issue_ticket(db_session, order_service.get_order(db_session, order.OrderID))

    # A different delivery id for the same transaction
    r = client.post(
        "/payments/webhook",
        content=json.dumps({"id": "evt_b", "status": "success", "tx_ref": tx.TxRef}),
    )
    assert r.status_code == 200
    order = order_service.get_order(db_session, order.OrderID)
    assert order.Status == STATUS_CONFIRMED
    assert order.TransactionRef == tx.TxRef
    second_bundle = ticket_issuer.issue_ticket(db_session, order)
    assert [t.qr_payload for t in second_bundle.tickets] == [t.qr_payload for t in first_bundle.tickets]
    assert second_bundle.issued_at == first_bundle.issued_at
    db_session.refresh(paid_event)
    assert paid_event.AttendeeCount == 2


def test_webhook_body_is_not_trusted(client, db_session, paid_event, gateway):
    order, tx = _checkout(db_session, paid_event, gateway)
    # The webhook claims success but the gateway has not settled the payment
    r = client.post(
        "/payments/webhook",
        content=json.dumps({"id": "evt_forged", "status": "success", "tx_ref": tx.TxRef}),
    )
    assert r.status_code == 200
    assert r.json()["status"] == "pending"
    db_session.refresh(order)
    assert order.Status != STATUS_CONFIRMED


def test_webhook_for_unknown_transaction_is_logged_and_ignored(client, db_session):
    r = client.post(
        "/payments/webhook",
        content=json.dumps({"id": "evt_x", "status": "success", "tx_ref": "nope"}),
    )
    assert r.status_code == 200
    assert r.json()["status"] == "ignored"
    assert db_session.query(PaymentTransaction).count() == 0
    assert db_session.query(PaymentLog).filter(PaymentLog.ProviderEventID == "evt_x").count() == 1


def test_redelivery_after_pending_is_applied(client, db_session, paid_event, gateway):
    order, tx = _checkout(db_session, paid_event, gateway)
    event = {"id": "evt_1", "event": "charge.success", "status": "success", "tx_ref": tx.TxRef}

    # Delivered before the gateway has settled the payment
    r1 = client.post("/payments/webhook", content=json.dumps(event))
    assert r1.json()["status"] == "pending"

    gateway.succeed(tx.TxRef)
    r2 = client.post("/payments/webhook", content=json.dumps(event))
    assert r2.status_code == 200
    assert r2.json()["status"] == "success"
    db_session.refresh(order)
    assert order.Status == STATUS_CONFIRMED

    assert db_session.query(PaymentLog).filter(PaymentLog.ProviderEventID == "evt_1").count() == 1
    r3 = client.post("/payments/webhook", content=json.dumps(event))
    assert r3.json()["status"] == "duplicate"
