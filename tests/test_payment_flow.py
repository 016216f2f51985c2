from datetime import timedelta

import pytest

from eventpass.core.errors import ErrorKind, ServiceError
from eventpass.models.billing import TX_FAILED, TX_PENDING, TX_SUCCESS, TX_UNKNOWN, PaymentLog
from eventpass.models.order import ORDER_PAID_TICKET, STATUS_CONFIRMED, STATUS_FAILED, STATUS_PENDING
from eventpass.models.user import utcnow
from eventpass.services import order_service, payment_service
from eventpass.services.order_service import Buyer, ItemRequest


def _paid_order(db, event, qty=2, email="buyer@example.test"):
    return order_service.create_order(
        db,
        event.EventID,
        Buyer(first_name="Sara", last_name="Bekele", email=email),
        ORDER_PAID_TICKET,
        items=[ItemRequest("general", qty)],
    )


def test_initiate_order_payment_records_pending_transaction(db_session, paid_event, gateway):
    order = _paid_order(db_session, paid_event)
    tx = payment_service.initiate_order_payment(
        db_session, gateway, order, success_url="https://shop.test/thanks?foo=bar&secret=1"
    )
    assert tx.Status == TX_PENDING
    assert tx.CheckoutUrl == f"https://checkout.test/pay/{tx.TxRef}"
    assert tx.TxRef.startswith(f"FAKE-{order.OrderID}-")
    req = gateway.requests[tx.TxRef]
    assert str(req.amount) == "1000.00"
    assert req.currency == "ETB"
    # Only the opaque orderId survives the redirect round trip
    assert req.success_url == f"https://shop.test/thanks?orderId={order.OrderID}"
    assert req.metadata["orderId"] == order.OrderID


def test_gateway_unavailable_leaves_order_pending(db_session, paid_event, gateway):
    order = _paid_order(db_session, paid_event)
    gateway.unavailable = True
    with pytest.raises(ServiceError) as ei:
        payment_service.initiate_order_payment(db_session, gateway, order)
    assert ei.value.kind == ErrorKind.GATEWAY_UNAVAILABLE
    db_session.refresh(order)
    assert order.Status == STATUS_PENDING
    assert db_session.query(PaymentLog).filter(PaymentLog.EventType == "checkout_error").count() == 1


def test_verified_payment_confirms_order(db_session, paid_event, gateway):
    order = _paid_order(db_session, paid_event)
    tx = payment_service.initiate_order_payment(db_session, gateway, order)
    gateway.succeed(tx.TxRef)

    tx = payment_service.verify_and_apply(db_session, gateway, tx.TxRef)
    assert tx.Status == TX_SUCCESS
    db_session.refresh(order)
    assert order.Status == STATUS_CONFIRMED
    assert order.TransactionRef == tx.TxRef


def test_amount_mismatch_is_treated_as_failure(db_session, paid_event, gateway):
    order = _paid_order(db_session, paid_event)
    tx = payment_service.initiate_order_payment(db_session, gateway, order)
    gateway.succeed(tx.TxRef, amount="10.00")

    tx = payment_service.verify_and_apply(db_session, gateway, tx.TxRef)
    assert tx.Status == TX_FAILED
    assert tx.FailureReason == "amount or currency mismatch"
    db_session.refresh(order)
    assert order.Status == STATUS_PENDING


def test_failed_payment_keeps_order_pending_for_retry(db_session, paid_event, gateway):
    order = _paid_order(db_session, paid_event)
    tx = payment_service.initiate_order_payment(db_session, gateway, order)
    gateway.fail(tx.TxRef)
    tx = payment_service.verify_and_apply(db_session, gateway, tx.TxRef)
    assert tx.Status == TX_FAILED
    db_session.refresh(order)
    assert order.Status == STATUS_PENDING

    # A second checkout attempt for the same order succeeds
    retry = payment_service.initiate_order_payment(db_session, gateway, order)
    assert retry.TxRef != tx.TxRef
    gateway.succeed(retry.TxRef)
    payment_service.verify_and_apply(db_session, gateway, retry.TxRef)
    db_session.refresh(order)
    assert order.Status == STATUS_CONFIRMED


def test_poll_backs_off_and_gives_up_as_unknown(db_session, paid_event, gateway):
    order = _paid_order(db_session, paid_event)
    tx = payment_service.initiate_order_payment(db_session, gateway, order)
    delays = []

    tx = payment_service.poll_payment(
        db_session, gateway, tx.TxRef, attempts=4, backoff=1.0, sleep=delays.append
    )
    assert delays == [1.0, 2.0, 4.0]
    assert gateway.verify_calls == 4
    assert tx.Status == TX_UNKNOWN
    assert payment_service.transaction_to_dict(tx)["message"] == payment_service.UNKNOWN_STATUS_MESSAGE
    db_session.refresh(order)
    assert order.Status == STATUS_PENDING


def test_poll_backoff_is_capped(db_session, paid_event, gateway, monkeypatch):
    from eventpass.core.settings import settings

    monkeypatch.setattr(settings, "PAYMENT_POLL_MAX_BACKOFF_SECONDS", 3.0)
    order = _paid_order(db_session, paid_event)
    tx = payment_service.initiate_order_payment(db_session, gateway, order)
    delays = []
    payment_service.poll_payment(
        db_session, gateway, tx.TxRef, attempts=4, backoff=2.0, sleep=delays.append
    )
    assert delays == [2.0, 3.0, 3.0]


def test_poll_stops_once_payment_settles(db_session, paid_event, gateway):
    order = _paid_order(db_session, paid_event)
    tx = payment_service.initiate_order_payment(db_session, gateway, order)
    gateway.succeed(tx.TxRef)
    delays = []
    tx = payment_service.poll_payment(db_session, gateway, tx.TxRef, attempts=5, sleep=delays.append)
    assert tx.Status == TX_SUCCESS
    assert delays == []


def test_reconcile_settles_old_open_transactions(db_session, paid_event, gateway):
    paid = _paid_order(db_session, paid_event)
    unpaid = _paid_order(db_session, paid_event, qty=1, email="other@example.test")
    tx_paid = payment_service.initiate_order_payment(db_session, gateway, paid)
    payment_service.initiate_order_payment(db_session, gateway, unpaid)
    gateway.succeed(tx_paid.TxRef)

    summary = payment_service.reconcile_pending(
        db_session, gateway, older_than=timedelta(minutes=10), now=utcnow() + timedelta(hours=1)
    )
    assert summary["checked"] == 2
    assert summary["success"] == 1
    assert summary["pending"] == 1
    db_session.refresh(paid)
    db_session.refresh(unpaid)
    assert paid.Status == STATUS_CONFIRMED
    assert unpaid.Status == STATUS_PENDING


def test_payment_for_sold_out_tickets_fails_the_order(db_session, paid_event, gateway, caplog):
    orders = []
    for email in ("one@example.test", "two@example.test"):
        order = order_service.create_order(
            db_session,
            paid_event.EventID,
            Buyer(first_name="Sara", last_name="Bekele", email=email),
            ORDER_PAID_TICKET,
            items=[ItemRequest("vip", 2)],
        )
        orders.append((order, payment_service.initiate_order_payment(db_session, gateway, order)))

    for _, tx in orders:
        gateway.succeed(tx.TxRef)
    payment_service.verify_and_apply(db_session, gateway, orders[0][1].TxRef)
    with caplog.at_level("ERROR", logger="audit"):
        late = payment_service.verify_and_apply(db_session, gateway, orders[1][1].TxRef)

    # The money moved, so the transaction still records it
    assert late.Status == TX_SUCCESS
    assert any(r.getMessage() == "payment.needs_refund" for r in caplog.records)
    assert order_service.get_order(db_session, orders[0][0].OrderID).Status == STATUS_CONFIRMED
    lost = order_service.get_order(db_session, orders[1][0].OrderID)
    assert lost.Status == STATUS_FAILED
    assert lost.FailureReason == order_service.SOLD_OUT_REASON
    db_session.refresh(paid_event)
    assert [t.Sold for t in paid_event.ticket_types if t.Code == "vip"] == [2]
