import json
from datetime import datetime, timedelta, timezone

import pytest

from marketplace.cart import service as cart_service
from marketplace.errors import InvalidSignature
from marketplace.orders import service as orders_service
from marketplace.webhooks import confirmer, retry

VENDOR_A = "11111111-1111-4111-8111-111111111111"
VENDOR_B = "22222222-2222-4222-8222-222222222222"
BUYER = {"id": "buyer-1", "email": "buyer@example.com", "role": "buyer"}

@pytest.fixture
def pending_order():
    cart_service.add_item(BUYER["id"], "prod-a1", 2)
    cart_service.add_item(BUYER["id"], "prod-b1", 1)
    cart_service.set_shipping_method(BUYER["id"], VENDOR_A, "standard", "5.00")
    cart_service.set_shipping_method(BUYER["id"], VENDOR_B, "standard", "5.00")
    return orders_service.create_order(BUYER, {"shipping_address": {"city": "Lyon"}})["order"]

def _deliver(event, signed, secret="whsec_test_secret"):
    raw = json.dumps(event)
    return confirmer.handle_event(raw.encode("utf-8"), signed(raw, secret=secret), {"source_ip": "203.0.113.7"})

def test_valid_payment_event_marks_order_paid(fake_db, fake_stripe, inprocess_order_service,
                                              signed, payment_event, pending_order):
    # Act
    ack = _deliver(payment_event(pending_order["id"], "pi_test_1", 9500), signed)
    # Assert
    assert ack["received"] is True
    assert ack["status"] == "confirmed"
    assert fake_db.rows("orders")[0]["payment_status"] == "paid"
    assert len(fake_stripe.transfers) == 2
    assert fake_db.rows("webhook_failures") == []

def test_duplicate_delivery_is_benign(fake_db, fake_stripe, inprocess_order_service,
                                      signed, payment_event, pending_order):
    event = payment_event(pending_order["id"], "pi_test_1", 9500)
    _deliver(event, signed)
    ack = _deliver(event, signed)
    assert ack["received"] is True
    assert ack["status"] == "already_paid"
    assert inprocess_order_service["confirm"] == 1
    assert len(fake_stripe.transfers) == 2

def test_bad_signature_processes_nothing(fake_db, inprocess_order_service, signed, payment_event,
                                         pending_order, caplog):
    with caplog.at_level("WARNING"):
        with pytest.raises(InvalidSignature):
            _deliver(payment_event(pending_order["id"], "pi_test_1", 9500), signed, secret="whsec_wrong")
    assert inprocess_order_service == {"verify": 0, "confirm": 0}
    assert fake_db.rows("webhook_failures") == []
    assert "security.invalid_webhook_signature ip=203.0.113.7" in caplog.text

def test_tampered_body_is_rejected(inprocess_order_service, signed, payment_event, pending_order):
    raw = json.dumps(payment_event(pending_order["id"], "pi_test_1", 9500))
    header = signed(raw)
    tampered = raw.replace("9500", "1")
    with pytest.raises(InvalidSignature):
        confirmer.handle_event(tampered.encode("utf-8"), header)
    assert inprocess_order_service["verify"] == 0

def test_missing_signature_header(payment_event):
    raw = json.dumps(payment_event("x", "pi_1", 1)).encode("utf-8")
    with pytest.raises(InvalidSignature):
        confirmer.handle_event(raw, None)

def test_missing_webhook_secret_rejects(monkeypatch, signed, payment_event):
    monkeypatch.setattr("marketplace.payments.stripe_client.STRIPE_WEBHOOK_SECRET", None)
    raw = json.dumps(payment_event("x", "pi_1", 1))
    with pytest.raises(InvalidSignature):
        confirmer.handle_event(raw.encode("utf-8"), signed(raw))

def test_unknown_event_is_acknowledged(inprocess_order_service, signed):
    ack = _deliver({"id": "evt_x", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}, signed)
    assert ack == {"received": True, "event_id": "evt_x", "type": "customer.created", "status": "ignored"}
    assert inprocess_order_service["verify"] == 0

def test_missing_order_metadata_goes_to_ledger(fake_db, inprocess_order_service, signed, payment_event):
    event = payment_event("unused", "pi_test_1", 9500)
    event["data"]["object"]["metadata"] = {}
    ack = _deliver(event, signed)
    assert ack["received"] is False
    failure = fake_db.rows("webhook_failures")[0]
    assert failure["event_id"] == "evt_1"
    assert failure["status"] == "abandoned"
    assert failure["metadata"]["error_code"] == "missing_order_metadata"
    assert failure["source_ip"] == "203.0.113.7"
    assert ack["failure_id"] == failure["id"]

def test_amount_mismatch_never_marks_paid(fake_db, inprocess_order_service, signed, payment_event,
                                          pending_order, caplog):
    with caplog.at_level("CRITICAL"):
        ack = _deliver(payment_event(pending_order["id"], "pi_test_1", 100), signed)
    assert ack["received"] is False
    assert fake_db.rows("orders")[0]["payment_status"] == "pending"
    assert inprocess_order_service["confirm"] == 0
    assert "security.amount_mismatch" in caplog.text
    assert fake_db.rows("webhook_failures")[0]["metadata"]["error_code"] == "amount_mismatch"

def test_reference_mismatch_never_marks_paid(fake_db, inprocess_order_service, signed, payment_event,
                                             pending_order):
    ack = _deliver(payment_event(pending_order["id"], "pi_other", 9500), signed)
    assert ack["received"] is False
    assert fake_db.rows("orders")[0]["payment_status"] == "pending"
    assert inprocess_order_service["confirm"] == 0

def test_security_failures_are_abandoned_not_retried(fake_db, inprocess_order_service, signed, payment_event,
                                                     pending_order, caplog):
    _deliver(payment_event(pending_order["id"], "pi_test_1", 100), signed)
    failure = fake_db.rows("webhook_failures")[0]
    assert failure["status"] == "abandoned"
    assert failure["metadata"]["security"] is True
    assert failure["next_retry_at"] is None

    caplog.clear()
    summary = retry.run_retry_cycle(now=datetime.now(timezone.utc) + timedelta(days=30))
    assert summary["total"] == 0
    assert "security.amount_mismatch" not in caplog.text

def test_retry_hitting_security_check_abandons(fake_db, inprocess_order_service, payment_event, pending_order):
    event = payment_event(pending_order["id"], "pi_other", 9500)
    fake_db.rows("webhook_failures").append({
        "id": "wf-1", "event_type": event["type"], "event_id": event["id"], "payload": event,
        "status": "failed", "retry_count": 0, "metadata": {"error_code": "order_service_unavailable"},
    })
    outcome = retry.retry_failure(fake_db.rows("webhook_failures")[0])
    row = fake_db.rows("webhook_failures")[0]
    assert outcome["status"] == "failed"
    assert row["status"] == "abandoned"
    assert row["metadata"]["security"] is True
    assert row["metadata"]["error_code"] == "order_service_unavailable"

def test_amount_falls_back_to_amount_field(fake_db, inprocess_order_service, signed, payment_event,
                                           pending_order):
    event = payment_event(pending_order["id"], "pi_test_1", 9500)
    del event["data"]["object"]["amount_received"]
    ack = _deliver(event, signed)
    assert ack["received"] is True
    assert fake_db.rows("orders")[0]["payment_status"] == "paid"

def test_ledger_unavailable_is_logged_critical(fake_db, signed, payment_event, caplog):
    event = payment_event("unused", "pi_test_1", 9500)
    event["data"]["object"]["metadata"] = {}
    fake_db.failing_tables.add("webhook_failures")
    with caplog.at_level("CRITICAL"):
        ack = _deliver(event, signed)
    assert ack["received"] is False
    assert ack["failure_id"] is None
    assert "webhooks.failure_not_recorded" in caplog.text

def _transfer_event(event_type, transfer_id, **extra):
    return {"id": f"evt_{event_type}", "type": event_type,
            "data": {"object": {"id": transfer_id, "object": "transfer", **extra}}}

def test_transfer_events_update_payout(fake_db, signed):
    fake_db.rows("vendor_payouts").append({"id": "po-1", "stripe_transfer_id": "tr_9", "status": "processing"})
    assert _deliver(_transfer_event("transfer.created", "tr_9"), signed)["status"] == "paid"
    assert fake_db.rows("vendor_payouts")[0]["status"] == "paid"

    ack = _deliver(_transfer_event("transfer.reversed", "tr_9"), signed)
    assert ack["status"] == "failed"
    assert fake_db.rows("vendor_payouts")[0]["failure_reason"] == "transfer.reversed"
    assert fake_db.rows("vendor_payouts")[0]["retryable"] is False

def test_transfer_event_for_unknown_payout_is_recorded(fake_db, signed):
    ack = _deliver(_transfer_event("transfer.failed", "tr_unknown", failure_message="account closed"), signed)
    assert ack["received"] is False
    assert fake_db.rows("webhook_failures")[0]["metadata"]["error_code"] == "payout_not_found"

def test_account_updated_sets_onboarding(fake_db, signed):
    event = {"id": "evt_acct", "type": "account.updated",
             "data": {"object": {"id": "acct_vendorB", "charges_enabled": True, "payouts_enabled": True}}}
    ack = _deliver(event, signed)
    assert ack["onboarding_completed"] is True
    assert ack["vendor_found"] is True
    assert fake_db.rows("vendors")[1]["stripe_onboarding_completed"] is True
