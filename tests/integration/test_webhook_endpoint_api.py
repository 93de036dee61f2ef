import json

VENDOR_A = "11111111-1111-4111-8111-111111111111"


def _post(client, raw, signature):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return client.post("/api/v1/payments/webhook", content=raw, headers=headers)


def test_invalid_signature_is_400(client, fake_db, signed, payment_event):
    raw = json.dumps(payment_event("x", "pi_1", 100))
    res = _post(client, raw, signed(raw, secret="whsec_other"))
    assert res.status_code == 400
    assert res.json()["code"] == "invalid_signature"
    assert fake_db.rows("webhook_failures") == []


def test_missing_signature_is_400(client, payment_event):
    res = _post(client, json.dumps(payment_event("x", "pi_1", 100)), None)
    assert res.status_code == 400


def test_unknown_event_acknowledged(client, signed):
    raw = json.dumps({"id": "evt_9", "type": "invoice.paid", "data": {"object": {}}})
    res = _post(client, raw, signed(raw))
    assert res.status_code == 200
    assert res.json()["status"] == "ignored"


def test_processing_failure_is_recorded_and_500(client, fake_db, signed, payment_event):
    event = payment_event("unused", "pi_1", 100)
    event["data"]["object"]["metadata"] = {}
    raw = json.dumps(event)
    res = client.post("/api/v1/payments/webhook", content=raw,
                      headers={"Stripe-Signature": signed(raw), "User-Agent": "Stripe/1.0"})
    assert res.status_code == 500
    body = res.json()
    assert body["received"] is False
    failure = fake_db.rows("webhook_failures")[0]
    assert body["failure_id"] == failure["id"]
    assert failure["metadata"]["user_agent"] == "Stripe/1.0"
    assert failure["payload"]["id"] == "evt_1"


def test_order_service_unreachable_is_recorded(client, fake_db, monkeypatch, signed, payment_event):
    from marketplace.errors import OrderServiceUnavailable

    def _down(order_id):
        raise OrderServiceUnavailable("Service commandes injoignable")

    monkeypatch.setattr("marketplace.webhooks.order_client.verify_order", _down)
    raw = json.dumps(payment_event("5d0c6d2e-8d8a-4c36-9a7e-0f1f2b3c4d5e", "pi_1", 100))
    res = _post(client, raw, signed(raw))
    assert res.status_code == 500
    assert fake_db.rows("webhook_failures")[0]["metadata"]["error_code"] == "order_service_unavailable"
