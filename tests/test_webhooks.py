import json

from tellsafe.extensions import db
from tellsafe.models import EmailLog, InboundEvent, Organization
from tellsafe.services import crypto
from tellsafe.services.webhooks import html_to_text, sign_payload, strip_email_quotes

TS = "1700000000"

def _signed(app, payload) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    sig = sign_payload(app.config["EMAIL_WEBHOOK_SECRET"], TS, body)
    return body, {"Content-Type": "application/json", "X-Timestamp": TS, "X-Signature": sig}

def _fake_stripe(monkeypatch):
    import stripe
    def _fake_construct_event(payload, sig_header, secret):
        if sig_header != "t=1,v1=fake":
            raise stripe.SignatureVerificationError("bad sig", sig_header)
        return json.loads(payload)
    monkeypatch.setattr(stripe.Webhook, "construct_event", staticmethod(_fake_construct_event))

def test_email_status_bounce_creates_event_and_emaillog(app, client):
    body, headers = _signed(app, {"id": "evt_b1", "event": "bounce", "email": "Bounced@Example.com", "message_id": "m1"})
    resp = client.post("/webhooks/email-status", data=body, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True}

    with app.app_context():
        ev = InboundEvent.query.filter_by(source="email-status", provider_event_id="evt_b1").one()
        assert ev.kind == "mail.status"
        row = EmailLog.query.filter_by(to_email="bounced@example.com").one()
        assert row.status == "bounced"

def test_same_payload_twice_is_stored_once(app, client):
    body, headers = _signed(app, {"id": "evt_dup", "event": "delivered", "email": "a@example.com"})
    first = client.post("/webhooks/email-status", data=body, headers=headers)
    second = client.post("/webhooks/email-status", data=body, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.get_json().get("duplicate") is True
    with app.app_context():
        assert InboundEvent.query.filter_by(provider_event_id="evt_dup").count() == 1

def test_bad_signature_is_rejected_and_not_stored(app, client):
    body, headers = _signed(app, {"id": "evt_x", "event": "bounce", "email": "a@example.com"})
    headers["X-Signature"] = "0" * 64
    resp = client.post("/webhooks/email-status", data=body, headers=headers)
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "invalid_signature"

    del headers["X-Signature"]
    assert client.post("/webhooks/email-status", data=body, headers=headers).status_code == 401
    with app.app_context():
        assert InboundEvent.query.count() == 0

def test_missing_required_field_is_400(app, client):
    body, headers = _signed(app, {"id": "evt_m", "event": "bounce"})
    resp = client.post("/webhooks/email-status", data=body, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "malformed_payload"

    raw = b"{not json"
    headers = {"X-Timestamp": TS, "X-Signature": sign_payload(app.config["EMAIL_WEBHOOK_SECRET"], TS, raw)}
    assert client.post("/webhooks/email-status", data=raw, headers=headers).status_code == 400

def test_unsupported_event_is_ignored(app, client):
    body, headers = _signed(app, {"id": "evt_o", "event": "open", "email": "a@example.com"})
    resp = client.post("/webhooks/email-status", data=body, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["ignored"] == "unsupported_event:open"
    with app.app_context():
        assert InboundEvent.query.count() == 0

def test_unknown_source_is_404(client):
    assert client.post("/webhooks/carrier-pigeon", data=b"{}").status_code == 404

def test_relay_reply_is_stored_encrypted(app, client, acme, acme_key):
    payload = {
        "type": "email.received",
        "data": {
            "email_id": "em_1",
            "to": ["relay+acme.t9x2@tellsafe.app"],
            "text": "Thanks, that fixed it.\n\nOn Mon, Jan 5, 2026 Someone wrote:\n> original question",
        },
    }
    body, headers = _signed(app, payload)
    resp = client.post("/webhooks/email-reply", data=body, headers=headers)
    assert resp.status_code == 200

    with app.app_context():
        ev = InboundEvent.query.filter_by(source="email-reply", provider_event_id="em_1").one()
        assert ev.kind == "relay.reply"
        assert ev.org_id == acme.org_id
        assert "text" not in ev.data
        assert ev.data["thread_id"] == "t9x2"
        assert crypto.decrypt(ev.data["text_ciphertext"], acme_key) == "Thanks, that fixed it."

def test_reply_without_relay_address_is_ignored(app, client):
    body, headers = _signed(app, {"type": "email.received", "data": {"email_id": "em_2", "to": "hello@other.test", "text": "hi"}})
    resp = client.post("/webhooks/email-reply", data=body, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["ignored"] == "no_relay_address"

def test_reply_with_non_string_body_is_400(app, client, acme):
    for field, value in (("text", 12345), ("html", ["<p>hi</p>"])):
        payload = {"type": "email.received",
                   "data": {"email_id": f"em_{field}", "to": ["relay+acme.t1@tellsafe.app"], field: value}}
        body, headers = _signed(app, payload)
        resp = client.post("/webhooks/email-reply", data=body, headers=headers)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "malformed_payload"
    with app.app_context():
        assert InboundEvent.query.count() == 0

def test_stripe_event_with_non_object_parts_is_400(app, client, monkeypatch):
    _fake_stripe(monkeypatch)
    events = [
        {"id": "evt_bad1", "type": "invoice.paid", "data": {"object": "in_123"}},
        {"id": "evt_bad2", "type": "invoice.paid", "data": ["nope"]},
        {"id": "evt_bad3", "type": "customer.subscription.updated",
         "data": {"object": {"id": "sub_1", "status": "active", "metadata": "org-1"}}},
        {"id": "evt_bad4", "type": 7, "data": {"object": {}}},
    ]
    for event in events:
        resp = client.post("/webhooks/stripe", data=json.dumps(event), headers={"Stripe-Signature": "t=1,v1=fake"})
        assert resp.status_code == 400, event["id"]
    with app.app_context():
        assert InboundEvent.query.count() == 0

def test_stripe_subscription_deleted_deactivates_org(app, client, acme, monkeypatch):
    _fake_stripe(monkeypatch)
    event = {
        "id": "evt_s1",
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": "sub_1", "customer": "cus_123", "status": "canceled",
                            "metadata": {"org_id": str(acme.org_id)}}},
    }
    resp = client.post("/webhooks/stripe", data=json.dumps(event), headers={"Stripe-Signature": "t=1,v1=fake"})
    assert resp.status_code == 200

    with app.app_context():
        org = db.session.get(Organization, acme.org_id)
        assert org.billing_status == "canceled"
        assert org.is_active is False
        assert org.stripe_customer_id == "cus_123"

def test_stripe_invoice_paid_matches_org_by_customer(app, client, acme, monkeypatch):
    _fake_stripe(monkeypatch)
    with app.app_context():
        org = db.session.get(Organization, acme.org_id)
        org.stripe_customer_id = "cus_456"
        org.apply_billing_status("unpaid")
        db.session.commit()

    event = {"id": "evt_s2", "type": "invoice.paid", "data": {"object": {"customer": "cus_456", "subscription": "sub_2"}}}
    resp = client.post("/webhooks/stripe", data=json.dumps(event), headers={"Stripe-Signature": "t=1,v1=fake"})
    assert resp.status_code == 200

    with app.app_context():
        org = db.session.get(Organization, acme.org_id)
        assert org.billing_status == "active"
        assert org.is_active is True

def test_stripe_bad_signature_is_401(app, client, monkeypatch):
    _fake_stripe(monkeypatch)
    event = {"id": "evt_s3", "type": "invoice.paid", "data": {"object": {}}}
    resp = client.post("/webhooks/stripe", data=json.dumps(event), headers={"Stripe-Signature": "t=1,v1=forged"})
    assert resp.status_code == 401
    with app.app_context():
        assert InboundEvent.query.count() == 0

def test_strip_email_quotes_and_html():
    assert strip_email_quotes("New text\n> old text") == "New text"
    assert strip_email_quotes("Line one\nLine two\n-----Original Message-----\nold") == "Line one\nLine two"
    assert html_to_text("<p>Hello&nbsp;there</p><br>Bye") == "Hello there\n\n\nBye"
