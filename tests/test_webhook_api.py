import json
from decimal import Decimal

from conftest import bearer, checkout_session, stripe_signature
from storecredit.core.errors import TransientStoreError
from storecredit.services.payment_gateway import StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"


def post_event(client, body: dict, secret: str = WEBHOOK_SECRET, signature=None):
    payload = json.dumps(body)
    headers = {"Content-Type": "application/json"}
    headers["stripe-signature"] = signature or stripe_signature(payload, secret)
    return client.post("/api/webhooks/stripe", content=payload, headers=headers)


def checkout_event(session_id):
    return {
        "id": f"evt_{session_id}",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": {"id": session_id, "object": "checkout.session"}},
    }


def test_bad_signature_is_rejected(api):
    api.gateway.add(checkout_session("cs_sig"))
    resp = post_event(api, checkout_event("cs_sig"), secret="whsec_wrong")

    assert resp.status_code == 400
    balance = api.get("/api/credits/balance", headers=bearer("u1")).json()
    assert balance["transaction_count"] == 0


def test_missing_signature_is_rejected(api):
    resp = api.post("/api/webhooks/stripe", content=json.dumps(checkout_event("cs_x")))
    assert resp.status_code == 400


def test_signed_checkout_is_applied(api, notifications):
    api.gateway.add(checkout_session("cs_api"))

    resp = post_event(api, checkout_event("cs_api"))

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    balance = api.get("/api/credits/balance", headers=bearer("u1")).json()
    assert Decimal(balance["balance"]) == Decimal("2.50")
    # Deferred side effects ran after the response
    assert len(notifications.paid) == 1


def test_unhandled_event_type_is_acknowledged(api):
    resp = post_event(api, {"id": "evt_c", "object": "event", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})
    assert resp.status_code == 200
    assert resp.json() == {"received": True}


def test_store_outage_asks_for_redelivery(api):
    async def unavailable(event):
        raise TransientStoreError("getaddrinfo ENOTFOUND db")

    api.app.state.reconciler.handle_event = unavailable
    resp = post_event(api, checkout_event("cs_down"))
    assert resp.status_code == 503


def test_processing_error_is_acknowledged_with_detail(api):
    async def broken(event):
        raise ValueError("unexpected payload shape")

    api.app.state.reconciler.handle_event = broken
    resp = post_event(api, checkout_event("cs_err"))
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "error": "unexpected payload shape"}


def test_verified_event_is_plain_data():
    gateway = StripeGateway("sk_test_dummy", WEBHOOK_SECRET)
    payload = json.dumps(checkout_event("cs_plain"))

    verified = gateway.verify_event(payload, stripe_signature(payload, WEBHOOK_SECRET))

    assert type(verified) is dict
    assert type(verified["data"]["object"]) is dict
    assert verified.get("id") == "evt_cs_plain"
    assert verified["data"]["object"].get("id") == "cs_plain"
