from decimal import Decimal

from conftest import bearer

ADMIN = bearer("admin-1")
USER = bearer("u1")


def grant(api, user_id, amount):
    resp = api.post("/api/admin/credits/add", json={"user_id": user_id, "amount": amount, "reason": "welcome"}, headers=ADMIN)
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_requires_authentication(api):
    assert api.get("/api/credits/balance").status_code == 401
    assert api.get("/api/credits/balance", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_admin_routes_reject_customers(api):
    resp = api.post("/api/admin/credits/add", json={"user_id": "u1", "amount": "5"}, headers=USER)
    assert resp.status_code == 403


def test_checkout_reservation_flow(api):
    added = grant(api, "u1", "20")
    assert added["success"] and added["transaction_id"]

    check = api.post("/api/credits/validate", json={"order_subtotal": "30", "requested_amount": "15"}, headers=USER).json()
    assert check["valid"] is True

    hold = api.post("/api/credits/reservations", json={"amount": "15", "session_id": "cs_1"}, headers=USER).json()
    assert hold["success"]
    assert Decimal(hold["available_balance"]) == Decimal("5.00")

    confirmed = api.post(
        f"/api/credits/reservations/{hold['reservation_id']}/confirm", json={"order_id": "o9"}, headers=USER
    ).json()
    assert confirmed["success"]
    assert Decimal(confirmed["new_balance"]) == Decimal("5.00")

    history = api.get("/api/credits/history", headers=USER).json()
    assert sorted(t["transaction_type"] for t in history["transactions"]) == ["adjustment", "used"]


def test_cancel_reservation(api):
    grant(api, "u1", "10")
    hold = api.post("/api/credits/reservations", json={"amount": "10"}, headers=USER).json()

    resp = api.post(f"/api/credits/reservations/{hold['reservation_id']}/cancel", json={}, headers=USER)

    assert resp.json()["success"]
    balance = api.get("/api/credits/balance", headers=USER).json()
    assert Decimal(balance["balance"]) == Decimal("10.00")


def test_cannot_touch_someone_elses_reservation(api):
    grant(api, "u1", "10")
    hold = api.post("/api/credits/reservations", json={"amount": "10"}, headers=USER).json()

    resp = api.post(
        f"/api/credits/reservations/{hold['reservation_id']}/confirm", json={"order_id": "o1"}, headers=bearer("u2")
    )
    assert resp.status_code == 404


def test_admin_earn_deduct_and_reverse(api):
    earned = api.post(
        "/api/admin/credits/earn", json={"user_id": "u1", "order_total": "40", "order_id": "o1"}, headers=ADMIN
    ).json()
    assert Decimal(earned["points_earned"]) == Decimal("2.00")

    spent = api.post(
        "/api/admin/credits/deduct",
        json={"user_id": "u1", "amount": "1.50", "reason": "manual", "order_id": "o2"},
        headers=ADMIN,
    ).json()
    assert spent["success"]

    reversed_ = api.post(
        f"/api/admin/credits/transactions/{spent['transaction_id']}/reverse", json={"reason": "mistake"}, headers=ADMIN
    ).json()
    assert Decimal(reversed_["restored_amount"]) == Decimal("1.50")

    balance = api.get("/api/admin/credits/users/u1/balance", headers=ADMIN).json()
    assert Decimal(balance["balance"]) == Decimal("2.00")


def test_reverse_unknown_transaction_is_404(api):
    resp = api.post("/api/admin/credits/transactions/nope/reverse", json={"reason": "x"}, headers=ADMIN)
    assert resp.status_code == 404


def test_cleanup_endpoint(api):
    resp = api.post("/api/admin/credits/cleanup/abandoned-checkouts", json={"max_age_hours": 24}, headers=ADMIN)
    body = resp.json()
    assert resp.status_code == 200
    assert body["success"] and body["restored_sessions"] == 0


def test_admin_bulk_grant_and_listing(api):
    grant(api, "u1", "10")
    grant(api, "u2", "10")

    bulk = api.post(
        "/api/admin/credits/add-all", json={"amount": "2.50", "reason": "Launch", "campaign": "launch"}, headers=ADMIN
    ).json()
    assert bulk["users_updated"] == 2

    page = api.get("/api/admin/credits/transactions", params={"limit": 3, "offset": 0}, headers=ADMIN).json()
    assert page["total"] == 4
    assert len(page["transactions"]) == 3
    assert page["limit"] == 3

    balance = api.get("/api/credits/balance", headers=bearer("u2")).json()
    assert Decimal(balance["balance"]) == Decimal("12.50")


def test_bulk_grant_is_admin_only(api):
    resp = api.post("/api/admin/credits/add-all", json={"amount": "1"}, headers=USER)
    assert resp.status_code == 403
