from decimal import Decimal

import pytest

from storecredit.core.money import cents_to_money, display, money
from storecredit.models.order import Order, OrderStatus, ProofStatus
from storecredit.services.payment_reconciler import (
    detect_shipping_method,
    determine_order_status,
    extract_customer,
    is_rush_order,
    parse_cart_data,
    parse_order_note_selections,
)

NOTE = "✂️ Cut: Die Cut\n✨ Material: Holographic\n📏 Size: 3\"\n✨ Kiss Cut: Yes\n✨ Rush: Rush Order\n📋 Proof: Send Proof"


def item(**metadata):
    return {"price": {"product": {"metadata": metadata}}}


def test_note_selections_are_parsed():
    selections = parse_order_note_selections(NOTE)
    assert selections["cut"]["value"] == "Die Cut"
    assert selections["material"]["value"] == "Holographic"
    assert selections["size"]["value"] == '3"'
    assert selections["kiss_cut"]["value"] == "Yes"
    assert selections["rush"]["value"] is True
    assert selections["proof"] == {"value": True, "display_value": "Send Proof"}


def test_no_proof_wins_and_proof_defaults_on():
    assert parse_order_note_selections("❌ No Proof")["proof"]["value"] is False
    assert parse_order_note_selections("📏 Size: 2\"")["proof"]["value"] is True
    assert parse_order_note_selections(None) == {}


def test_rush_requires_exact_label():
    assert is_rush_order("✨ Rush: Rush Order")
    assert not is_rush_order("✨ Rush: Standard")
    assert not is_rush_order("")


@pytest.mark.parametrize(
    "cents,name,expected",
    [
        (4000, "Overnight", ("UPS Next Day Air", True)),
        (2000, "Two day", ("UPS 2nd Day Air", True)),
        (800, "Ground", ("UPS Ground (Tracking Included)", False)),
        (400, "USPS", ("USPS First-Class (Tracking Included)", False)),
        (0, "Local Pickup", ("Local Pickup (Denver, CO)", False)),
        (0, "USPS Stamp", ("USPS Stamp (No Tracking)", False)),
        (0, "USPS First-Class", ("USPS First-Class (Recommended for 10+ Items or Tracking Included)", False)),
        (0, "Free shipping", ("UPS Ground", False)),
        (1234, "UPS Next Day Air Saver", ("UPS Next Day Air Saver", True)),
    ],
)
def test_shipping_method_by_cost(cents, name, expected):
    session = {"shipping_cost": {"amount_total": cents, "shipping_rate": {"display_name": name}}}
    assert detect_shipping_method(session) == expected


def test_unknown_cost_without_name():
    session = {"shipping_cost": {"amount_total": 1234, "shipping_rate": None}}
    assert detect_shipping_method(session) == ("UPS Ground (Unknown cost: $12.34)", False)
    assert detect_shipping_method({}) == (None, False)


def test_status_all_items_without_proof():
    session = {"line_items": {"data": [item(), item()]}}
    assert determine_order_status(session, "❌ No Proof") == (OrderStatus.PRINTING, ProofStatus.APPROVED)


def test_status_mixed_proof_preferences_builds_proof():
    session = {"line_items": {"data": [item(proof="false"), item()]}}
    assert determine_order_status(session, None) == (OrderStatus.BUILDING_PROOF, None)


def test_status_reorder():
    session = {"line_items": {"data": [item(isReorder="true"), item()]}}
    assert determine_order_status(session, None) == (OrderStatus.PRINTING, ProofStatus.APPROVED)


def test_status_without_line_items_builds_proof():
    assert determine_order_status({}, "❌ No Proof") == (OrderStatus.BUILDING_PROOF, None)


def test_customer_falls_back_to_existing_order():
    existing = Order(
        customer_first_name="Sam",
        customer_last_name="Lee",
        customer_email="sam@example.com",
        customer_phone="555",
        shipping_address={"line1": "9 Elm"},
    )
    out = extract_customer({"customer_details": {}}, existing)
    assert out["customer_first_name"] == "Sam"
    assert out["customer_email"] == "sam@example.com"
    assert out["shipping_address"] == {"line1": "9 Elm"}


def test_customer_prefers_shipping_recipient():
    session = {
        "customer_details": {"name": "Payer Person", "email": "payer@example.com"},
        "shipping_details": {"name": "Ship To", "phone": "123", "address": {"line1": "1 Main"}},
    }
    out = extract_customer(session)
    assert (out["customer_first_name"], out["customer_last_name"]) == ("Ship", "To")
    assert out["customer_phone"] == "123"
    assert out["shipping_address"]["line1"] == "1 Main"


def test_cart_data_parsing():
    assert parse_cart_data({"cartData": '{"discountCode": "X"}'}) == {"discountCode": "X"}
    assert parse_cart_data({"cartData": "{not json"}) == {}
    assert parse_cart_data({}) == {}


def test_money_helpers():
    assert money("10.005") == Decimal("10.01")
    assert money("garbage") == Decimal("0.00")
    assert cents_to_money(1999) == Decimal("19.99")
    assert display(Decimal("2.5")) == "$2.50"
