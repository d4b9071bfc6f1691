from datetime import datetime

import pytest

from orders import next_order_number, recompute_pricing
from schemas import Order, OrderItem, Pricing, compute_totals, money


def test_money_rounds_to_cents():
    assert money(3.192) == 3.19
    assert money(None) == 0
    assert money("2.505") == pytest.approx(2.5, abs=0.01)


def test_compute_totals_ignores_supplied_subtotals():
    items = [{"price": 2.5, "quantity": 2, "subtotal": 999}, {"price": 1.99, "quantity": 3}]
    pricing = compute_totals(items, {"delivery_fee": 3.99, "tax": 0.5, "discount": 1, "total": 0})
    assert [i["subtotal"] for i in items] == [5.0, 5.97]
    assert pricing["subtotal"] == 10.97
    assert pricing["total"] == 14.46


def test_order_model_recomputes_on_build():
    order = Order(
        order_number="AFM-2026-000001",
        customer="c1",
        vendor="v1",
        items=[OrderItem(product="p1", name="Yam", price=4.25, quantity=2, subtotal=1)],
        pricing=Pricing(subtotal=1, delivery_fee=2, total=1),
    )
    assert order.items[0].subtotal == 8.5
    assert order.pricing.subtotal == 8.5
    assert order.pricing.total == 10.5
    assert order.status == "pending"
    assert order.picking.status == "pending"


def test_recompute_pricing_on_stored_document():
    doc = {"items": [{"price": 1.1, "quantity": 3}], "pricing": {"delivery_fee": 0, "discount": 0.3}}
    recompute_pricing(doc)
    assert doc["pricing"]["subtotal"] == 3.3
    assert doc["pricing"]["total"] == 3.0


def test_order_numbers_are_sequential_per_year(mdb):
    now = datetime(2026, 3, 1)
    assert next_order_number(mdb, now) == "AFM-2026-000001"
    assert next_order_number(mdb, now) == "AFM-2026-000002"
    assert next_order_number(mdb, datetime(2027, 1, 1)) == "AFM-2027-000001"
    assert next_order_number(mdb, now) == "AFM-2026-000003"
