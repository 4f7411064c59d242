from datetime import date, timedelta

import pytest
from bson import ObjectId

from errors import AuthorizationFailure, BusinessRuleViolation, NotFound
from schemas import GearCreate, OrderCreate, OrderStatusUpdate


@pytest.fixture
def tent(orders, alice):
    return orders.create_gear(alice, GearCreate(name="Two-person tent", price={"amount": 12.5, "currency": "EUR"}))


@pytest.fixture
def stove(orders, alice):
    return orders.create_gear(alice, GearCreate(name="Gas stove", price={"amount": 4, "currency": "EUR"}))


def _order(orders, buyer, *lines, rental_days=None):
    items = []
    for gear, quantity in lines:
        item = {"gear_id": str(gear["_id"]), "quantity": quantity}
        if rental_days is not None:
            start = date.today() + timedelta(days=3)
            item["rental_period"] = {"start_date": start, "end_date": start + timedelta(days=rental_days)}
        items.append(item)
    payload = OrderCreate(items=items, delivery_method="pickup", payment_method="cash")
    return orders.create_order(buyer, payload)


def test_order_total_multiplies_quantity_and_rental_days(orders, tent, stove, bob, alice):
    order = _order(orders, bob, (tent, 2), (stove, 1), rental_days=3)

    assert order["total_amount"] == {"amount": 87.0, "currency": "EUR"}
    assert order["seller_id"] == alice["id"]
    assert order["buyer_id"] == bob["id"]
    assert order["status"] == "pending"
    assert order["items"][0]["rental_period"]["days"] == 3


def test_order_rules(orders, tent, alice, bob, carol):
    with pytest.raises(BusinessRuleViolation):
        _order(orders, alice, (tent, 1))
    with pytest.raises(BusinessRuleViolation):
        _order(orders, bob, (tent, 1), rental_days=0)

    kayak = orders.create_gear(carol, GearCreate(name="Kayak", price={"amount": 30, "currency": "EUR"}))
    with pytest.raises(BusinessRuleViolation, match="same seller"):
        _order(orders, bob, (tent, 1), (kayak, 1))

    with pytest.raises(NotFound):
        _order(orders, bob, ({"_id": ObjectId()}, 1))


def test_unavailable_gear_cannot_be_ordered(db, orders, tent, bob):
    db["gear"].update_one({"_id": tent["_id"]}, {"$set": {"availability.is_available": False}})
    with pytest.raises(BusinessRuleViolation, match="not available"):
        _order(orders, bob, (tent, 1))
    assert orders.list_gear() == []


def test_order_visibility(orders, tent, alice, bob, carol):
    order = _order(orders, bob, (tent, 1))
    order_id = str(order["_id"])

    assert orders.get_order(order_id, alice)["_id"] == order["_id"]
    assert orders.get_order(order_id, bob)["_id"] == order["_id"]
    with pytest.raises(AuthorizationFailure):
        orders.get_order(order_id, carol)
    assert orders.get_user_orders(alice)["pagination"]["total_items"] == 1
    assert orders.get_user_orders(carol)["orders"] == []


def test_status_follows_transitions(orders, tent, alice, bob):
    order_id = str(_order(orders, bob, (tent, 1))["_id"])

    with pytest.raises(AuthorizationFailure):
        orders.update_order_status(order_id, bob, OrderStatusUpdate(status="confirmed"))
    with pytest.raises(BusinessRuleViolation):
        orders.update_order_status(order_id, alice, OrderStatusUpdate(status="shipped"))

    orders.update_order_status(order_id, alice, OrderStatusUpdate(status="confirmed"))
    delivered = orders.update_order_status(order_id, alice, OrderStatusUpdate(status="delivered", notes="Handed over"))

    assert delivered["status"] == "delivered"
    assert delivered["delivery_date"] is not None
    assert delivered["notes"] == "Handed over"


def test_cancel_only_before_shipping(orders, tent, alice, bob):
    pending = str(_order(orders, bob, (tent, 1))["_id"])
    cancelled = orders.cancel_order(pending, bob, "Plans changed")
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancellation_reason"] == "Plans changed"

    shipped = str(_order(orders, bob, (tent, 1))["_id"])
    orders.update_order_status(shipped, alice, OrderStatusUpdate(status="confirmed"))
    orders.update_order_status(shipped, alice, OrderStatusUpdate(status="shipped"))
    with pytest.raises(BusinessRuleViolation):
        orders.cancel_order(shipped, bob)


def test_refund_defaults_to_total_and_happens_once(orders, make_user, tent, alice, bob):
    order_id = str(_order(orders, bob, (tent, 2))["_id"])

    with pytest.raises(AuthorizationFailure):
        orders.process_refund(order_id, bob)
    with pytest.raises(BusinessRuleViolation):
        orders.process_refund(order_id, alice, amount=100)

    admin = make_user("Admin", role="admin")
    refunded = orders.process_refund(order_id, admin, reason="Tent torn")

    assert refunded["status"] == "refunded"
    assert refunded["payment_status"] == "refunded"
    assert refunded["refund"]["amount"] == 25.0
    with pytest.raises(BusinessRuleViolation):
        orders.process_refund(order_id, alice)
