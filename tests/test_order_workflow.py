import logging
from unittest import mock

import mongomock
import pytest
from hypothesis import given, settings, strategies as st

import database
import orders
from conftest import SHIPPING, gem_stock, insert_gem
from errors import AlreadyCancelled, InsufficientStock, InvalidTransition, NotFound
from schemas import OrderCreate, OrderStatus


def make_payload(*lines):
    return OrderCreate.model_validate({
        "items": [{"gemId": gem_id, "quantity": qty, "price": price} for gem_id, qty, price in lines],
        "shippingAddress": SHIPPING,
        "paymentMethod": "upi",
    })


@pytest.mark.parametrize("current,target", [
    (OrderStatus.pending, OrderStatus.confirmed),
    (OrderStatus.confirmed, OrderStatus.processing),
    (OrderStatus.processing, OrderStatus.shipped),
    (OrderStatus.shipped, OrderStatus.delivered),
    (OrderStatus.pending, OrderStatus.cancelled),
    (OrderStatus.confirmed, OrderStatus.cancelled),
    (OrderStatus.processing, OrderStatus.cancelled),
])
def test_allowed_transitions(current, target):
    orders.check_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (OrderStatus.shipped, OrderStatus.cancelled),
    (OrderStatus.delivered, OrderStatus.cancelled),
    (OrderStatus.delivered, OrderStatus.pending),
    (OrderStatus.cancelled, OrderStatus.pending),
    (OrderStatus.pending, OrderStatus.delivered),
    (OrderStatus.confirmed, OrderStatus.pending),
])
def test_rejected_transitions(current, target):
    with pytest.raises(InvalidTransition):
        orders.check_transition(current, target)


def test_cancelling_cancelled_order_is_already_cancelled():
    with pytest.raises(AlreadyCancelled):
        orders.check_transition(OrderStatus.cancelled, OrderStatus.cancelled)


def test_order_ids_are_unique():
    ids = {orders.generate_order_id() for _ in range(2000)}
    assert len(ids) == 2000
    assert all(i.startswith("ORD") for i in ids)


def test_effective_price():
    assert orders.effective_price({"price": 100.0}) == 100.0
    assert orders.effective_price({"price": 100.0, "discount": 15, "discount_type": "percentage"}) == 85.0
    assert orders.effective_price({"price": 100.0, "discount": 30, "discount_type": "fixed"}) == 70.0
    assert orders.effective_price({"price": 20.0, "discount": 30, "discount_type": "fixed"}) == 0.0


def test_concurrent_checkout_loses_race_without_overselling(mongo, monkeypatch):
    gem_id = insert_gem(mongo, stock=5)
    load_gems = orders._load_gems

    def load_then_lose_race(db, gem_ids):
        snapshot = load_gems(db, gem_ids)
        monkeypatch.setattr(orders, "_load_gems", load_gems)
        orders.place_order(db, "user-b", make_payload((gem_id, 3, 1000.0)))
        return snapshot

    monkeypatch.setattr(orders, "_load_gems", load_then_lose_race)
    with pytest.raises(InsufficientStock):
        orders.place_order(mongo, "user-a", make_payload((gem_id, 3, 1000.0)))

    assert gem_stock(mongo, gem_id) == 2
    assert [o["user_id"] for o in mongo["order"].find()] == ["user-b"]
    assert mongo["order_item"].count_documents({}) == 1


def test_partial_reservation_is_released_when_a_later_line_fails(mongo, monkeypatch):
    ruby = insert_gem(mongo, stock=5)
    opal = insert_gem(mongo, name="Opal", stock=2)
    load_gems = orders._load_gems

    def load_then_drain(db, gem_ids):
        snapshot = load_gems(db, gem_ids)
        db["gem"].update_one({"name": "Opal"}, {"$set": {"stock": 0}})
        return snapshot

    monkeypatch.setattr(orders, "_load_gems", load_then_drain)
    with pytest.raises(InsufficientStock) as err:
        orders.place_order(mongo, "user-a", make_payload((ruby, 2, 1000.0), (opal, 1, 300.0)))

    assert err.value.gem_name == "Opal"
    assert gem_stock(mongo, ruby) == 5
    assert mongo["order"].count_documents({}) == 0
    assert mongo["order_item"].count_documents({}) == 0


def test_storage_failure_after_reservation_is_compensated(mongo, monkeypatch):
    gem_id = insert_gem(mongo, stock=5)
    mongo["cart_item"].insert_one({"user_id": "user-a", "gem_id": gem_id, "quantity": 1})
    delete_many = mongomock.collection.Collection.delete_many

    def broken_delete_many(self, *args, **kwargs):
        if self.name == "cart_item":
            raise RuntimeError("connection reset")
        return delete_many(self, *args, **kwargs)

    monkeypatch.setattr(mongomock.collection.Collection, "delete_many", broken_delete_many)
    with pytest.raises(RuntimeError):
        orders.place_order(mongo, "user-a", make_payload((gem_id, 3, 1000.0)))

    assert gem_stock(mongo, gem_id) == 5
    assert mongo["order"].count_documents({}) == 0
    assert mongo["order_item"].count_documents({}) == 0
    assert mongo["cart_item"].count_documents({"user_id": "user-a"}) == 1


def test_duplicate_lines_are_checked_against_combined_quantity(mongo):
    gem_id = insert_gem(mongo, stock=5)
    with pytest.raises(InsufficientStock):
        orders.place_order(mongo, "user-a", make_payload((gem_id, 3, 1000.0), (gem_id, 3, 1000.0)))
    assert gem_stock(mongo, gem_id) == 5
    with pytest.raises(InsufficientStock):
        orders.place_order(mongo, "user-a", make_payload((gem_id, 3, 1000.0), (gem_id.upper(), 3, 1000.0)))
    assert gem_stock(mongo, gem_id) == 5

    orders.place_order(mongo, "user-a", make_payload((gem_id, 2, 1000.0), (gem_id, 3, 1000.0)))
    assert gem_stock(mongo, gem_id) == 0


def test_cancel_restores_recorded_quantities_despite_restock(mongo):
    gem_id = insert_gem(mongo, stock=5)
    placed = orders.place_order(mongo, "user-a", make_payload((gem_id, 4, 1000.0)))
    mongo["gem"].update_one({"name": "Ruby"}, {"$inc": {"stock": 10}})

    orders.cancel_order(mongo, placed["orderId"], "user-a")
    assert gem_stock(mongo, gem_id) == 15


def test_cancel_skips_deleted_gems(mongo):
    ruby = insert_gem(mongo, stock=5)
    opal = insert_gem(mongo, name="Opal", stock=5)
    placed = orders.place_order(mongo, "user-a", make_payload((ruby, 1, 1000.0), (opal, 1, 10.0)))
    mongo["gem"].delete_one({"name": "Opal"})

    orders.cancel_order(mongo, placed["orderId"], "user-a")
    assert gem_stock(mongo, ruby) == 5
    assert mongo["order"].find_one({"order_id": placed["orderId"]})["status"] == "cancelled"


def test_cancel_scoped_to_owner(mongo):
    gem_id = insert_gem(mongo, stock=5)
    placed = orders.place_order(mongo, "user-a", make_payload((gem_id, 1, 1000.0)))
    with pytest.raises(NotFound):
        orders.cancel_order(mongo, placed["orderId"], "user-b")
    with pytest.raises(NotFound):
        orders.get_order(mongo, placed["orderId"], "user-b")


@settings(max_examples=40, deadline=None)
@given(st.lists(
    st.one_of(
        st.tuples(st.just("place"), st.integers(min_value=1, max_value=6)),
        st.tuples(st.just("cancel"), st.integers(min_value=0, max_value=20)),
    ),
    max_size=15,
))
def test_stock_is_conserved_across_place_and_cancel(ops):
    db = mongomock.MongoClient()["gemstore_property"]
    database.ensure_indexes(db)
    initial = 10
    gem_id = insert_gem(db, stock=initial)
    placed = []

    for op, value in ops:
        if op == "place":
            try:
                result = orders.place_order(db, "user-a", make_payload((gem_id, value, 1000.0)))
                placed.append((result["orderId"], value))
            except InsufficientStock:
                pass
        elif placed:
            order_id, _ = placed[value % len(placed)]
            try:
                orders.cancel_order(db, order_id, "user-a")
            except AlreadyCancelled:
                pass

        live = sum(
            qty for order_id, qty in placed
            if db["order"].find_one({"order_id": order_id})["status"] != "cancelled"
        )
        stock = gem_stock(db, gem_id)
        assert stock >= 0
        assert stock == initial - live


@settings(max_examples=60, deadline=None)
@given(
    stock=st.integers(min_value=1, max_value=10),
    qty_a=st.integers(min_value=1, max_value=10),
    qty_b=st.integers(min_value=1, max_value=10),
)
def test_racing_checkouts_never_oversell(stock, qty_a, qty_b):
    db = mongomock.MongoClient()["gemstore_race"]
    database.ensure_indexes(db)
    gem_id = insert_gem(db, stock=stock)
    load_gems = orders._load_gems
    outcome = {}

    # user-b checks out between user-a's snapshot read and its decrement
    def load_then_race(db_, gem_ids):
        snapshot = load_gems(db_, gem_ids)
        with mock.patch.object(orders, "_load_gems", load_gems):
            try:
                orders.place_order(db_, "user-b", make_payload((gem_id, qty_b, 100.0)))
                outcome["b"] = True
            except InsufficientStock:
                outcome["b"] = False
        return snapshot

    with mock.patch.object(orders, "_load_gems", load_then_race):
        try:
            orders.place_order(db, "user-a", make_payload((gem_id, qty_a, 100.0)))
            a_ok = True
        except InsufficientStock:
            a_ok = False

    b_ok = outcome["b"]
    assert b_ok == (qty_b <= stock)
    left_for_a = stock - (qty_b if b_ok else 0)
    assert a_ok == (qty_a <= left_for_a)

    final = gem_stock(db, gem_id)
    assert final >= 0
    assert final == left_for_a - (qty_a if a_ok else 0)
    assert db["order"].count_documents({}) == int(a_ok) + int(b_ok)
    assert db["order_item"].count_documents({}) == int(a_ok) + int(b_ok)


def test_failure_while_restoring_stock_is_logged_as_integrity_incident(mongo, monkeypatch, caplog):
    ruby = insert_gem(mongo, stock=5)
    opal = insert_gem(mongo, name="Opal", stock=5)
    placed = orders.place_order(mongo, "user-a", make_payload((ruby, 2, 1000.0), (opal, 1, 10.0)))
    update_one = mongomock.collection.Collection.update_one
    calls = []

    def flaky_update_one(self, *args, **kwargs):
        if self.name == "gem":
            calls.append(args)
            if len(calls) == 2:
                raise RuntimeError("connection reset")
        return update_one(self, *args, **kwargs)

    monkeypatch.setattr(mongomock.collection.Collection, "update_one", flaky_update_one)
    with caplog.at_level(logging.ERROR, logger="orders"), pytest.raises(RuntimeError):
        orders.cancel_order(mongo, placed["orderId"], "user-a")

    assert gem_stock(mongo, ruby) == 5
    assert gem_stock(mongo, opal) == 4
    assert mongo["order"].find_one({"order_id": placed["orderId"]})["status"] == "cancelled"
    incidents = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(incidents) == 1
    assert "Integrity incident" in incidents[0].getMessage()
    assert placed["orderId"] in incidents[0].getMessage()
    assert incidents[0].exc_info is not None
