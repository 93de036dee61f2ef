import json

import pytest

from marketplace.cart.store import CartStore, cart_key, recompute_cart
from marketplace.config import CART_TTL_SECONDS
from marketplace.errors import ItemNotInCart

VENDOR_A = "11111111-1111-4111-8111-111111111111"
VENDOR_B = "22222222-2222-4222-8222-222222222222"

def _line(product_id, vendor_id, quantity, unit_price):
    return {"product_id": product_id, "variant_id": None, "vendor_id": vendor_id,
            "title": product_id, "quantity": quantity, "unit_price": unit_price}

def test_recompute_partitions_by_vendor_in_first_seen_order():
    cart = {
        "buyer_id": "b1",
        "items": [_line("p1", VENDOR_A, 2, "30.00"), _line("p2", VENDOR_B, 1, "25.00"), _line("p3", VENDOR_A, 1, "1.50")],
        "shipping": {VENDOR_A: {"method": "standard", "cost": "5.00"}},
    }
    recompute_cart(cart)
    assert [v["vendor_id"] for v in cart["vendors"]] == [VENDOR_A, VENDOR_B]
    a, b = cart["vendors"]
    assert a["subtotal"] == "61.50"
    assert a["shipping_cost"] == "5.00"
    assert a["total"] == "66.50"
    assert b["shipping_cost"] == "0.00"
    assert cart["subtotal"] == "86.50"
    assert cart["shipping_total"] == "5.00"
    assert cart["total"] == "91.50"
    assert cart["item_count"] == 4

def test_recompute_prunes_shipping_of_absent_vendor():
    cart = {"buyer_id": "b1", "items": [_line("p1", VENDOR_A, 1, "10.00")],
            "shipping": {VENDOR_B: {"method": "express", "cost": "9.00"}}}
    recompute_cart(cart)
    assert cart["shipping"] == {}
    assert cart["total"] == "10.00"

def test_missing_cart_reads_as_empty(fake_redis):
    store = CartStore(fake_redis)
    cart = store.load("nobody")
    assert cart["items"] == []
    assert cart["total"] == "0.00"

def test_read_renews_ttl(fake_redis):
    store = CartStore(fake_redis)
    store.mutate("b1", lambda c: c["items"].append(_line("p1", VENDOR_A, 1, "10.00")))
    fake_redis.expire(cart_key("b1"), 10)
    # Act
    store.load("b1")
    # Assert
    assert fake_redis.ttl(cart_key("b1")) > CART_TTL_SECONDS - 5

def test_expired_cart_is_empty_not_error(fake_redis):
    store = CartStore(fake_redis, ttl_seconds=1)
    store.mutate("b1", lambda c: c["items"].append(_line("p1", VENDOR_A, 1, "10.00")))
    fake_redis.delete(cart_key("b1"))  # équivalent d'une expiration
    assert store.load("b1")["items"] == []

def test_mutation_persists_recomputed_totals(fake_redis):
    store = CartStore(fake_redis)
    store.mutate("b1", lambda c: c["items"].append(_line("p1", VENDOR_A, 3, "2.00")))
    stored = json.loads(fake_redis.get(cart_key("b1")))
    assert stored["total"] == "6.00"
    assert stored["vendors"][0]["items"][0]["total_price"] == "6.00"

def test_failed_mutator_writes_nothing(fake_redis):
    store = CartStore(fake_redis)
    store.mutate("b1", lambda c: c["items"].append(_line("p1", VENDOR_A, 1, "10.00")))
    before = fake_redis.get(cart_key("b1"))

    def _boom(cart):
        cart["items"].clear()
        raise ItemNotInCart("x")

    with pytest.raises(ItemNotInCart):
        store.mutate("b1", _boom)
    assert fake_redis.get(cart_key("b1")) == before

def test_concurrent_write_triggers_retry_without_lost_update(fake_redis):
    store = CartStore(fake_redis)
    store.mutate("b1", lambda c: c["items"].append(_line("p1", VENDOR_A, 1, "10.00")))
    attempts = {"n": 0}

    def _racing_add(cart):
        attempts["n"] += 1
        if attempts["n"] == 1:
            # un autre onglet écrit entre le WATCH et l'EXEC
            other = CartStore(fake_redis)
            other.mutate("b1", lambda c: c["items"].append(_line("p2", VENDOR_B, 1, "25.00")))
        cart["items"].append(_line("p3", VENDOR_A, 1, "1.00"))

    cart = store.mutate("b1", _racing_add)
    assert attempts["n"] == 2
    assert sorted(i["product_id"] for i in cart["items"]) == ["p1", "p2", "p3"]

def test_emptied_cart_is_deleted(fake_redis):
    store = CartStore(fake_redis)
    store.mutate("b1", lambda c: c["items"].append(_line("p1", VENDOR_A, 1, "10.00")))
    store.mutate("b1", lambda c: c["items"].clear())
    assert fake_redis.exists(cart_key("b1")) == 0
