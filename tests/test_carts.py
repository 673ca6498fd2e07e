"""Tests for the cart store."""

import pytest
from bson import ObjectId

from errors import CartItemNotFound, OutOfStock, ProductUnavailable, ValidationError


def test_first_add_creates_cart(carts, buyer, make_product):
    product_id = make_product(price=40.0, quantity=10)

    cart = carts.add(str(buyer["_id"]), product_id, 3)

    assert cart["user_id"] == str(buyer["_id"])
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 3
    assert cart["items"][0]["product"]["name"] == "Yam tubers"
    assert cart["total"] == 120.0


def test_adding_same_product_merges_lines(carts, buyer, make_product):
    product_id = make_product(quantity=10)
    carts.add(str(buyer["_id"]), product_id, 3)

    cart = carts.add(str(buyer["_id"]), product_id, 4)

    assert [item["quantity"] for item in cart["items"]] == [7]


def test_add_beyond_stock(carts, buyer, make_product):
    product_id = make_product(quantity=5)
    carts.add(str(buyer["_id"]), product_id, 4)

    with pytest.raises(OutOfStock) as exc_info:
        carts.add(str(buyer["_id"]), product_id, 2)
    assert exc_info.value.available == 5


def test_add_rechecks_stock_on_retry(db, carts, buyer, make_product, monkeypatch):
    product_id = make_product(quantity=5)
    user_id = str(buyer["_id"])
    carts.add(user_id, product_id, 1)
    real_find = carts.find
    reads = []

    def find_during_sale(uid):
        cart = real_find(uid)
        if not reads:
            # a concurrent request rewrites the cart while stock drops to one unit
            db["cart"].update_one({"_id": cart["_id"]}, {"$inc": {"version": 1}})
            db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"quantity": 1}})
        reads.append(uid)
        return cart

    monkeypatch.setattr(carts, "find", find_during_sale)

    with pytest.raises(OutOfStock) as exc_info:
        carts.add(user_id, product_id, 1)

    assert len(reads) == 2
    assert exc_info.value.available == 1
    assert [item["quantity"] for item in real_find(user_id)["items"]] == [1]


def test_add_unknown_product(carts, buyer):
    with pytest.raises(ProductUnavailable):
        carts.add(str(buyer["_id"]), str(ObjectId()), 1)


def test_line_quantity_capped(carts, buyer, make_product):
    product_id = make_product(quantity=500)
    carts.add(str(buyer["_id"]), product_id, 100)

    with pytest.raises(ValidationError):
        carts.add(str(buyer["_id"]), product_id, 1)


def test_view_clamps_to_stock_and_drops_missing(db, carts, buyer, make_product):
    kept = make_product(name="Beans", quantity=10)
    gone = make_product(name="Okra", quantity=10)
    carts.add(str(buyer["_id"]), kept, 6)
    carts.add(str(buyer["_id"]), gone, 2)
    db["product"].update_one({"_id": ObjectId(kept)}, {"$set": {"quantity": 4}})
    db["product"].update_one({"_id": ObjectId(gone)}, {"$set": {"deleted": True}})

    cart = carts.view(str(buyer["_id"]))

    assert [(item["product_id"], item["quantity"]) for item in cart["items"]] == [(kept, 4)]
    stored = carts.find(str(buyer["_id"]))
    assert [(item["product_id"], item["quantity"]) for item in stored["items"]] == [(kept, 4)]


def test_view_without_cart(carts, buyer):
    assert carts.view(str(buyer["_id"]))["items"] == []


def test_update_quantity(carts, buyer, make_product):
    product_id = make_product(quantity=8)
    item_id = carts.add(str(buyer["_id"]), product_id, 1)["items"][0]["item_id"]

    cart = carts.update_quantity(str(buyer["_id"]), item_id, 8)
    assert cart["items"][0]["quantity"] == 8

    with pytest.raises(OutOfStock):
        carts.update_quantity(str(buyer["_id"]), item_id, 9)


def test_update_line_of_removed_product(db, carts, buyer, make_product):
    product_id = make_product()
    item_id = carts.add(str(buyer["_id"]), product_id, 1)["items"][0]["item_id"]
    db["product"].delete_one({"_id": ObjectId(product_id)})

    with pytest.raises(ProductUnavailable):
        carts.update_quantity(str(buyer["_id"]), item_id, 2)
    assert carts.find(str(buyer["_id"]))["items"] == []


def test_remove_and_clear(carts, buyer, make_product, stock):
    first = make_product(name="Rice")
    second = make_product(name="Millet")
    carts.add(str(buyer["_id"]), first, 1)
    cart = carts.add(str(buyer["_id"]), second, 1)

    cart = carts.remove(str(buyer["_id"]), cart["items"][0]["item_id"])
    assert [item["product_id"] for item in cart["items"]] == [second]

    with pytest.raises(CartItemNotFound):
        carts.remove(str(buyer["_id"]), "missing")

    assert carts.clear(str(buyer["_id"])) is True
    assert carts.find(str(buyer["_id"])) is None
    assert stock(first) == 5
