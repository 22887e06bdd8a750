from decimal import Decimal

import pytest

from conftest import make_product
from errors import ValidationError
from stores import CartStore, Store


@pytest.fixture
def cart():
    return CartStore()


def test_repeated_adds_merge_into_one_line(cart):
    product = make_product("tea")
    for qty in (1, 2, 4):
        cart.add_item(product, qty)
    assert len(cart.items) == 1
    assert cart.get_item("tea").quantity == 7
    assert cart.item_count == 7


def test_add_keeps_captured_price_and_refreshes_stock(cart):
    cart.add_item(make_product("tea", price=120, stock=5))
    cart.add_item(make_product("tea", price=150, stock=2))
    item = cart.get_item("tea")
    assert item.unit_price == Decimal("120")
    assert item.available_stock == 2


@pytest.mark.parametrize("quantity", [0, -3])
def test_add_rejects_non_positive_quantity(cart, quantity):
    with pytest.raises(ValidationError):
        cart.add_item(make_product("tea"), quantity)
    assert cart.items == []
    assert cart.version == 0


def test_add_accepts_plain_mapping(cart):
    cart.add_item({"id": "mug", "name": "Mug", "price": "250"}, 2)
    assert cart.get_item("mug").unit_price == Decimal("250")


def test_add_rejects_invalid_product(cart):
    with pytest.raises(ValidationError):
        cart.add_item({"id": "mug", "name": "Mug", "price": "-1"})


def test_update_quantity_replaces(cart):
    cart.add_item(make_product("tea"), 2)
    cart.update_quantity("tea", 5)
    assert cart.get_item("tea").quantity == 5


def test_update_to_zero_equals_remove():
    a, b = CartStore(), CartStore()
    for store in (a, b):
        store.add_item(make_product("tea"), 2)
        store.add_item(make_product("mug"), 1)
    a.update_quantity("tea", 0)
    b.remove_item("tea")
    assert a.items == b.items
    assert [i.product_id for i in a.items] == ["mug"]


def test_update_and_remove_absent_are_noops(cart):
    cart.add_item(make_product("tea"))
    version = cart.version
    assert cart.update_quantity("nope", 3) is None
    assert cart.remove_item("nope") is None
    assert cart.version == version


def test_clear_empties_cart(cart):
    cart.add_item(make_product("tea"), 3)
    cart.clear()
    assert cart.items == []
    assert cart.get_grand_total() == Decimal("0")


def test_totals_follow_state(cart):
    cart.add_item(make_product("a", price=100), 2)
    cart.add_item(make_product("b", price=300))
    assert cart.get_subtotal() == Decimal("500")
    assert cart.get_tax() == Decimal("40")
    assert cart.get_shipping() == Decimal("0")
    assert cart.get_grand_total() == Decimal("540")
    cart.update_quantity("b", 0)
    assert cart.get_shipping() == Decimal("50")
    assert cart.get_grand_total() == cart.get_subtotal() + cart.get_tax() + cart.get_shipping()


def test_stock_warnings(cart):
    cart.add_item(make_product("tea", stock=2), 3)
    cart.add_item(make_product("mug", stock=10), 1)
    assert [i.product_id for i in cart.stock_warnings()] == ["tea"]


def test_watchers_see_every_change(cart):
    seen = []
    unwatch = cart.watch(lambda store: seen.append(store.item_count))
    cart.add_item(make_product("tea"))
    cart.add_item(make_product("tea"))
    unwatch()
    cart.clear()
    assert seen == [1, 2]


def test_unbound_mutations_return_no_task(cart):
    assert cart.add_item(make_product("tea")) is None


def test_replace_state_merges_duplicate_lines(cart):
    cart.replace_state({"items": [
        {"product_id": "tea", "name": "Tea", "unit_price": "10", "quantity": 1},
        {"product_id": "tea", "name": "Tea", "unit_price": "10", "quantity": 2},
    ]})
    assert cart.get_item("tea").quantity == 3
    assert cart.version == 0


def test_snapshot_serialises_decimals(cart):
    cart.add_item(make_product("tea", price="12.50"))
    doc = cart.snapshot().model_dump(mode="json")
    assert doc["items"][0]["unit_price"] == "12.50"


def test_store_base_cannot_be_instantiated():
    with pytest.raises(TypeError):
        Store()


def test_merge_applies_local_changes_on_top_of_remote(cart):
    cart.add_item(make_product("kept"))
    cart.add_item(make_product("gone"))
    base = cart.snapshot()
    cart.add_item(make_product("kept"), 2)
    cart.add_item(make_product("new"))
    remote = {"items": [
        {"product_id": "kept", "name": "Kept", "unit_price": "100", "quantity": 4},
        {"product_id": "other", "name": "Other", "unit_price": "20", "quantity": 1},
    ]}
    cart.merge_state(remote, base)
    assert {i.product_id: i.quantity for i in cart.items} == {"kept": 6, "other": 1, "new": 1}
