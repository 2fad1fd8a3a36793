"""Tests for cart operations."""
from decimal import Decimal

import pytest

from storefront.config import Config
from storefront.exceptions import (
    CheckoutInProgressError,
    LimitExceededError,
    ProductNotFoundError,
    ValidationError,
)


def _quantities(cart):
    return [(line.product_id, line.quantity) for line in cart.lines]


def test_unknown_owner_has_empty_cart(carts):
    cart = carts.get_or_create("user-1")

    assert cart.owner == "user-1"
    assert cart.is_empty
    assert cart.updated_at is None


def test_first_add_creates_cart(carts):
    result = carts.add_item("user-1", "SKU-MUG", 2)

    assert result == {"quantity": 2, "is_new": True}
    cart = carts.get_or_create("user-1")
    assert _quantities(cart) == [("SKU-MUG", 2)]
    assert cart.updated_at is not None


def test_re_adding_a_product_sums_into_one_line(carts):
    carts.add_item("user-1", "SKU-MUG", 2)
    result = carts.add_item("user-1", "SKU-MUG", 3)

    assert result == {"quantity": 5, "is_new": False}
    assert _quantities(carts.get_or_create("user-1")) == [("SKU-MUG", 5)]


def test_lines_keep_insertion_order(carts):
    for product_id in ("SKU-TEE", "SKU-MUG", "SKU-CAP"):
        carts.add_item("user-1", product_id, 1)
    carts.add_item("user-1", "SKU-TEE", 1)

    assert _quantities(carts.get_or_create("user-1")) == [
        ("SKU-TEE", 2), ("SKU-MUG", 1), ("SKU-CAP", 1)
    ]


@pytest.mark.parametrize("quantity", [0, -3])
def test_add_rejects_non_positive_quantity(carts, quantity):
    with pytest.raises(ValidationError):
        carts.add_item("user-1", "SKU-MUG", quantity)


def test_add_rejects_quantity_over_line_cap(carts):
    with pytest.raises(LimitExceededError):
        carts.add_item("user-1", "SKU-MUG", 101)


def test_merged_quantity_over_line_cap_is_refused(carts):
    carts.add_item("user-1", "SKU-MUG", 60)

    with pytest.raises(LimitExceededError):
        carts.add_item("user-1", "SKU-MUG", 41)
    assert _quantities(carts.get_or_create("user-1")) == [("SKU-MUG", 60)]


def test_update_sets_absolute_quantity(carts):
    carts.add_item("user-1", "SKU-MUG", 2)
    result = carts.update_quantity("user-1", "SKU-MUG", 7)

    assert result == {"quantity": 7, "removed": False}
    assert _quantities(carts.get_or_create("user-1")) == [("SKU-MUG", 7)]


def test_update_to_zero_removes_line(carts):
    carts.add_item("user-1", "SKU-MUG", 2)
    carts.add_item("user-1", "SKU-TEE", 1)
    result = carts.update_quantity("user-1", "SKU-MUG", 0)

    assert result["removed"] is True
    assert _quantities(carts.get_or_create("user-1")) == [("SKU-TEE", 1)]


def test_update_missing_line(carts):
    with pytest.raises(ProductNotFoundError):
        carts.update_quantity("user-1", "SKU-MUG", 1)


def test_remove_item(carts):
    carts.add_item("user-1", "SKU-MUG", 2)

    assert carts.remove_item("user-1", "SKU-MUG") is True
    assert carts.remove_item("user-1", "SKU-MUG") is False
    assert carts.get_or_create("user-1").is_empty


def test_clear_empties_but_keeps_cart(carts):
    carts.add_item("user-1", "SKU-MUG", 2)
    carts.add_item("user-1", "SKU-TEE", 1)

    assert carts.clear_cart("user-1") == 2
    cart = carts.get_or_create("user-1")
    assert cart.is_empty
    assert cart.updated_at is not None


def test_snapshot_is_ordered_and_immutable(carts):
    carts.add_item("user-1", "SKU-TEE", 1)
    carts.add_item("user-1", "SKU-MUG", 4)

    snapshot = carts.snapshot_for_checkout("user-1")

    assert isinstance(snapshot, tuple)
    assert [(l.product_id, l.quantity) for l in snapshot] == [("SKU-TEE", 1), ("SKU-MUG", 4)]


def test_checkout_lock_freezes_cart(carts):
    carts.add_item("user-1", "SKU-MUG", 1)
    assert carts.lock_for_checkout("user-1", "token-a") is True
    assert carts.lock_for_checkout("user-1", "token-b") is False

    with pytest.raises(CheckoutInProgressError):
        carts.add_item("user-1", "SKU-MUG", 1)
    with pytest.raises(CheckoutInProgressError):
        carts.update_quantity("user-1", "SKU-MUG", 3)
    with pytest.raises(CheckoutInProgressError):
        carts.remove_item("user-1", "SKU-MUG")
    with pytest.raises(CheckoutInProgressError):
        carts.clear_cart("user-1", "token-b")

    assert carts.unlock_checkout("user-1", "token-b") is False
    assert carts.clear_cart("user-1", "token-a") == 1
    assert carts.unlock_checkout("user-1", "token-a") is True

    carts.add_item("user-1", "SKU-MUG", 1)
    assert _quantities(carts.get_or_create("user-1")) == [("SKU-MUG", 1)]


def test_checkout_lock_does_not_block_other_owners(carts):
    carts.lock_for_checkout("user-1", "token-a")

    carts.add_item("user-2", "SKU-MUG", 1)
    assert _quantities(carts.get_or_create("user-2")) == [("SKU-MUG", 1)]


def test_merge_guest_cart_into_user_cart(carts):
    carts.add_item("guest-abc", "SKU-MUG", 2, is_guest=True)
    carts.add_item("guest-abc", "SKU-CAP", 1, is_guest=True)
    carts.add_item("user-1", "SKU-MUG", 3)

    result = carts.merge_carts("guest-abc", "user-1")

    assert result == {"merged": 2, "conflicts": 1, "dropped": 0}
    assert _quantities(carts.get_or_create("user-1")) == [("SKU-MUG", 5), ("SKU-CAP", 1)]
    assert carts.get_or_create("guest-abc", is_guest=True).is_empty


def test_merge_caps_line_quantity(carts):
    carts.add_item("guest-abc", "SKU-MUG", 80, is_guest=True)
    carts.add_item("user-1", "SKU-MUG", 70)

    carts.merge_carts("guest-abc", "user-1")

    assert _quantities(carts.get_or_create("user-1")) == [("SKU-MUG", 100)]


def test_guest_and_user_carts_never_share_keys(carts):
    carts.add_item("user-1", "SKU-MUG", 2)
    carts.add_item("user-1", "SKU-TEE", 1, is_guest=True)

    assert _quantities(carts.get_or_create("user-1")) == [("SKU-MUG", 2)]
    assert _quantities(carts.get_or_create("user-1", is_guest=True)) == [("SKU-TEE", 1)]

    # A guest cart id equal to a user id merges only the guest lines
    carts.merge_carts("user-1", "user-1")

    assert _quantities(carts.get_or_create("user-1")) == [("SKU-MUG", 2), ("SKU-TEE", 1)]
    assert carts.get_or_create("user-1", is_guest=True).is_empty


def test_merge_never_reads_another_users_cart(carts):
    carts.add_item("user-1", "SKU-MUG", 3)

    result = carts.merge_carts("user-1", "user-2")

    assert result["merged"] == 0
    assert _quantities(carts.get_or_create("user-1")) == [("SKU-MUG", 3)]
    assert carts.get_or_create("user-2").is_empty


def test_clear_keeps_guest_cart_ttl(carts, fake_redis):
    carts.add_item("guest-abc", "SKU-MUG", 1, is_guest=True)

    carts.clear_cart("guest-abc", is_guest=True)

    ttl = fake_redis.ttl("cart:guest:guest-abc:updated_at")
    assert 0 < ttl <= Config.GUEST_CART_TTL_SECONDS
    assert carts.get_or_create("guest-abc", is_guest=True).updated_at is not None


def test_clear_user_cart_uses_user_ttl(carts, fake_redis):
    carts.add_item("user-1", "SKU-MUG", 1)

    carts.clear_cart("user-1")

    assert fake_redis.ttl("cart:user:user-1:updated_at") > Config.GUEST_CART_TTL_SECONDS


def test_total_uses_current_prices(carts, seeded, catalog):
    carts.add_item("user-1", "SKU-MUG", 2)
    carts.add_item("user-1", "SKU-TEE", 1)

    assert carts.total("user-1") == Decimal("44.99")

    catalog.set_product("SKU-MUG", "Mug", Decimal("10.00"))
    assert carts.total("user-1") == Decimal("39.99")
