"""Tests for order persistence and status transitions."""
from datetime import datetime, timezone
from decimal import Decimal

import pydantic
import pytest

from storefront.models import OrderLine, OrderStatus, Requester, ShippingAddress
from storefront.order_service import is_valid_transition
from storefront.results import TransitionOutcome

OWNER = Requester(user_id="user-1")
STRANGER = Requester(user_id="user-2")
ADMIN = Requester(user_id="staff-1", is_administrator=True)


def _create(orders, address, owner="user-1"):
    lines = [
        OrderLine(product_id="SKU-MUG", quantity=2, unit_price=Decimal("12.50")),
        OrderLine(product_id="SKU-TEE", quantity=1, unit_price=Decimal("19.99")),
    ]
    return orders.create(
        owner=owner,
        lines=lines,
        total=Decimal("44.99"),
        shipping_address=address,
        charge_id="pi_1"
    )


def test_create_persists_processing_order(orders, address):
    order = _create(orders, address)

    assert order.status is OrderStatus.PROCESSING
    assert order.total == Decimal("44.99")
    assert orders.get(order.order_id).model_dump() == order.model_dump()


def test_order_numbers_count_per_month(orders, address):
    period = datetime.now(timezone.utc).strftime("%y%m")

    first = _create(orders, address)
    second = _create(orders, address)

    assert first.order_number == f"ORD-{period}-0001"
    assert second.order_number == f"ORD-{period}-0002"
    assert first.order_id != second.order_id


def test_total_must_match_lines(orders, address):
    with pytest.raises(pydantic.ValidationError):
        orders.create(
            owner="user-1",
            lines=[OrderLine(product_id="SKU-MUG", quantity=2, unit_price=Decimal("12.50"))],
            total=Decimal("30.00"),
            shipping_address=address,
            charge_id="pi_1"
        )


def test_total_is_frozen(orders, address):
    order = _create(orders, address)

    with pytest.raises(pydantic.ValidationError):
        order.total = Decimal("1.00")


def test_country_is_stored_lowercase():
    address = ShippingAddress(street="1 Main St", city="Austin", state="TX", zip_code="73301", country=" US ")
    assert address.country == "us"


def test_address_requires_every_field():
    with pytest.raises(pydantic.ValidationError):
        ShippingAddress(street=" ", city="Austin", state="TX", zip_code="73301", country="us")


@pytest.mark.parametrize("current, new, valid", [
    (OrderStatus.PROCESSING, OrderStatus.SHIPPED, True),
    (OrderStatus.PROCESSING, OrderStatus.DELIVERED, True),
    (OrderStatus.SHIPPED, OrderStatus.PROCESSING, False),
    (OrderStatus.SHIPPED, OrderStatus.CANCELLED, True),
    (OrderStatus.DELIVERED, OrderStatus.DELIVERED, True),
    (OrderStatus.DELIVERED, OrderStatus.CANCELLED, False),
    (OrderStatus.DELIVERED, OrderStatus.REFUNDED, False),
    (OrderStatus.CANCELLED, OrderStatus.PROCESSING, False),
    (OrderStatus.REFUNDED, OrderStatus.CANCELLED, False),
])
def test_transition_rules(current, new, valid):
    assert is_valid_transition(current, new) is valid


def test_owner_moves_order_forward(orders, address):
    order = _create(orders, address)

    shipped = orders.transition_status(order.order_id, OWNER, "shipped")
    delivered = orders.transition_status(order.order_id, OWNER, "delivered")

    assert shipped.ok and delivered.ok
    assert orders.get(order.order_id).status is OrderStatus.DELIVERED
    assert orders.get(order.order_id).total == order.total


def test_delivered_order_is_final(orders, address):
    order = _create(orders, address)
    orders.transition_status(order.order_id, ADMIN, "delivered")

    result = orders.transition_status(order.order_id, ADMIN, "cancelled")

    assert result.outcome is TransitionOutcome.INVALID_TRANSITION
    assert orders.get(order.order_id).status is OrderStatus.DELIVERED


def test_unknown_status_is_invalid(orders, address):
    order = _create(orders, address)

    result = orders.transition_status(order.order_id, OWNER, "teleported")

    assert result.outcome is TransitionOutcome.INVALID_TRANSITION


def test_stranger_is_forbidden(orders, address):
    order = _create(orders, address)

    result = orders.transition_status(order.order_id, STRANGER, "shipped")

    assert result.outcome is TransitionOutcome.FORBIDDEN
    assert orders.get(order.order_id).status is OrderStatus.PROCESSING


def test_administrator_may_transition_any_order(orders, address):
    order = _create(orders, address)

    assert orders.transition_status(order.order_id, ADMIN, "shipped").ok


def test_transition_of_missing_order(orders):
    assert orders.transition_status("missing", ADMIN, "shipped").outcome is TransitionOutcome.NOT_FOUND


def test_list_orders_pages_newest_first(orders, address):
    created = [_create(orders, address) for _ in range(3)]
    _create(orders, address, owner="user-2")

    first_page = orders.list_orders("user-1", page=1, limit=2)
    second_page = orders.list_orders("user-1", page=2, limit=2)

    assert first_page.total_orders == 3
    assert first_page.total_pages == 2
    assert len(first_page.orders) == 2
    assert len(second_page.orders) == 1
    listed = {o.order_id for o in first_page.orders + second_page.orders}
    assert listed == {o.order_id for o in created}


def test_find_by_charge(orders, address):
    order = _create(orders, address)

    assert orders.find_by_charge("pi_1").order_id == order.order_id
    assert orders.find_by_charge("pi_unknown") is None


def test_record_refunds_keeps_status(orders, address):
    order = _create(orders, address)

    orders.record_refunds(order.order_id, ["re_1"])
    updated = orders.record_refunds(order.order_id, ["re_1", "re_2"])

    assert updated.refund_ids == ["re_1", "re_2"]
    assert updated.status is OrderStatus.PROCESSING
    assert orders.get(order.order_id).refund_ids == ["re_1", "re_2"]
    assert orders.record_refunds("missing", ["re_3"]) is None
