"""
Order lifecycle engine: creation, the seller's forward transitions and the
customer's cancellation window.
"""
from datetime import datetime, timedelta

import mongomock
import pytest
from bson import ObjectId

from errors import AuthError, InvalidTransitionError, NotFoundError, ValidationError
from models import OrderStatus, PaymentMethod, UserRole
from services import order_service
from services.order_service import ALLOWED_TRANSITIONS, load_order

from conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    OTHER_CUSTOMER_ID,
    OTHER_SELLER_ID,
    SELLER_ID,
    advance,
)

ADDRESS = "12 Bogyoke Rd, Yangon"


# ────────────────────────────────────────────
# create_order
# ────────────────────────────────────────────

def test_create_order_totals_and_initial_status(placed_order, med_a, med_b):
    assert placed_order.total_amount == 25.00
    assert placed_order.status is OrderStatus.PLACED
    assert placed_order.payment_method is PaymentMethod.CASH_ON_DELIVERY
    assert [(it.medicine_id, it.quantity, it.price) for it in placed_order.items] == [
        (med_a, 2, 10.0),
        (med_b, 1, 5.0),
    ]
    assert placed_order.order_number.startswith("ORD-")
    assert placed_order.created_at == placed_order.updated_at


def test_create_order_applies_discount_with_half_up_rounding(db, add_medicine):
    mid = add_medicine(selling_price=10.05, discount_percent=50)
    order = order_service.create_order(db, CUSTOMER_ID, SELLER_ID, ADDRESS, [{"medicine_id": mid, "quantity": 3}])

    assert order.items[0].price == 5.03
    assert order.total_amount == 15.09


def test_create_order_ignores_client_price(db, med_a):
    order = order_service.create_order(
        db, CUSTOMER_ID, SELLER_ID, ADDRESS, [{"medicine_id": med_a, "quantity": 1, "price": 0.01}]
    )
    assert order.total_amount == 10.0


def test_order_numbers_are_unique(place_order):
    numbers = {place_order().order_number for _ in range(5)}
    assert len(numbers) == 5


def test_total_is_a_snapshot(db, placed_order, med_a):
    db.Medicine.update_one({"_id": ObjectId(med_a)}, {"$set": {"selling_price": 99.0}})
    assert load_order(db, placed_order.id).total_amount == 25.00


def test_create_order_requires_customer(db, med_a):
    with pytest.raises(AuthError):
        order_service.create_order(db, None, SELLER_ID, ADDRESS, [{"medicine_id": med_a, "quantity": 1}])


def test_create_order_rejects_empty_items(db):
    with pytest.raises(ValidationError):
        order_service.create_order(db, CUSTOMER_ID, SELLER_ID, ADDRESS, [])


def test_create_order_rejects_blank_address(db, med_a):
    with pytest.raises(ValidationError):
        order_service.create_order(db, CUSTOMER_ID, SELLER_ID, "   ", [{"medicine_id": med_a, "quantity": 1}])


@pytest.mark.parametrize("quantity", [0, -1, 2.5, True])
def test_create_order_rejects_bad_quantity(db, med_a, quantity):
    with pytest.raises(ValidationError):
        order_service.create_order(db, CUSTOMER_ID, SELLER_ID, ADDRESS, [{"medicine_id": med_a, "quantity": quantity}])


def test_create_order_rejects_unknown_medicine(db):
    with pytest.raises(ValidationError) as exc_info:
        order_service.create_order(
            db, CUSTOMER_ID, SELLER_ID, ADDRESS, [{"medicine_id": "64b7f0c2a1b2c3d4e5f60718", "quantity": 1}]
        )
    assert "not found" in exc_info.value.detail[0]


def test_create_order_rejects_inactive_and_expired_medicine(db, add_medicine):
    inactive = add_medicine(name="Old stock", is_active=False)
    expired = add_medicine(name="Expired", expiration_date=datetime.utcnow() - timedelta(days=1))

    for mid in (inactive, expired):
        with pytest.raises(ValidationError):
            order_service.create_order(db, CUSTOMER_ID, SELLER_ID, ADDRESS, [{"medicine_id": mid, "quantity": 1}])


def test_create_order_rejects_other_sellers_medicine(db, med_a, add_medicine):
    foreign = add_medicine(name="Ibuprofen", seller_id=OTHER_SELLER_ID)
    with pytest.raises(ValidationError) as exc_info:
        order_service.create_order(
            db, CUSTOMER_ID, SELLER_ID, ADDRESS,
            [{"medicine_id": med_a, "quantity": 1}, {"medicine_id": foreign, "quantity": 1}],
        )
    assert "not sold by this seller" in exc_info.value.detail[0]


def test_create_order_checks_available_stock(db, add_medicine):
    # available = stock - reserved = 3
    mid = add_medicine(stock=5, reserved=2)
    with pytest.raises(ValidationError):
        order_service.create_order(db, CUSTOMER_ID, SELLER_ID, ADDRESS, [{"medicine_id": mid, "quantity": 4}])

    order = order_service.create_order(db, CUSTOMER_ID, SELLER_ID, ADDRESS, [{"medicine_id": mid, "quantity": 3}])
    # stock is only checked, never decremented
    assert db.Medicine.find_one({"_id": ObjectId(mid)})["stock"] == 5
    assert order.total_amount == 30.0


def test_create_order_rejects_duplicate_lines(db, med_a):
    with pytest.raises(ValidationError):
        order_service.create_order(
            db, CUSTOMER_ID, SELLER_ID, ADDRESS,
            [{"medicine_id": med_a, "quantity": 1}, {"medicine_id": med_a, "quantity": 2}],
        )


# ────────────────────────────────────────────
# update_order_status
# ────────────────────────────────────────────

def test_seller_walks_order_to_delivered(db, placed_order):
    order = advance(db, placed_order, OrderStatus.DELIVERED)
    assert order.status is OrderStatus.DELIVERED
    actions = [t.action for t in order.timeline]
    assert actions == ["order_placed", "status_processing", "status_shipped", "status_delivered"]


def test_cannot_skip_processing(db, placed_order):
    with pytest.raises(InvalidTransitionError) as exc_info:
        order_service.update_order_status(db, placed_order.id, SELLER_ID, UserRole.SELLER, OrderStatus.SHIPPED)

    assert exc_info.value.current is OrderStatus.PLACED
    assert exc_info.value.attempted is OrderStatus.SHIPPED
    assert load_order(db, placed_order.id).status is OrderStatus.PLACED


@pytest.mark.parametrize("current", list(OrderStatus))
@pytest.mark.parametrize("target", list(OrderStatus))
def test_only_table_edges_are_accepted(db, placed_order, current, target):
    db.Orders.update_one({"_id": ObjectId(placed_order.id)}, {"$set": {"status": current.value}})

    seller_may = target in ALLOWED_TRANSITIONS[current] and target is not OrderStatus.CANCELLED
    if seller_may:
        order = order_service.update_order_status(db, placed_order.id, SELLER_ID, UserRole.SELLER, target)
        assert order.status is target
    else:
        with pytest.raises(InvalidTransitionError):
            order_service.update_order_status(db, placed_order.id, SELLER_ID, UserRole.SELLER, target)
        assert load_order(db, placed_order.id).status is current


def test_terminal_orders_reject_every_change(db, delivered_order, place_order):
    cancelled = order_service.cancel_order(db, place_order().id, CUSTOMER_ID)

    for order in (delivered_order, cancelled):
        for target in OrderStatus:
            with pytest.raises(InvalidTransitionError):
                order_service.update_order_status(db, order.id, SELLER_ID, UserRole.SELLER, target)
        with pytest.raises(InvalidTransitionError):
            order_service.cancel_order(db, order.id, CUSTOMER_ID)


def test_only_the_orders_seller_may_advance(db, placed_order):
    with pytest.raises(AuthError):
        order_service.update_order_status(db, placed_order.id, OTHER_SELLER_ID, UserRole.SELLER, OrderStatus.PROCESSING)
    with pytest.raises(AuthError):
        order_service.update_order_status(db, placed_order.id, CUSTOMER_ID, UserRole.CUSTOMER, OrderStatus.PROCESSING)
    with pytest.raises(AuthError):
        order_service.update_order_status(db, placed_order.id, ADMIN_ID, UserRole.ADMIN, OrderStatus.PROCESSING)


def test_status_change_bumps_updated_at(db, placed_order, monkeypatch):
    later = datetime(2030, 1, 1, 12, 0, 0)
    monkeypatch.setattr(order_service, "utcnow", lambda: later)

    order = order_service.update_order_status(db, placed_order.id, SELLER_ID, UserRole.SELLER, OrderStatus.PROCESSING)

    assert order.updated_at == later
    assert order.created_at == load_order(db, placed_order.id).created_at
    assert order.created_at < later


def test_unknown_order_is_not_found(db):
    with pytest.raises(NotFoundError):
        order_service.update_order_status(db, "not-an-id", SELLER_ID, UserRole.SELLER, OrderStatus.PROCESSING)
    with pytest.raises(NotFoundError):
        order_service.cancel_order(db, "64b7f0c2a1b2c3d4e5f60718", CUSTOMER_ID)


# ────────────────────────────────────────────
# cancel_order
# ────────────────────────────────────────────

def test_cancel_in_processing_then_again(db, placed_order):
    advance(db, placed_order, OrderStatus.PROCESSING)

    order = order_service.cancel_order(db, placed_order.id, CUSTOMER_ID)
    assert order.status is OrderStatus.CANCELLED

    with pytest.raises(InvalidTransitionError) as exc_info:
        order_service.cancel_order(db, placed_order.id, CUSTOMER_ID)
    assert exc_info.value.message == "Order cannot be cancelled at this stage"


def test_cannot_cancel_once_shipped(db, placed_order):
    advance(db, placed_order, OrderStatus.SHIPPED)
    with pytest.raises(InvalidTransitionError):
        order_service.cancel_order(db, placed_order.id, CUSTOMER_ID)
    assert load_order(db, placed_order.id).status is OrderStatus.SHIPPED


def test_only_the_orders_customer_may_cancel(db, placed_order):
    with pytest.raises(AuthError):
        order_service.cancel_order(db, placed_order.id, OTHER_CUSTOMER_ID)
    with pytest.raises(AuthError):
        order_service.cancel_order(db, placed_order.id, SELLER_ID)


# ────────────────────────────────────────────
# concurrent writers
# ────────────────────────────────────────────

def _race_once(monkeypatch, competing_status: OrderStatus):
    """The first conditional write finds that another request already moved the order."""
    original = mongomock.Collection.find_one_and_update
    fired = {"done": False}

    def racing(self, filter, update, *args, **kwargs):
        if not fired["done"]:
            fired["done"] = True
            original(self, {"_id": filter["_id"]}, {"$set": {"status": competing_status.value}})
        return original(self, filter, update, *args, **kwargs)

    monkeypatch.setattr(mongomock.Collection, "find_one_and_update", racing)


def test_duplicate_advance_race_has_one_winner(db, placed_order, monkeypatch):
    _race_once(monkeypatch, OrderStatus.PROCESSING)

    with pytest.raises(InvalidTransitionError):
        order_service.update_order_status(db, placed_order.id, SELLER_ID, UserRole.SELLER, OrderStatus.PROCESSING)

    order = load_order(db, placed_order.id)
    assert order.status is OrderStatus.PROCESSING
    # only the original placement is in the timeline; the loser wrote nothing
    assert [t.action for t in order.timeline] == ["order_placed"]


def test_cancel_revalidates_after_losing_race(db, placed_order, monkeypatch):
    _race_once(monkeypatch, OrderStatus.PROCESSING)
    order = order_service.cancel_order(db, placed_order.id, CUSTOMER_ID)
    assert order.status is OrderStatus.CANCELLED


def test_cancel_loses_to_shipment(db, placed_order, monkeypatch):
    _race_once(monkeypatch, OrderStatus.SHIPPED)
    with pytest.raises(InvalidTransitionError):
        order_service.cancel_order(db, placed_order.id, CUSTOMER_ID)
    assert load_order(db, placed_order.id).status is OrderStatus.SHIPPED


def test_duplicate_lines_collide_regardless_of_id_case(db, add_medicine):
    mid = add_medicine(stock=1)
    with pytest.raises(ValidationError) as exc_info:
        order_service.create_order(
            db, CUSTOMER_ID, SELLER_ID, ADDRESS,
            [{"medicine_id": mid, "quantity": 1}, {"medicine_id": mid.upper(), "quantity": 1}],
        )
    assert exc_info.value.detail == ["Paracetamol 500mg listed more than once"]
    assert db.Orders.count_documents({}) == 0


def test_timeline_records_who_acted(db, placed_order):
    advance(db, placed_order, OrderStatus.PROCESSING)
    order = order_service.cancel_order(db, placed_order.id, CUSTOMER_ID)

    assert [(t.actor, t.meta.get("by")) for t in order.timeline] == [
        ("customer", CUSTOMER_ID),
        ("seller", SELLER_ID),
        ("customer", CUSTOMER_ID),
    ]
    assert order.timeline[-1].meta["from"] == "PROCESSING"
