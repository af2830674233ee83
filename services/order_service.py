# services/order_service.py
"""
Order lifecycle engine.

Every function takes the database handle and the requester identity
explicitly; the HTTP layer resolves identity from the session before calling
in. Status changes are conditional writes keyed on the status that was
validated, so two racing requests can never both win.
"""
from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from catalog import resolve_medicine
from errors import (
    AuthError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from models import (
    Order,
    OrderFilter,
    OrderItem,
    OrderPage,
    OrderStats,
    OrderStatus,
    PageMeta,
    PaymentMethod,
    UserRole,
)
from utils import discounted_price, generate_order_number, line_total, round_money, to_oid, utcnow

logger = logging.getLogger("orders")

# ======================== STATE MACHINE ========================

ALLOWED_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PLACED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in ALLOWED_TRANSITIONS.items() if not nxt)

MAX_WRITE_ATTEMPTS = 3
MAX_PAGE_LIMIT = 100
ORDER_NUMBER_ATTEMPTS = 5

TIME_RANGES: Dict[str, Optional[timedelta]] = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
    "all": None,
}

SORT_FIELDS = {"created_at", "updated_at", "total_amount", "status"}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def next_status(current: OrderStatus) -> Optional[OrderStatus]:
    """The seller's forward step from ``current``, or None when there is none."""
    forward = ALLOWED_TRANSITIONS[current] - {OrderStatus.CANCELLED}
    return next(iter(forward), None)


# ======================== HELPERS ========================

def _role(requester_role) -> UserRole:
    try:
        return UserRole(getattr(requester_role, "value", requester_role))
    except ValueError:
        raise AuthError(detail=f"unknown role {requester_role!r}")


def load_order(db, order_id) -> Order:
    oid = to_oid(order_id)
    if oid is None:
        raise NotFoundError("Order not found")
    doc = db.Orders.find_one({"_id": oid})
    if not doc:
        raise NotFoundError("Order not found")
    return Order.from_doc(doc)


def _guarded_update(
    db,
    order_id: str,
    target: OrderStatus,
    validate: Callable[[Order], None],
    actor: str,
    actor_id: str,
    action: str,
) -> Order:
    """
    Read, validate, then write only if the status is still the one that was
    validated. A lost race re-reads and re-validates.
    """
    order = None
    for _ in range(MAX_WRITE_ATTEMPTS):
        order = load_order(db, order_id)
        validate(order)

        now = utcnow()
        doc = db.Orders.find_one_and_update(
            {"_id": to_oid(order.id), "status": order.status.value},
            {
                "$set": {"status": target.value, "updated_at": now},
                "$push": {
                    "timeline": {
                        "ts": now,
                        "actor": actor,
                        "action": action,
                        "meta": {"from": order.status.value, "to": target.value, "by": actor_id},
                    }
                },
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            logger.info("[%s] order=%s %s -> %s by %s %s", action, order.id, order.status.value, target.value,
                        actor, actor_id)
            return Order.from_doc(doc)

        logger.warning("[%s] order=%s status moved under us, re-validating", action, order_id)

    raise InvalidTransitionError(order.status if order else None, target,
                                 message="Order was modified concurrently")


def check_page(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError(detail="page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_LIMIT:
        raise ValidationError(detail=f"limit must be between 1 and {MAX_PAGE_LIMIT}")


def _scope_query(requester_id: str, role: UserRole, customer_id=None, seller_id=None) -> Dict[str, Any]:
    if role is UserRole.CUSTOMER:
        return {"customer_id": requester_id}
    if role is UserRole.SELLER:
        return {"seller_id": requester_id}
    query: Dict[str, Any] = {}
    if customer_id:
        query["customer_id"] = customer_id
    if seller_id:
        query["seller_id"] = seller_id
    return query


# ======================== OPERATIONS ========================

def create_order(
    db,
    customer_id: Optional[str],
    seller_id: Optional[str],
    shipping_address: Optional[str],
    items: Iterable[Any],
) -> Order:
    """
    Place a cash-on-delivery order for a single seller.

    ``items`` is a sequence of ``{medicine_id, quantity}`` mappings (or objects
    with those attributes). Unit prices come from the catalog at call time with
    the discount applied; whatever price the client sent is ignored. Stock is
    checked but not decremented.
    """
    if not customer_id:
        raise AuthError("Not authenticated")
    if not seller_id:
        raise ValidationError(detail="seller_id is required")
    if not shipping_address or not shipping_address.strip():
        raise ValidationError(detail="shipping_address is required")

    lines = [_as_line(it) for it in (items or [])]
    if not lines:
        raise ValidationError("Order must contain at least one item")

    seen = set()
    order_items: List[OrderItem] = []
    problems: List[str] = []
    for mid, qty in lines:
        if not isinstance(qty, int) or isinstance(qty, bool) or qty < 1:
            problems.append(f"quantity for {mid} must be a positive integer")
            continue

        med = resolve_medicine(db, mid)
        if med is None:
            problems.append(f"medicine {mid} not found")
            continue
        # med.id is the canonical lowercase hex
        if med.id in seen:
            problems.append(f"{med.name} listed more than once")
            continue
        seen.add(med.id)

        if not med.is_active:
            problems.append(f"{med.name} is not available")
            continue
        if med.seller_id != str(seller_id):
            problems.append(f"{med.name} is not sold by this seller")
            continue
        if qty > med.stock:
            problems.append(f"only {med.stock} of {med.name} in stock")
            continue

        order_items.append(OrderItem(
            medicine_id=med.id,
            medicine_name=med.name,
            quantity=qty,
            price=discounted_price(med.base_price, med.discount_percent),
        ))

    if problems:
        logger.info("[create_order] rejected customer=%s: %s", customer_id, problems)
        raise ValidationError("Order could not be placed", detail=problems)

    total = round_money(sum(line_total(it.quantity, it.price) for it in order_items))
    now = utcnow()
    doc = {
        "customer_id": str(customer_id),
        "seller_id": str(seller_id),
        "items": [it.model_dump() for it in order_items],
        "total_amount": total,
        "status": OrderStatus.PLACED.value,
        "shipping_address": shipping_address.strip(),
        "payment_method": PaymentMethod.CASH_ON_DELIVERY.value,
        "timeline": [{"ts": now, "actor": "customer", "action": "order_placed",
                      "meta": {"by": str(customer_id)}}],
        "created_at": now,
        "updated_at": now,
    }

    for attempt in range(ORDER_NUMBER_ATTEMPTS):
        doc["order_number"] = generate_order_number(now)
        doc.pop("_id", None)
        try:
            res = db.Orders.insert_one(doc)
            break
        except DuplicateKeyError:
            logger.warning("[create_order] order_number collision %s (attempt %d)", doc["order_number"], attempt + 1)
    else:
        raise RuntimeError("Could not allocate a unique order number")

    logger.info("[create_order] order=%s number=%s customer=%s seller=%s total=%.2f",
                res.inserted_id, doc["order_number"], customer_id, seller_id, total)
    doc["_id"] = res.inserted_id
    return Order.from_doc(doc)


def _as_line(item) -> tuple:
    if isinstance(item, dict):
        return str(item.get("medicine_id") or ""), item.get("quantity")
    return str(getattr(item, "medicine_id", "") or ""), getattr(item, "quantity", None)


def get_order_by_id(db, order_id: str, requester_id: str, requester_role=UserRole.CUSTOMER) -> Order:
    role = _role(requester_role)
    order = load_order(db, order_id)
    if role is UserRole.ADMIN:
        return order
    if requester_id not in (order.customer_id, order.seller_id):
        raise AuthError()
    return order


def list_orders(db, requester_id: str, requester_role, filters: Optional[OrderFilter] = None) -> OrderPage:
    role = _role(requester_role)
    f = filters or OrderFilter()
    check_page(f.page, f.limit)
    if f.sort_by not in SORT_FIELDS:
        raise ValidationError(detail=f"cannot sort by {f.sort_by}")

    query = _scope_query(requester_id, role, f.customer_id, f.seller_id)
    if f.status:
        query["status"] = OrderStatus(f.status).value
    q = (f.search or "").strip()
    if q:
        rx = {"$regex": re.escape(q), "$options": "i"}
        query["$or"] = [{"order_number": rx}, {"shipping_address": rx}, {"items.medicine_name": rx}]

    direction = ASCENDING if f.sort_order == "asc" else DESCENDING
    sort_spec = [(f.sort_by, direction)]
    if f.sort_by != "created_at":
        sort_spec.append(("created_at", DESCENDING))

    total = db.Orders.count_documents(query)
    cur = db.Orders.find(query).sort(sort_spec).skip((f.page - 1) * f.limit).limit(f.limit)
    orders = [Order.from_doc(d) for d in cur]

    return OrderPage(data=orders, meta=PageMeta.build(f.page, f.limit, total))


def update_order_status(db, order_id: str, requester_id: str, requester_role, new_status) -> Order:
    """Seller-only forward step: PLACED → PROCESSING → SHIPPED → DELIVERED."""
    role = _role(requester_role)
    try:
        target = OrderStatus(getattr(new_status, "value", new_status))
    except ValueError:
        raise ValidationError(detail=f"unknown status {new_status!r}")

    if role is not UserRole.SELLER:
        raise AuthError("Only the seller can update order status")

    def validate(order: Order) -> None:
        if order.seller_id != requester_id:
            raise AuthError()
        if order.status in TERMINAL_STATUSES:
            logger.warning("[update_status] order=%s already %s", order.id, order.status.value)
            raise InvalidTransitionError(order.status, target,
                                         message=f"Order is already {order.status.value.lower()}")
        if target is OrderStatus.CANCELLED or not can_transition(order.status, target):
            logger.warning("[update_status] order=%s rejected %s -> %s", order.id, order.status.value, target.value)
            raise InvalidTransitionError(order.status, target)

    return _guarded_update(db, order_id, target, validate,
                           actor="seller", actor_id=requester_id,
                           action=f"status_{target.value.lower()}")


def cancel_order(db, order_id: str, requester_id: str) -> Order:
    """Customer-only; allowed while the order is PLACED or PROCESSING."""

    def validate(order: Order) -> None:
        if order.customer_id != requester_id:
            raise AuthError()
        if not can_transition(order.status, OrderStatus.CANCELLED):
            logger.warning("[cancel] order=%s rejected from %s", order.id, order.status.value)
            raise InvalidTransitionError(order.status, OrderStatus.CANCELLED,
                                         message="Order cannot be cancelled at this stage")

    return _guarded_update(db, order_id, OrderStatus.CANCELLED, validate,
                           actor="customer", actor_id=requester_id,
                           action="cancelled_order")


def get_order_stats(db, requester_id: str, requester_role, time_range: Optional[str] = None) -> OrderStats:
    """Per-status counts and delivered revenue for the dashboards."""
    role = _role(requester_role)
    key = time_range or "all"
    if key not in TIME_RANGES:
        raise ValidationError(detail=f"time_range must be one of {', '.join(TIME_RANGES)}")

    match = _scope_query(requester_id, role)
    window = TIME_RANGES[key]
    if window is not None:
        match["created_at"] = {"$gte": utcnow() - window}

    stats = OrderStats(time_range=key)
    rows = db.Orders.aggregate([
        {"$match": match},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$total_amount"}}},
    ])
    for row in rows:
        try:
            status = OrderStatus(row["_id"])
        except ValueError:
            logger.warning("[stats] ignoring unknown status %r", row["_id"])
            continue
        stats.by_status[status] = int(row["count"])
        stats.total += int(row["count"])
        if status is OrderStatus.DELIVERED:
            stats.delivered_revenue = round_money(row.get("revenue") or 0)
    return stats
