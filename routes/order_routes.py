# routes/order_routes.py
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query

from auth import get_current_user, require_role
from database import get_database
from models import (
    CreateOrderRequest,
    OrderFilter,
    OrderStatus,
    StatusUpdateRequest,
    UserRole,
)
from services import order_service

router = APIRouter()


def _ok(data) -> dict:
    return {"success": True, "data": data}


def _page(page) -> dict:
    return {
        "success": True,
        "data": [o.public() for o in page.data],
        "meta": page.meta.model_dump(),
    }


# ======================== CUSTOMER ========================

@router.post("/orders", status_code=201)
def create_order(
    payload: CreateOrderRequest,
    current_user: dict = Depends(require_role(UserRole.CUSTOMER)),
):
    order = order_service.create_order(
        get_database(),
        customer_id=current_user["id"],
        seller_id=payload.seller_id,
        shipping_address=payload.shipping_address,
        items=payload.items,
    )
    return _ok(order.public())


@router.patch("/orders/{order_id}/cancel")
def cancel_order(order_id: str, current_user: dict = Depends(require_role(UserRole.CUSTOMER))):
    order = order_service.cancel_order(get_database(), order_id, current_user["id"])
    return _ok(order.public())


# ======================== SHARED ========================

@router.get("/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    search: Optional[str] = None,
    customer_id: Optional[str] = None,
    seller_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=order_service.MAX_PAGE_LIMIT),
    sort_by: Literal["created_at", "updated_at", "total_amount", "status"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    current_user: dict = Depends(get_current_user),
):
    filters = OrderFilter(
        status=status,
        search=search,
        customer_id=customer_id,
        seller_id=seller_id,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    result = order_service.list_orders(get_database(), current_user["id"], current_user["role"], filters)
    return _page(result)


# declared before /orders/{order_id} so "stats" is not taken for an id
@router.get("/orders/stats")
def order_stats(
    time_range: Optional[str] = None,
    current_user: dict = Depends(require_role(UserRole.SELLER, UserRole.ADMIN)),
):
    stats = order_service.get_order_stats(get_database(), current_user["id"], current_user["role"], time_range)
    return _ok(stats.model_dump(mode="json"))


@router.get("/orders/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(get_current_user)):
    order = order_service.get_order_by_id(get_database(), order_id, current_user["id"], current_user["role"])
    data = order.public()
    nxt = order_service.next_status(order.status)
    data["next_status"] = nxt.value if nxt else None
    return _ok(data)


# ======================== SELLER ========================

@router.patch("/seller/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdateRequest,
    current_user: dict = Depends(require_role(UserRole.SELLER)),
):
    order = order_service.update_order_status(
        get_database(), order_id, current_user["id"], current_user["role"], payload.status
    )
    return _ok(order.public())
