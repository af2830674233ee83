# routes/review_routes.py
from typing import Literal

from fastapi import APIRouter, Depends, Query

from auth import get_current_user, require_role
from database import get_database
from models import CreateReviewRequest, ReplyRequest, UserRole
from services import review_service
from services.order_service import MAX_PAGE_LIMIT

router = APIRouter(prefix="/reviews")


def _ok(data, **extra) -> dict:
    return {"success": True, "data": data, **extra}


# ======================== PUBLIC ========================

@router.get("/medicine/{medicine_id}")
def reviews_for_medicine(
    medicine_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_LIMIT),
    sort_by: Literal["created_at", "rating"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
):
    listing = review_service.get_reviews_by_medicine(
        get_database(), medicine_id, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
    )
    return _ok(
        {
            "reviews": [r.model_dump(mode="json") for r in listing.top_level],
            "replies": [r.model_dump(mode="json") for r in listing.replies],
        },
        meta=listing.meta.model_dump(),
    )


@router.get("/stats/{medicine_id}")
def review_stats(medicine_id: str):
    stats = review_service.get_review_stats(get_database(), medicine_id)
    return _ok(stats.model_dump(mode="json"))


# ======================== CUSTOMER ========================

@router.get("/eligibility/{order_id}/{medicine_id}")
def check_eligibility(
    order_id: str,
    medicine_id: str,
    current_user: dict = Depends(require_role(UserRole.CUSTOMER)),
):
    result = review_service.check_eligibility(get_database(), order_id, medicine_id, current_user["id"])
    return _ok(result.model_dump(mode="json"))


@router.get("/eligibility/{order_id}")
def order_review_progress(order_id: str, current_user: dict = Depends(require_role(UserRole.CUSTOMER))):
    progress = review_service.check_order_eligibility(get_database(), order_id, current_user["id"])
    return _ok(progress.model_dump(mode="json"))


@router.post("", status_code=201)
def create_review(payload: CreateReviewRequest, current_user: dict = Depends(require_role(UserRole.CUSTOMER))):
    review = review_service.create_review(
        get_database(),
        customer_id=current_user["id"],
        order_id=payload.order_id,
        medicine_id=payload.medicine_id,
        rating=payload.rating,
        comment=payload.comment,
    )
    return _ok(review.model_dump(mode="json"))


@router.get("/my-reviews")
def my_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_LIMIT),
    current_user: dict = Depends(require_role(UserRole.CUSTOMER)),
):
    result = review_service.get_my_reviews(get_database(), current_user["id"], page=page, limit=limit)
    return _ok([t.model_dump(mode="json") for t in result.data], meta=result.meta.model_dump())


# ======================== SELLER ========================

@router.get("/seller/pending")
def reviews_to_reply(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_LIMIT),
    current_user: dict = Depends(require_role(UserRole.SELLER)),
):
    result = review_service.get_reviews_to_reply(get_database(), current_user["id"], page=page, limit=limit)
    return _ok([t.model_dump(mode="json") for t in result.data], meta=result.meta.model_dump())


@router.post("/{review_id}/reply", status_code=201)
def reply_to_review(
    review_id: str,
    payload: ReplyRequest,
    current_user: dict = Depends(require_role(UserRole.SELLER)),
):
    reply = review_service.reply_to_review(get_database(), current_user["id"], review_id, payload.comment)
    return _ok(reply.model_dump(mode="json"))


# ======================== AUTHOR ========================

@router.delete("/{review_id}")
def delete_review(review_id: str, current_user: dict = Depends(get_current_user)):
    review_service.delete_review(get_database(), current_user["id"], review_id)
    return {"success": True, "message": "Review deleted"}
