# services/review_service.py
"""
Post-delivery reviews and seller replies.

Reviews live in one ``Reviews`` collection: top-level customer reviews have
``parent_id=None``, seller replies point at the review they answer. Each
record carries a ``thread_key`` with a unique index so that the
one-review-per-item and one-reply-per-review rules hold even when two
requests race past the read checks.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Union

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from models import (
    COMMENT_MAX_LENGTH,
    AuthorRole,
    EligibilityResult,
    Order,
    OrderReviewProgress,
    OrderStatus,
    PageMeta,
    ReviewListing,
    ReviewStats,
    ReviewThread,
    SellerReply,
    ThreadPage,
    TopLevelReview,
    review_from_doc,
)
from services.order_service import check_page, load_order
from utils import to_oid, utcnow

logger = logging.getLogger("reviews")

REVIEW_SORT_FIELDS = {"created_at", "rating"}


def review_key(customer_id: str, order_id: str, medicine_id: str) -> str:
    return f"review:{customer_id}:{order_id}:{medicine_id}"


def reply_key(parent_id: str) -> str:
    return f"reply:{parent_id}"


# ======================== HELPERS ========================

def _find_review(db, customer_id: str, order_id: str, medicine_id: str) -> Optional[TopLevelReview]:
    doc = db.Reviews.find_one({"thread_key": review_key(customer_id, order_id, medicine_id)})
    return review_from_doc(doc) if doc else None


def _find_reply(db, parent_id: str) -> Optional[SellerReply]:
    doc = db.Reviews.find_one({"thread_key": reply_key(parent_id)})
    return review_from_doc(doc) if doc else None


def _load_review(db, review_id: str) -> Union[TopLevelReview, SellerReply]:
    oid = to_oid(review_id)
    doc = db.Reviews.find_one({"_id": oid}) if oid else None
    if not doc:
        raise NotFoundError("Review not found")
    return review_from_doc(doc)


def _clean_comment(comment: Optional[str], required: bool) -> Optional[str]:
    text = (comment or "").strip()
    if not text:
        if required:
            raise ValidationError("Reply comment is required")
        return None
    if len(text) > COMMENT_MAX_LENGTH:
        raise ValidationError(detail=f"comment must be at most {COMMENT_MAX_LENGTH} characters")
    return text


def _replies_for(db, parent_ids: Iterable[str]) -> List[SellerReply]:
    ids = list(parent_ids)
    if not ids:
        return []
    cur = db.Reviews.find({"parent_id": {"$in": ids}}).sort("created_at", ASCENDING)
    return [review_from_doc(d) for d in cur]


def _eligibility(db, order: Order, medicine_id: str, customer_id: str) -> EligibilityResult:
    if medicine_id not in order.medicine_ids():
        raise ValidationError("Medicine is not part of this order")

    if order.status is not OrderStatus.DELIVERED:
        return EligibilityResult(order_id=order.id, medicine_id=medicine_id,
                                 eligible=False, reason="not delivered")

    existing = _find_review(db, customer_id, order.id, medicine_id)
    if existing:
        return EligibilityResult(
            order_id=order.id,
            medicine_id=medicine_id,
            eligible=False,
            already_reviewed=True,
            reason="already reviewed",
            existing_review=existing,
            reply=_find_reply(db, existing.id),
        )
    return EligibilityResult(order_id=order.id, medicine_id=medicine_id, eligible=True)


def _own_order(db, order_id: str, customer_id: str) -> Order:
    # a missing order and somebody else's order look the same to the caller
    try:
        order = load_order(db, order_id)
    except NotFoundError:
        raise AuthError()
    if order.customer_id != customer_id:
        raise AuthError()
    return order


def thread_reviews(top_level: Iterable[TopLevelReview], replies: Iterable[SellerReply]) -> List[ReviewThread]:
    """Attach each reply to the review it answers; orphaned replies are dropped."""
    by_parent: Dict[str, SellerReply] = {r.parent_id: r for r in replies}
    return [ReviewThread(review=r, reply=by_parent.get(r.id)) for r in top_level]


# ======================== ELIGIBILITY ========================

def check_eligibility(db, order_id: str, medicine_id: str, requester_id: str) -> EligibilityResult:
    order = _own_order(db, order_id, requester_id)
    return _eligibility(db, order, medicine_id, requester_id)


def check_order_eligibility(db, order_id: str, requester_id: str) -> OrderReviewProgress:
    """Eligibility for every item of one order, for the order detail view."""
    order = _own_order(db, order_id, requester_id)
    results = [_eligibility(db, order, mid, requester_id) for mid in order.medicine_ids()]
    return OrderReviewProgress(
        order_id=order.id,
        items=results,
        pending_count=sum(1 for r in results if r.eligible),
        reviewed_count=sum(1 for r in results if r.already_reviewed),
    )


# ======================== WRITES ========================

def create_review(
    db,
    customer_id: str,
    order_id: str,
    medicine_id: str,
    rating,
    comment: Optional[str] = None,
) -> TopLevelReview:
    if not customer_id:
        raise AuthError("Not authenticated")
    if not medicine_id:
        raise ValidationError("Medicine ID and rating are required")
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")
    text = _clean_comment(comment, required=False)

    # eligibility is re-checked here; the client-side check is advisory only
    order = load_order(db, order_id)
    if order.customer_id != customer_id:
        raise AuthError()
    if medicine_id not in order.medicine_ids():
        raise PreconditionError("Medicine is not part of this order")
    if order.status is not OrderStatus.DELIVERED:
        raise PreconditionError("Order has not been delivered",
                                detail=f"current status {order.status.value}")
    if _find_review(db, customer_id, order.id, medicine_id):
        raise ConflictError("You have already reviewed this item")

    doc = {
        "author_role": AuthorRole.CUSTOMER.value,
        "customer_id": customer_id,
        "order_seller_id": order.seller_id,
        "order_id": order.id,
        "medicine_id": medicine_id,
        "rating": rating,
        "comment": text,
        "parent_id": None,
        "thread_key": review_key(customer_id, order.id, medicine_id),
        "created_at": utcnow(),
    }
    try:
        db.Reviews.insert_one(doc)
    except DuplicateKeyError:
        logger.info("[create_review] lost race order=%s medicine=%s", order.id, medicine_id)
        raise ConflictError("You have already reviewed this item")

    logger.info("[create_review] review=%s order=%s medicine=%s rating=%d",
                doc["_id"], order.id, medicine_id, rating)
    return review_from_doc(doc)


def reply_to_review(db, seller_id: str, parent_review_id: str, comment: str) -> SellerReply:
    if not seller_id:
        raise AuthError("Not authenticated")
    text = _clean_comment(comment, required=True)

    parent = _load_review(db, parent_review_id)
    if isinstance(parent, SellerReply):
        raise ValidationError("Only customer reviews can be replied to")

    order = load_order(db, parent.order_id)
    if order.seller_id != seller_id:
        raise AuthError("Only the seller of this order can reply")
    if _find_reply(db, parent.id):
        raise ConflictError("This review already has a reply")

    reply = {
        "author_role": AuthorRole.SELLER.value,
        "seller_id": seller_id,
        "order_id": parent.order_id,
        "medicine_id": parent.medicine_id,
        "comment": text,
        "parent_id": parent.id,
        "thread_key": reply_key(parent.id),
        "created_at": utcnow(),
    }
    try:
        db.Reviews.insert_one(reply)
    except DuplicateKeyError:
        logger.info("[reply] lost race parent=%s", parent.id)
        raise ConflictError("This review already has a reply")

    logger.info("[reply] reply=%s parent=%s seller=%s", reply["_id"], parent.id, seller_id)
    return review_from_doc(reply)


def delete_review(db, requester_id: str, review_id: str) -> None:
    """Authors delete their own record. A customer review's reply is kept."""
    review = _load_review(db, review_id)
    if not requester_id or review.author_id != requester_id:
        raise AuthError("You can only delete your own review")

    db.Reviews.delete_one({"_id": to_oid(review.id)})
    logger.info("[delete_review] review=%s role=%s by %s", review.id, review.author_role.value, requester_id)


# ======================== QUERIES ========================

def get_reviews_by_medicine(
    db,
    medicine_id: str,
    page: int = 1,
    limit: int = 10,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> ReviewListing:
    """
    Top-level reviews for a medicine (paged) plus the replies that belong to
    that page. Replies whose review has been deleted are appended to the
    first page so they stay retrievable by medicine.
    """
    check_page(page, limit)
    if sort_by not in REVIEW_SORT_FIELDS:
        raise ValidationError(detail=f"cannot sort reviews by {sort_by}")
    direction = ASCENDING if sort_order == "asc" else DESCENDING

    top_query = {"medicine_id": medicine_id, "parent_id": None}
    total = db.Reviews.count_documents(top_query)
    sort_spec = [(sort_by, direction)]
    if sort_by != "created_at":
        sort_spec.append(("created_at", DESCENDING))
    cur = db.Reviews.find(top_query).sort(sort_spec).skip((page - 1) * limit).limit(limit)
    top_level = [review_from_doc(d) for d in cur]

    replies = _replies_for(db, [r.id for r in top_level])
    if page == 1:
        replies += _orphaned_replies(db, medicine_id)

    return ReviewListing(top_level=top_level, replies=replies, meta=PageMeta.build(page, limit, total))


def _orphaned_replies(db, medicine_id: str) -> List[SellerReply]:
    """Replies whose top-level review has been deleted."""
    parent_ids = db.Reviews.distinct("parent_id", {"medicine_id": medicine_id, "parent_id": {"$ne": None}})
    oids = [oid for oid in (to_oid(p) for p in parent_ids) if oid]
    live = {str(d["_id"]) for d in db.Reviews.find({"_id": {"$in": oids}}, {"_id": 1})}
    gone = [p for p in parent_ids if p not in live]
    return _replies_for(db, gone)


def get_review_stats(db, medicine_id: str) -> ReviewStats:
    ratings = [
        int(d["rating"])
        for d in db.Reviews.find({"medicine_id": medicine_id, "parent_id": None}, {"rating": 1})
        if d.get("rating") is not None
    ]
    stats = ReviewStats(medicine_id=medicine_id)
    if not ratings:
        return stats

    counts = Counter(ratings)
    total = len(ratings)
    stats.total_reviews = total
    stats.average_rating = round(sum(ratings) / total, 2)
    stats.rating_distribution = {k: counts.get(k, 0) for k in range(1, 6)}
    stats.rating_percentages = {k: round(counts.get(k, 0) / total * 100, 1) for k in range(1, 6)}
    return stats


def _thread_page(db, query: dict, page: int, limit: int) -> ThreadPage:
    check_page(page, limit)
    total = db.Reviews.count_documents(query)
    cur = db.Reviews.find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    top_level = [review_from_doc(d) for d in cur]
    threads = thread_reviews(top_level, _replies_for(db, [r.id for r in top_level]))
    return ThreadPage(data=threads, meta=PageMeta.build(page, limit, total))


def get_my_reviews(db, customer_id: str, page: int = 1, limit: int = 10) -> ThreadPage:
    return _thread_page(db, {"customer_id": customer_id, "parent_id": None}, page, limit)


def get_reviews_to_reply(db, seller_id: str, page: int = 1, limit: int = 10) -> ThreadPage:
    """Customer reviews on this seller's orders that are still waiting for a reply."""
    replied = db.Reviews.distinct("parent_id", {"seller_id": seller_id, "parent_id": {"$ne": None}})
    query = {
        "order_seller_id": seller_id,
        "parent_id": None,
        "_id": {"$nin": [oid for oid in (to_oid(p) for p in replied) if oid]},
    }
    return _thread_page(db, query, page, limit)
