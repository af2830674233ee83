import math
from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from utils import fmt_local, format_currency

COMMENT_MAX_LENGTH = 500


class OrderStatus(str, Enum):
    PLACED = "PLACED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"


class UserRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"


class AuthorRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    SELLER = "SELLER"


class MongoModel(BaseModel):
    """Base for records read back from Mongo: ``_id`` becomes ``id``."""
    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_doc(cls, doc: dict):
        data = dict(doc)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


# ======================== CATALOG ========================

class MedicineSnapshot(BaseModel):
    id: str
    name: str
    seller_id: str
    base_price: float
    discount_percent: float = 0
    is_active: bool = True
    stock: int = 0


# ======================== ORDERS ========================

class OrderItem(BaseModel):
    medicine_id: str
    medicine_name: Optional[str] = None
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)


class TimelineEntry(BaseModel):
    ts: datetime
    actor: str
    action: str
    meta: dict = Field(default_factory=dict)


class Order(MongoModel):
    id: str
    order_number: str
    customer_id: str
    seller_id: str
    items: List[OrderItem] = Field(min_length=1)
    total_amount: float
    status: OrderStatus = OrderStatus.PLACED
    shipping_address: str
    payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY
    timeline: List[TimelineEntry] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    def medicine_ids(self) -> List[str]:
        return [it.medicine_id for it in self.items]

    def public(self) -> dict:
        data = self.model_dump(mode="json")
        data["created_at_local"] = fmt_local(self.created_at)
        data["formatted_total"] = format_currency(self.total_amount)
        return data


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "PageMeta":
        return cls(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit) if total else 0)


class OrderPage(BaseModel):
    data: List[Order]
    meta: PageMeta


class OrderFilter(BaseModel):
    status: Optional[OrderStatus] = None
    search: Optional[str] = None
    customer_id: Optional[str] = None
    seller_id: Optional[str] = None
    page: int = 1
    limit: int = 10
    sort_by: Literal["created_at", "updated_at", "total_amount", "status"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class OrderStats(BaseModel):
    total: int = 0
    by_status: Dict[OrderStatus, int] = Field(
        default_factory=lambda: {s: 0 for s in OrderStatus}
    )
    delivered_revenue: float = 0.0
    time_range: str = "all"


# request bodies

class OrderItemRequest(BaseModel):
    medicine_id: str
    quantity: int
    # price is accepted for compatibility with the storefront payload but the
    # catalog snapshot is what gets charged
    price: Optional[float] = None


class CreateOrderRequest(BaseModel):
    seller_id: str
    shipping_address: str
    items: List[OrderItemRequest]


class StatusUpdateRequest(BaseModel):
    status: OrderStatus


# ======================== REVIEWS ========================

class TopLevelReview(MongoModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    id: str
    author_role: Literal[AuthorRole.CUSTOMER] = AuthorRole.CUSTOMER
    customer_id: str
    order_seller_id: str
    order_id: str
    medicine_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=COMMENT_MAX_LENGTH)
    parent_id: None = None
    created_at: datetime

    @property
    def author_id(self) -> str:
        return self.customer_id


class SellerReply(MongoModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    id: str
    author_role: Literal[AuthorRole.SELLER] = AuthorRole.SELLER
    seller_id: str
    order_id: str
    medicine_id: str
    comment: str = Field(min_length=1, max_length=COMMENT_MAX_LENGTH)
    parent_id: str
    created_at: datetime

    @property
    def author_id(self) -> str:
        return self.seller_id


Review = Annotated[Union[TopLevelReview, SellerReply], Field(discriminator="author_role")]

_review_adapter = TypeAdapter(Review)


def review_from_doc(doc: dict) -> Union[TopLevelReview, SellerReply]:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    data["author_role"] = AuthorRole(data["author_role"])
    data.pop("thread_key", None)
    return _review_adapter.validate_python(data)


class ReviewThread(BaseModel):
    review: TopLevelReview
    reply: Optional[SellerReply] = None


class ReviewListing(BaseModel):
    top_level: List[TopLevelReview]
    replies: List[SellerReply]
    meta: PageMeta


class ThreadPage(BaseModel):
    data: List[ReviewThread]
    meta: PageMeta


class ReviewStats(BaseModel):
    medicine_id: str
    average_rating: float = 0.0
    total_reviews: int = 0
    rating_distribution: Dict[int, int] = Field(
        default_factory=lambda: {k: 0 for k in range(1, 6)}
    )
    rating_percentages: Dict[int, float] = Field(
        default_factory=lambda: {k: 0.0 for k in range(1, 6)}
    )


class EligibilityResult(BaseModel):
    order_id: str
    medicine_id: str
    eligible: bool
    already_reviewed: bool = False
    reason: Optional[str] = None
    existing_review: Optional[TopLevelReview] = None
    reply: Optional[SellerReply] = None


class OrderReviewProgress(BaseModel):
    order_id: str
    items: List[EligibilityResult]
    pending_count: int
    reviewed_count: int


# request bodies

class CreateReviewRequest(BaseModel):
    order_id: str
    medicine_id: str
    rating: int
    comment: Optional[str] = None


class ReplyRequest(BaseModel):
    comment: str
