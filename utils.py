import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from zoneinfo import ZoneInfo

from bson import ObjectId

DISPLAY_TZ = os.getenv("DISPLAY_TZ", "Asia/Yangon")

_CENTS = Decimal("0.01")


def utcnow() -> datetime:
    # naive UTC, the same shape pymongo hands back without tz_aware
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_oid(maybe_id) -> Optional[ObjectId]:
    """Return an ObjectId for a hex string / ObjectId, or None when malformed."""
    if isinstance(maybe_id, ObjectId):
        return maybe_id
    if maybe_id is None or not ObjectId.is_valid(str(maybe_id)):
        return None
    return ObjectId(str(maybe_id))


def round_money(amount) -> float:
    """Round half-up to cents; floats go through str() to avoid binary noise."""
    return float(Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP))


def discounted_price(base_price: float, discount_percent: float = 0) -> float:
    base = Decimal(str(base_price))
    pct = Decimal(str(discount_percent or 0))
    return round_money(base * (Decimal(1) - pct / Decimal(100)))


def line_total(quantity: int, price: float) -> float:
    return round_money(Decimal(int(quantity)) * Decimal(str(price)))


def generate_order_number(when: Optional[datetime] = None) -> str:
    """Human readable order number: ORD-<yyyymmdd>-<8 hex chars>."""
    when = when or utcnow()
    return f"ORD-{when.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"


def format_currency(amount: float) -> str:
    """Format currency amount"""
    return f"{amount:,.2f}Ks"


def fmt_local(dt: Optional[datetime], tz: str = DISPLAY_TZ) -> str:
    if not dt:
        return "—"
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(ZoneInfo(tz)).strftime("%Y-%m-%d %H:%M")


def is_medicine_expired(expiration_date: Optional[datetime]) -> bool:
    """Check if medicine is expired"""
    if not expiration_date:
        return False
    if expiration_date.tzinfo is not None:
        expiration_date = expiration_date.astimezone(timezone.utc).replace(tzinfo=None)
    return expiration_date < utcnow()
