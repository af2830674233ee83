"""
Catalog lookup: resolve a medicine id to the seller/price/stock snapshot that
order creation charges against. Medicine CRUD lives elsewhere; this module
only reads the ``Medicine`` collection.
"""
import logging
from typing import Optional

from models import MedicineSnapshot
from utils import is_medicine_expired, to_oid

logger = logging.getLogger("catalog")


def resolve_medicine(db, medicine_id: str) -> Optional[MedicineSnapshot]:
    oid = to_oid(medicine_id)
    if oid is None:
        logger.info("[resolve] malformed medicine id %r", medicine_id)
        return None

    med = db.Medicine.find_one({"_id": oid})
    if not med:
        logger.info("[resolve] medicine %s not found", medicine_id)
        return None

    stock = int(med.get("stock", 0) or 0)
    reserved = int(med.get("reserved", 0) or 0)
    active = bool(med.get("is_active", True)) and not is_medicine_expired(med.get("expiration_date"))

    return MedicineSnapshot(
        id=str(med["_id"]),
        name=med.get("name") or "Unknown",
        seller_id=str(med.get("seller_id") or ""),
        base_price=float(med.get("selling_price", med.get("price", 0)) or 0.0),
        discount_percent=float(med.get("discount_percent", 0) or 0),
        is_active=active,
        # available = stock - reserved
        stock=max(0, stock - reserved),
    )
