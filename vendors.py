import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from pymongo.database import Database

from database import get_document_by_id, get_documents, to_object_id, update_document, utcnow
from errors import Conflict, NotFound, ValidationFailed
from schemas import MenuItem, SubscriptionPlan

logger = logging.getLogger(__name__)

# never leaves the service through the public vendor endpoints
PRIVATE_VENDOR_FIELDS = {"password_hash": 0, "bank_details": 0, "verification_documents": 0}
RATING_FOLD_ATTEMPTS = 5


def fold_rating(average: float, count: int, new_rating: int) -> Tuple[float, int]:
    """Fold one 1-5 rating into a running (average, count) pair."""
    if not 1 <= new_rating <= 5:
        raise ValidationFailed("Rating must be between 1 and 5")
    total = average * count + new_rating
    count += 1
    return total / count, count


def apply_rating(database: Database, vendor_id: str, new_rating: int,
                 attempts: int = RATING_FOLD_ATTEMPTS) -> Dict[str, Any]:
    """Fold `new_rating` into the vendor's running average, re-reading on a lost race."""
    for _ in range(attempts):
        vendor = get_document_by_id(database, "vendor", vendor_id, projection={"rating": 1})
        if not vendor:
            raise NotFound("Vendor not found")
        rating = vendor.get("rating") or {}
        old_count = rating.get("count", 0)
        average, count = fold_rating(rating.get("average", 0), old_count, new_rating)
        # only lands if nobody folded another rating in since the read
        ok = update_document(
            database,
            "vendor",
            vendor_id,
            {"rating": {"average": average, "count": count}},
            extra_filter={"rating.count": old_count},
        )
        if ok:
            return {"average": average, "count": count}
        logger.info("Rating fold for vendor %s lost a race at count %s, retrying", vendor_id, old_count)
    raise Conflict("Vendor rating changed concurrently, please retry")


def list_public_vendors(database: Database, pincode: Optional[str] = None, limit: int = 50) -> List[dict]:
    query: Dict[str, Any] = {"is_active": True, "verification_status": "approved"}
    if pincode:
        query["service_areas.pincode"] = pincode
    return get_documents(database, "vendor", query, limit=limit, sort=[("rating.average", -1)],
                         projection=PRIVATE_VENDOR_FIELDS)


def get_public_vendor(database: Database, vendor_id: str) -> dict:
    vendor = get_document_by_id(database, "vendor", vendor_id, projection=PRIVATE_VENDOR_FIELDS)
    if not vendor or not vendor.get("is_active") or vendor.get("verification_status") != "approved":
        raise NotFound("Vendor not found")
    return vendor


# --------------------- Catalog ---------------------

def add_menu_item(database: Database, vendor_id: str, item: MenuItem) -> MenuItem:
    database["vendor"].update_one(
        {"_id": to_object_id(vendor_id)},
        {"$push": {"menu_items": item.model_dump()}, "$set": {"updated_at": utcnow()}},
    )
    return item


def update_menu_item(database: Database, vendor_id: str, item_id: str, changes: Dict[str, Any]) -> dict:
    vendor = get_document_by_id(database, "vendor", vendor_id, projection={"menu_items": 1})
    current = next((m for m in (vendor or {}).get("menu_items", []) if m["id"] == item_id), None)
    if current is None:
        raise NotFound("Menu item not found")
    try:
        merged = MenuItem.model_validate({**current, **changes, "id": item_id})
    except ValidationError as exc:
        raise ValidationFailed("Invalid menu item", errors=exc.errors(include_url=False, include_context=False))
    database["vendor"].update_one(
        {"_id": to_object_id(vendor_id), "menu_items.id": item_id},
        {"$set": {"menu_items.$": merged.model_dump(), "updated_at": utcnow()}},
    )
    return merged.model_dump()


def remove_menu_item(database: Database, vendor_id: str, item_id: str) -> None:
    result = database["vendor"].update_one(
        {"_id": to_object_id(vendor_id), "menu_items.id": item_id},
        {"$pull": {"menu_items": {"id": item_id}}, "$set": {"updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFound("Menu item not found")


def add_subscription_plan(database: Database, vendor_id: str, plan: SubscriptionPlan) -> SubscriptionPlan:
    database["vendor"].update_one(
        {"_id": to_object_id(vendor_id)},
        {"$push": {"subscription_plans": plan.model_dump()}, "$set": {"updated_at": utcnow()}},
    )
    return plan


# --------------------- Administration ---------------------

def set_verification(database: Database, vendor_id: str, status: str, admin_id: str) -> dict:
    if status not in ("approved", "rejected", "pending"):
        raise ValidationFailed("Invalid verification status")
    approved = status == "approved"
    changes = {"verification_status": status, "is_verified": approved}
    if approved:
        changes["is_active"] = True
    if not update_document(database, "vendor", vendor_id, changes):
        raise NotFound("Vendor not found")
    logger.info("Vendor %s verification set to %s by admin %s", vendor_id, status, admin_id)
    return get_document_by_id(database, "vendor", vendor_id, projection={"password_hash": 0})
