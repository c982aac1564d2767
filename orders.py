"""
Order lifecycle.

The pure functions (build_order, transition, cancel, recompute_total) operate on
`schemas.Order` instances and never touch the database. The functions below the
persistence marker load and store orders and keep every read-modify-write on a
single order document guarded by a compare-and-set on its previous status.
"""
import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_document_by_id, get_documents, to_object_id, utcnow
from errors import Conflict, Forbidden, InvalidOrder, InvalidTransition, NotFound
from schemas import (
    Address,
    Cancellation,
    Discount,
    Order,
    OrderItem,
    OrderRating,
    OrderStatus,
    OrderSubscription,
    Payment,
    Review,
    StatusHistoryEntry,
)
from settings import settings
from vendors import apply_rating

logger = logging.getLogger(__name__)

FORWARD_CHAIN: List[OrderStatus] = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]
TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REJECTED})


def is_terminal(status: Any) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def allowed_transitions(status: Any) -> List[OrderStatus]:
    """Statuses an order in `status` may move to next."""
    current = OrderStatus(status)
    if current in TERMINAL_STATUSES:
        return []
    next_status = FORWARD_CHAIN[FORWARD_CHAIN.index(current) + 1]
    return [next_status, OrderStatus.CANCELLED, OrderStatus.REJECTED]


def recompute_total(order: Order) -> float:
    """Recompute items_total and total_amount from the line items and charges. Idempotent."""
    order.items_total = sum(item.price * item.quantity for item in order.items)
    order.total_amount = order.items_total + order.delivery_charge + order.taxes - order.discount.amount
    return order.total_amount


def _validate_items(items: Iterable[Any]) -> List[OrderItem]:
    validated = []
    for index, raw in enumerate(items):
        try:
            item = raw if isinstance(raw, OrderItem) else OrderItem.model_validate(raw)
        except ValidationError as exc:
            raise InvalidOrder(f"Invalid line item at position {index}", errors=exc.errors(include_url=False, include_context=False))
        # OrderItem instances built with model_construct were never validated
        if item.quantity < 1 or item.price < 0:
            raise InvalidOrder(f"Invalid line item at position {index}")
        validated.append(item)
    if not validated:
        raise InvalidOrder("Order must contain at least one item")
    return validated


def build_order(customer_id: str, vendor_id: str, items: Iterable[Any], delivery_address: Address,
                scheduled_date: datetime, scheduled_time: str, payment_method: str,
                delivery_charge: float = 0, taxes: float = 0, discount: Optional[Discount] = None,
                order_type: str = "one-time", subscription: Optional[OrderSubscription] = None,
                special_instructions: Optional[str] = None) -> Order:
    """A new pending order with computed totals. The order number is assigned on first save."""
    validated = _validate_items(items)
    try:
        order = Order(
            customer_id=str(customer_id),
            vendor_id=str(vendor_id),
            order_type=order_type,
            items=validated,
            subscription=subscription,
            delivery_address=delivery_address,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            delivery_charge=delivery_charge,
            taxes=taxes,
            discount=discount or Discount(),
            payment=Payment(method=payment_method),
            special_instructions=special_instructions,
        )
    except ValidationError as exc:
        raise InvalidOrder(errors=exc.errors(include_url=False, include_context=False))
    recompute_total(order)
    if order.total_amount < 0:
        raise InvalidOrder("Discount exceeds order total")
    return order


def transition(order: Order, new_status: Any, actor: str, note: Optional[str] = None) -> StatusHistoryEntry:
    try:
        target = OrderStatus(new_status)
    except ValueError:
        raise InvalidTransition(f"Unknown status '{new_status}'")
    current = OrderStatus(order.status)
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Order is already {current.value}")
    if target not in allowed_transitions(current):
        raise InvalidTransition(f"Cannot move order from {current.value} to {target.value}")
    entry = StatusHistoryEntry(status=target, timestamp=utcnow(), note=note, updated_by=actor)
    order.status = target.value
    order.status_history.append(entry)
    return entry


def can_be_cancelled(order: Order) -> bool:
    return OrderStatus(order.status) not in TERMINAL_STATUSES


def cancel(order: Order, actor: str, reason: Optional[str] = None) -> StatusHistoryEntry:
    if not can_be_cancelled(order):
        raise InvalidTransition(f"Order cannot be cancelled once {OrderStatus(order.status).value}")
    now = utcnow()
    refund = order.payment.paid_amount if order.payment.status == "completed" else 0
    order.cancellation = Cancellation(
        reason=reason,
        cancelled_by=actor,
        cancelled_at=now,
        refund_amount=refund,
        refund_status="pending",
    )
    return transition(order, OrderStatus.CANCELLED, actor, note=reason)


# --------------------- Persistence ---------------------

def next_order_number(database: Database) -> str:
    count = database["order"].count_documents({})
    return f"{settings.order_number_prefix}{int(time.time() * 1000)}{count + 1:04d}"


def assign_order_number(database: Database, order: Order) -> str:
    if not order.order_number:
        order.order_number = next_order_number(database)
    return order.order_number


def _dump(order: Order) -> Dict[str, Any]:
    return order.model_dump(exclude={"id", "created_at", "updated_at"})


def load_order(database: Database, order_id: str) -> Order:
    doc = get_document_by_id(database, "order", order_id)
    if not doc:
        raise NotFound("Order not found")
    return Order.model_validate(doc)


def _vendor_delivery_charge(vendor: Dict[str, Any], pincode: str) -> float:
    for area in vendor.get("service_areas", []):
        if area.get("pincode") == pincode:
            return float(area.get("delivery_charge", 0))
    return 0.0


def _priced_items(vendor: Dict[str, Any], requested: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    menu = {item["id"]: item for item in vendor.get("menu_items", [])}
    priced = []
    for line in requested:
        menu_item = menu.get(line.get("menu_item_id"))
        if not menu_item or not menu_item.get("is_available", True):
            raise InvalidOrder(f"Menu item {line.get('menu_item_id')} is not available")
        priced.append({
            "menu_item_id": menu_item["id"],
            "name": menu_item["name"],
            "price": menu_item["price"],
            "quantity": line.get("quantity", 1),
            "special_instructions": line.get("special_instructions"),
        })
    return priced


def place_order(database: Database, customer_id: str, vendor_id: str, items: List[Dict[str, Any]],
                delivery_address: Address, scheduled_date: datetime, scheduled_time: str,
                payment_method: str, taxes: float = 0, discount: Optional[Discount] = None,
                order_type: str = "one-time", subscription: Optional[OrderSubscription] = None,
                special_instructions: Optional[str] = None) -> Order:
    vendor = get_document_by_id(database, "vendor", vendor_id, projection={"password_hash": 0})
    if not vendor:
        raise NotFound("Vendor not found")
    if not vendor.get("is_active") or vendor.get("verification_status") != "approved":
        raise InvalidOrder("Vendor is not accepting orders")
    if subscription is not None:
        plans = {p["id"]: p for p in vendor.get("subscription_plans", []) if p.get("is_active", True)}
        if subscription.plan_id not in plans:
            raise InvalidOrder("Subscription plan is not available")

    order = build_order(
        customer_id=customer_id,
        vendor_id=vendor_id,
        items=_priced_items(vendor, items),
        delivery_address=delivery_address,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        payment_method=payment_method,
        delivery_charge=_vendor_delivery_charge(vendor, delivery_address.pincode),
        taxes=taxes,
        discount=discount,
        order_type=order_type,
        subscription=subscription,
        special_instructions=special_instructions,
    )
    assign_order_number(database, order)
    try:
        order_id = create_document(database, "order", _dump(order))
    except DuplicateKeyError:
        # another order took the same number in the same millisecond
        order.order_number = next_order_number(database)
        try:
            order_id = create_document(database, "order", _dump(order))
        except DuplicateKeyError:
            raise Conflict("Could not allocate an order number, please retry")
    logger.info("Order %s placed by customer %s with vendor %s, total %.2f",
                order.order_number, customer_id, vendor_id, order.total_amount)
    return load_order(database, order_id)


def save_transition(database: Database, order: Order, previous_status: Any, extra: Optional[Dict[str, Any]] = None) -> Order:
    """Persist the latest transition of `order`, provided nobody moved it since it was read."""
    entry = order.status_history[-1]
    update_set = {"status": OrderStatus(order.status).value, "updated_at": utcnow()}
    if extra:
        update_set.update(extra)
    result = database["order"].update_one(
        {"_id": to_object_id(order.id), "status": OrderStatus(previous_status).value},
        {"$set": update_set, "$push": {"status_history": entry.model_dump()}},
    )
    if result.matched_count == 0:
        raise Conflict("Order status changed concurrently, please reload and retry")
    logger.info("Order %s: %s -> %s by %s", order.order_number, OrderStatus(previous_status).value,
                OrderStatus(order.status).value, entry.updated_by)
    if OrderStatus(order.status) == OrderStatus.DELIVERED:
        database["vendor"].update_one(
            {"_id": to_object_id(order.vendor_id)},
            {"$inc": {"total_orders": 1, "total_earnings": order.total_amount}},
        )
    return order


def change_status(database: Database, order_id: str, new_status: Any, actor: str, note: Optional[str] = None) -> Order:
    if new_status in (OrderStatus.CANCELLED, OrderStatus.CANCELLED.value):
        return cancel_order(database, order_id, actor, reason=note)
    order = load_order(database, order_id)
    previous = order.status
    transition(order, new_status, actor, note=note)
    extra = None
    if OrderStatus(order.status) == OrderStatus.DELIVERED:
        extra = {"delivery_time.actual": utcnow()}
    return save_transition(database, order, previous, extra)


def cancel_order(database: Database, order_id: str, actor: str, reason: Optional[str] = None) -> Order:
    order = load_order(database, order_id)
    previous = order.status
    cancel(order, actor, reason)
    return save_transition(database, order, previous, {"cancellation": order.cancellation.model_dump()})


def rate_order(database: Database, order: Order, customer_id: str, rating: OrderRating,
               comment: Optional[str] = None) -> Order:
    if order.customer_id != customer_id:
        raise Forbidden("Access denied. You can only rate your own orders.")
    if OrderStatus(order.status) != OrderStatus.DELIVERED:
        raise InvalidOrder("Only delivered orders can be rated")
    if order.rating is not None:
        raise InvalidOrder("Order has already been rated")

    review = Review(comment=comment, review_date=utcnow()) if comment else None
    result = database["order"].update_one(
        {"_id": to_object_id(order.id), "rating": None},
        {"$set": {
            "rating": rating.model_dump(),
            "review": review.model_dump() if review else None,
            "updated_at": utcnow(),
        }},
    )
    if result.matched_count == 0:
        raise Conflict("Order was rated concurrently")
    try:
        apply_rating(database, order.vendor_id, rating.overall)
    except (Conflict, NotFound):
        # the vendor never received the rating, so the order must not keep it
        database["order"].update_one(
            {"_id": to_object_id(order.id)},
            {"$set": {"rating": None, "review": None, "updated_at": utcnow()}},
        )
        raise
    order.rating = rating
    order.review = review
    return order


def record_payment_reference(database: Database, order: Order, transaction_id: str) -> Order:
    database["order"].update_one(
        {"_id": to_object_id(order.id)},
        {"$set": {"payment.transaction_id": transaction_id, "updated_at": utcnow()}},
    )
    order.payment.transaction_id = transaction_id
    return order


def orders_for(database: Database, field: str, owner_id: str, limit: int = 50) -> List[Order]:
    docs = get_documents(database, "order", {field: owner_id}, limit=limit, sort=[("created_at", DESCENDING)])
    return [Order.model_validate(doc) for doc in docs]
