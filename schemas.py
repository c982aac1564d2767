"""
Database Schemas

MongoDB collection schemas for the tiffin ordering service, as Pydantic models.
These schemas are used for data validation before documents are written.

Each top-level model represents a collection in the database.
Model name is converted to lowercase for the collection name:
- Customer -> "customer" collection
- Vendor -> "vendor" collection
- Admin -> "admin" collection
- Order -> "order" collection
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, EmailStr, Field

PHONE_PATTERN = r"^[0-9]{10}$"
PINCODE_PATTERN = r"^[0-9]{6}$"


def new_item_id() -> str:
    return uuid4().hex


class Role(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"
    SUPER_ADMIN = "super-admin"


ADMIN_ROLES = (Role.ADMIN, Role.SUPER_ADMIN)


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    landmark: Optional[str] = None


class Account(BaseModel):
    """Fields every account variant carries. Variants are stored in separate collections."""
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password_hash: str
    avatar: Optional[str] = None
    is_active: bool = True


class Customer(Account):
    """
    Customers collection schema
    Collection name: "customer"
    """
    role: Literal["customer"] = "customer"
    addresses: List[Address] = Field(default_factory=list)
    preferences: Dict[str, str] = Field(default_factory=dict)
    email_verified: bool = False
    phone_verified: bool = False


class MenuItem(BaseModel):
    id: str = Field(default_factory=new_item_id)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category: Literal["breakfast", "lunch", "dinner", "snacks"]
    cuisine_type: Optional[str] = None
    is_vegetarian: bool = True
    is_vegan: bool = False
    spice_level: Literal["mild", "medium", "spicy"] = "medium"
    image: Optional[str] = None
    is_available: bool = True
    preparation_time: int = Field(30, ge=0, description="Minutes")


class SubscriptionPlan(BaseModel):
    id: str = Field(default_factory=new_item_id)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    duration: Literal["daily", "weekly", "monthly"]
    price: float = Field(..., ge=0)
    meals_included: List[Literal["breakfast", "lunch", "dinner"]] = Field(default_factory=list)
    is_active: bool = True


class ServiceArea(BaseModel):
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    delivery_charge: float = Field(0, ge=0)


class VendorRating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class BankDetails(BaseModel):
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    account_holder_name: Optional[str] = None
    bank_name: Optional[str] = None


class Vendor(Account):
    """
    Vendors collection schema
    Collection name: "vendor"

    New vendors can sign in right away but stay unverified until an administrator
    approves them; vendor operations check the verification, not is_active.
    """
    role: Literal["vendor"] = "vendor"
    business_name: str = Field(..., min_length=2, max_length=100)
    business_description: Optional[str] = Field(None, max_length=500)
    business_images: List[str] = Field(default_factory=list)
    kitchen_address: Address
    service_areas: List[ServiceArea] = Field(default_factory=list)
    menu_items: List[MenuItem] = Field(default_factory=list)
    subscription_plans: List[SubscriptionPlan] = Field(default_factory=list)
    bank_details: BankDetails = Field(default_factory=BankDetails)
    is_verified: bool = False
    verification_status: Literal["pending", "approved", "rejected"] = "pending"
    rating: VendorRating = Field(default_factory=VendorRating)
    total_orders: int = 0
    total_earnings: float = 0


class Admin(Account):
    """
    Administrators collection schema
    Collection name: "admin"
    """
    role: Literal["admin", "super-admin"] = "admin"
    permissions: List[str] = Field(default_factory=list)
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None


# --------------------- Orders ---------------------

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out-for-delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


Actor = Literal["customer", "vendor", "admin", "system"]


class OrderItem(BaseModel):
    menu_item_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    special_instructions: Optional[str] = None


class OrderSubscription(BaseModel):
    plan_id: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    frequency: Literal["daily", "weekly", "monthly"]
    delivery_days: List[Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]] = Field(default_factory=list)
    is_active: bool = True
    paused_dates: List[datetime] = Field(default_factory=list)


class Discount(BaseModel):
    amount: float = Field(0, ge=0)
    code: Optional[str] = None
    type: Optional[Literal["percentage", "fixed"]] = None


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = None
    updated_by: Actor


class DeliveryTime(BaseModel):
    estimated: Optional[datetime] = None
    actual: Optional[datetime] = None


class Payment(BaseModel):
    method: Literal["cash", "online", "wallet"]
    status: Literal["pending", "completed", "failed", "refunded"] = "pending"
    transaction_id: Optional[str] = None
    paid_amount: float = 0
    paid_at: Optional[datetime] = None


class OrderRating(BaseModel):
    food: Optional[int] = Field(None, ge=1, le=5)
    delivery: Optional[int] = Field(None, ge=1, le=5)
    overall: int = Field(..., ge=1, le=5)


class Review(BaseModel):
    comment: Optional[str] = Field(None, max_length=1000)
    images: List[str] = Field(default_factory=list)
    review_date: Optional[datetime] = None


class Cancellation(BaseModel):
    reason: Optional[str] = None
    cancelled_by: Actor
    cancelled_at: datetime
    refund_amount: float = 0
    refund_status: Literal["pending", "processed", "failed"] = "pending"


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"

    Totals are derived: call orders.recompute_total after touching items or charges.
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: Optional[str] = None
    order_number: Optional[str] = None
    customer_id: str
    vendor_id: str
    order_type: Literal["one-time", "subscription"] = "one-time"
    items: List[OrderItem]
    subscription: Optional[OrderSubscription] = None
    delivery_address: Address
    scheduled_date: datetime
    scheduled_time: str
    delivery_time: DeliveryTime = Field(default_factory=DeliveryTime)
    items_total: float = Field(0, ge=0)
    delivery_charge: float = Field(0, ge=0)
    taxes: float = Field(0, ge=0)
    discount: Discount = Field(default_factory=Discount)
    total_amount: float = 0
    status: OrderStatus = OrderStatus.PENDING
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    payment: Payment
    special_instructions: Optional[str] = None
    vendor_notes: Optional[str] = None
    delivery_notes: Optional[str] = None
    rating: Optional[OrderRating] = None
    review: Optional[Review] = None
    cancellation: Optional[Cancellation] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
