import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database

import auth
import orders
import vendors
from auth import CurrentAccount, authenticate, authorize_owner_or_admin, require_roles, require_verified_vendor
from database import db, ensure_indexes, get_db, get_document_by_id, update_document
from errors import ApiError, Forbidden, NotFound, PaymentProviderError, ValidationFailed
from schemas import (
    ADMIN_ROLES,
    PHONE_PATTERN,
    Address,
    Discount,
    MenuItem,
    OrderRating,
    OrderStatus,
    OrderSubscription,
    Role,
    SubscriptionPlan,
)
from settings import settings

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("tiffin")


def bootstrap_admin(database: Database) -> None:
    if not (settings.bootstrap_admin_email and settings.bootstrap_admin_password):
        return
    if database["admin"].find_one({"email": settings.bootstrap_admin_email.lower()}):
        return
    auth.create_admin(
        database,
        name=settings.bootstrap_admin_name,
        email=settings.bootstrap_admin_email,
        phone=settings.bootstrap_admin_phone,
        password=settings.bootstrap_admin_password,
        role=Role.SUPER_ADMIN,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
        bootstrap_admin(db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, database endpoints will fail")
    yield


app = FastAPI(title="Tiffin Ordering API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --------------------- Error handling ---------------------

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    error = ValidationFailed(errors=exc.errors())
    return JSONResponse(status_code=error.status_code, content=jsonable_encoder(error.to_dict()))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error", "code": "server_error"})


# --------------------- Utility ---------------------

def actor_for(account: CurrentAccount) -> str:
    if account.is_admin:
        return "admin"
    return account.role.value


def order_out(order) -> Dict[str, Any]:
    return jsonable_encoder(order.model_dump())


def load_visible_order(database: Database, order_id: str, account: CurrentAccount):
    order = orders.load_order(database, order_id)
    if account.is_admin:
        return order
    owner = order.vendor_id if account.role == Role.VENDOR else order.customer_id
    authorize_owner_or_admin(account, owner)
    return order


# --------------------- Models ---------------------

class RegisterRequest(BaseModel):
    name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    phone: str = Field(pattern=PHONE_PATTERN)
    password: str = Field(min_length=6)


class VendorRegisterRequest(RegisterRequest):
    business_name: str = Field(min_length=2, max_length=100)
    business_description: Optional[str] = Field(None, max_length=500)
    kitchen_address: Address


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)
    user_type: str = "customer"


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=6)


class OrderLineIn(BaseModel):
    menu_item_id: str
    quantity: int = Field(1, ge=1)
    special_instructions: Optional[str] = None


class OrderCreate(BaseModel):
    vendor_id: str
    items: List[OrderLineIn]
    delivery_address: Address
    scheduled_date: datetime
    scheduled_time: str
    payment_method: Literal["cash", "online", "wallet"] = "cash"
    taxes: float = Field(0, ge=0)
    discount: Optional[Discount] = None
    order_type: Literal["one-time", "subscription"] = "one-time"
    subscription: Optional[OrderSubscription] = None
    special_instructions: Optional[str] = None


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RatingRequest(OrderRating):
    comment: Optional[str] = Field(None, max_length=1000)


class MenuItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[Literal["breakfast", "lunch", "dinner", "snacks"]] = None
    is_available: Optional[bool] = None
    preparation_time: Optional[int] = Field(None, ge=0)


class VerificationUpdate(BaseModel):
    status: Literal["pending", "approved", "rejected"]


class ActiveUpdate(BaseModel):
    is_active: bool


# --------------------- Routes ---------------------

@app.get("/")
def root():
    return {"message": "Tiffin Ordering API is running"}


@app.get("/test")
def health():
    """Service health, including whether MongoDB answers."""
    report = {"backend": "running", "database": "not configured", "collections": []}
    if db is None:
        return report
    try:
        report["collections"] = sorted(db.list_collection_names())
        report["database"] = "connected"
    except Exception:
        logger.exception("Health check could not reach the database")
        report["database"] = "unreachable"
    return report


# Auth
@app.post("/api/auth/register/user", status_code=201)
def register_user(req: RegisterRequest, database: Database = Depends(get_db)):
    token, account = auth.register_customer(database, req.name, req.email, req.phone, req.password)
    return {"message": "User registered successfully", "token": token, "user": auth.public_account(account)}


@app.post("/api/auth/register/vendor", status_code=201)
def register_vendor(req: VendorRegisterRequest, database: Database = Depends(get_db)):
    token, account = auth.register_vendor(
        database,
        req.name,
        req.email,
        req.phone,
        req.password,
        business_name=req.business_name,
        kitchen_address=req.kitchen_address,
        business_description=req.business_description,
    )
    return {
        "message": "Vendor registered successfully. Please wait for admin approval.",
        "token": token,
        "vendor": auth.public_account(account),
    }


@app.post("/api/auth/login")
def login(req: LoginRequest, database: Database = Depends(get_db)):
    token, account = auth.login(database, req.email, req.password, req.user_type)
    return {"message": "Login successful", "token": token, "user": auth.public_account(account)}


@app.get("/api/auth/me")
def me(account: CurrentAccount = Depends(authenticate)):
    return {"message": "Profile retrieved successfully", "user": jsonable_encoder(auth.profile(account))}


@app.post("/api/auth/change-password")
def change_password(req: ChangePasswordRequest, account: CurrentAccount = Depends(authenticate),
                    database: Database = Depends(get_db)):
    auth.change_password(database, account, req.current_password, req.new_password)
    return {"message": "Password changed successfully"}


@app.post("/api/auth/logout")
def logout(account: CurrentAccount = Depends(authenticate)):
    # tokens are stateless; the client drops its copy
    return {"message": "Logged out successfully"}


# Customers
@app.get("/api/customers/{customer_id}")
def get_customer(customer_id: str, account: CurrentAccount = Depends(authenticate),
                 database: Database = Depends(get_db)):
    authorize_owner_or_admin(account, customer_id)
    customer = get_document_by_id(database, "customer", customer_id, projection=auth.WITHOUT_PASSWORD)
    if not customer:
        raise NotFound("Customer not found")
    return jsonable_encoder(customer)


# Vendors
@app.get("/api/vendors")
def list_vendors(pincode: Optional[str] = None, limit: int = 50, database: Database = Depends(get_db)):
    return jsonable_encoder(vendors.list_public_vendors(database, pincode=pincode, limit=limit))


@app.get("/api/vendors/{vendor_id}")
def get_vendor(vendor_id: str, database: Database = Depends(get_db)):
    return jsonable_encoder(vendors.get_public_vendor(database, vendor_id))


@app.post("/api/vendor/menu", status_code=201)
def add_menu_item(body: MenuItem, vendor: CurrentAccount = Depends(require_verified_vendor),
                  database: Database = Depends(get_db)):
    return vendors.add_menu_item(database, vendor.id, body).model_dump()


@app.put("/api/vendor/menu/{item_id}")
def update_menu_item(item_id: str, body: MenuItemUpdate, vendor: CurrentAccount = Depends(require_verified_vendor),
                     database: Database = Depends(get_db)):
    return vendors.update_menu_item(database, vendor.id, item_id, body.model_dump(exclude_none=True))


@app.delete("/api/vendor/menu/{item_id}")
def remove_menu_item(item_id: str, vendor: CurrentAccount = Depends(require_verified_vendor),
                     database: Database = Depends(get_db)):
    vendors.remove_menu_item(database, vendor.id, item_id)
    return {"deleted": True}


@app.post("/api/vendor/plans", status_code=201)
def add_subscription_plan(body: SubscriptionPlan, vendor: CurrentAccount = Depends(require_verified_vendor),
                          database: Database = Depends(get_db)):
    return vendors.add_subscription_plan(database, vendor.id, body).model_dump()


# Orders
@app.post("/api/orders", status_code=201)
def create_order(body: OrderCreate, customer: CurrentAccount = Depends(require_roles(Role.CUSTOMER)),
                 database: Database = Depends(get_db)):
    order = orders.place_order(
        database,
        customer_id=customer.id,
        vendor_id=body.vendor_id,
        items=[line.model_dump() for line in body.items],
        delivery_address=body.delivery_address,
        scheduled_date=body.scheduled_date,
        scheduled_time=body.scheduled_time,
        payment_method=body.payment_method,
        taxes=body.taxes,
        discount=body.discount,
        order_type=body.order_type,
        subscription=body.subscription,
        special_instructions=body.special_instructions,
    )
    return order_out(order)


@app.get("/api/orders/mine")
def my_orders(account: CurrentAccount = Depends(require_roles(Role.CUSTOMER, Role.VENDOR)),
              database: Database = Depends(get_db)):
    field = "vendor_id" if account.role == Role.VENDOR else "customer_id"
    return [order_out(o) for o in orders.orders_for(database, field, account.id)]


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, account: CurrentAccount = Depends(authenticate), database: Database = Depends(get_db)):
    return order_out(load_visible_order(database, order_id, account))


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdate,
                        account: CurrentAccount = Depends(require_roles(Role.VENDOR, *ADMIN_ROLES)),
                        database: Database = Depends(get_db)):
    if account.role == Role.VENDOR:
        require_verified_vendor(account)
    order = load_visible_order(database, order_id, account)
    updated = orders.change_status(database, order.id, body.status, actor_for(account), note=body.note)
    return order_out(updated)


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: CancelRequest, account: CurrentAccount = Depends(authenticate),
                 database: Database = Depends(get_db)):
    order = load_visible_order(database, order_id, account)
    cancelled = orders.cancel_order(database, order.id, actor_for(account), reason=body.reason)
    return order_out(cancelled)


@app.post("/api/orders/{order_id}/rating")
def rate_order(order_id: str, body: RatingRequest, customer: CurrentAccount = Depends(require_roles(Role.CUSTOMER)),
               database: Database = Depends(get_db)):
    order = load_visible_order(database, order_id, customer)
    rating = OrderRating(**body.model_dump(exclude={"comment"}))
    return order_out(orders.rate_order(database, order, customer.id, rating, comment=body.comment))


# Payments (Stripe or mock)
@app.post("/api/orders/{order_id}/payment-intent")
def create_payment_intent(order_id: str, customer: CurrentAccount = Depends(require_roles(Role.CUSTOMER)),
                          database: Database = Depends(get_db)):
    order = load_visible_order(database, order_id, customer)
    if order.payment.method != "online":
        raise ValidationFailed("Order is not paid online")
    if orders.is_terminal(order.status):
        raise ValidationFailed(f"Order is already {order.status}")
    amount = int(round(order.total_amount * 100))
    if settings.stripe_secret_key:
        try:
            import stripe
            stripe.api_key = settings.stripe_secret_key
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency="inr",
                payment_method_types=["card"],
                metadata={"order_number": order.order_number},
            )
        except Exception:
            logger.exception("Stripe payment intent failed for order %s", order.order_number)
            raise PaymentProviderError()
        orders.record_payment_reference(database, order, intent.id)
        return {"clientSecret": intent.client_secret, "amount": amount}
    # Mock if Stripe not configured
    orders.record_payment_reference(database, order, f"mock_{order.order_number}")
    return {"clientSecret": "mock_client_secret", "amount": amount}


# Admin
@app.patch("/api/admin/vendors/{vendor_id}/verification")
def set_vendor_verification(vendor_id: str, body: VerificationUpdate,
                            admin: CurrentAccount = Depends(require_roles(*ADMIN_ROLES)),
                            database: Database = Depends(get_db)):
    return jsonable_encoder(vendors.set_verification(database, vendor_id, body.status, admin.id))


@app.patch("/api/admin/accounts/{kind}/{account_id}/active")
def set_account_active(kind: str, account_id: str, body: ActiveUpdate,
                       admin: CurrentAccount = Depends(require_roles(*ADMIN_ROLES)),
                       database: Database = Depends(get_db)):
    collection = auth.LOGIN_TYPES.get(kind)
    if collection is None:
        raise ValidationFailed("Invalid account type")
    if collection == "admin" and admin.role != Role.SUPER_ADMIN:
        raise Forbidden("Only a super-admin can change administrator accounts")
    if not update_document(database, collection, account_id, {"is_active": body.is_active}):
        raise NotFound("Account not found")
    logger.info("%s %s set active=%s by admin %s", kind, account_id, body.is_active, admin.id)
    return {"id": account_id, "is_active": body.is_active}


# Dashboards
@app.get("/api/dashboard/customer")
def customer_dashboard(customer: CurrentAccount = Depends(require_roles(Role.CUSTOMER)),
                       database: Database = Depends(get_db)):
    recent = orders.orders_for(database, "customer_id", customer.id, limit=5)
    subscriptions = database["order"].count_documents({
        "customer_id": customer.id,
        "order_type": "subscription",
        "subscription.is_active": True,
        "status": {"$nin": [s.value for s in orders.TERMINAL_STATUSES]},
    })
    return {"recent_orders": [order_out(o) for o in recent], "active_subscriptions": subscriptions}


@app.get("/api/dashboard/vendor")
def vendor_dashboard(vendor: CurrentAccount = Depends(require_roles(Role.VENDOR)),
                     database: Database = Depends(get_db)):
    by_status = {
        status.value: database["order"].count_documents({"vendor_id": vendor.id, "status": status.value})
        for status in OrderStatus
    }
    return {
        "orders_by_status": by_status,
        "rating": getattr(vendor, "rating", None),
        "total_orders": getattr(vendor, "total_orders", 0),
        "total_earnings": getattr(vendor, "total_earnings", 0),
        "verification_status": getattr(vendor, "verification_status", None),
    }


@app.get("/api/dashboard/admin")
def admin_dashboard(admin: CurrentAccount = Depends(require_roles(*ADMIN_ROLES)),
                    database: Database = Depends(get_db)):
    return {
        "customers": database["customer"].count_documents({}),
        "vendors": database["vendor"].count_documents({}),
        "pending_vendors": database["vendor"].count_documents({"verification_status": "pending"}),
        "orders": database["order"].count_documents({}),
        "open_orders": database["order"].count_documents(
            {"status": {"$nin": [s.value for s in orders.TERMINAL_STATUSES]}}
        ),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
