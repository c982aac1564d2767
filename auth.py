"""
Authentication and authorization.

Accounts live in three collections (customer, vendor, admin). The gate never
walks a class hierarchy: it dispatches on the role carried by the token through
ACCOUNT_COLLECTIONS, and on the declared account type at login through
LOGIN_TYPES.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, Header, Request
from pydantic import BaseModel, ConfigDict
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_db, get_document_by_id, serialize_doc, to_object_id, update_document, utcnow
from errors import (
    AccountDeactivated,
    AccountLocked,
    Conflict,
    Forbidden,
    InvalidCredentials,
    Unauthenticated,
    ValidationFailed,
)
from schemas import ADMIN_ROLES, Address, Admin, Customer, Role, Vendor
from security import create_token, decode_token, hash_password, verify_password
from settings import settings

logger = logging.getLogger(__name__)

ACCOUNT_COLLECTIONS: Dict[Role, str] = {
    Role.CUSTOMER: "customer",
    Role.VENDOR: "vendor",
    Role.ADMIN: "admin",
    Role.SUPER_ADMIN: "admin",
}

LOGIN_TYPES: Dict[str, str] = {
    "customer": "customer",
    "vendor": "vendor",
    "admin": "admin",
}

WITHOUT_PASSWORD = {"password_hash": 0}


class CurrentAccount(BaseModel):
    """The authenticated caller: its account document minus the password hash."""
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    email: str
    role: Role
    is_active: bool = True

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def collection_for_role(role: Any) -> str:
    try:
        return ACCOUNT_COLLECTIONS[Role(role)]
    except ValueError:
        raise Unauthenticated("Invalid token role")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive UTC datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_locked(admin_doc: Dict[str, Any]) -> bool:
    lock_until = _as_utc(admin_doc.get("lock_until"))
    return bool(lock_until and lock_until > utcnow())


# --------------------- Request gate ---------------------

def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthenticated("Access denied. No token provided.")
    try:
        scheme, token = authorization.split()
    except ValueError:
        raise Unauthenticated("Invalid Authorization header")
    if scheme.lower() != "bearer":
        raise Unauthenticated("Invalid Authorization header")
    return token


def authenticate(request: Request, authorization: Optional[str] = Header(None),
                 database: Database = Depends(get_db)) -> CurrentAccount:
    payload = decode_token(_bearer_token(authorization))
    collection = collection_for_role(payload["role"])
    account = get_document_by_id(database, collection, payload["id"], projection=WITHOUT_PASSWORD)
    if not account:
        raise Unauthenticated("Token is not valid")
    if not account.get("is_active", False):
        raise AccountDeactivated()
    current = CurrentAccount(**account)
    request.state.account = current
    return current


def require_roles(*roles: Role):
    allowed = {Role(r) for r in roles}

    def dependency(account: CurrentAccount = Depends(authenticate)) -> CurrentAccount:
        if account.role not in allowed:
            raise Forbidden()
        return account

    return dependency


def authorize_owner_or_admin(account: CurrentAccount, owner_id: str) -> None:
    if account.id != str(owner_id) and not account.is_admin:
        raise Forbidden("Access denied. You can only access your own resources.")


def require_verified_vendor(account: CurrentAccount = Depends(authenticate)) -> CurrentAccount:
    if account.role != Role.VENDOR:
        raise Forbidden("Access denied. Vendor access required.")
    if not getattr(account, "is_verified", False) or getattr(account, "verification_status", None) != "approved":
        raise Forbidden("Access denied. Vendor account not verified.")
    return account


# --------------------- Registration ---------------------

def _ensure_unique(database: Database, collection: str, email: str, phone: str, label: str) -> None:
    existing = database[collection].find_one({"$or": [{"email": email}, {"phone": phone}]}, {"_id": 1})
    if existing:
        raise ValidationFailed(f"{label} already exists with this email or phone number")


def _insert_account(database: Database, collection: str, document: BaseModel, label: str) -> Dict[str, Any]:
    try:
        account_id = create_document(database, collection, document)
    except DuplicateKeyError:
        # lost a race with a concurrent registration for the same email/phone
        raise ValidationFailed(f"{label} already exists with this email or phone number")
    return get_document_by_id(database, collection, account_id, projection=WITHOUT_PASSWORD)


def register_customer(database: Database, name: str, email: str, phone: str,
                      password: str) -> Tuple[str, Dict[str, Any]]:
    email = email.lower()
    _ensure_unique(database, "customer", email, phone, "User")
    customer = Customer(name=name, email=email, phone=phone, password_hash=hash_password(password))
    account = _insert_account(database, "customer", customer, "User")
    logger.info("Registered customer %s", account["id"])
    return create_token(account), account


def register_vendor(database: Database, name: str, email: str, phone: str, password: str,
                    business_name: str, kitchen_address: Address,
                    business_description: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
    email = email.lower()
    _ensure_unique(database, "vendor", email, phone, "Vendor")
    vendor = Vendor(
        name=name,
        email=email,
        phone=phone,
        password_hash=hash_password(password),
        business_name=business_name,
        business_description=business_description,
        kitchen_address=kitchen_address,
    )
    account = _insert_account(database, "vendor", vendor, "Vendor")
    logger.info("Registered vendor %s (%s), awaiting verification", account["id"], business_name)
    return create_token(account), account


def create_admin(database: Database, name: str, email: str, phone: str, password: str,
                 role: Role = Role.ADMIN, permissions: Optional[list] = None) -> Dict[str, Any]:
    email = email.lower()
    _ensure_unique(database, "admin", email, phone, "Admin")
    admin = Admin(
        name=name,
        email=email,
        phone=phone,
        password_hash=hash_password(password),
        role=Role(role).value,
        permissions=permissions or [],
    )
    account = _insert_account(database, "admin", admin, "Admin")
    logger.info("Created %s account %s", account["role"], account["id"])
    return account


# --------------------- Login ---------------------

def _register_failed_admin_login(database: Database, admin_doc: Dict[str, Any]) -> None:
    updated = database["admin"].find_one_and_update(
        {"_id": admin_doc["_id"]},
        {"$inc": {"login_attempts": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        return
    attempts = updated.get("login_attempts", 0)
    if attempts >= settings.admin_max_login_attempts:
        lock_until = utcnow() + timedelta(minutes=settings.admin_lock_minutes)
        database["admin"].update_one(
            {"_id": admin_doc["_id"], "login_attempts": attempts},
            {"$set": {"lock_until": lock_until, "login_attempts": 0}},
        )
        logger.warning("Admin %s locked until %s after %d failed logins", admin_doc["_id"], lock_until.isoformat(), attempts)


def _reset_admin_login(database: Database, admin_doc: Dict[str, Any]) -> None:
    database["admin"].update_one(
        {"_id": admin_doc["_id"]},
        {"$set": {"login_attempts": 0, "lock_until": None, "last_login": utcnow()}},
    )


def login(database: Database, email: str, password: str, user_type: str = "customer") -> Tuple[str, Dict[str, Any]]:
    collection = LOGIN_TYPES.get(user_type)
    if collection is None:
        raise ValidationFailed("Invalid user type")
    is_admin_login = collection == "admin"

    doc = database[collection].find_one({"email": email.lower()})
    if not doc:
        logger.info("Failed %s login for %s: unknown email", user_type, email)
        raise InvalidCredentials()

    if is_admin_login and is_locked(doc):
        raise AccountLocked()

    if not verify_password(password, doc.get("password_hash", "")):
        if is_admin_login:
            _register_failed_admin_login(database, doc)
        logger.info("Failed %s login for %s: wrong password", user_type, email)
        raise InvalidCredentials()

    if not doc.get("is_active", False):
        raise AccountDeactivated()

    if is_admin_login:
        _reset_admin_login(database, doc)

    doc.pop("password_hash", None)
    account = serialize_doc(doc)
    logger.info("%s %s logged in", account["role"], account["id"])
    return create_token(account), account


def change_password(database: Database, account: CurrentAccount, current_password: str, new_password: str) -> None:
    collection = collection_for_role(account.role)
    doc = database[collection].find_one({"_id": to_object_id(account.id)}, {"password_hash": 1})
    if not doc or not verify_password(current_password, doc.get("password_hash", "")):
        raise ValidationFailed("Current password is incorrect")
    ok = update_document(
        database,
        collection,
        account.id,
        {"password_hash": hash_password(new_password)},
        extra_filter={"password_hash": doc["password_hash"]},
    )
    if not ok:
        raise Conflict("Password was changed concurrently, please retry")
    logger.info("Password changed for %s %s", account.role.value, account.id)


# --------------------- Output shaping ---------------------

def public_account(account: Dict[str, Any]) -> Dict[str, Any]:
    data = {
        "id": account["id"],
        "name": account["name"],
        "email": account["email"],
        "phone": account.get("phone"),
        "role": account["role"],
    }
    if account["role"] == Role.VENDOR.value:
        data["business_name"] = account.get("business_name")
        data["verification_status"] = account.get("verification_status")
        data["is_verified"] = account.get("is_verified", False)
    return data


def profile(account: CurrentAccount) -> Dict[str, Any]:
    """Role shaped view of the caller, as returned by /me."""
    doc = account.model_dump()
    data = {
        "id": account.id,
        "name": account.name,
        "email": account.email,
        "phone": doc.get("phone"),
        "role": account.role.value,
        "avatar": doc.get("avatar"),
        "is_active": account.is_active,
    }
    if account.role == Role.CUSTOMER:
        data["addresses"] = doc.get("addresses", [])
        data["preferences"] = doc.get("preferences", {})
        data["email_verified"] = doc.get("email_verified", False)
        data["phone_verified"] = doc.get("phone_verified", False)
    elif account.role == Role.VENDOR:
        data["business_name"] = doc.get("business_name")
        data["business_description"] = doc.get("business_description")
        data["verification_status"] = doc.get("verification_status")
        data["is_verified"] = doc.get("is_verified", False)
        data["rating"] = doc.get("rating")
        data["total_orders"] = doc.get("total_orders", 0)
    elif account.is_admin:
        data["permissions"] = doc.get("permissions", [])
        data["last_login"] = doc.get("last_login")
    return data
