"""
Settings

Environment driven configuration. Values are read once at import time,
after loading a local .env file if one exists.
"""
import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings(BaseModel):
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    jwt_alg: str = os.getenv("JWT_ALG", "HS256")
    jwt_expire_days: int = _env_int("JWT_EXPIRE_DAYS", 7)

    database_url: Optional[str] = os.getenv("DATABASE_URL")
    database_name: Optional[str] = os.getenv("DATABASE_NAME")

    bcrypt_rounds: int = _env_int("BCRYPT_ROUNDS", 12)

    # admin lockout
    admin_max_login_attempts: int = _env_int("ADMIN_MAX_LOGIN_ATTEMPTS", 5)
    admin_lock_minutes: int = _env_int("ADMIN_LOCK_MINUTES", 120)

    order_number_prefix: str = os.getenv("ORDER_NUMBER_PREFIX", "TMS")
    stripe_secret_key: Optional[str] = os.getenv("STRIPE_SECRET_KEY")

    cors_origins: List[str] = _env_list("CORS_ORIGINS", "*")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # optional administrator created at startup when none exists with this email
    bootstrap_admin_email: Optional[str] = os.getenv("BOOTSTRAP_ADMIN_EMAIL")
    bootstrap_admin_password: Optional[str] = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
    bootstrap_admin_phone: str = os.getenv("BOOTSTRAP_ADMIN_PHONE", "0000000000")
    bootstrap_admin_name: str = os.getenv("BOOTSTRAP_ADMIN_NAME", "Administrator")


settings = Settings()
