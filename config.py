"""Application configuration.

``.env`` is loaded into the process environment when this module is imported,
so every module that imports it (``database`` included) sees the same
variables. :func:`load_settings` then turns the environment into a validated
:class:`Settings` object that the rest of the application receives by
reference. Business logic never calls ``os.getenv`` directly.
"""

import logging
import os
from typing import Dict, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from errors import ConfigError


def load_environment() -> bool:
    """Load ``ENV_FILE`` (default ``.env``); variables already set win."""
    return load_dotenv(os.getenv("ENV_FILE", ".env"))


load_environment()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEV_JWT_SECRET = "dev-secret-change-me"


class Plan(BaseModel):
    """A subscription plan a garage owner can pay for."""

    id: str
    name: str
    amount: int = Field(..., gt=0, description="Whole currency units")
    duration_days: int = Field(..., gt=0)
    description: str
    features: List[str] = Field(default_factory=list)


class Settings(BaseModel):
    app_env: Literal["development", "production", "test"] = "development"

    jwt_secret: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_expire_days: int = Field(7, gt=0)

    chapa_secret_key: Optional[str] = None
    chapa_api_url: str = "https://api.chapa.co/v1"
    chapa_callback_url: Optional[str] = None
    chapa_return_url: Optional[str] = None
    chapa_webhook_secret: Optional[str] = None
    payment_timeout_seconds: float = Field(20.0, gt=0)
    currency: str = "ETB"
    plans: Dict[str, Plan]

    cloudinary_cloud_name: Optional[str] = None
    cloudinary_api_key: Optional[str] = None
    cloudinary_api_secret: Optional[str] = None
    upload_dir: str = "uploads"

    max_login_attempts: int = Field(5, gt=0)
    lock_minutes: int = Field(60, gt=0)
    reset_token_minutes: int = Field(10, gt=0)
    port: int = Field(8000, gt=0)

    @field_validator("plans")
    @classmethod
    def require_known_plans(cls, v):
        missing = {"basic", "premium", "yearly"} - set(v)
        if missing:
            raise ValueError(f"missing plan definitions: {', '.join(sorted(missing))}")
        return v

    @model_validator(mode="after")
    def require_production_secrets(self):
        if self.app_env == "production":
            if self.jwt_secret == DEV_JWT_SECRET:
                raise ValueError("JWT_SECRET must be set in production")
            if not self.chapa_secret_key:
                raise ValueError("CHAPA_SECRET_KEY must be set in production")
        return self

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def cloudinary_configured(self) -> bool:
        return bool(self.cloudinary_cloud_name and self.cloudinary_api_key and self.cloudinary_api_secret)


def _int_env(env: Dict[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer")


def build_plans(env: Dict[str, str]) -> Dict[str, Plan]:
    return {
        "basic": Plan(
            id="basic",
            name="Basic Listing",
            amount=_int_env(env, "BASIC_PLAN_AMOUNT", 500),
            duration_days=30,
            description="Basic Garage Listing - 30 days access",
            features=[
                "Garage profile listing",
                "Basic search visibility",
                "Contact information display",
                "Up to 5 service listings",
            ],
        ),
        "premium": Plan(
            id="premium",
            name="Premium Listing",
            amount=_int_env(env, "PREMIUM_PLAN_AMOUNT", 1000),
            duration_days=30,
            description="Premium Garage Listing - 30 days with featured placement",
            features=[
                "All Basic features",
                "Featured placement",
                "Priority in search results",
                "Unlimited service listings",
                "Customer reviews displayed",
            ],
        ),
        "yearly": Plan(
            id="yearly",
            name="Yearly Premium",
            amount=_int_env(env, "YEARLY_PLAN_AMOUNT", 5000),
            duration_days=365,
            description="Yearly Premium Listing - 365 days with all features",
            features=[
                "All Premium features",
                "Verified badge",
                "Priority support",
            ],
        ),
    }


def load_settings(env: Optional[Dict[str, str]] = None) -> Settings:
    """Build settings from ``env`` (defaults to the process environment).

    Raises:
        ConfigError: if a value is missing or malformed.
    """
    if env is None:
        load_environment()
        env = dict(os.environ)

    try:
        env_plans = build_plans(env)
    except ValidationError as e:
        raise ConfigError(f"Invalid plan configuration: {e}")

    values = {
        "app_env": env.get("APP_ENV", "development"),
        "jwt_secret": env.get("JWT_SECRET") or DEV_JWT_SECRET,
        "jwt_expire_days": _int_env(env, "JWT_EXPIRE_DAYS", 7),
        "chapa_secret_key": env.get("CHAPA_SECRET_KEY"),
        "chapa_api_url": env.get("CHAPA_API_URL", "https://api.chapa.co/v1").rstrip("/"),
        "chapa_callback_url": env.get("CHAPA_CALLBACK_URL"),
        "chapa_return_url": env.get("CHAPA_RETURN_URL"),
        "chapa_webhook_secret": env.get("CHAPA_WEBHOOK_SECRET"),
        "payment_timeout_seconds": env.get("PAYMENT_TIMEOUT_SECONDS", 20.0),
        "currency": env.get("PAYMENT_CURRENCY", "ETB"),
        "plans": env_plans,
        "cloudinary_cloud_name": env.get("CLOUDINARY_CLOUD_NAME"),
        "cloudinary_api_key": env.get("CLOUDINARY_API_KEY"),
        "cloudinary_api_secret": env.get("CLOUDINARY_API_SECRET"),
        "upload_dir": env.get("UPLOAD_DIR", "uploads"),
        "max_login_attempts": _int_env(env, "MAX_LOGIN_ATTEMPTS", 5),
        "lock_minutes": _int_env(env, "LOCK_MINUTES", 60),
        "reset_token_minutes": _int_env(env, "RESET_TOKEN_MINUTES", 10),
        "port": _int_env(env, "PORT", 8000),
    }
    try:
        settings = Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")

    if settings.jwt_secret == DEV_JWT_SECRET:
        logger.warning("JWT_SECRET not set, using development secret")
    if not settings.chapa_secret_key:
        logger.warning("CHAPA_SECRET_KEY not set, payment initialization will fail")
    logger.info("Configuration loaded successfully (env=%s)", settings.app_env)
    return settings
