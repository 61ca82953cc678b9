import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import FrozenSet, List, Optional

from dotenv import load_dotenv

PLACEHOLDER_KEY_ID = "YOUR_KEY_ID"
PLACEHOLDER_KEY_SECRET = "YOUR_KEY_SECRET"


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_float(name: str) -> Optional[float]:
    raw_value = _env(name)
    if not raw_value:
        return None
    try:
        value = float(raw_value)
    except ValueError:
        return None
    return value if value > 0 else None


def _env_decimal(name: str, default: str) -> Decimal:
    try:
        value = Decimal(_env(name, default))
    except InvalidOperation:
        return Decimal(default)
    return value if value > 0 else Decimal(default)


@dataclass(frozen=True)
class GatewaySettings:
    key_id: str = ""
    key_secret: str = ""
    webhook_secret: str = ""
    base_url: str = "https://api.razorpay.com/v1"
    currency: str = "INR"
    currency_symbol: str = "₹"
    minor_units_per_major: int = 100
    # Razorpay rejects orders below one rupee.
    minimum_amount: int = 100
    timeout: Optional[float] = None

    @property
    def configured(self) -> bool:
        return bool(
            self.key_id
            and self.key_secret
            and self.key_id != PLACEHOLDER_KEY_ID
            and self.key_secret != PLACEHOLDER_KEY_SECRET
        )

    @property
    def signing_secret(self) -> str:
        # Placeholder credentials are public, so they never sign webhooks.
        if self.webhook_secret:
            return self.webhook_secret
        return self.key_secret if self.configured else ""

    @property
    def masked_key_id(self) -> str:
        if not self.key_id:
            return "NOT SET"
        return f"{self.key_id[:10]}..."

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            key_id=_env("RAZORPAY_KEY_ID"),
            key_secret=_env("RAZORPAY_KEY_SECRET"),
            webhook_secret=_env("RAZORPAY_WEBHOOK_SECRET"),
            base_url=_env("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1").rstrip("/"),
            currency=_env("RAZORPAY_CURRENCY", "INR").upper(),
            timeout=_env_float("RAZORPAY_TIMEOUT_SECONDS"),
        )


@dataclass(frozen=True)
class DiscountSettings:
    # Discounts are rounded to this many major currency units (1 = whole rupees).
    rounding_unit: Decimal = Decimal("1")
    currency_symbol: str = "₹"

    @classmethod
    def from_env(cls) -> "DiscountSettings":
        return cls(
            rounding_unit=_env_decimal("DISCOUNT_ROUNDING_UNIT", "1"),
            currency_symbol=_env("CURRENCY_SYMBOL", "₹"),
        )


@dataclass(frozen=True)
class Settings:
    jwt_secret_key: str = "your-secret-key-change-in-production"
    jwt_access_token_expires: timedelta = timedelta(days=7)
    mongo_uri: str = "mongodb://localhost:27017/prismhold"
    google_client_id: str = ""
    max_upload_mb: int = 10
    allowed_image_extensions: FrozenSet[str] = frozenset(
        {"png", "jpg", "jpeg", "gif", "webp"}
    )
    cors_origins: List[str] = field(default_factory=list)
    trusted_proxy_hops: int = 1
    environment: str = "development"
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    discounts: DiscountSettings = field(default_factory=DiscountSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        cors_origins = [
            origin.strip()
            for origin in _env("CORS_ALLOWED_ORIGINS").split(",")
            if origin.strip()
        ]
        for name in ("FRONTEND_URL", "PUBLIC_FRONTEND_URL"):
            origin = _env(name)
            if origin:
                cors_origins.append(origin)

        return cls(
            jwt_secret_key=_env("JWT_SECRET", "your-secret-key-change-in-production"),
            mongo_uri=_env("MONGODB_URI", "mongodb://localhost:27017/prismhold"),
            google_client_id=_env("GOOGLE_CLIENT_ID"),
            max_upload_mb=_env_int("MAX_UPLOAD_SIZE_MB", 10),
            cors_origins=cors_origins,
            trusted_proxy_hops=max(0, _env_int("TRUSTED_PROXY_HOPS", 1)),
            environment=_env("FLASK_ENV", "development"),
            gateway=GatewaySettings.from_env(),
            discounts=DiscountSettings.from_env(),
        )
