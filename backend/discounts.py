"""Promo code evaluation.

Everything in this module is pure: the caller looks the code up, passes the
snapshot together with the cart and the current time, and gets back a
:class:`DiscountResult`. Nothing here touches the database, and usage
counters are never incremented here.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Union

from .settings import DiscountSettings

Number = Union[int, float, Decimal]


class PromoCodeConfigError(ValueError):
    pass


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Applicability(str, Enum):
    ALL = "all"
    SPECIFIC = "specific"


class RejectionReason(str, Enum):
    NOT_FOUND = "NotFound"
    NOT_YET_VALID = "NotYetValid"
    EXPIRED = "Expired"
    LIMIT_REACHED = "LimitReached"
    BELOW_MINIMUM = "BelowMinimum"
    NOT_APPLICABLE = "NotApplicable"


def normalize_code(value) -> str:
    return str(value or "").strip().upper()


def to_decimal(value, field_name: str = "value") -> Decimal:
    if isinstance(value, bool):
        raise PromoCodeConfigError(f"{field_name} must be a number.")
    try:
        numeric = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise PromoCodeConfigError(f"{field_name} must be a number.")
    if not numeric.is_finite():
        raise PromoCodeConfigError(f"{field_name} must be a finite number.")
    return numeric


def _optional_decimal(value, field_name: str) -> Optional[Decimal]:
    # Zero and empty values mean "no constraint", as they do in stored documents.
    if value is None or value == "":
        return None
    numeric = to_decimal(value, field_name)
    if numeric < 0:
        raise PromoCodeConfigError(f"{field_name} cannot be negative.")
    return numeric or None


def _optional_int(value, field_name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        raise PromoCodeConfigError(f"{field_name} must be a whole number.")
    if numeric < 0:
        raise PromoCodeConfigError(f"{field_name} cannot be negative.")
    return numeric or None


def as_naive_utc(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        candidate = value.strip().replace("Z", "+00:00")
        try:
            value = datetime.fromisoformat(candidate)
        except ValueError:
            raise PromoCodeConfigError(f"Invalid date: {value!r}")
    if not isinstance(value, datetime):
        raise PromoCodeConfigError(f"Invalid date: {value!r}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def format_amount(value: Decimal):
    if value == value.to_integral_value():
        return int(value)
    return float(value)


@dataclass(frozen=True)
class PromoCode:
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    applicable_to: Applicability = Applicability.ALL
    product_ids: FrozenSet[str] = frozenset()
    min_purchase: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = None
    used_count: int = 0
    is_active: bool = True
    description: str = ""

    def __post_init__(self):
        if not self.code:
            raise PromoCodeConfigError("Promo code is required.")
        if self.discount_value < 0:
            raise PromoCodeConfigError("discountValue cannot be negative.")

    @classmethod
    def from_document(cls, document: Dict) -> "PromoCode":
        try:
            discount_type = DiscountType(
                str(document.get("discount_type") or DiscountType.PERCENTAGE.value)
            )
        except ValueError:
            raise PromoCodeConfigError("discountType must be 'percentage' or 'fixed'.")
        try:
            applicable_to = Applicability(
                str(document.get("applicable_to") or Applicability.ALL.value)
            )
        except ValueError:
            raise PromoCodeConfigError("applicableTo must be 'all' or 'specific'.")

        raw_product_ids = document.get("product_ids") or []
        if not isinstance(raw_product_ids, (list, tuple, set, frozenset)):
            raise PromoCodeConfigError("productIds must be a list.")

        return cls(
            code=normalize_code(document.get("code")),
            discount_type=discount_type,
            discount_value=to_decimal(document.get("discount_value"), "discountValue"),
            applicable_to=applicable_to,
            product_ids=frozenset(
                str(product_id).strip()
                for product_id in raw_product_ids
                if str(product_id).strip()
            ),
            min_purchase=_optional_decimal(document.get("min_purchase"), "minPurchase"),
            max_discount=_optional_decimal(document.get("max_discount"), "maxDiscount"),
            valid_from=as_naive_utc(document.get("valid_from")),
            valid_until=as_naive_utc(document.get("valid_until")),
            usage_limit=_optional_int(document.get("usage_limit"), "usageLimit"),
            used_count=_optional_int(document.get("used_count"), "usedCount") or 0,
            is_active=bool(document.get("is_active", True)),
            description=str(document.get("description") or ""),
        )


@dataclass(frozen=True)
class DiscountResult:
    valid: bool
    reason: Optional[RejectionReason] = None
    message: str = ""
    discount_amount: Optional[Decimal] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = None

    @classmethod
    def rejected(cls, reason: RejectionReason, message: str) -> "DiscountResult":
        return cls(valid=False, reason=reason, message=message)

    @classmethod
    def accepted(cls, amount: Decimal, promo_code: PromoCode) -> "DiscountResult":
        return cls(
            valid=True,
            discount_amount=amount,
            discount_type=promo_code.discount_type,
            discount_value=promo_code.discount_value,
        )

    def to_payload(self) -> Dict[str, object]:
        if not self.valid:
            return {"error": self.message, "reason": self.reason.value}
        return {
            "valid": True,
            "discount": format_amount(self.discount_amount),
            "discountType": self.discount_type.value,
            "discountValue": format_amount(self.discount_value),
        }


def cart_product_ids(cart_items: Optional[Iterable]) -> FrozenSet[str]:
    identifiers = set()
    for item in cart_items or []:
        if not isinstance(item, dict):
            continue
        product_id = item.get("id")
        if product_id is None:
            product_id = item.get("productId", item.get("product_id"))
        if product_id is not None and str(product_id).strip():
            identifiers.add(str(product_id).strip())
    return frozenset(identifiers)


class DiscountEngine:
    def __init__(self, settings: DiscountSettings):
        self.settings = settings

    def evaluate(
        self,
        promo_code: Optional[PromoCode],
        cart_items: Optional[Iterable],
        subtotal: Number,
        now: datetime,
    ) -> DiscountResult:
        """Check ``promo_code`` against the cart; the first failing check wins."""
        subtotal_value = to_decimal(subtotal, "subtotal")
        now = as_naive_utc(now)

        if promo_code is None or not promo_code.is_active:
            return DiscountResult.rejected(RejectionReason.NOT_FOUND, "Invalid promo code")

        if promo_code.valid_from and now < promo_code.valid_from:
            return DiscountResult.rejected(
                RejectionReason.NOT_YET_VALID, "Promo code not yet valid"
            )
        if promo_code.valid_until and now > promo_code.valid_until:
            return DiscountResult.rejected(RejectionReason.EXPIRED, "Promo code expired")

        if promo_code.usage_limit and promo_code.used_count >= promo_code.usage_limit:
            return DiscountResult.rejected(
                RejectionReason.LIMIT_REACHED, "Promo code usage limit reached"
            )

        if promo_code.min_purchase and subtotal_value < promo_code.min_purchase:
            return DiscountResult.rejected(
                RejectionReason.BELOW_MINIMUM,
                f"Minimum purchase of {self.settings.currency_symbol}"
                f"{format_amount(promo_code.min_purchase)} required",
            )

        if promo_code.applicable_to == Applicability.SPECIFIC:
            if not cart_product_ids(cart_items) & promo_code.product_ids:
                return DiscountResult.rejected(
                    RejectionReason.NOT_APPLICABLE,
                    "Promo code not applicable to selected products",
                )

        return DiscountResult.accepted(
            self.calculate(promo_code, subtotal_value), promo_code
        )

    def calculate(self, promo_code: PromoCode, subtotal: Decimal) -> Decimal:
        if promo_code.discount_type == DiscountType.PERCENTAGE:
            raw = subtotal * promo_code.discount_value / Decimal(100)
            if promo_code.max_discount:
                raw = min(raw, promo_code.max_discount)
        else:
            raw = promo_code.discount_value

        discount = self._round(min(raw, subtotal), ROUND_HALF_UP)
        if discount > subtotal:
            discount = self._round(subtotal, ROUND_FLOOR)
        return max(discount, Decimal(0))

    def _round(self, value: Decimal, rounding: str) -> Decimal:
        unit = self.settings.rounding_unit
        return (value / unit).quantize(Decimal(1), rounding=rounding) * unit
