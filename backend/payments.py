"""Payment state for orders and its reconciliation with Razorpay.

An order carries two status fields: ``status`` (fulfilment) and
``payment_status``. Only :func:`apply` decides how they move. Every entry
point below loads the order, derives the target state from an independent
source (a signature or the gateway's own record), and writes it back; none
of them depends on what another entry point wrote first.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .errors import (
    AuthenticationError,
    ConfigurationError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from .gateway import GatewayError
from .settings import GatewaySettings

logger = logging.getLogger(__name__)

CONFIRMED_PAYMENT_STATUSES = frozenset({"captured", "authorized"})
FAILED_PAYMENT_STATUS = "failed"
ORDER_SETTLED_MESSAGE = "This order is no longer awaiting payment."


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"


class EventKind(str, Enum):
    GATEWAY_ORDER_CREATED = "GatewayOrderCreated"
    SIGNATURE_VALID = "SignatureValid"
    SIGNATURE_INVALID = "SignatureInvalid"
    GATEWAY_CONFIRMED = "GatewayConfirmed"
    WEBHOOK_CAPTURED = "WebhookCaptured"
    WEBHOOK_FAILED = "WebhookFailed"


WEBHOOK_EVENTS = {
    "payment.captured": EventKind.WEBHOOK_CAPTURED,
    "payment.authorized": EventKind.WEBHOOK_CAPTURED,
    "payment.failed": EventKind.WEBHOOK_FAILED,
}


class InvalidTransition(Exception):
    pass


@dataclass(frozen=True)
class PaymentEvent:
    kind: EventKind
    remote_status: Optional[str] = None


@dataclass(frozen=True)
class PaymentState:
    status: OrderStatus
    payment_status: PaymentStatus

    @property
    def settled(self) -> bool:
        return self != PENDING_STATE

    @property
    def succeeded(self) -> bool:
        return self.payment_status == PaymentStatus.SUCCESS

    @classmethod
    def from_document(cls, document: Dict) -> "PaymentState":
        try:
            status = OrderStatus(document.get("status") or OrderStatus.PENDING.value)
        except ValueError:
            status = OrderStatus.PENDING
        try:
            payment_status = PaymentStatus(
                document.get("payment_status") or PaymentStatus.PENDING.value
            )
        except ValueError:
            payment_status = PaymentStatus.PENDING
        return cls(status, payment_status)


PENDING_STATE = PaymentState(OrderStatus.PENDING, PaymentStatus.PENDING)
SUCCESS_STATE = PaymentState(OrderStatus.PROCESSING, PaymentStatus.SUCCESS)
FAILED_STATE = PaymentState(OrderStatus.FAILED, PaymentStatus.FAILED)


def apply(state: PaymentState, event: PaymentEvent) -> PaymentState:
    """Return the state ``event`` moves ``state`` to.

    Only ``(Pending, Pending)`` reacts to payment events; once an order has
    succeeded or failed it keeps that state, and nothing leads back to
    ``Pending``.
    """
    if event.kind == EventKind.GATEWAY_ORDER_CREATED:
        if state.settled:
            raise InvalidTransition(
                f"Cannot open a gateway order for an order in state "
                f"({state.status.value}, {state.payment_status.value})."
            )
        return PENDING_STATE

    if state.settled:
        return state

    if event.kind == EventKind.SIGNATURE_VALID:
        return state
    if event.kind in (EventKind.SIGNATURE_INVALID, EventKind.WEBHOOK_FAILED):
        return FAILED_STATE
    if event.kind == EventKind.WEBHOOK_CAPTURED:
        return SUCCESS_STATE
    if event.kind == EventKind.GATEWAY_CONFIRMED:
        remote_status = str(event.remote_status or "").lower()
        if remote_status in CONFIRMED_PAYMENT_STATUSES:
            return SUCCESS_STATE
        return FAILED_STATE
    raise InvalidTransition(f"Unknown payment event: {event.kind!r}")


def compute_signature(secret: str, message) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    secret: str, gateway_order_id: str, gateway_payment_id: str, signature: str
) -> bool:
    expected = compute_signature(secret, f"{gateway_order_id}|{gateway_payment_id}")
    return hmac.compare_digest(expected, str(signature or ""))


def verify_webhook_signature(secret: str, raw_body: bytes, signature: str) -> bool:
    expected = compute_signature(secret, raw_body)
    return hmac.compare_digest(expected, str(signature or ""))


def select_payment(items: Optional[Iterable]) -> Optional[Dict]:
    payments = [item for item in items or [] if isinstance(item, dict)]
    for payment in payments:
        if str(payment.get("status") or "").lower() in CONFIRMED_PAYMENT_STATUSES:
            return payment
    return payments[0] if payments else None


def known_gateway_order_ids(order: Dict) -> List[str]:
    """Gateway order ids issued for ``order``, oldest first."""
    identifiers = [str(value) for value in order.get("gateway_order_ids") or [] if value]
    current = order.get("gateway_order_id")
    if current and current not in identifiers:
        identifiers.append(str(current))
    return identifiers


class PaymentReconciler:
    def __init__(self, settings: GatewaySettings, orders, gateway):
        self.settings = settings
        self.orders = orders
        self.gateway = gateway

    def require_configuration(self):
        if not self.settings.configured:
            raise ConfigurationError(
                "Razorpay is not configured. Please set RAZORPAY_KEY_ID and "
                "RAZORPAY_KEY_SECRET in the environment."
            )

    def to_minor_units(self, amount) -> int:
        if isinstance(amount, bool):
            raise ValidationError("Invalid amount", reason="InvalidAmount")
        try:
            major = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Invalid amount", reason="InvalidAmount")
        if not major.is_finite() or major <= 0:
            raise ValidationError("Invalid amount", reason="InvalidAmount")
        minor = major * self.settings.minor_units_per_major
        return int(minor.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    def _order_total_in_minor_units(self, order: Dict) -> Optional[int]:
        try:
            return self.to_minor_units(order.get("total"))
        except ValidationError:
            return None

    def create_gateway_order(
        self, order_id: str, user_id: str, amount, customer_email: str = ""
    ) -> Dict[str, object]:
        self.require_configuration()
        if not order_id or amount is None or amount == "":
            raise ValidationError("Order ID and amount are required")

        amount_minor = self.to_minor_units(amount)
        order = self.orders.find_for_owner(order_id, user_id)
        if not order:
            raise NotFoundError("Order not found")

        if amount_minor < self.settings.minimum_amount:
            minimum_major = Decimal(self.settings.minimum_amount) / self.settings.minor_units_per_major
            raise ValidationError(
                f"Amount must be at least {self.settings.currency_symbol}{minimum_major.normalize()}",
                reason="InvalidAmount",
            )

        try:
            apply(PaymentState.from_document(order), PaymentEvent(EventKind.GATEWAY_ORDER_CREATED))
        except InvalidTransition:
            raise ValidationError(ORDER_SETTLED_MESSAGE, reason="OrderSettled")

        # The submitted amount is what the gateway charges; the stored total is not enforced.
        stored_total = self._order_total_in_minor_units(order)
        if stored_total is not None and stored_total != amount_minor:
            logger.warning(
                "Gateway amount %s differs from stored total %s for order %s",
                amount_minor,
                stored_total,
                order_id,
            )

        logger.info(
            "Creating Razorpay order for %s: %s %s (key %s)",
            order_id,
            amount_minor,
            self.settings.currency,
            self.settings.masked_key_id,
        )
        try:
            gateway_order = self.gateway.create_order(
                amount=amount_minor,
                currency=self.settings.currency,
                receipt=f"order_{order['_id']}",
                notes={
                    "orderId": str(order["_id"]),
                    "userId": str(user_id),
                    "email": customer_email or "",
                },
            )
        except GatewayError as exc:
            logger.error("Razorpay order creation failed for %s: %s", order_id, exc.message)
            raise ExternalServiceError(exc.message, status_code=exc.status_code)

        gateway_order_id = str(gateway_order.get("id") or "").strip()
        if not gateway_order_id:
            raise ExternalServiceError("Razorpay did not return an order identifier.")

        # Conditional on the order still being (Pending, Pending) at write time.
        if not self.orders.attach_gateway_order(order["_id"], gateway_order_id):
            logger.warning(
                "Order %s settled while Razorpay order %s was being created; not attaching it",
                order_id,
                gateway_order_id,
            )
            raise ValidationError(ORDER_SETTLED_MESSAGE, reason="OrderSettled")
        logger.info("Razorpay order %s created for %s", gateway_order_id, order_id)

        return {
            "success": True,
            "orderId": gateway_order_id,
            "amount": gateway_order.get("amount", amount_minor),
            "currency": gateway_order.get("currency", self.settings.currency),
            "keyId": self.settings.key_id,
        }

    def verify_payment(
        self,
        order_id: str,
        user_id: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> Dict[str, object]:
        self.require_configuration()
        if not (order_id and gateway_order_id and gateway_payment_id and signature):
            raise ValidationError("Missing payment details")

        order = self.orders.find_for_owner(order_id, user_id)
        if not order:
            raise NotFoundError("Order not found")

        state = PaymentState.from_document(order)
        if not verify_payment_signature(
            self.settings.key_secret, gateway_order_id, gateway_payment_id, signature
        ):
            logger.warning("Invalid payment signature for order %s", order_id)
            self._transition(order, state, PaymentEvent(EventKind.SIGNATURE_INVALID))
            raise AuthenticationError("Invalid payment signature", reason="InvalidSignature")

        # A genuine signature for another internal order must not settle this one.
        if not self._owns_gateway_order(order, gateway_order_id):
            raise ValidationError(
                "Payment does not belong to this order", reason="OrderMismatch"
            )

        state = apply(state, PaymentEvent(EventKind.SIGNATURE_VALID))
        try:
            payment = self.gateway.fetch_payment(gateway_payment_id)
        except GatewayError as exc:
            logger.error("Razorpay payment fetch failed for %s: %s", gateway_payment_id, exc.message)
            self._transition(order, state, PaymentEvent(EventKind.GATEWAY_CONFIRMED))
            raise ExternalServiceError(
                "Failed to verify payment", status_code=500, reason="VerificationFailed"
            )

        remote_status = str(payment.get("status") or "")
        new_state = self._transition(
            order,
            state,
            PaymentEvent(EventKind.GATEWAY_CONFIRMED, remote_status),
            {
                "gateway_order_id": gateway_order_id,
                "gateway_payment_id": gateway_payment_id,
                "gateway_signature": signature,
            },
        )
        if not new_state.succeeded:
            if remote_status.lower() in CONFIRMED_PAYMENT_STATUSES:
                logger.error(
                    "Captured payment %s arrived for order %s, which is already failed",
                    gateway_payment_id,
                    order_id,
                )
                raise ValidationError(
                    "Payment was received, but this order was already marked as failed. "
                    "Please contact support.",
                    reason="OrderAlreadyFailed",
                )
            raise ValidationError("Payment not completed", reason="PaymentNotCompleted")
        return {"success": True, "message": "Payment verified successfully"}

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, object]:
        secret = self.settings.signing_secret
        if not secret:
            raise ConfigurationError("Razorpay webhook secret is not configured.")
        if not signature or not verify_webhook_signature(secret, raw_body, signature):
            logger.warning("Rejected Razorpay webhook with an invalid signature")
            raise AuthenticationError("Invalid webhook signature", reason="InvalidSignature")

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Malformed webhook payload")
        if not isinstance(event, dict):
            raise ValidationError("Malformed webhook payload")

        event_type = event.get("event")
        kind = WEBHOOK_EVENTS.get(event_type)
        if kind is None:
            logger.info("Ignoring Razorpay webhook event %s", event_type)
            return {"success": True}

        payload = event.get("payload") if isinstance(event.get("payload"), dict) else {}
        payment = payload.get("payment") if isinstance(payload.get("payment"), dict) else {}
        entity = payment.get("entity") if isinstance(payment.get("entity"), dict) else {}
        gateway_order_id = str(entity.get("order_id") or "").strip()
        gateway_payment_id = str(entity.get("id") or "").strip()

        order = self.orders.find_by_gateway_order_id(gateway_order_id) if gateway_order_id else None
        if not order:
            logger.info(
                "Razorpay webhook %s for unknown order %s acknowledged",
                event_type,
                gateway_order_id or "(none)",
            )
            return {"success": True}

        fields = {"gateway_payment_id": gateway_payment_id} if gateway_payment_id else {}
        self._transition(
            order,
            PaymentState.from_document(order),
            PaymentEvent(kind),
            fields if kind == EventKind.WEBHOOK_CAPTURED else None,
        )
        return {"success": True}

    def refresh_status(self, order_id: str, user_id: str) -> Dict[str, object]:
        order = self.orders.find_for_owner(order_id, user_id)
        if not order:
            raise NotFoundError("Order not found")

        state = PaymentState.from_document(order)
        gateway_order_ids = known_gateway_order_ids(order)
        if not gateway_order_ids or state.settled or not self.settings.configured:
            return self._status_payload(state)

        # Any checkout window opened for this order may hold the payment.
        latest_gateway_order_id = gateway_order_ids[-1]
        try:
            gateway_order = self.gateway.fetch_order(latest_gateway_order_id)
            items: List[Dict] = []
            for gateway_order_id in reversed(gateway_order_ids):
                items.extend(self.gateway.fetch_payments(gateway_order_id).get("items") or [])
        except GatewayError as exc:
            logger.error(
                "Razorpay status fetch failed for %s: %s", latest_gateway_order_id, exc.message
            )
            return self._status_payload(state)

        payment = select_payment(items)
        remote_status = str((payment or {}).get("status") or "").lower()
        if remote_status in CONFIRMED_PAYMENT_STATUSES or remote_status == FAILED_PAYMENT_STATUS:
            fields = {}
            if not order.get("gateway_payment_id") and payment.get("id"):
                fields["gateway_payment_id"] = payment["id"]
            state = self._transition(
                order,
                state,
                PaymentEvent(EventKind.GATEWAY_CONFIRMED, remote_status),
                fields if remote_status in CONFIRMED_PAYMENT_STATUSES else None,
            )

        response = self._status_payload(state)
        response["gatewayOrder"] = gateway_order
        return response

    def _owns_gateway_order(self, order: Dict, gateway_order_id: str) -> bool:
        if gateway_order_id in known_gateway_order_ids(order):
            return True
        try:
            gateway_order = self.gateway.fetch_order(gateway_order_id)
        except GatewayError as exc:
            logger.error("Razorpay order fetch failed for %s: %s", gateway_order_id, exc.message)
            raise ExternalServiceError(
                "Failed to verify payment", status_code=500, reason="VerificationFailed"
            )

        internal_id = str(order["_id"])
        # Razorpay sends an empty list when an order has no notes.
        notes = gateway_order.get("notes") if isinstance(gateway_order.get("notes"), dict) else {}
        return (
            gateway_order.get("receipt") == f"order_{internal_id}"
            or str(notes.get("orderId") or "") == internal_id
        )

    def _transition(
        self,
        order: Dict,
        state: PaymentState,
        event: PaymentEvent,
        success_fields: Optional[Dict] = None,
    ) -> PaymentState:
        new_state = apply(state, event)
        if new_state == PaymentState.from_document(order):
            return new_state
        fields = success_fields if new_state.succeeded else None
        self.orders.save_payment_state(order["_id"], new_state, fields)
        logger.info(
            "Order %s moved to (%s, %s) on %s",
            order["_id"],
            new_state.status.value,
            new_state.payment_status.value,
            event.kind.value,
        )
        return new_state

    @staticmethod
    def _status_payload(state: PaymentState) -> Dict[str, object]:
        return {
            "paymentStatus": state.payment_status.value,
            "orderStatus": state.status.value,
        }
