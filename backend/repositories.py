from datetime import datetime
from typing import Dict, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId

from .discounts import normalize_code
from .payments import PENDING_STATE, PaymentState


def parse_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        return None


class OrderRepository(Protocol):
    """Persistence the payment reconciler needs from the orders collection."""

    def find_for_owner(self, order_id: str, user_id: str) -> Optional[Dict]:
        ...

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Dict]:
        ...

    def attach_gateway_order(self, order_id, gateway_order_id: str) -> bool:
        ...

    def save_payment_state(
        self, order_id, state: PaymentState, fields: Optional[Dict] = None
    ) -> None:
        ...


class MongoOrderRepository:
    def __init__(self, collection):
        self.collection = collection

    def find_for_owner(self, order_id: str, user_id: str) -> Optional[Dict]:
        object_id = parse_object_id(order_id)
        if object_id is None or not user_id:
            return None
        return self.collection.find_one({"_id": object_id, "user_id": str(user_id)})

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Dict]:
        if not gateway_order_id:
            return None
        return self.collection.find_one(
            {
                "$or": [
                    {"gateway_order_ids": gateway_order_id},
                    {"gateway_order_id": gateway_order_id},
                ]
            }
        )

    def attach_gateway_order(self, order_id, gateway_order_id: str) -> bool:
        """Record a new gateway order; false when the order is no longer awaiting payment."""
        result = self.collection.update_one(
            {
                "_id": order_id,
                "status": PENDING_STATE.status.value,
                "payment_status": PENDING_STATE.payment_status.value,
            },
            {
                "$set": {"gateway_order_id": gateway_order_id, "updated_at": datetime.utcnow()},
                "$addToSet": {"gateway_order_ids": gateway_order_id},
            },
        )
        return result.matched_count > 0

    def save_payment_state(
        self, order_id, state: PaymentState, fields: Optional[Dict] = None
    ) -> None:
        updates = {
            **(fields or {}),
            "status": state.status.value,
            "payment_status": state.payment_status.value,
            "updated_at": datetime.utcnow(),
        }
        self.collection.update_one({"_id": order_id}, {"$set": updates})


class MongoPromoCodeRepository:
    def __init__(self, collection):
        self.collection = collection

    def find_by_code(self, code: str) -> Optional[Dict]:
        normalized = normalize_code(code)
        if not normalized:
            return None
        return self.collection.find_one({"code": normalized})
