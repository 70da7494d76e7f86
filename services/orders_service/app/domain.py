import itertools
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ValidationError(ValueError):
    pass


class OrderStatus(str, Enum):
    PENDING = "PENDING"


class DeliveryMode(str, Enum):
    """How an accepted order left the intake service."""

    QUEUED = "QUEUED"
    DIRECT = "DIRECT"
    DEGRADED = "DEGRADED"


_ids = itertools.count(1)
_ids_lock = threading.Lock()


def next_order_id() -> int:
    with _ids_lock:
        return next(_ids)


@dataclass(frozen=True)
class Order:
    id: int
    product_id: Any
    user_id: Any
    status: OrderStatus = OrderStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "productId": self.product_id,
            "userId": self.user_id,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class OrderResult:
    order: Order
    delivery_mode: DeliveryMode

    def to_dict(self) -> dict:
        body = self.order.to_dict()
        body["deliveryMode"] = self.delivery_mode.value
        return body


def create_order(product_id: Any, user_id: Any) -> Order:
    if product_id is None:
        raise ValidationError("productId is required")
    if user_id is None:
        raise ValidationError("userId is required")
    return Order(id=next_order_id(), product_id=product_id, user_id=user_id)
