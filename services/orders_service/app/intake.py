import logging
from typing import Any

from .domain import OrderResult, create_order
from .publisher import EventPublisher

logger = logging.getLogger(__name__)


class OrderIntakeHandler:
    """Accepts orders; only a missing productId/userId can make this fail."""

    def __init__(self, publisher: EventPublisher) -> None:
        self.publisher = publisher

    def submit_order(self, product_id: Any, user_id: Any) -> OrderResult:
        order = create_order(product_id, user_id)
        mode = self.publisher.attempt_publish(order)
        logger.info("Order %s accepted (deliveryMode=%s)", order.id, mode.value)
        return OrderResult(order=order, delivery_mode=mode)
