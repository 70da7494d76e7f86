"""Broker clients used by the event publisher.

Every client exposes ``connect(timeout)``, ``send(message, timeout)`` and
``close()``.  ``connect`` and ``send`` raise :class:`BrokerConnectError` and
:class:`BrokerPublishError`; the publisher turns those into state
transitions, so nothing here ever reaches an HTTP caller.
"""

import logging
import threading
from typing import Protocol

import boto3
import pika
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pika.exceptions import AMQPError

from .config import Settings

logger = logging.getLogger(__name__)

EXCHANGE = "ecart.events"
ROUTING_KEY = "orders"


class BrokerError(Exception):
    pass


class BrokerConnectError(BrokerError):
    pass


class BrokerPublishError(BrokerError):
    pass


class BrokerClient(Protocol):
    def connect(self, timeout: float) -> None: ...

    def send(self, message: bytes, timeout: float) -> None: ...

    def close(self) -> None: ...


class RabbitMqBrokerClient:
    """Publishes to a durable topic exchange over a single blocking connection.

    pika connections are not thread-safe, so every channel operation is
    serialized with ``_lock``.  Heartbeats are off: a blocking connection only
    services them inside calls, so an idle one would be dropped.  A connection
    found closed at send time is reopened once.
    """

    def __init__(self, url: str, exchange: str = EXCHANGE, routing_key: str = ROUTING_KEY):
        self.url = url
        self.exchange = exchange
        self.routing_key = routing_key
        self._lock = threading.Lock()
        self._conn = None
        self._channel = None

    def _params(self, timeout: float) -> pika.URLParameters:
        params = pika.URLParameters(self.url)
        params.connection_attempts = 1
        params.heartbeat = 0
        params.socket_timeout = timeout
        params.stack_timeout = timeout
        params.blocked_connection_timeout = timeout
        return params

    def _open(self, timeout: float):
        try:
            conn = pika.BlockingConnection(self._params(timeout))
            ch = conn.channel()
            ch.confirm_delivery()
            ch.exchange_declare(exchange=self.exchange, exchange_type="topic", durable=True)
        except (AMQPError, OSError) as e:
            raise BrokerConnectError(f"Unable to connect to RabbitMQ: {e!r}") from e
        return conn, ch

    def connect(self, timeout: float) -> None:
        with self._lock:
            conn, ch = self._open(timeout)
            stale, self._conn, self._channel = self._conn, conn, ch
        if stale is not None and stale.is_open:
            try:
                stale.close()
            except AMQPError as e:
                logger.warning("Error closing stale RabbitMQ connection: %r", e)

    def send(self, message: bytes, timeout: float) -> None:
        with self._lock:
            if self._channel is None or self._conn is None:
                raise BrokerPublishError("RabbitMQ client is not connected")
            if self._conn.is_closed or self._channel.is_closed:
                logger.info("RabbitMQ connection closed, reopening")
                try:
                    self._conn, self._channel = self._open(timeout)
                except BrokerConnectError as e:
                    raise BrokerPublishError(str(e)) from e
            try:
                self._channel.basic_publish(
                    exchange=self.exchange,
                    routing_key=self.routing_key,
                    body=message,
                    properties=pika.BasicProperties(
                        content_type="application/json",
                        delivery_mode=2,
                    ),
                )
            except (AMQPError, OSError) as e:
                raise BrokerPublishError(f"RabbitMQ publish failed: {e!r}") from e

    def close(self) -> None:
        with self._lock:
            conn, self._conn, self._channel = self._conn, None, None
        if conn is not None and conn.is_open:
            try:
                conn.close()
            except AMQPError as e:
                logger.warning("Error closing RabbitMQ connection: %r", e)


class SnsBrokerClient:
    def __init__(self, topic_arn: str, region: str | None = None):
        self.topic_arn = topic_arn
        self.region = region
        self._client = None

    def connect(self, timeout: float) -> None:
        config = BotoConfig(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 1},
        )
        try:
            client = boto3.client("sns", region_name=self.region, config=config)
            client.get_topic_attributes(TopicArn=self.topic_arn)
        except (BotoCoreError, ClientError) as e:
            raise BrokerConnectError(f"SNS topic {self.topic_arn} unavailable: {e!r}") from e
        self._client = client

    def send(self, message: bytes, timeout: float) -> None:
        if self._client is None:
            raise BrokerPublishError("SNS client is not connected")
        try:
            self._client.publish(TopicArn=self.topic_arn, Message=message.decode("utf-8"))
        except (BotoCoreError, ClientError) as e:
            raise BrokerPublishError(f"SNS publish failed: {e!r}") from e

    def close(self) -> None:
        self._client = None


class DisabledBrokerClient:
    """MESSAGE_BACKEND=none: every order is accepted without queuing."""

    def connect(self, timeout: float) -> None:
        raise BrokerConnectError("message backend is disabled")

    def send(self, message: bytes, timeout: float) -> None:
        raise BrokerPublishError("message backend is disabled")

    def close(self) -> None:
        pass


def build_broker_client(settings: Settings) -> BrokerClient:
    if settings.message_backend == "sns":
        return SnsBrokerClient(settings.order_events_topic_arn, region=settings.aws_region)
    if settings.message_backend == "none":
        return DisabledBrokerClient()
    return RabbitMqBrokerClient(settings.rabbitmq_url)
