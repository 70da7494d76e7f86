"""Order event publisher with broker connection tracking.

The publisher owns one :class:`BrokerClient` and a connection state:

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTING -> DISCONNECTED   (connect failed or timed out)
    CONNECTED -> DISCONNECTED    (publish failed or timed out)

Orders are only sent to the broker while CONNECTED.  Every broker call runs
on a worker pool and is waited on with a timeout, so ``attempt_publish``
returns in bounded time even when the client itself hangs.  Only a send that
actually ran and failed or overran its timeout disconnects; an order that
never left the pool queue is DEGRADED with the state unchanged.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from enum import Enum

from .brokers import BrokerClient, BrokerConnectError, BrokerPublishError
from .domain import DeliveryMode, Order
from .events import build_order_created_event, encode_event

logger = logging.getLogger(__name__)

# a send that began this soon after submit had its full publish timeout
START_SLACK = 0.05


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class EventPublisher:
    def __init__(
        self,
        client: BrokerClient,
        connect_timeout: float = 5.0,
        publish_timeout: float = 2.0,
        reconnect_interval: float | None = None,
        max_workers: int = 4,
    ) -> None:
        self._client = client
        self._connect_timeout = connect_timeout
        self._publish_timeout = publish_timeout
        self._reconnect_interval = reconnect_interval

        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._last_attempt = 0.0
        self._closed = False
        self._settled = threading.Event()
        self._settled.set()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="broker-io")

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def start(self) -> bool:
        """Schedule a background connection attempt without waiting for it."""
        return self._schedule_connect()

    def wait_until_settled(self, timeout: float | None = None) -> ConnectionState:
        self._settled.wait(timeout)
        return self.state

    def attempt_publish(self, order: Order) -> DeliveryMode:
        state = self.state
        if state is not ConnectionState.CONNECTED:
            if state is ConnectionState.DISCONNECTED:
                self._maybe_reconnect()
            logger.info("Broker %s, order %s accepted directly", state.value, order.id)
            return DeliveryMode.DIRECT

        try:
            body = encode_event(build_order_created_event(order.to_dict()))
        except Exception:
            logger.exception("Could not serialize order %s, accepted without queuing", order.id)
            return DeliveryMode.DEGRADED

        started = {}
        submitted = time.monotonic()
        try:
            future = self._executor.submit(self._send, body, started)
            future.result(timeout=self._publish_timeout)
        except FuturesTimeout:
            self._on_publish_timeout(order, future, submitted, started)
            return DeliveryMode.DEGRADED
        except Exception as exc:
            self._mark_disconnected(exc)
            return DeliveryMode.DEGRADED

        logger.info("Order %s queued", order.id)
        return DeliveryMode.QUEUED

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._state = ConnectionState.DISCONNECTED
        self._executor.shutdown(wait=False, cancel_futures=True)
        try:
            self._client.close()
        except Exception as exc:
            logger.warning("Error closing broker client: %r", exc)

    def _schedule_connect(self) -> bool:
        with self._lock:
            if self._closed or self._state is not ConnectionState.DISCONNECTED:
                return False
            self._state = ConnectionState.CONNECTING
            self._last_attempt = time.monotonic()
            self._settled.clear()
        logger.info("Broker DISCONNECTED -> CONNECTING")
        threading.Thread(target=self._connect, name="broker-connect", daemon=True).start()
        return True

    def _maybe_reconnect(self) -> None:
        if self._reconnect_interval is None:
            return
        with self._lock:
            due = time.monotonic() - self._last_attempt >= self._reconnect_interval
        if due:
            self._schedule_connect()

    def _connect(self) -> None:
        error = None
        try:
            future = self._executor.submit(self._client.connect, self._connect_timeout)
            future.result(timeout=self._connect_timeout)
        except FuturesTimeout:
            future.cancel()
            error = BrokerConnectError(f"connect timed out after {self._connect_timeout:.2f}s")
        except Exception as exc:
            error = exc

        with self._lock:
            closed = self._closed
            if error is None and not closed:
                self._state = ConnectionState.CONNECTED
            else:
                self._state = ConnectionState.DISCONNECTED
            self._settled.set()

        if error is not None:
            logger.warning("Broker CONNECTING -> DISCONNECTED: %s", error)
        elif closed:
            self._client.close()
        else:
            logger.info("Broker CONNECTING -> CONNECTED")

    def _send(self, body: bytes, started: dict) -> float:
        started["at"] = time.monotonic()
        self._client.send(body, self._publish_timeout)
        return time.monotonic() - started["at"]

    def _on_publish_timeout(self, order: Order, future, submitted: float, started: dict) -> None:
        # queued behind busy workers; the broker was never called
        if future.cancel():
            logger.warning("Broker workers busy, order %s accepted without queuing", order.id)
            return
        queued_for = started.get("at", time.monotonic()) - submitted
        if queued_for <= START_SLACK:
            # the send had the whole budget and used it up
            self._mark_disconnected(
                BrokerPublishError(f"publish timed out after {self._publish_timeout:.2f}s")
            )
            return
        # started late: judge the broker by how the send itself ends
        logger.warning("Order %s send started late, accepted without waiting for it", order.id)
        future.add_done_callback(self._check_late_send)

    def _check_late_send(self, future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._mark_disconnected(exc)
        elif future.result() >= self._publish_timeout:
            self._mark_disconnected(
                BrokerPublishError(f"publish took longer than {self._publish_timeout:.2f}s")
            )

    def _mark_disconnected(self, exc: Exception) -> None:
        with self._lock:
            was_connected = self._state is ConnectionState.CONNECTED
            if was_connected:
                self._state = ConnectionState.DISCONNECTED
        if was_connected:
            logger.warning("Broker CONNECTED -> DISCONNECTED: %s", exc)
        else:
            logger.warning("Broker publish failed: %s", exc)
