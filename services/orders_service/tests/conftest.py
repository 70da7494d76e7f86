import threading
import time

import pytest

from services.orders_service.app.publisher import ConnectionState, EventPublisher


class StubBroker:
    """In-memory BrokerClient; can fail or hang on connect/send."""

    def __init__(self, connect_error=None, send_error=None, hang_connect=False, hang_send=False, send_delay=0.0):
        self.connect_error = connect_error
        self.send_error = send_error
        self.hang_connect = hang_connect
        self.hang_send = hang_send
        self.send_delay = send_delay
        self.release = threading.Event()
        self.connect_calls = 0
        self.send_calls = 0
        self.sent = []
        self.closed = False

    def connect(self, timeout):
        self.connect_calls += 1
        if self.hang_connect:
            self.release.wait()
        if self.connect_error is not None:
            raise self.connect_error

    def send(self, message, timeout):
        self.send_calls += 1
        if self.hang_send:
            self.release.wait()
        if self.send_delay:
            time.sleep(self.send_delay)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    def close(self):
        self.closed = True
        self.release.set()


@pytest.fixture
def stub_broker():
    brokers = []

    def make(**kwargs):
        broker = StubBroker(**kwargs)
        brokers.append(broker)
        return broker

    yield make
    # unblock any worker threads still parked in a hanging stub
    for broker in brokers:
        broker.release.set()


@pytest.fixture
def make_publisher():
    publishers = []

    def make(client, **kwargs):
        publisher = EventPublisher(client, **kwargs)
        publishers.append(publisher)
        return publisher

    yield make
    for publisher in publishers:
        publisher.close()


@pytest.fixture
def connected_publisher(stub_broker, make_publisher):
    def make(**broker_kwargs):
        publisher_kwargs = {
            "publish_timeout": broker_kwargs.pop("publish_timeout", 2.0),
            "max_workers": broker_kwargs.pop("max_workers", 4),
        }
        broker = stub_broker(**broker_kwargs)
        publisher = make_publisher(broker, connect_timeout=2.0, **publisher_kwargs)
        publisher.start()
        assert publisher.wait_until_settled(5) is ConnectionState.CONNECTED
        return publisher, broker

    return make
