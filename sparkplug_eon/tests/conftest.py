"""Unit tests configuration file."""

import pytest

from sparkplug_eon.node import (
    BrokerAddress,
    CommandKind,
    ConnectOptions,
    EdgeNode,
    StatusEvent,
    TransportFailure,
)
from sparkplug_eon.proto import (
    DataType,
    MessageType,
    Metric,
    NodeIdentity,
    decode_payload,
    encode,
    node_topic,
)


def pytest_configure(config):
    """Disable verbose output when running tests."""
    terminal = config.pluginmanager.getplugin("terminal")
    if terminal:
        terminal.TerminalReporter.showfspath = False


class RecordingTransport:
    """In-memory transport that records every call the node makes."""

    def __init__(self):
        self.connects = []
        self.published = []
        self.subscriptions = []
        self.wills = []
        self.disconnects = []
        self.fail_connect = False
        self.fail_publish = False
        self.status_callback = None
        self.message_callback = None
        self.identity = None

    def connect(self, address, status_callback, message_callback, identity, retained_birth, options):
        if self.fail_connect:
            raise TransportFailure("broker unreachable")
        self.status_callback = status_callback
        self.message_callback = message_callback
        self.identity = identity
        self.connects.append((address, retained_birth, options))
        return f"handle-{len(self.connects)}"

    def publish(self, handle, topic_suffix, payload, qos=0):
        if self.fail_publish:
            raise TransportFailure("publish failed")
        self.published.append((MessageType(topic_suffix), payload, qos))

    def subscribe(self, handle, topic_filter):
        self.subscriptions.append(topic_filter)

    def set_will(self, handle, payload):
        self.wills.append(payload)

    def disconnect(self, handle):
        self.disconnects.append(handle)

    # Test helpers

    def report(self, event, code=0, detail=""):
        return self.status_callback(event, code, detail)

    def deliver_command(self, metrics):
        topic = node_topic(self.identity, MessageType.NCMD)
        self.message_callback(CommandKind.NCMD, encode(metrics), topic)

    def deliver_state(self, host_id, text):
        self.message_callback(CommandKind.STATE, text, f"spBv1.0/STATE/{host_id}")

    def types(self):
        return [message_type for message_type, _data, _qos in self.published]

    def raw(self, message_type):
        return [data for t, data, _qos in self.published if t is message_type]

    def payloads(self, message_type):
        return [decode_payload(data) for data in self.raw(message_type)]


class ManualTask:
    def __init__(self, period_ms, task):
        self.period_ms = period_ms
        self.task = task
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose ticks only happen when a test calls fire()."""

    def __init__(self):
        self.tasks = []

    def schedule(self, period_ms, task):
        scheduled = ManualTask(period_ms, task)
        self.tasks.append(scheduled)
        return scheduled

    @property
    def active(self):
        return [t for t in self.tasks if not t.cancelled]

    def fire(self, times=1):
        for _ in range(times):
            for scheduled in self.active:
                scheduled.task()


BIRTH_METRICS = [
    Metric(name="Temperature", datatype=DataType.Double, value=21.5, alias=1),
    Metric(name="Humidity", datatype=DataType.Double, value=40.0, alias=2),
    Metric(name="Pressure", datatype=DataType.Double, value=1013.25, alias=3),
    Metric(name="Firmware", datatype=DataType.String, value="1.2.0"),
    Metric(name="Setpoint", datatype=DataType.Int32, value=20, alias=4),
]


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def readings():
    return {"Temperature": 22.25, "Humidity": 41.5}


@pytest.fixture
def make_node(transport, scheduler, readings):
    def factory(**kwargs):
        kwargs.setdefault("sample", lambda: dict(readings))
        kwargs.setdefault("periodic", ["Temperature", "Humidity"])
        kwargs.setdefault("publish_period_ms", 1000)
        kwargs.setdefault("clock", lambda: 1_700_000_000_000)
        return EdgeNode(
            BrokerAddress("broker.local"),
            NodeIdentity(group_id="BME280", node_name="Node1"),
            BIRTH_METRICS,
            transport,
            scheduler,
            ConnectOptions(client_id="node1"),
            **kwargs,
        )

    return factory


@pytest.fixture
def online_node(make_node, transport):
    node = make_node()
    node.start()
    transport.report(StatusEvent.CONNECTED)
    return node
