"""Edge node session lifecycle.

EdgeNode owns the single Session and is the only thing that writes to
it. Transport callbacks, publisher ticks and command handlers may run on
different threads, so every read-then-transition happens under one
re-entrant lock.

States::

    DISCONNECTED -> CONNECTING -> ONLINE <-> DEGRADED
                        ^            |          |
                        |            v          v
                        +------ RECONNECTING <--+

``shutdown()`` moves any state to DISCONNECTED for good.
"""

import json
import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..proto import (
    BD_SEQ_METRIC,
    REBIRTH_METRIC,
    CodecError,
    DataType,
    MessageType,
    Metric,
    NodeIdentity,
    Payload,
    death_certificate,
    describe_mismatch,
    encode_payload,
    node_topic,
    state_topic,
    timestamp_ms,
)
from .dispatcher import CommandDispatcher, CommandHandler, ObservabilityHook, log_event
from .publisher import PublisherLoop, Sampler
from .scheduler import ScheduledTask, Scheduler
from .transport import (
    BrokerAddress,
    CommandKind,
    ConnectOptions,
    StatusEvent,
    Transport,
    TransportFailure,
)

logger = logging.getLogger(__name__)

_RESERVED_METRICS = frozenset({BD_SEQ_METRIC, REBIRTH_METRIC})


class NodeError(RuntimeError):
    """Raised when the node is configured or driven incorrectly."""


class NodeState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ONLINE = "online"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"


_PUBLISHING = frozenset({NodeState.ONLINE, NodeState.DEGRADED})


@dataclass
class Session:
    """Mutable per-process node state. Written only by EdgeNode."""

    identity: NodeIdentity
    commands: CommandDispatcher
    state: NodeState = NodeState.DISCONNECTED
    bd_seq: int = 0
    seq: int = 0
    births: int = 0
    birth: Payload | None = None
    birth_bytes: bytes | None = None
    primary_host_online: bool | None = None
    closed: bool = False
    aliases: dict[int, str] = field(default_factory=dict)


def parse_host_state(text: str) -> bool | None:
    """Read a primary host STATE message.

    Accepts the JSON body ``{"online": true, ...}`` and the legacy
    ``ONLINE``/``OFFLINE`` strings. Returns None if neither matches.
    """
    try:
        body: Any = json.loads(text)
    except ValueError:
        body = text.strip()

    if isinstance(body, dict) and isinstance(body.get("online"), bool):
        return body["online"]
    if isinstance(body, str) and body.upper() in ("ONLINE", "OFFLINE"):
        return body.upper() == "ONLINE"
    return None


def _validate_birth(metrics: Sequence[Metric]) -> dict[int, str]:
    names: set[str] = set()
    aliases: dict[int, str] = {}
    for metric in metrics:
        if not metric.name:
            raise NodeError("Birth metrics need names")
        if metric.name in _RESERVED_METRICS:
            raise NodeError(f"{metric.name!r} is managed by the node")
        if metric.name in names:
            raise NodeError(f"Duplicate birth metric {metric.name!r}")
        names.add(metric.name)
        problem = describe_mismatch(metric.datatype, metric.value)
        if problem:
            raise NodeError(f"Birth metric {metric.name!r}: {problem}")
        if metric.alias is not None:
            if metric.alias in aliases:
                raise NodeError(
                    f"Alias {metric.alias} used by {aliases[metric.alias]!r} and {metric.name!r}"
                )
            aliases[metric.alias] = metric.name
    return aliases


class EdgeNode:
    """A Sparkplug B edge-of-network node.

    Example:
        node = EdgeNode(
            BrokerAddress("broker.local"),
            NodeIdentity("BME280", "Node1"),
            [Metric("Temperature", DataType.Double, 21.5)],
            transport=PahoTransport(),
            scheduler=ThreadScheduler(),
            options=ConnectOptions(client_id="node1"),
            sample=sampler,
            periodic=["Temperature"],
        )
        node.start()
        ...
        node.shutdown()
    """

    def __init__(
        self,
        address: BrokerAddress,
        identity: NodeIdentity,
        birth_metrics: Sequence[Metric],
        transport: Transport,
        scheduler: Scheduler,
        options: ConnectOptions,
        *,
        sample: Sampler | None = None,
        periodic: Iterable[str] = (),
        publish_period_ms: int = 5000,
        retry_period_ms: int = 5000,
        primary_host_id: str | None = None,
        hook: ObservabilityHook = log_event,
        clock: Callable[[], int] = timestamp_ms,
    ) -> None:
        self._birth_metrics = tuple(birth_metrics)
        aliases = _validate_birth(self._birth_metrics)
        declared = {metric.name: metric for metric in self._birth_metrics}

        periodic = tuple(periodic)
        missing = [name for name in periodic if name not in declared]
        if missing:
            raise NodeError(f"Periodic metrics not in the birth payload: {', '.join(missing)}")
        if periodic and sample is None:
            raise NodeError("Periodic metrics need a sampling callback")

        self._address = address
        self._transport = transport
        self._scheduler = scheduler
        self._options = options
        self._retry_period_ms = retry_period_ms
        self._primary_host_id = primary_host_id
        self._clock = clock

        self._lock = threading.RLock()
        self._handle: Any = None
        self._retry: ScheduledTask | None = None

        dispatcher = CommandDispatcher(hook)
        dispatcher.set_aliases(aliases)
        self._session = Session(identity=identity, commands=dispatcher, aliases=aliases)
        dispatcher.register(REBIRTH_METRIC, self._on_rebirth_command, DataType.Boolean)

        self._publisher = PublisherLoop(
            scheduler,
            publish_period_ms,
            sample or dict,
            self._emit,
            [declared[name] for name in periodic],
            clock,
        )

    @property
    def identity(self) -> NodeIdentity:
        return self._session.identity

    @property
    def state(self) -> NodeState:
        return self._session.state

    @property
    def session(self) -> Session:
        return self._session

    @property
    def publisher(self) -> PublisherLoop:
        return self._publisher

    def register_command(
        self,
        metric_name: str,
        handler: CommandHandler,
        datatype: DataType | None = None,
    ) -> None:
        """Accept NCMD writes to a metric declared in the birth payload."""
        declared = next((m for m in self._birth_metrics if m.name == metric_name), None)
        if declared is None:
            raise NodeError(f"{metric_name!r} is not a birth metric")
        if datatype is not None and datatype is not declared.datatype:
            raise NodeError(
                f"{metric_name!r} is born as {declared.datatype.name}, not {datatype.name}"
            )
        self._session.commands.register(metric_name, handler, declared.datatype)

    def build_birth(self, bd_seq: int) -> Payload:
        """The NBIRTH payload for a given birth/death sequence number."""
        metrics = (
            Metric(name=BD_SEQ_METRIC, datatype=DataType.UInt64, value=bd_seq),
            Metric(name=REBIRTH_METRIC, datatype=DataType.Boolean, value=False),
            *self._birth_metrics,
        )
        return Payload(metrics=metrics, seq=0, timestamp=self._clock())

    # =========================================================================
    # Supervisor API
    # =========================================================================

    def start(self) -> None:
        """Begin connecting. Retries happen on their own until shutdown()."""
        with self._lock:
            if self._session.closed:
                raise NodeError("Node has been shut down")
            if self._session.state not in (NodeState.DISCONNECTED, NodeState.RECONNECTING):
                return
            self._connect()

    def request_rebirth(self) -> bool:
        """Republish the birth payload with the sequence reset to 0.

        Returns False (and does nothing) unless the node is online.
        """
        with self._lock:
            session = self._session
            if session.state not in _PUBLISHING or session.birth_bytes is None:
                logger.info("Rebirth requested while %s; ignoring", session.state)
                return False

            session.seq = 0
            try:
                self._transport.publish(self._handle, MessageType.NBIRTH, session.birth_bytes, 0)
            except TransportFailure as exc:
                self._lose_connection(f"rebirth publish failed: {exc}")
                return False

            logger.info("Republished NBIRTH (bdSeq=%d)", session.bd_seq)
            self._transition(NodeState.ONLINE)
            return True

    def shutdown(self) -> None:
        """Stop for good: cancel publishing, send NDEATH and disconnect."""
        with self._lock:
            session = self._session
            if session.closed:
                return
            session.closed = True

            self._publisher.cancel()
            self._cancel_retry()

            handle, self._handle = self._handle, None
            if handle is not None and session.state in _PUBLISHING:
                death = encode_payload(death_certificate(session.bd_seq, self._clock()))
                try:
                    self._transport.publish(handle, MessageType.NDEATH, death, 0)
                except TransportFailure as exc:
                    logger.warning("Could not publish NDEATH: %s", exc)

            self._transition(NodeState.DISCONNECTED)

        # Outside the lock: the transport may wait for its network thread,
        # which could itself be waiting on the lock in on_status()
        if handle is not None:
            try:
                self._transport.disconnect(handle)
            except TransportFailure as exc:
                logger.warning("Disconnect failed: %s", exc)

    # =========================================================================
    # Transport callbacks
    # =========================================================================

    def on_status(self, event: StatusEvent, code: int, detail: str) -> bool:
        """Transport status callback. Returns whether the transport should keep retrying."""
        with self._lock:
            session = self._session
            if session.closed:
                return False

            if event is StatusEvent.CONNECTING:
                if session.state in (NodeState.DISCONNECTED, NodeState.RECONNECTING):
                    self._transition(NodeState.CONNECTING)
            elif event is StatusEvent.CONNECTED:
                self._go_online()
            elif event is StatusEvent.CONNECT_FAILED:
                logger.warning("Connect failed (%d): %s", code, detail)
                self._lose_connection(detail)
            elif event is StatusEvent.DISCONNECTED:
                logger.warning("Disconnected (%d): %s", code, detail)
                self._lose_connection(detail)
            elif event is StatusEvent.PROTOCOL_VIOLATION:
                logger.warning("Protocol violation: %s", detail)
                if session.state is NodeState.ONLINE:
                    self._transition(NodeState.DEGRADED)
            return True

    def on_message(self, kind: CommandKind, payload: bytes | str, topic: str) -> None:
        """Transport message callback."""
        if kind is CommandKind.NCMD:
            data = payload.encode() if isinstance(payload, str) else payload
            try:
                self._session.commands.dispatch(data)
            except CodecError as exc:
                logger.warning("Dropping malformed NCMD on %s: %s", topic, exc)
        elif kind is CommandKind.STATE:
            text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
            self._on_host_state(text, topic)

    # =========================================================================
    # Internals
    # =========================================================================

    def _transition(self, state: NodeState) -> None:
        previous = self._session.state
        if previous is state:
            return
        self._session.state = state
        logger.info("%s/%s: %s -> %s", self.identity.group_id, self.identity.node_name, previous, state)

    def _connect(self) -> None:
        self._transition(NodeState.CONNECTING)
        birth = self.build_birth(self._session.bd_seq)
        try:
            self._handle = self._transport.connect(
                self._address,
                self.on_status,
                self.on_message,
                self.identity,
                birth,
                self._options,
            )
        except TransportFailure as exc:
            logger.warning("Cannot connect to %s:%d: %s", self._address.host, self._address.port, exc)
            self._transition(NodeState.RECONNECTING)
            if self._retry is None:
                self._retry = self._scheduler.schedule(self._retry_period_ms, self._retry_connect)
            return
        self._cancel_retry()

    def _retry_connect(self) -> None:
        with self._lock:
            if self._session.closed or self._handle is not None:
                self._cancel_retry()
                return
            self._connect()

    def _cancel_retry(self) -> None:
        retry, self._retry = self._retry, None
        if retry is not None:
            retry.cancel()

    def _go_online(self) -> None:
        session = self._session
        self._publisher.cancel()

        if session.births:
            session.bd_seq = (session.bd_seq + 1) % 256
        birth = self.build_birth(session.bd_seq)
        birth_bytes = encode_payload(birth)

        try:
            self._transport.subscribe(self._handle, node_topic(self.identity, MessageType.NCMD))
            if self._primary_host_id:
                self._transport.subscribe(self._handle, state_topic(self._primary_host_id))
            session.seq = 0
            self._transition(NodeState.ONLINE)
            self._transport.publish(self._handle, MessageType.NBIRTH, birth_bytes, 0)
        except TransportFailure as exc:
            self._lose_connection(f"birth failed: {exc}")
            return

        session.birth = birth
        session.birth_bytes = birth_bytes
        session.births += 1
        session.primary_host_online = None
        logger.info("Published NBIRTH (bdSeq=%d, %d metrics)", session.bd_seq, len(birth.metrics))

        next_death = encode_payload(death_certificate((session.bd_seq + 1) % 256))
        try:
            self._transport.set_will(self._handle, next_death)
        except TransportFailure as exc:
            logger.warning("Could not update NDEATH will: %s", exc)

        self._publisher.start()

    def _lose_connection(self, reason: str) -> None:
        # Cancel first so no tick can see a stale online state
        self._publisher.cancel()
        self._session.seq = 0
        if self._session.state is not NodeState.RECONNECTING:
            logger.info("Connection lost: %s", reason)
        self._transition(NodeState.RECONNECTING)

    def _emit(self, metrics: tuple[Metric, ...]) -> bool:
        with self._lock:
            session = self._session
            if session.state not in _PUBLISHING:
                return False

            seq = (session.seq + 1) % 256
            try:
                data = encode_payload(Payload(metrics=metrics, seq=seq, timestamp=self._clock()))
            except CodecError as exc:
                logger.error("Cannot encode NDATA: %s", exc)
                return False

            try:
                self._transport.publish(self._handle, MessageType.NDATA, data, 0)
            except TransportFailure as exc:
                self._lose_connection(f"NDATA publish failed: {exc}")
                return False

            session.seq = seq
            return True

    def _on_rebirth_command(self, value: Any, datatype: DataType) -> None:
        if value:
            logger.info("Rebirth requested by NCMD")
            self.request_rebirth()

    def _on_host_state(self, text: str, topic: str) -> None:
        online = parse_host_state(text)
        if online is None:
            logger.warning("Unreadable STATE message on %s: %r", topic, text)
            return

        with self._lock:
            session = self._session
            previous, session.primary_host_online = session.primary_host_online, online
            logger.info("Primary host %s is %s", topic, "online" if online else "offline")
            if online and previous is False and session.state in _PUBLISHING:
                self.request_rebirth()
