"""Transport adapter interface.

The node never speaks MQTT itself. It drives a Transport and reacts to
the status and message callbacks the transport fires, usually from its
own network thread.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from ..proto import MessageType, NodeIdentity, Payload


class TransportFailure(RuntimeError):
    """Raised when a connect, publish or subscribe cannot be carried out."""


class StatusEvent(StrEnum):
    """Connection status changes reported by a transport."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    DISCONNECTED = "disconnected"
    PROTOCOL_VIOLATION = "protocol_violation"


class CommandKind(StrEnum):
    """Kinds of inbound application messages."""

    NCMD = "NCMD"
    STATE = "STATE"


@dataclass(frozen=True, slots=True)
class BrokerAddress:
    host: str
    port: int = 1883


@dataclass(frozen=True, slots=True)
class TlsOptions:
    """Certificate files for TLS; ``certfile``/``keyfile`` enable mutual auth."""

    ca_certs: str | None = None
    certfile: str | None = None
    keyfile: str | None = None


@dataclass(frozen=True, slots=True)
class ConnectOptions:
    client_id: str
    keepalive: int = 60
    username: str | None = None
    password: str | None = None
    tls: TlsOptions | None = None
    reconnect_min_delay: int = 1
    reconnect_max_delay: int = 60


# (event, code, detail) -> keep retrying?
StatusCallback = Callable[[StatusEvent, int, str], bool]

# (kind, payload, topic); NCMD payloads are raw bytes, STATE payloads are text
MessageCallback = Callable[[CommandKind, bytes | str, str], None]


@runtime_checkable
class Transport(Protocol):
    """What the node needs from an MQTT client."""

    def connect(
        self,
        address: BrokerAddress,
        status_callback: StatusCallback,
        message_callback: MessageCallback,
        identity: NodeIdentity,
        retained_birth: Payload,
        options: ConnectOptions,
    ) -> Any:
        """Start connecting and return a handle for the other calls.

        The transport derives the NDEATH will from the birth's bdSeq and
        keeps retrying with its own backoff for as long as
        ``status_callback`` returns True.
        """
        ...

    def publish(self, handle: Any, topic_suffix: MessageType, payload: bytes, qos: int = 0) -> None:
        """Publish a node-level message for the handle's identity."""
        ...

    def subscribe(self, handle: Any, topic_filter: str) -> None: ...

    def set_will(self, handle: Any, payload: bytes) -> None:
        """Replace the NDEATH will used from the next connection on."""
        ...

    def disconnect(self, handle: Any) -> None: ...
