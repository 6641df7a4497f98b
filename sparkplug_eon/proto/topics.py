"""Sparkplug B topic namespace."""

from dataclasses import dataclass
from enum import StrEnum

NAMESPACE = "spBv1.0"

_RESERVED = frozenset("/+#")


class TopicError(RuntimeError):
    """Raised when a topic or topic element is outside the Sparkplug namespace."""


class MessageType(StrEnum):
    """Sparkplug B message types."""

    NBIRTH = "NBIRTH"
    NDEATH = "NDEATH"
    NDATA = "NDATA"
    NCMD = "NCMD"
    DBIRTH = "DBIRTH"
    DDEATH = "DDEATH"
    DDATA = "DDATA"
    DCMD = "DCMD"


def _check_element(label: str, value: str) -> None:
    if not value or _RESERVED & set(value):
        raise TopicError(f"Invalid {label} {value!r}")


@dataclass(frozen=True, slots=True)
class NodeIdentity:
    """The (group, node) pair that roots a node's topics."""

    group_id: str
    node_name: str

    def __post_init__(self) -> None:
        _check_element("group id", self.group_id)
        _check_element("node name", self.node_name)

    def topic(self, message_type: MessageType) -> str:
        return node_topic(self, message_type)


@dataclass(frozen=True, slots=True)
class Topic:
    """A parsed node or device topic."""

    identity: NodeIdentity
    message_type: MessageType
    device_id: str | None = None


def node_topic(identity: NodeIdentity, message_type: MessageType, device_id: str | None = None) -> str:
    """Build ``spBv1.0/{group}/{type}/{node}[/{device}]``."""
    parts = [NAMESPACE, identity.group_id, str(message_type), identity.node_name]
    if device_id is not None:
        _check_element("device id", device_id)
        parts.append(device_id)
    return "/".join(parts)


def state_topic(host_id: str) -> str:
    """Build the primary host application STATE topic."""
    _check_element("host id", host_id)
    return f"{NAMESPACE}/STATE/{host_id}"


def is_state_topic(topic: str) -> bool:
    parts = topic.split("/")
    return len(parts) == 3 and parts[0] == NAMESPACE and parts[1] == "STATE" and bool(parts[2])


def parse_topic(topic: str) -> Topic:
    """Split a node or device topic into its parts.

    Raises:
        TopicError: The topic is not a Sparkplug B node or device topic.
    """
    parts = topic.split("/")
    if len(parts) not in (4, 5) or parts[0] != NAMESPACE:
        raise TopicError(f"Not a Sparkplug B node topic: {topic!r}")

    try:
        message_type = MessageType(parts[2])
    except ValueError as exc:
        raise TopicError(f"Unknown message type {parts[2]!r} in {topic!r}") from exc

    identity = NodeIdentity(group_id=parts[1], node_name=parts[3])
    device_id = None
    if len(parts) == 5:
        _check_element("device id", parts[4])
        device_id = parts[4]
    return Topic(identity=identity, message_type=message_type, device_id=device_id)
