"""Edge node runtime: session lifecycle, commands, publishing and transports."""

from .dispatcher import (
    CommandDispatcher,
    DispatchEvent,
    DispatchEventKind,
    TypeMismatch,
    log_event,
)
from .publisher import PublisherLoop
from .scheduler import Scheduler, ScheduledTask, ThreadScheduler
from .sensors import SensorReadFailure, SimulatedSource, SourceSampler, ValueSource
from .session import EdgeNode, NodeError, NodeState, Session, parse_host_state
from .transport import (
    BrokerAddress,
    CommandKind,
    ConnectOptions,
    StatusEvent,
    TlsOptions,
    Transport,
    TransportFailure,
)

__all__ = [
    # Session
    "EdgeNode",
    "NodeError",
    "NodeState",
    "Session",
    "parse_host_state",
    # Commands
    "CommandDispatcher",
    "DispatchEvent",
    "DispatchEventKind",
    "TypeMismatch",
    "log_event",
    # Publishing
    "PublisherLoop",
    "Scheduler",
    "ScheduledTask",
    "ThreadScheduler",
    "SensorReadFailure",
    "SimulatedSource",
    "SourceSampler",
    "ValueSource",
    # Transport
    "BrokerAddress",
    "CommandKind",
    "ConnectOptions",
    "StatusEvent",
    "TlsOptions",
    "Transport",
    "TransportFailure",
]
