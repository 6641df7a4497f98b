"""Node configuration, loaded from JSON."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dataclasses_json import DataClassJsonMixin

from .node import (
    BrokerAddress,
    ConnectOptions,
    EdgeNode,
    Scheduler,
    TlsOptions,
    Transport,
    log_event,
)
from .node.dispatcher import ObservabilityHook
from .node.publisher import Sampler
from .proto import DataType, Metric, NodeIdentity, TopicError, describe_mismatch
from .proto.types import FLOAT_TYPES, INTEGER_RANGES


class ConfigError(RuntimeError):
    """Raised when a configuration file is missing fields or inconsistent."""


@dataclass
class TlsConfig(DataClassJsonMixin):
    ca_certs: str | None = None
    certfile: str | None = None
    keyfile: str | None = None


@dataclass
class BrokerConfig(DataClassJsonMixin):
    host: str = "localhost"
    port: int = 1883
    client_id: str | None = None
    keepalive: int = 60
    username: str | None = None
    password: str | None = None
    tls: TlsConfig | None = None
    reconnect_min_delay: int = 1
    reconnect_max_delay: int = 60


@dataclass
class MetricConfig(DataClassJsonMixin):
    """One birth metric.

    ``periodic`` metrics are sampled and sent in NDATA every publish
    period; ``writable`` metrics accept NCMD writes.
    """

    name: str
    datatype: str
    value: Any = None
    alias: int | None = None
    periodic: bool = False
    writable: bool = False

    def to_metric(self) -> Metric:
        try:
            datatype = DataType[self.datatype]
        except KeyError as exc:
            raise ConfigError(f"Metric {self.name!r} has unknown datatype {self.datatype!r}") from exc

        value = self.value
        if datatype in FLOAT_TYPES and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        problem = describe_mismatch(datatype, value)
        if problem:
            raise ConfigError(f"Metric {self.name!r}: {problem}")
        if self.periodic and datatype not in FLOAT_TYPES and datatype not in INTEGER_RANGES:
            raise ConfigError(f"Periodic metric {self.name!r} must be numeric")
        return Metric(name=self.name, datatype=datatype, value=value, alias=self.alias)


@dataclass
class NodeConfig(DataClassJsonMixin):
    group_id: str
    node_name: str
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    publish_period_ms: int = 5000
    retry_period_ms: int = 5000
    primary_host_id: str | None = None
    metrics: list[MetricConfig] = field(default_factory=list)

    @classmethod
    def load(cls, path: str | Path) -> "NodeConfig":
        text = Path(path).read_text(encoding="utf-8")
        try:
            config = cls.from_json(text)
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc
        config.identity()
        config.birth_metrics()
        return config

    def identity(self) -> NodeIdentity:
        try:
            return NodeIdentity(group_id=self.group_id, node_name=self.node_name)
        except TopicError as exc:
            raise ConfigError(str(exc)) from exc

    def address(self) -> BrokerAddress:
        return BrokerAddress(host=self.broker.host, port=self.broker.port)

    def connect_options(self) -> ConnectOptions:
        broker = self.broker
        tls = None
        if broker.tls is not None:
            tls = TlsOptions(
                ca_certs=broker.tls.ca_certs,
                certfile=broker.tls.certfile,
                keyfile=broker.tls.keyfile,
            )
        return ConnectOptions(
            client_id=broker.client_id or f"spBv1.0-{self.group_id}-{self.node_name}",
            keepalive=broker.keepalive,
            username=broker.username,
            password=broker.password,
            tls=tls,
            reconnect_min_delay=broker.reconnect_min_delay,
            reconnect_max_delay=broker.reconnect_max_delay,
        )

    def birth_metrics(self) -> list[Metric]:
        return [metric.to_metric() for metric in self.metrics]

    def periodic_names(self) -> list[str]:
        return [metric.name for metric in self.metrics if metric.periodic]

    def writable_names(self) -> list[str]:
        return [metric.name for metric in self.metrics if metric.writable]


def build_node(
    config: NodeConfig,
    transport: Transport,
    scheduler: Scheduler,
    sample: Sampler | None = None,
    hook: ObservabilityHook = log_event,
) -> EdgeNode:
    """Create an EdgeNode from a configuration."""
    return EdgeNode(
        config.address(),
        config.identity(),
        config.birth_metrics(),
        transport,
        scheduler,
        config.connect_options(),
        sample=sample,
        periodic=config.periodic_names(),
        publish_period_ms=config.publish_period_ms,
        retry_period_ms=config.retry_period_ms,
        primary_host_id=config.primary_host_id,
        hook=hook,
    )
