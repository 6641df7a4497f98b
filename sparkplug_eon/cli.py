"""Command-line interface for the Sparkplug B edge node."""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import ConfigError, MetricConfig, NodeConfig, build_node
from .node import NodeError, SimulatedSource, SourceSampler, ThreadScheduler
from .node.mqtt import PahoTransport
from .proto import UNREPORTED, CodecError, DataSet, DataType, MessageType, Template, decode_payload
from .proto import node_topic, state_topic

if TYPE_CHECKING:
    from .proto import Metric, Payload

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


def _load_config(config_file: str) -> NodeConfig:
    try:
        return NodeConfig.load(config_file)
    except OSError as exc:
        print(f"Cannot read {config_file}: {exc}")
        sys.exit(1)
    except ConfigError as exc:
        print(str(exc))
        sys.exit(1)


@click.group()
def cli() -> None:
    """Sparkplug B edge-of-network node."""


@cli.command()
@click.option("--config", "-c", "config_file", required=True, help="Node configuration (JSON)")
@click.option("--host", default=None, help="Override the broker host")
@click.option("--port", default=None, type=int, help="Override the broker port")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log at DEBUG level")
def run(config_file: str, host: str | None, port: int | None, verbose: bool) -> None:
    """Run the node with simulated readings until interrupted."""
    _setup_logging(verbose)
    config = _load_config(config_file)
    if host:
        config.broker.host = host
    if port:
        config.broker.port = port

    periodic = [metric for metric in config.metrics if metric.periodic]
    source = SimulatedSource([metric.value or 0.0 for metric in periodic])
    sampler = _simulated_sampler(SourceSampler(source, [metric.name for metric in periodic]), periodic)
    scheduler = ThreadScheduler()

    try:
        node = build_node(config, PahoTransport(), scheduler, sampler)
        for name in config.writable_names():
            node.register_command(name, _log_write(name))
    except NodeError as exc:
        print(f"Invalid configuration: {exc}")
        sys.exit(1)

    node.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        node.shutdown()
        scheduler.close()
        source.close()


def _simulated_sampler(sampler: SourceSampler, periodic: list[MetricConfig]):
    # Simulated readings are floats; integer metrics get whole, in-range values
    integers = {
        metric.name: metric.datatype.startswith("UInt")
        for metric in periodic
        if metric.datatype not in ("Float", "Double")
    }

    def sample() -> dict[str, Any]:
        values = sampler()
        for name, unsigned in integers.items():
            values[name] = max(0, round(values[name])) if unsigned else round(values[name])
        return values

    return sample


def _log_write(name: str):
    def handler(value: Any, datatype: DataType) -> None:
        logger.info("NCMD write %s = %r (%s)", name, value, datatype.name)

    return handler


@cli.command()
@click.option("--config", "-c", "config_file", required=True, help="Node configuration (JSON)")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def info(config_file: str, output_json: bool) -> None:
    """Show the node's topics and birth metrics."""
    config = _load_config(config_file)
    identity = config.identity()

    topics = {str(t): node_topic(identity, t) for t in (
        MessageType.NBIRTH,
        MessageType.NDATA,
        MessageType.NCMD,
        MessageType.NDEATH,
    )}
    if config.primary_host_id:
        topics["STATE"] = state_topic(config.primary_host_id)

    if output_json:
        data = {
            "group_id": identity.group_id,
            "node_name": identity.node_name,
            "broker": f"{config.broker.host}:{config.broker.port}",
            "publish_period_ms": config.publish_period_ms,
            "topics": topics,
            "metrics": [metric.to_dict() for metric in config.metrics],
        }
        print(json.dumps(data, indent=2))
        return

    console = Console()
    console.print(f"[bold cyan]Node[/bold cyan] {identity.group_id}/{identity.node_name}")

    topic_table = Table(show_header=False, box=None, padding=(0, 2, 0, 2))
    topic_table.add_column("Type", style="dim")
    topic_table.add_column("Topic", style="white")
    for name, topic in topics.items():
        topic_table.add_row(name, topic)
    console.print(topic_table)
    console.print()

    console.print("[bold cyan]Birth metrics[/bold cyan]")
    metric_table = Table(show_header=True, box=None, padding=(0, 2, 0, 0))
    metric_table.add_column("Name", style="white")
    metric_table.add_column("Type", style="yellow")
    metric_table.add_column("Alias", style="green", justify="right")
    metric_table.add_column("Value")
    metric_table.add_column("Flags", style="dim")
    for metric in config.metrics:
        flags = [flag for flag, on in (("periodic", metric.periodic), ("writable", metric.writable)) if on]
        alias = "" if metric.alias is None else str(metric.alias)
        metric_table.add_row(metric.name, metric.datatype, alias, repr(metric.value), ", ".join(flags))
    console.print(metric_table)


@cli.command("decode")
@click.option("--hex", "hex_payload", default=None, help="Payload as a hex string")
@click.option("--input", "-i", "input_file", default=None, help="File holding raw payload bytes")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def decode_command(hex_payload: str | None, input_file: str | None, output_json: bool) -> None:
    """Decode a Sparkplug B payload."""
    if (hex_payload is None) == (input_file is None):
        print("Give exactly one of --hex or --input")
        sys.exit(1)

    if hex_payload is not None:
        try:
            data = bytes.fromhex(hex_payload)
        except ValueError:
            print("--hex is not a valid hex string")
            sys.exit(1)
    else:
        data = Path(input_file).read_bytes()

    try:
        payload = decode_payload(data)
    except CodecError as exc:
        print(f"Cannot decode payload: {exc}")
        sys.exit(1)

    if output_json:
        _output_json(payload)
    else:
        _output_plain(payload)


def _jsonable(value: Any) -> Any:
    if value is UNREPORTED:
        return "<unreported>"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, DataSet):
        return {
            "columns": list(value.columns),
            "types": [t.name for t in value.types],
            "rows": [[_jsonable(cell) for cell in row] for row in value.rows],
        }
    if isinstance(value, Template):
        return {
            "version": value.version,
            "template_ref": value.template_ref,
            "is_definition": value.is_definition,
            "metrics": [_metric_json(m) for m in value.metrics],
            "parameters": [
                {"name": p.name, "type": p.datatype.name, "value": _jsonable(p.value)}
                for p in value.parameters
            ],
        }
    return value


def _metric_json(metric: Metric) -> dict[str, Any]:
    return {
        "name": metric.name,
        "alias": metric.alias,
        "datatype": metric.datatype.name,
        "value": _jsonable(metric.value),
        "timestamp": metric.timestamp,
    }


def _output_json(payload: Payload) -> None:
    data = {
        "seq": payload.seq,
        "timestamp": payload.timestamp,
        "uuid": payload.uuid,
        "metrics": [_metric_json(m) for m in payload.metrics],
    }
    print(json.dumps(data, indent=2))


def _output_plain(payload: Payload) -> None:
    console = Console()

    header = Table(show_header=False, box=None, padding=(0, 2, 0, 2))
    header.add_column("Label", style="dim")
    header.add_column("Value", style="white")
    header.add_row("Seq", "-" if payload.seq is None else str(payload.seq))
    header.add_row("Timestamp", "-" if payload.timestamp is None else str(payload.timestamp))
    console.print("[bold cyan]Payload[/bold cyan]")
    console.print(header)
    console.print()

    table = Table(show_header=True, box=None, padding=(0, 2, 0, 0))
    table.add_column("Name", style="white")
    table.add_column("Alias", style="green", justify="right")
    table.add_column("Type", style="yellow")
    table.add_column("Value")
    for metric in payload.metrics:
        alias = "" if metric.alias is None else str(metric.alias)
        value = "null" if metric.value is None else json.dumps(_jsonable(metric.value))
        table.add_row(metric.name, alias, metric.datatype.name, value)
    console.print(table)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
