"""Tests for node configuration"""

import json
from pathlib import Path

from pytest import fixture, raises

from sparkplug_eon.config import ConfigError, MetricConfig, NodeConfig, build_node
from sparkplug_eon.node import NodeState
from sparkplug_eon.proto import DataType, Metric

EXAMPLES = Path(__file__).resolve().parents[2] / "examples"

CONFIG = {
    "group_id": "BME280",
    "node_name": "Node1",
    "broker": {"host": "broker.local", "port": 8883, "username": "node", "password": "secret"},
    "publish_period_ms": 1000,
    "primary_host_id": "SCADA",
    "metrics": [
        {"name": "Temperature", "datatype": "Double", "value": 21, "alias": 1, "periodic": True},
        {"name": "Humidity", "datatype": "Double", "value": 40.0, "alias": 2, "periodic": True},
        {"name": "Setpoint", "datatype": "Int32", "value": 20, "writable": True},
        {"name": "Firmware", "datatype": "String", "value": "1.2.0"},
    ],
}


@fixture
def config_file(tmp_path):
    path = tmp_path / "node.json"
    path.write_text(json.dumps(CONFIG))
    return path


def _write(tmp_path, data):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps(data))
    return path


def describe_node_config():
    def loads_from_json(expect, config_file):
        config = NodeConfig.load(config_file)

        expect(config.broker.port) == 8883
        expect(config.periodic_names()) == ["Temperature", "Humidity"]
        expect(config.writable_names()) == ["Setpoint"]

    def builds_birth_metrics(expect, config_file):
        metrics = NodeConfig.load(config_file).birth_metrics()

        expect(metrics[0]) == Metric(name="Temperature", datatype=DataType.Double, value=21.0, alias=1)
        expect(isinstance(metrics[0].value, float)) == True
        expect(metrics[2].datatype) == DataType.Int32

    def derives_connect_options(expect, config_file):
        options = NodeConfig.load(config_file).connect_options()

        expect(options.client_id) == "spBv1.0-BME280-Node1"
        expect(options.username) == "node"
        expect(options.tls is None) == True

    def rejects_missing_fields(tmp_path):
        with raises(ConfigError):
            NodeConfig.load(_write(tmp_path, {"node_name": "Node1"}))

    def rejects_invalid_identity(tmp_path):
        with raises(ConfigError):
            NodeConfig.load(_write(tmp_path, {**CONFIG, "group_id": "a/b"}))

    def rejects_unknown_datatypes(tmp_path):
        metrics = [{"name": "x", "datatype": "Decimal", "value": 1}]

        with raises(ConfigError):
            NodeConfig.load(_write(tmp_path, {**CONFIG, "metrics": metrics}))

    def rejects_values_that_do_not_fit(tmp_path):
        metrics = [{"name": "x", "datatype": "UInt8", "value": 300}]

        with raises(ConfigError):
            NodeConfig.load(_write(tmp_path, {**CONFIG, "metrics": metrics}))


def describe_metric_config():
    def periodic_metrics_must_be_numeric():
        with raises(ConfigError):
            MetricConfig(name="Label", datatype="String", value="x", periodic=True).to_metric()


def describe_build_node():
    def wires_a_node(expect, config_file, transport, scheduler):
        config = NodeConfig.load(config_file)

        node = build_node(config, transport, scheduler, sample=lambda: {"Temperature": 22.0})

        expect(node.identity.group_id) == "BME280"
        expect(node.state) == NodeState.DISCONNECTED
        expect(node.publisher.period_ms) == 1000


def describe_example_configs():
    def all_load(expect):
        configs = [NodeConfig.load(path) for path in sorted(EXAMPLES.glob("*.json"))]

        expect(len(configs)) == 2
        for config in configs:
            expect(len(config.birth_metrics())) == len(config.metrics)

    def tls_settings_reach_connect_options(expect):
        path = EXAMPLES / "tls_node.json"
        options = NodeConfig.load(path).connect_options()

        expect(options.client_id) == "plant-gateway1"
        expect(options.tls.certfile) == "certs/gateway1.crt"
        expect(options.reconnect_max_delay) == 120
