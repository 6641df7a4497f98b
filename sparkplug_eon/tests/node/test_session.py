"""Tests for the edge node session lifecycle"""

from datetime import UTC, datetime

from pytest import raises

from sparkplug_eon.node import (
    BrokerAddress,
    CommandKind,
    ConnectOptions,
    DispatchEventKind,
    EdgeNode,
    NodeError,
    NodeState,
    SensorReadFailure,
    StatusEvent,
    parse_host_state,
)
from sparkplug_eon.proto import DataType, MessageType, Metric, NodeIdentity, decode_payload, node_topic
from sparkplug_eon.proto.schema import PayloadMessage


def _names(payload):
    return [metric.name for metric in payload.metrics]


def describe_edge_node():
    def describe_construction():
        def rejects_periodic_metrics_missing_from_birth(make_node):
            with raises(NodeError):
                make_node(periodic=["Voltage"])

        def rejects_periodic_metrics_without_sampler(make_node):
            with raises(NodeError):
                make_node(sample=None)

        def rejects_reserved_names(transport, scheduler):
            with raises(NodeError):
                EdgeNode(
                    BrokerAddress("broker.local"),
                    NodeIdentity(group_id="G", node_name="N"),
                    [Metric(name="bdSeq", datatype=DataType.UInt64, value=0)],
                    transport,
                    scheduler,
                    ConnectOptions(client_id="n"),
                )

        def rejects_reused_aliases(transport, scheduler):
            with raises(NodeError):
                EdgeNode(
                    BrokerAddress("broker.local"),
                    NodeIdentity(group_id="G", node_name="N"),
                    [
                        Metric(name="a", datatype=DataType.Int32, value=0, alias=1),
                        Metric(name="b", datatype=DataType.Int32, value=0, alias=1),
                    ],
                    transport,
                    scheduler,
                    ConnectOptions(client_id="n"),
                )

        def rejects_birth_values_that_cannot_encode(transport, scheduler):
            with raises(NodeError):
                EdgeNode(
                    BrokerAddress("broker.local"),
                    NodeIdentity(group_id="G", node_name="N"),
                    [Metric(name="Installed", datatype=DataType.DateTime, value=datetime(1969, 12, 31, tzinfo=UTC))],
                    transport,
                    scheduler,
                    ConnectOptions(client_id="n"),
                )

        def starts_disconnected(expect, make_node):
            expect(make_node().state) == NodeState.DISCONNECTED

    def describe_birth():
        def publishes_birth_then_one_data_per_tick(expect, online_node, transport, scheduler):
            expect(transport.types()) == [MessageType.NBIRTH]
            expect(node_topic(transport.identity, MessageType.NBIRTH)) == "spBv1.0/BME280/NBIRTH/Node1"

            scheduler.fire()

            expect(transport.types()) == [MessageType.NBIRTH, MessageType.NDATA]
            ndata = transport.payloads(MessageType.NDATA)[0]
            expect(_names(ndata)) == ["Temperature", "Humidity"]
            expect(ndata.metrics[0].value) == 22.25
            expect(ndata.metrics[0].alias) == 1

        def birth_carries_node_metrics_first(expect, online_node, transport):
            birth = transport.payloads(MessageType.NBIRTH)[0]

            expect(birth.seq) == 0
            expect(_names(birth)) == [
                "bdSeq",
                "Node Control/Rebirth",
                "Temperature",
                "Humidity",
                "Pressure",
                "Firmware",
                "Setpoint",
            ]
            expect(birth.metric("bdSeq").value) == 0
            expect(birth.metric("Node Control/Rebirth").value) == False

        def subscribes_to_commands_before_birth(expect, online_node, transport):
            expect(transport.subscriptions) == ["spBv1.0/BME280/NCMD/Node1"]

        def connects_with_birth_bd_seq(expect, online_node, transport):
            _address, retained_birth, options = transport.connects[0]

            expect(retained_birth.metric("bdSeq").value) == 0
            expect(options.client_id) == "node1"

        def arms_the_next_death_certificate(expect, online_node, transport):
            will = decode_payload(transport.wills[-1])
            expect(will.metric("bdSeq").value) == 1

        def goes_online(expect, online_node):
            expect(online_node.state) == NodeState.ONLINE
            expect(online_node.publisher.running) == True

    def describe_sequence_numbers():
        def nth_payload_after_birth_is_n_mod_256(expect, online_node, transport, scheduler):
            scheduler.fire(300)

            seqs = [payload.seq for payload in transport.payloads(MessageType.NDATA)]
            expect(seqs) == [n % 256 for n in range(1, 301)]

        def restart_at_one_after_rebirth(expect, online_node, transport, scheduler):
            scheduler.fire(3)
            online_node.request_rebirth()
            scheduler.fire()

            expect(transport.payloads(MessageType.NDATA)[-1].seq) == 1

    def describe_disconnect():
        def reaches_reconnecting_and_cancels_loop(expect, online_node, transport, scheduler):
            keep_retrying = transport.report(StatusEvent.DISCONNECTED, 7, "keepalive timeout")

            expect(keep_retrying) == True
            expect(online_node.state) == NodeState.RECONNECTING
            expect(online_node.publisher.running) == False
            expect(scheduler.active) == []

            scheduler.fire()
            expect(transport.types()) == [MessageType.NBIRTH]

        def rebirths_with_next_bd_seq_on_reconnect(expect, online_node, transport, scheduler):
            transport.report(StatusEvent.DISCONNECTED, 7, "keepalive timeout")
            transport.report(StatusEvent.CONNECTING)
            expect(online_node.state) == NodeState.CONNECTING

            transport.report(StatusEvent.CONNECTED)

            births = transport.payloads(MessageType.NBIRTH)
            expect(len(births)) == 2
            expect(births[1].metric("bdSeq").value) == 1
            expect(births[1].seq) == 0

            scheduler.fire()
            expect(transport.payloads(MessageType.NDATA)[-1].seq) == 1

        def publish_failure_drops_to_reconnecting(expect, online_node, transport, scheduler):
            transport.fail_publish = True

            scheduler.fire()

            expect(online_node.state) == NodeState.RECONNECTING
            expect(online_node.publisher.running) == False

    def describe_connect_failure():
        def schedules_a_retry(expect, make_node, transport, scheduler):
            node = make_node(retry_period_ms=250)
            transport.fail_connect = True

            node.start()

            expect(node.state) == NodeState.RECONNECTING
            expect([task.period_ms for task in scheduler.active]) == [250]

            transport.fail_connect = False
            scheduler.fire()

            expect(node.state) == NodeState.CONNECTING
            expect(len(transport.connects)) == 1
            expect(scheduler.active) == []

        def keeps_retrying_after_failed_handshake(expect, make_node, transport):
            node = make_node()
            node.start()

            expect(transport.report(StatusEvent.CONNECT_FAILED, 5, "not authorized")) == True
            expect(node.state) == NodeState.RECONNECTING

    def describe_rebirth():
        def republishes_identical_birth(expect, online_node, transport, scheduler):
            scheduler.fire(2)

            expect(online_node.request_rebirth()) == True

            births = transport.raw(MessageType.NBIRTH)
            expect(len(births)) == 2
            expect(births[1]) == births[0]

        def is_ignored_when_not_online(expect, make_node, transport):
            node = make_node()
            node.start()

            expect(node.request_rebirth()) == False
            expect(transport.published) == []

        def follows_rebirth_command(expect, online_node, transport):
            transport.deliver_command([Metric(name="Node Control/Rebirth", datatype=DataType.Boolean, value=True)])

            expect(len(transport.raw(MessageType.NBIRTH))) == 2

        def ignores_false_rebirth_command(expect, online_node, transport):
            transport.deliver_command([Metric(name="Node Control/Rebirth", datatype=DataType.Boolean, value=False)])

            expect(len(transport.raw(MessageType.NBIRTH))) == 1

    def describe_degraded():
        def entered_on_protocol_violation(expect, online_node, transport, scheduler):
            transport.report(StatusEvent.PROTOCOL_VIOLATION, 0, "unexpected message")

            expect(online_node.state) == NodeState.DEGRADED
            scheduler.fire()
            expect(len(transport.raw(MessageType.NDATA))) == 1

        def rebirth_returns_to_online(expect, online_node, transport):
            transport.report(StatusEvent.PROTOCOL_VIOLATION, 0, "unexpected message")

            online_node.request_rebirth()

            expect(online_node.state) == NodeState.ONLINE

    def describe_primary_host():
        def subscribes_to_state(expect, make_node, transport):
            node = make_node(primary_host_id="SCADA")
            node.start()
            transport.report(StatusEvent.CONNECTED)

            expect(transport.subscriptions) == ["spBv1.0/BME280/NCMD/Node1", "spBv1.0/STATE/SCADA"]

        def rebirths_when_host_comes_back(expect, make_node, transport):
            node = make_node(primary_host_id="SCADA")
            node.start()
            transport.report(StatusEvent.CONNECTED)

            transport.deliver_state("SCADA", '{"online": true, "timestamp": 1}')
            expect(len(transport.raw(MessageType.NBIRTH))) == 1

            transport.deliver_state("SCADA", '{"online": false, "timestamp": 2}')
            transport.deliver_state("SCADA", '{"online": true, "timestamp": 3}')

            expect(len(transport.raw(MessageType.NBIRTH))) == 2
            expect(node.session.primary_host_online) == True

    def describe_commands():
        def routes_writes_to_registered_metrics(expect, online_node, transport):
            calls = []
            online_node.register_command("Setpoint", lambda value, datatype: calls.append((value, datatype)))

            transport.deliver_command([Metric(name="Setpoint", datatype=DataType.Int32, value=25)])

            expect(calls) == [(25, DataType.Int32)]

        def only_birth_metrics_can_be_registered(make_node):
            node = make_node()

            with raises(NodeError):
                node.register_command("Voltage", lambda value, datatype: None)
            with raises(NodeError):
                node.register_command("Setpoint", lambda value, datatype: None, DataType.String)

        def reports_unknown_commands(expect, make_node, transport):
            events = []
            node = make_node(hook=events.append)
            node.start()
            transport.report(StatusEvent.CONNECTED)

            transport.deliver_command([Metric(name="Voltage", datatype=DataType.Double, value=3.3)])

            expect([event.kind for event in events]) == [DispatchEventKind.UNKNOWN_METRIC]

        def drops_malformed_commands(expect, online_node, transport):
            transport.message_callback(CommandKind.NCMD, b"\xff\xff\xff", "spBv1.0/BME280/NCMD/Node1")

            expect(online_node.state) == NodeState.ONLINE

        def drops_commands_with_out_of_range_datetimes(expect, online_node, transport):
            message = PayloadMessage()
            metric = message.metrics.add()
            metric.name = "Setpoint"
            metric.datatype = int(DataType.DateTime)
            metric.long_value = 2**64 - 1

            transport.message_callback(CommandKind.NCMD, message.SerializeToString(), "spBv1.0/BME280/NCMD/Node1")

            expect(online_node.state) == NodeState.ONLINE
            expect(transport.types()) == [MessageType.NBIRTH]

    def describe_sensor_failure():
        def skips_the_tick(expect, make_node, transport, scheduler):
            def failing():
                raise SensorReadFailure("i2c timeout")

            node = make_node(sample=failing)
            node.start()
            transport.report(StatusEvent.CONNECTED)

            scheduler.fire()

            expect(transport.types()) == [MessageType.NBIRTH]
            expect(node.state) == NodeState.ONLINE

    def describe_shutdown():
        def publishes_death_and_disconnects(expect, online_node, transport, scheduler):
            online_node.shutdown()

            expect(transport.types()[-1]) == MessageType.NDEATH
            death = transport.payloads(MessageType.NDEATH)[0]
            expect(death.metric("bdSeq").value) == 0
            expect(transport.disconnects) == ["handle-1"]
            expect(online_node.state) == NodeState.DISCONNECTED
            expect(scheduler.active) == []

        def is_terminal(expect, online_node, transport):
            online_node.shutdown()

            expect(transport.report(StatusEvent.DISCONNECTED, 0, "")) == False
            expect(online_node.state) == NodeState.DISCONNECTED
            with raises(NodeError):
                online_node.start()

        def is_idempotent(expect, online_node, transport):
            online_node.shutdown()
            online_node.shutdown()

            expect(len(transport.raw(MessageType.NDEATH))) == 1

        def cancels_pending_retry(expect, make_node, transport, scheduler):
            node = make_node()
            transport.fail_connect = True
            node.start()

            node.shutdown()

            expect(scheduler.active) == []
            expect(transport.published) == []


def describe_parse_host_state():
    def reads_json_bodies(expect):
        expect(parse_host_state('{"online": true, "timestamp": 1}')) == True
        expect(parse_host_state('{"online": false}')) == False

    def reads_legacy_strings(expect):
        expect(parse_host_state("ONLINE")) == True
        expect(parse_host_state("offline")) == False

    def returns_none_otherwise(expect):
        expect(parse_host_state("maybe") is None) == True
        expect(parse_host_state('{"online": "yes"}') is None) == True
