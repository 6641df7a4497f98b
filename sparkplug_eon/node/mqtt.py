"""Transport adapter backed by paho-mqtt."""

import logging
from collections.abc import Callable
from typing import Any

import paho.mqtt.client as mqtt

from ..proto import (
    BD_SEQ_METRIC,
    MessageType,
    NodeIdentity,
    Payload,
    death_certificate,
    encode_payload,
    node_topic,
)
from ..proto.topics import is_state_topic
from .transport import (
    BrokerAddress,
    CommandKind,
    ConnectOptions,
    MessageCallback,
    StatusCallback,
    StatusEvent,
    TransportFailure,
)

logger = logging.getLogger(__name__)

# Sparkplug sends NDEATH and receives NCMD at QoS 1
WILL_QOS = 1
SUBSCRIBE_QOS = 1


def _new_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=True,
    )


class PahoConnection:
    """Handle returned by PahoTransport.connect; owns one paho client."""

    def __init__(
        self,
        client: mqtt.Client,
        identity: NodeIdentity,
        status_callback: StatusCallback,
        message_callback: MessageCallback,
    ) -> None:
        self.client = client
        self.identity = identity
        self.subscriptions: set[str] = set()
        self.closing = False
        self._status_callback = status_callback
        self._message_callback = message_callback
        self._ncmd_topic = node_topic(identity, MessageType.NCMD)

    def _report(self, event: StatusEvent, code: int, detail: str) -> None:
        if self.closing:
            return
        if not self._status_callback(event, code, detail):
            logger.debug("Status callback declined retries; stopping network loop")
            self.closing = True
            self.client.disconnect()
            self.client.loop_stop()

    # paho callbacks (VERSION2 signatures)

    def on_pre_connect(self, client: mqtt.Client, userdata: Any) -> None:
        self._report(StatusEvent.CONNECTING, 0, "")

    def on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        if reason_code.is_failure:
            self._report(StatusEvent.CONNECT_FAILED, reason_code.value, str(reason_code))
        else:
            self._report(StatusEvent.CONNECTED, 0, str(reason_code))

    def on_connect_fail(self, client: mqtt.Client, userdata: Any) -> None:
        self._report(StatusEvent.CONNECT_FAILED, -1, "network error")

    def on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        self._report(StatusEvent.DISCONNECTED, reason_code.value, str(reason_code))

    def on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
        topic = message.topic
        if topic == self._ncmd_topic:
            self._message_callback(CommandKind.NCMD, bytes(message.payload), topic)
        elif topic in self.subscriptions and is_state_topic(topic):
            text = bytes(message.payload).decode("utf-8", errors="replace")
            self._message_callback(CommandKind.STATE, text, topic)
        else:
            self._report(StatusEvent.PROTOCOL_VIOLATION, 0, f"unexpected message on {topic}")


class PahoTransport:
    """Transport over paho-mqtt's threaded network loop.

    Reconnects are paho's: after a drop it keeps retrying with
    exponential backoff between ``reconnect_min_delay`` and
    ``reconnect_max_delay`` seconds.
    """

    def __init__(self, client_factory: Callable[[str], mqtt.Client] = _new_client) -> None:
        self._client_factory = client_factory

    def connect(
        self,
        address: BrokerAddress,
        status_callback: StatusCallback,
        message_callback: MessageCallback,
        identity: NodeIdentity,
        retained_birth: Payload,
        options: ConnectOptions,
    ) -> PahoConnection:
        bd_seq_metric = retained_birth.metric(BD_SEQ_METRIC)
        if bd_seq_metric is None:
            raise TransportFailure("Birth payload has no bdSeq metric")

        client = self._client_factory(options.client_id)
        connection = PahoConnection(client, identity, status_callback, message_callback)
        client.on_pre_connect = connection.on_pre_connect
        client.on_connect = connection.on_connect
        client.on_connect_fail = connection.on_connect_fail
        client.on_disconnect = connection.on_disconnect
        client.on_message = connection.on_message

        if options.username is not None:
            client.username_pw_set(options.username, options.password)
        client.reconnect_delay_set(options.reconnect_min_delay, options.reconnect_max_delay)
        client.will_set(
            node_topic(identity, MessageType.NDEATH),
            encode_payload(death_certificate(bd_seq_metric.value)),
            qos=WILL_QOS,
            retain=False,
        )

        try:
            if options.tls is not None:
                client.tls_set(
                    ca_certs=options.tls.ca_certs,
                    certfile=options.tls.certfile,
                    keyfile=options.tls.keyfile,
                )
            client.connect_async(address.host, address.port, keepalive=options.keepalive)
        except (OSError, ValueError) as exc:
            raise TransportFailure(f"Cannot connect to {address.host}:{address.port}: {exc}") from exc

        rc = client.loop_start()
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportFailure(f"Cannot start network loop: {mqtt.error_string(rc)}")

        logger.debug("Connecting to %s:%d as %s", address.host, address.port, options.client_id)
        return connection

    def publish(self, handle: PahoConnection, topic_suffix: MessageType, payload: bytes, qos: int = 0) -> None:
        topic = node_topic(handle.identity, MessageType(topic_suffix))
        info = handle.client.publish(topic, payload, qos=qos, retain=False)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportFailure(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")
        logger.debug("Published %d bytes to %s", len(payload), topic)

    def subscribe(self, handle: PahoConnection, topic_filter: str) -> None:
        rc, _mid = handle.client.subscribe(topic_filter, qos=SUBSCRIBE_QOS)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportFailure(f"Subscribe to {topic_filter} failed: {mqtt.error_string(rc)}")
        handle.subscriptions.add(topic_filter)

    def set_will(self, handle: PahoConnection, payload: bytes) -> None:
        handle.client.will_set(
            node_topic(handle.identity, MessageType.NDEATH),
            payload,
            qos=WILL_QOS,
            retain=False,
        )

    def disconnect(self, handle: PahoConnection) -> None:
        handle.closing = True
        handle.client.disconnect()
        handle.client.loop_stop()
