"""Sparkplug B wire model, codec and topic namespace."""

from .codec import (
    CodecError,
    DecodeError,
    EncodeError,
    SchemaError,
    death_certificate,
    decode,
    decode_payload,
    encode,
    encode_payload,
    timestamp_ms,
)
from .topics import (
    NAMESPACE,
    MessageType,
    NodeIdentity,
    Topic,
    TopicError,
    node_topic,
    parse_topic,
    state_topic,
)
from .types import (
    BD_SEQ_METRIC,
    REBIRTH_METRIC,
    UNREPORTED,
    DataSet,
    DataType,
    Metric,
    Parameter,
    Payload,
    Template,
    describe_mismatch,
)

__all__ = [
    # Model
    "BD_SEQ_METRIC",
    "REBIRTH_METRIC",
    "UNREPORTED",
    "DataSet",
    "DataType",
    "Metric",
    "Parameter",
    "Payload",
    "Template",
    "describe_mismatch",
    # Codec
    "CodecError",
    "DecodeError",
    "EncodeError",
    "SchemaError",
    "death_certificate",
    "decode",
    "decode_payload",
    "encode",
    "encode_payload",
    "timestamp_ms",
    # Topics
    "NAMESPACE",
    "MessageType",
    "NodeIdentity",
    "Topic",
    "TopicError",
    "node_topic",
    "parse_topic",
    "state_topic",
]
