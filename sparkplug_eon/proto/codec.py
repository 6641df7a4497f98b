"""Metric codec: Sparkplug B payloads to and from protobuf bytes."""

import time
from collections.abc import Iterable, Sequence
from datetime import timedelta
from typing import Any

from google.protobuf.message import DecodeError as _ProtobufDecodeError

from .schema import PayloadMessage
from .types import (
    BD_SEQ_METRIC,
    EPOCH,
    INTEGER_RANGES,
    SCALAR_TYPES,
    SUPPORTED_TYPES,
    UNREPORTED,
    DataSet,
    DataType,
    Metric,
    Parameter,
    Payload,
    Template,
    describe_mismatch,
)


class CodecError(RuntimeError):
    """Base exception for codec failures."""


class EncodeError(CodecError):
    """Raised when metrics cannot be encoded."""


class DecodeError(CodecError):
    """Raised when bytes do not match the Sparkplug B schema."""


class SchemaError(CodecError):
    """Raised when a DataSet's rows disagree with its declared columns."""


# Protobuf field carrying each datatype's value
VALUE_FIELDS: dict[DataType, str] = {
    DataType.Int8: "int_value",
    DataType.Int16: "int_value",
    DataType.Int32: "int_value",
    DataType.UInt8: "int_value",
    DataType.UInt16: "int_value",
    DataType.UInt32: "int_value",
    DataType.Int64: "long_value",
    DataType.UInt64: "long_value",
    DataType.DateTime: "long_value",
    DataType.Float: "float_value",
    DataType.Double: "double_value",
    DataType.Boolean: "boolean_value",
    DataType.String: "string_value",
    DataType.Text: "string_value",
    DataType.UUID: "string_value",
    DataType.Bytes: "bytes_value",
    DataType.File: "bytes_value",
    DataType.DataSet: "dataset_value",
    DataType.Template: "template_value",
}

_SIGNED_BITS = {
    DataType.Int8: 8,
    DataType.Int16: 16,
    DataType.Int32: 32,
    DataType.Int64: 64,
}

_MILLISECOND = timedelta(milliseconds=1)


def timestamp_ms() -> int:
    """Current time in milliseconds since the Unix epoch."""
    return time.time_ns() // 1_000_000


def _to_signed(raw: int, bits: int) -> int:
    if raw >= 1 << (bits - 1):
        return raw - (1 << bits)
    return raw


def _to_wire(datatype: DataType, value: Any) -> Any:
    if datatype in _SIGNED_BITS:
        # Int8/16/32 travel as 32-bit two's complement, Int64 as 64-bit
        width = 64 if datatype is DataType.Int64 else 32
        return value & ((1 << width) - 1)
    if datatype is DataType.DateTime:
        return (value - EPOCH) // _MILLISECOND
    if datatype is DataType.Float or datatype is DataType.Double:
        return float(value)
    return value


def _from_wire(datatype: DataType, raw: Any) -> Any:
    """Convert a raw protobuf value back to Python, raising ValueError on range errors."""
    if datatype in _SIGNED_BITS:
        bits = _SIGNED_BITS[datatype]
        width = 64 if datatype is DataType.Int64 else 32
        value = _to_signed(raw, width)
        low, high = INTEGER_RANGES[datatype]
        if not low <= value <= high and raw < 1 << bits:
            # Some encoders send narrow ints as their own width's two's complement
            value = _to_signed(raw, bits)
        if not low <= value <= high:
            raise ValueError(f"{raw} is out of range for {datatype.name}")
        return value
    if datatype in INTEGER_RANGES:
        low, high = INTEGER_RANGES[datatype]
        if not low <= raw <= high:
            raise ValueError(f"{raw} is out of range for {datatype.name}")
        return raw
    if datatype is DataType.DateTime:
        try:
            return EPOCH + raw * _MILLISECOND
        except OverflowError as exc:
            raise ValueError(f"{raw} ms is outside the DateTime range") from exc
    return raw


def _check_unique_names(metrics: Iterable[Metric], error: type[CodecError]) -> None:
    seen: set[str] = set()
    for metric in metrics:
        if not metric.name:
            continue
        if metric.name in seen:
            raise error(f"Duplicate metric name {metric.name!r}")
        seen.add(metric.name)


def _check_dataset(dataset: DataSet) -> None:
    if len(dataset.columns) != len(dataset.types):
        raise SchemaError(
            f"DataSet declares {len(dataset.columns)} columns but {len(dataset.types)} types"
        )
    for column, datatype in zip(dataset.columns, dataset.types):
        if datatype not in SCALAR_TYPES:
            raise SchemaError(f"Column {column!r} has unsupported type {datatype!r}")

    for index, row in enumerate(dataset.rows):
        if len(row) != len(dataset.types):
            raise SchemaError(
                f"Row {index} has {len(row)} values, expected {len(dataset.types)}"
            )
        for column, datatype, cell in zip(dataset.columns, dataset.types, row):
            if cell is UNREPORTED:
                raise SchemaError(f"Row {index} column {column!r}: cells must be a value or None")
            problem = describe_mismatch(datatype, cell)
            if problem:
                raise SchemaError(f"Row {index} column {column!r}: {problem}")


# =============================================================================
# Encoding
# =============================================================================


def _encode_dataset(message: Any, dataset: DataSet) -> None:
    _check_dataset(dataset)

    message.num_of_columns = len(dataset.columns)
    message.columns.extend(dataset.columns)
    message.types.extend(int(t) for t in dataset.types)
    for row in dataset.rows:
        row_message = message.rows.add()
        for datatype, cell in zip(dataset.types, row):
            element = row_message.elements.add()
            if cell is not None:
                setattr(element, VALUE_FIELDS[datatype], _to_wire(datatype, cell))


def _encode_parameter(message: Any, parameter: Parameter) -> None:
    if parameter.datatype not in SCALAR_TYPES:
        raise EncodeError(f"Parameter {parameter.name!r} has unsupported type {parameter.datatype!r}")
    problem = describe_mismatch(parameter.datatype, parameter.value)
    if problem:
        raise EncodeError(f"Parameter {parameter.name!r}: {problem}")

    message.name = parameter.name
    message.type = int(parameter.datatype)
    if parameter.value is not None and parameter.value is not UNREPORTED:
        setattr(
            message,
            VALUE_FIELDS[parameter.datatype],
            _to_wire(parameter.datatype, parameter.value),
        )


def _encode_template(message: Any, template: Template) -> None:
    message.SetInParent()
    if template.version is not None:
        message.version = template.version
    if template.template_ref is not None:
        message.template_ref = template.template_ref
    if template.is_definition:
        message.is_definition = True

    _check_unique_names(template.metrics, EncodeError)
    for metric in template.metrics:
        _encode_metric(message.metrics.add(), metric)
    for parameter in template.parameters:
        _encode_parameter(message.parameters.add(), parameter)


def _encode_metric(message: Any, metric: Metric) -> None:
    if not metric.name and metric.alias is None:
        raise EncodeError("Metric needs a name or an alias")
    if metric.datatype not in SUPPORTED_TYPES:
        raise EncodeError(f"Metric {metric.name!r} has unsupported type {metric.datatype!r}")
    problem = describe_mismatch(metric.datatype, metric.value)
    if problem:
        raise EncodeError(f"Metric {metric.name!r}: {problem}")

    if metric.name:
        message.name = metric.name
    if metric.alias is not None:
        message.alias = metric.alias
    if metric.timestamp is not None:
        message.timestamp = metric.timestamp
    message.datatype = int(metric.datatype)
    if metric.is_historical:
        message.is_historical = True
    if metric.is_transient:
        message.is_transient = True

    if metric.value is None:
        message.is_null = True
    elif metric.value is UNREPORTED:
        pass
    elif metric.datatype is DataType.DataSet:
        message.dataset_value.SetInParent()
        _encode_dataset(message.dataset_value, metric.value)
    elif metric.datatype is DataType.Template:
        _encode_template(message.template_value, metric.value)
    else:
        setattr(message, VALUE_FIELDS[metric.datatype], _to_wire(metric.datatype, metric.value))


def encode_payload(payload: Payload) -> bytes:
    """Encode a payload to Sparkplug B bytes.

    Metrics are written in the order given. Encoding is deterministic:
    the same payload always produces the same bytes.

    Raises:
        EncodeError: A metric value does not fit its datatype, names
            repeat, or an envelope field is out of range.
        SchemaError: A DataSet row disagrees with its columns.
    """
    message = PayloadMessage()

    if payload.timestamp is not None:
        message.timestamp = payload.timestamp
    if payload.seq is not None:
        if not 0 <= payload.seq <= 255:
            raise EncodeError(f"Sequence number {payload.seq} is outside 0..255")
        message.seq = payload.seq
    if payload.uuid is not None:
        message.uuid = payload.uuid
    if payload.body is not None:
        message.body = payload.body

    _check_unique_names(payload.metrics, EncodeError)
    for metric in payload.metrics:
        _encode_metric(message.metrics.add(), metric)

    return message.SerializeToString(deterministic=True)


def encode(metrics: Sequence[Metric]) -> bytes:
    """Encode metrics as a bare payload (no seq or timestamp)."""
    return encode_payload(Payload(metrics=tuple(metrics)))


# =============================================================================
# Decoding
# =============================================================================


def _decode_scalar(datatype: DataType, kind: str | None, raw: Any, where: str) -> Any:
    if kind is None:
        return None
    if kind != VALUE_FIELDS[datatype]:
        raise SchemaError(f"{where}: {datatype.name} cannot be carried in {kind}")
    try:
        return _from_wire(datatype, raw)
    except ValueError as exc:
        raise SchemaError(f"{where}: {exc}") from exc


def _decode_dataset(message: Any) -> DataSet:
    columns = tuple(message.columns)
    try:
        types = tuple(DataType(t) for t in message.types)
    except ValueError as exc:
        raise SchemaError(f"DataSet has an unknown column type: {exc}") from exc

    if message.HasField("num_of_columns") and message.num_of_columns != len(columns):
        raise SchemaError(
            f"DataSet says {message.num_of_columns} columns but names {len(columns)}"
        )
    if len(types) != len(columns):
        raise SchemaError(f"DataSet declares {len(columns)} columns but {len(types)} types")
    for column, datatype in zip(columns, types):
        if datatype not in SCALAR_TYPES:
            raise SchemaError(f"Column {column!r} has unsupported type {datatype!r}")

    rows = []
    for index, row in enumerate(message.rows):
        if len(row.elements) != len(types):
            raise SchemaError(f"Row {index} has {len(row.elements)} values, expected {len(types)}")
        values = []
        for column, datatype, element in zip(columns, types, row.elements):
            kind = element.WhichOneof("value")
            raw = getattr(element, kind) if kind else None
            values.append(_decode_scalar(datatype, kind, raw, f"Row {index} column {column!r}"))
        rows.append(tuple(values))

    return DataSet(columns=columns, types=types, rows=tuple(rows))


def _decode_parameter(message: Any) -> Parameter:
    try:
        datatype = DataType(message.type)
    except ValueError as exc:
        raise DecodeError(f"Parameter {message.name!r} has unknown type {message.type}") from exc
    if datatype not in SCALAR_TYPES:
        raise DecodeError(f"Parameter {message.name!r} has unsupported type {datatype!r}")

    kind = message.WhichOneof("value")
    raw = getattr(message, kind) if kind else None
    try:
        value = _decode_scalar(datatype, kind, raw, f"Parameter {message.name!r}")
    except SchemaError as exc:
        raise DecodeError(str(exc)) from exc
    return Parameter(name=message.name, datatype=datatype, value=value)


def _decode_template(message: Any) -> Template:
    metrics = tuple(_decode_metric(m) for m in message.metrics)
    _check_unique_names(metrics, DecodeError)
    return Template(
        metrics=metrics,
        parameters=tuple(_decode_parameter(p) for p in message.parameters),
        version=message.version if message.HasField("version") else None,
        template_ref=message.template_ref if message.HasField("template_ref") else None,
        is_definition=message.is_definition,
    )


def _decode_metric(message: Any) -> Metric:
    try:
        datatype = DataType(message.datatype)
    except ValueError as exc:
        raise DecodeError(f"Metric {message.name!r} has unknown datatype {message.datatype}") from exc

    kind = message.WhichOneof("value")
    if datatype is DataType.Unknown and kind is not None:
        raise DecodeError(f"Metric {message.name!r} carries a value without a datatype")
    if datatype is not DataType.Unknown and datatype not in SUPPORTED_TYPES:
        raise DecodeError(f"Metric {message.name!r} has unsupported datatype {datatype!r}")

    value: Any
    if message.is_null:
        if kind is not None:
            raise DecodeError(f"Metric {message.name!r} is flagged null but carries {kind}")
        value = None
    elif kind is None:
        value = UNREPORTED
    elif kind != VALUE_FIELDS[datatype]:
        raise DecodeError(f"Metric {message.name!r}: {datatype.name} cannot be carried in {kind}")
    elif datatype is DataType.DataSet:
        value = _decode_dataset(message.dataset_value)
    elif datatype is DataType.Template:
        value = _decode_template(message.template_value)
    else:
        try:
            value = _from_wire(datatype, getattr(message, kind))
        except ValueError as exc:
            raise DecodeError(f"Metric {message.name!r}: {exc}") from exc

    return Metric(
        name=message.name,
        datatype=datatype,
        value=value,
        alias=message.alias if message.HasField("alias") else None,
        timestamp=message.timestamp if message.HasField("timestamp") else None,
        is_historical=message.is_historical,
        is_transient=message.is_transient,
    )


def decode_payload(data: bytes) -> Payload:
    """Decode Sparkplug B bytes into a payload.

    Raises:
        DecodeError: The bytes are not a valid Sparkplug B payload.
        SchemaError: A DataSet row disagrees with its columns.
    """
    message = PayloadMessage()
    try:
        message.ParseFromString(data)
    except (_ProtobufDecodeError, UnicodeDecodeError) as exc:
        raise DecodeError(f"Malformed payload: {exc}") from exc

    metrics = tuple(_decode_metric(m) for m in message.metrics)
    _check_unique_names(metrics, DecodeError)

    seq = None
    if message.HasField("seq"):
        if message.seq > 255:
            raise DecodeError(f"Sequence number {message.seq} is outside 0..255")
        seq = message.seq

    return Payload(
        metrics=metrics,
        seq=seq,
        timestamp=message.timestamp if message.HasField("timestamp") else None,
        uuid=message.uuid if message.HasField("uuid") else None,
        body=message.body if message.HasField("body") else None,
    )


def decode(data: bytes) -> list[Metric]:
    """Decode the metrics of a payload, in wire order."""
    return list(decode_payload(data).metrics)


def death_certificate(bd_seq: int, timestamp: int | None = None) -> Payload:
    """Build the NDEATH payload for a birth/death sequence number."""
    return Payload(
        metrics=(Metric(name=BD_SEQ_METRIC, datatype=DataType.UInt64, value=bd_seq),),
        timestamp=timestamp,
    )
