"""Sparkplug B data model.

These dataclasses describe what travels in a payload. The codec turns
them into protobuf messages and back; nothing here touches the wire.
"""

import math
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any, Self

BD_SEQ_METRIC = "bdSeq"
REBIRTH_METRIC = "Node Control/Rebirth"


class DataType(IntEnum):
    """Sparkplug B metric datatype codes."""

    Unknown = 0
    Int8 = 1
    Int16 = 2
    Int32 = 3
    Int64 = 4
    UInt8 = 5
    UInt16 = 6
    UInt32 = 7
    UInt64 = 8
    Float = 9
    Double = 10
    Boolean = 11
    String = 12
    DateTime = 13
    Text = 14
    UUID = 15
    DataSet = 16
    Bytes = 17
    File = 18
    Template = 19


INTEGER_RANGES: dict[DataType, tuple[int, int]] = {
    DataType.Int8: (-(2**7), 2**7 - 1),
    DataType.Int16: (-(2**15), 2**15 - 1),
    DataType.Int32: (-(2**31), 2**31 - 1),
    DataType.Int64: (-(2**63), 2**63 - 1),
    DataType.UInt8: (0, 2**8 - 1),
    DataType.UInt16: (0, 2**16 - 1),
    DataType.UInt32: (0, 2**32 - 1),
    DataType.UInt64: (0, 2**64 - 1),
}

FLOAT_TYPES = frozenset({DataType.Float, DataType.Double})
TEXT_TYPES = frozenset({DataType.String, DataType.Text, DataType.UUID})
BINARY_TYPES = frozenset({DataType.Bytes, DataType.File})

FLOAT32_MAX = 3.4028234663852886e38
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Types that fit a DataSetValue / Template.Parameter scalar
SCALAR_TYPES = (
    frozenset(INTEGER_RANGES) | FLOAT_TYPES | TEXT_TYPES | {DataType.Boolean, DataType.DateTime}
)
SUPPORTED_TYPES = SCALAR_TYPES | BINARY_TYPES | {DataType.DataSet, DataType.Template}


class _Unreported:
    """Marker for a metric carrying neither a value nor the is-null flag."""

    def __repr__(self) -> str:
        return "UNREPORTED"


UNREPORTED: Any = _Unreported()


@dataclass(frozen=True, slots=True)
class Metric:
    """A single named, typed value.

    ``value=None`` means the metric was reported as null; ``UNREPORTED``
    means it carried no value at all.
    """

    name: str
    datatype: DataType
    value: Any = None
    alias: int | None = None
    timestamp: int | None = None
    is_historical: bool = False
    is_transient: bool = False

    @property
    def is_null(self) -> bool:
        return self.value is None


@dataclass(frozen=True, slots=True)
class DataSet:
    """A payload-local table with typed columns."""

    columns: tuple[str, ...]
    types: tuple[DataType, ...]
    rows: tuple[tuple[Any, ...], ...] = ()


@dataclass(frozen=True, slots=True)
class Parameter:
    """A template parameter."""

    name: str
    datatype: DataType
    value: Any = None


@dataclass(frozen=True, slots=True)
class Template:
    """A template definition or instance."""

    metrics: tuple[Metric, ...] = ()
    parameters: tuple[Parameter, ...] = ()
    version: str | None = None
    template_ref: str | None = None
    is_definition: bool = False


@dataclass(frozen=True, slots=True)
class Payload:
    """An ordered set of metrics plus the envelope fields."""

    metrics: tuple[Metric, ...] = ()
    seq: int | None = None
    timestamp: int | None = None
    uuid: str | None = None
    body: bytes | None = None

    def metric(self, name: str) -> Metric | None:
        """Return the first metric called ``name``, if any."""
        for metric in self.metrics:
            if metric.name == name:
                return metric
        return None

    def with_seq(self, seq: int | None) -> Self:
        return replace(self, seq=seq)


def describe_mismatch(datatype: DataType, value: Any) -> str | None:
    """Explain why ``value`` cannot be carried as ``datatype``.

    Returns None when the value fits. Null and unreported values always
    fit; callers that need a concrete value check for those first.
    """
    if value is None or value is UNREPORTED:
        return None

    if datatype in INTEGER_RANGES:
        if isinstance(value, bool) or not isinstance(value, int):
            return f"{datatype.name} expects int, got {type(value).__name__}"
        low, high = INTEGER_RANGES[datatype]
        if not low <= value <= high:
            return f"{value} is out of range for {datatype.name}"
        return None

    if datatype in FLOAT_TYPES:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return f"{datatype.name} expects float, got {type(value).__name__}"
        try:
            magnitude = abs(float(value))
        except OverflowError:
            return f"{value} is out of range for {datatype.name}"
        if datatype is DataType.Float and math.isfinite(magnitude) and magnitude > FLOAT32_MAX:
            return f"{value} is out of range for Float"
        return None

    expected: type | None = None
    if datatype is DataType.Boolean:
        expected = bool
    elif datatype in TEXT_TYPES:
        expected = str
    elif datatype in BINARY_TYPES:
        expected = bytes
    elif datatype is DataType.DateTime:
        expected = datetime
    elif datatype is DataType.DataSet:
        expected = DataSet
    elif datatype is DataType.Template:
        expected = Template
    else:
        return f"{datatype.name} is not supported"

    if not isinstance(value, expected):
        return f"{datatype.name} expects {expected.__name__}, got {type(value).__name__}"
    if isinstance(value, datetime) and value.tzinfo is None:
        return "DateTime values must be timezone-aware"
    if isinstance(value, datetime) and value < EPOCH:
        return "DateTime values must not precede the Unix epoch"
    return None
