"""Sparkplug B protobuf schema.

The message classes are built from descriptor protos at import time, so
no protoc-generated module is needed. Field names, numbers and types
follow Eclipse Tahu's ``sparkplug_b.proto`` (proto2); the unused parts
of that schema (property sets, metadata, extensions) are left out and
survive a parse as unknown fields.
"""

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

PACKAGE = "org.eclipse.tahu.protobuf"

_F = descriptor_pb2.FieldDescriptorProto

# Scalar oneof shared by DataSetValue and Template.Parameter, in field order
_SCALAR_VALUES = (
    ("int_value", _F.TYPE_UINT32),
    ("long_value", _F.TYPE_UINT64),
    ("float_value", _F.TYPE_FLOAT),
    ("double_value", _F.TYPE_DOUBLE),
    ("boolean_value", _F.TYPE_BOOL),
    ("string_value", _F.TYPE_STRING),
)


def _field(
    message: descriptor_pb2.DescriptorProto,
    name: str,
    number: int,
    type_: int,
    *,
    repeated: bool = False,
    type_name: str | None = None,
    oneof_index: int | None = None,
) -> None:
    field = message.field.add(
        name=name,
        number=number,
        type=type_,
        label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
    )
    if type_name is not None:
        field.type_name = f".{PACKAGE}.{type_name}"
    if oneof_index is not None:
        field.oneof_index = oneof_index


def _value_oneof(message: descriptor_pb2.DescriptorProto) -> int:
    message.oneof_decl.add(name="value")
    return len(message.oneof_decl) - 1


def _scalar_oneof(message: descriptor_pb2.DescriptorProto, first_number: int) -> None:
    index = _value_oneof(message)
    for offset, (name, type_) in enumerate(_SCALAR_VALUES):
        _field(message, name, first_number + offset, type_, oneof_index=index)


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    file = descriptor_pb2.FileDescriptorProto(
        name="sparkplug_eon/sparkplug_b.proto",
        package=PACKAGE,
        syntax="proto2",
    )
    payload = file.message_type.add(name="Payload")

    template = payload.nested_type.add(name="Template")
    parameter = template.nested_type.add(name="Parameter")
    _field(parameter, "name", 1, _F.TYPE_STRING)
    _field(parameter, "type", 2, _F.TYPE_UINT32)
    _scalar_oneof(parameter, 3)
    _field(template, "version", 1, _F.TYPE_STRING)
    _field(template, "metrics", 2, _F.TYPE_MESSAGE, repeated=True, type_name="Payload.Metric")
    _field(
        template,
        "parameters",
        3,
        _F.TYPE_MESSAGE,
        repeated=True,
        type_name="Payload.Template.Parameter",
    )
    _field(template, "template_ref", 4, _F.TYPE_STRING)
    _field(template, "is_definition", 5, _F.TYPE_BOOL)

    dataset = payload.nested_type.add(name="DataSet")
    dataset_value = dataset.nested_type.add(name="DataSetValue")
    _scalar_oneof(dataset_value, 1)
    row = dataset.nested_type.add(name="Row")
    _field(
        row,
        "elements",
        1,
        _F.TYPE_MESSAGE,
        repeated=True,
        type_name="Payload.DataSet.DataSetValue",
    )
    _field(dataset, "num_of_columns", 1, _F.TYPE_UINT64)
    _field(dataset, "columns", 2, _F.TYPE_STRING, repeated=True)
    _field(dataset, "types", 3, _F.TYPE_UINT32, repeated=True)
    _field(dataset, "rows", 4, _F.TYPE_MESSAGE, repeated=True, type_name="Payload.DataSet.Row")

    metric = payload.nested_type.add(name="Metric")
    _field(metric, "name", 1, _F.TYPE_STRING)
    _field(metric, "alias", 2, _F.TYPE_UINT64)
    _field(metric, "timestamp", 3, _F.TYPE_UINT64)
    _field(metric, "datatype", 4, _F.TYPE_UINT32)
    _field(metric, "is_historical", 5, _F.TYPE_BOOL)
    _field(metric, "is_transient", 6, _F.TYPE_BOOL)
    _field(metric, "is_null", 7, _F.TYPE_BOOL)
    index = _value_oneof(metric)
    _field(metric, "int_value", 10, _F.TYPE_UINT32, oneof_index=index)
    _field(metric, "long_value", 11, _F.TYPE_UINT64, oneof_index=index)
    _field(metric, "float_value", 12, _F.TYPE_FLOAT, oneof_index=index)
    _field(metric, "double_value", 13, _F.TYPE_DOUBLE, oneof_index=index)
    _field(metric, "boolean_value", 14, _F.TYPE_BOOL, oneof_index=index)
    _field(metric, "string_value", 15, _F.TYPE_STRING, oneof_index=index)
    _field(metric, "bytes_value", 16, _F.TYPE_BYTES, oneof_index=index)
    _field(
        metric,
        "dataset_value",
        17,
        _F.TYPE_MESSAGE,
        type_name="Payload.DataSet",
        oneof_index=index,
    )
    _field(
        metric,
        "template_value",
        18,
        _F.TYPE_MESSAGE,
        type_name="Payload.Template",
        oneof_index=index,
    )

    _field(payload, "timestamp", 1, _F.TYPE_UINT64)
    _field(payload, "metrics", 2, _F.TYPE_MESSAGE, repeated=True, type_name="Payload.Metric")
    _field(payload, "seq", 3, _F.TYPE_UINT64)
    _field(payload, "uuid", 4, _F.TYPE_STRING)
    _field(payload, "body", 5, _F.TYPE_BYTES)
    return file


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file().SerializeToString())

PayloadMessage = message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.Payload"))
