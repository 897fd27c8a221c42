"""Conversion of channels, services and parameters to and from JSON objects."""

from __future__ import annotations

from foxbridge.b64 import base64_decode, base64_encode
from foxbridge.common import Channel, Service
from foxbridge.parameter import Parameter, ParameterType, ParameterValue


def _field(obj: dict, key: str, kind: type):
    value = obj[key]
    if kind is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    else:
        valid = isinstance(value, kind)
    if not valid:
        raise TypeError(f"Field '{key}' must be of type {kind.__name__}")
    return value


def channel_to_json(channel: Channel) -> dict:
    result = {
        "id": channel.id,
        "topic": channel.topic,
        "encoding": channel.encoding,
        "schemaName": channel.schema_name,
        "schema": channel.schema,
    }
    if channel.schema_encoding is not None:
        result["schemaEncoding"] = channel.schema_encoding
    return result


def channel_from_json(obj: dict) -> Channel:
    schema_encoding = _field(obj, "schemaEncoding", str) if "schemaEncoding" in obj else None
    return Channel(
        topic=_field(obj, "topic", str),
        encoding=_field(obj, "encoding", str),
        schema_name=_field(obj, "schemaName", str),
        schema=_field(obj, "schema", str),
        schema_encoding=schema_encoding,
        id=_field(obj, "id", int),
    )


def parameter_value_to_json(value: ParameterValue):
    kind = value.type
    if kind == ParameterType.BYTE_ARRAY:
        return base64_encode(value.value)
    if kind == ParameterType.STRUCT:
        return {key: parameter_value_to_json(item) for key, item in value.value.items()}
    if kind == ParameterType.ARRAY:
        return [parameter_value_to_json(item) for item in value.value]
    if kind == ParameterType.NOT_SET:
        return None
    return value.value


def parameter_value_from_json(obj) -> ParameterValue:
    if isinstance(obj, (str, bool, int, float)):
        return ParameterValue(obj)
    if isinstance(obj, dict):
        return ParameterValue({key: parameter_value_from_json(item) for key, item in obj.items()})
    if isinstance(obj, list):
        return ParameterValue([parameter_value_from_json(item) for item in obj])
    return ParameterValue()


def parameter_to_json(parameter: Parameter) -> dict:
    result = {"value": parameter_value_to_json(parameter.value), "name": parameter.name}
    kind = parameter.type
    if kind == ParameterType.BYTE_ARRAY:
        result["type"] = "byte_array"
    elif kind == ParameterType.DOUBLE:
        result["type"] = "float64"
    elif kind == ParameterType.ARRAY:
        items = parameter.value.value
        if items and items[0].type == ParameterType.DOUBLE:
            result["type"] = "float64_array"
    return result


def _as_double(name: str, item: ParameterValue) -> ParameterValue:
    if item.type == ParameterType.INTEGER:
        return ParameterValue(float(item.value))
    if item.type != ParameterType.DOUBLE:
        raise ValueError(f"Parameter '{name}' (float64_array) contains non-numeric elements.")
    return item


def parameter_from_json(obj: dict) -> Parameter:
    name = _field(obj, "name", str)
    if "value" not in obj:
        return Parameter(name)

    value = parameter_value_from_json(obj["value"])
    type_hint = _field(obj, "type", str) if "type" in obj else ""

    if value.type == ParameterType.STRING and type_hint == "byte_array":
        return Parameter(name, base64_decode(value.value))
    if value.type == ParameterType.INTEGER and type_hint == "float64":
        return Parameter(name, float(value.value))
    if value.type == ParameterType.ARRAY and type_hint == "float64_array":
        return Parameter(name, [_as_double(name, item) for item in value.value])
    return Parameter(name, value)


def service_to_json(service: Service) -> dict:
    return {
        "id": service.id,
        "name": service.name,
        "type": service.type,
        "requestSchema": service.request_schema,
        "responseSchema": service.response_schema,
    }


def service_from_json(obj: dict) -> Service:
    return Service(
        name=_field(obj, "name", str),
        type=_field(obj, "type", str),
        request_schema=_field(obj, "requestSchema", str),
        response_schema=_field(obj, "responseSchema", str),
        id=_field(obj, "id", int),
    )