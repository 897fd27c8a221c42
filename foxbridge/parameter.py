"""Typed parameter values and named parameters."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum


class ParameterSubscriptionOperation(Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class ParameterType(Enum):
    NOT_SET = "not_set"
    BOOL = "bool"
    INTEGER = "integer"
    DOUBLE = "double"
    STRING = "string"
    ARRAY = "array"
    STRUCT = "struct"
    BYTE_ARRAY = "byte_array"


class ParameterValue:
    """A parameter value whose type is inferred from the Python value given."""

    __slots__ = ("_type", "_value")

    def __init__(self, value=None):
        if isinstance(value, ParameterValue):
            self._type, self._value = value._type, value._value
        elif value is None:
            self._type, self._value = ParameterType.NOT_SET, None
        elif isinstance(value, bool):
            self._type, self._value = ParameterType.BOOL, value
        elif isinstance(value, int):
            self._type, self._value = ParameterType.INTEGER, value
        elif isinstance(value, float):
            self._type, self._value = ParameterType.DOUBLE, value
        elif isinstance(value, str):
            self._type, self._value = ParameterType.STRING, value
        elif isinstance(value, (bytes, bytearray, memoryview)):
            self._type, self._value = ParameterType.BYTE_ARRAY, bytes(value)
        elif isinstance(value, Mapping):
            struct = {}
            for key, item in value.items():
                if not isinstance(key, str):
                    raise TypeError(f"Parameter struct keys must be strings, got {key!r}")
                struct[key] = ParameterValue(item)
            self._type, self._value = ParameterType.STRUCT, struct
        elif isinstance(value, (list, tuple)):
            self._type = ParameterType.ARRAY
            self._value = [ParameterValue(item) for item in value]
        else:
            raise TypeError(f"Unsupported parameter value type: {type(value).__name__}")

    @property
    def type(self) -> ParameterType:
        return self._type

    @property
    def value(self):
        return self._value

    def __eq__(self, other):
        if not isinstance(other, ParameterValue):
            return NotImplemented
        return self._type == other._type and self._value == other._value

    __hash__ = None

    def __repr__(self):
        return f"ParameterValue({self._value!r}, type={self._type.name})"


class Parameter:
    """A named parameter; a parameter without a value is NOT_SET."""

    __slots__ = ("_name", "_value")

    def __init__(self, name: str = "", value=None):
        self._name = name
        self._value = ParameterValue(value)

    @property
    def name(self) -> str:
        return self._name

    @property
    def value(self) -> ParameterValue:
        return self._value

    @property
    def type(self) -> ParameterType:
        return self._value.type

    def __eq__(self, other):
        if not isinstance(other, Parameter):
            return NotImplemented
        return self._name == other._name and self._value == other._value

    __hash__ = None

    def __repr__(self):
        return f"Parameter({self._name!r}, {self._value!r})"