"""Conversion between parameter values and ROS parameter-server values.

ROS parameter-server values are plain Python data: ``bool``, ``int``,
``float``, ``str``, ``dict`` with string keys and ``list``/``tuple``.
``None`` stands for a value that is not set.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from foxbridge.parameter import Parameter, ParameterType, ParameterValue


def _to_int32(value: int) -> int:
    """Narrow an integer to the 32-bit signed range the parameter server stores."""
    value &= 0xFFFFFFFF
    return value - 0x1_0000_0000 if value & 0x8000_0000 else value


def from_ros_param(value) -> ParameterValue:
    """Convert a parameter-server value into a ParameterValue."""
    if value is None:
        raise ValueError("Parameter not set")
    if isinstance(value, bool):
        return ParameterValue(value)
    if isinstance(value, int):
        return ParameterValue(value)
    if isinstance(value, float):
        return ParameterValue(value)
    if isinstance(value, str):
        return ParameterValue(value)
    if isinstance(value, Mapping):
        return ParameterValue({str(key): from_ros_param(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return ParameterValue([from_ros_param(item) for item in value])
    raise TypeError(f"Unsupported parameter type: {type(value).__name__}")


def parameter_from_ros(name: str, value) -> Parameter:
    """Build a named Parameter from a parameter-server value."""
    return Parameter(name, from_ros_param(value))


def to_ros_param(value: ParameterValue):
    """Convert a ParameterValue into a parameter-server value."""
    kind = value.type
    if kind == ParameterType.BOOL:
        return value.value
    if kind == ParameterType.INTEGER:
        return _to_int32(value.value)
    if kind == ParameterType.DOUBLE:
        return value.value
    if kind == ParameterType.STRING:
        return value.value
    if kind == ParameterType.STRUCT:
        return {key: to_ros_param(item) for key, item in value.value.items()}
    if kind == ParameterType.ARRAY:
        return [to_ros_param(item) for item in value.value]
    raise TypeError("Unsupported parameter type")


def parse_regex_patterns(patterns: Iterable[str]) -> list[re.Pattern]:
    """Compile case-insensitive patterns, silently dropping those that do not compile."""
    result = []
    for pattern in patterns:
        try:
            result.append(re.compile(pattern, re.IGNORECASE))
        except re.error:
            continue
    return result