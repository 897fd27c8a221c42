"""Encoding and decoding of the messages exchanged with clients."""

from __future__ import annotations

import struct
from collections.abc import Iterable
from enum import IntEnum
from typing import Optional

from foxbridge.common import (
    BinaryOpcode,
    Channel,
    FetchAssetResponse,
    FetchAssetStatus,
    ServerOptions,
    Service,
    ServiceResponse,
)
from foxbridge.parameter import Parameter, ParameterType
from foxbridge.serialization import channel_to_json, parameter_to_json, service_to_json

_MESSAGE_HEADER = struct.Struct("<BIQ")
_TIME = struct.Struct("<BQ")
_FETCH_ASSET_HEADER = struct.Struct("<BIBI")


class StatusLevel(IntEnum):
    INFO = 0
    WARNING = 1
    ERROR = 2


def encode_message_data(subscription_id: int, timestamp: int, payload) -> bytes:
    """Frame a message for a subscription: opcode, subscription id, timestamp, payload."""
    header = _MESSAGE_HEADER.pack(BinaryOpcode.MESSAGE_DATA, subscription_id, timestamp)
    return header + bytes(payload)


def encode_time(timestamp: int) -> bytes:
    return _TIME.pack(BinaryOpcode.TIME_DATA, timestamp)


def encode_service_response(response: ServiceResponse) -> bytes:
    return bytes((BinaryOpcode.SERVICE_CALL_RESPONSE,)) + response.to_bytes()


def encode_fetch_asset_response(response: FetchAssetResponse) -> bytes:
    """Frame an asset response; only the part matching the status is appended."""
    error_message = response.error_message.encode("utf-8")
    header = _FETCH_ASSET_HEADER.pack(
        BinaryOpcode.FETCH_ASSET_RESPONSE,
        response.request_id,
        int(response.status),
        len(error_message),
    )
    error_part = error_message if response.status == FetchAssetStatus.ERROR else b""
    data_part = bytes(response.data) if response.status == FetchAssetStatus.SUCCESS else b""
    return header + error_part + data_part


def decode_message_data(data) -> tuple[int, int, bytes]:
    """Split a message frame into (subscription id, timestamp, payload)."""
    data = bytes(data)
    if len(data) < _MESSAGE_HEADER.size:
        raise ValueError(f"Message data too short: {len(data)} bytes")
    opcode, subscription_id, timestamp = _MESSAGE_HEADER.unpack_from(data)
    if opcode != BinaryOpcode.MESSAGE_DATA:
        raise ValueError(f"Unexpected opcode {opcode}")
    return subscription_id, timestamp, data[_MESSAGE_HEADER.size:]


def decode_fetch_asset_response(data) -> FetchAssetResponse:
    data = bytes(data)
    if len(data) < _FETCH_ASSET_HEADER.size:
        raise ValueError(f"Fetch asset response too short: {len(data)} bytes")
    opcode, request_id, status, error_length = _FETCH_ASSET_HEADER.unpack_from(data)
    if opcode != BinaryOpcode.FETCH_ASSET_RESPONSE:
        raise ValueError(f"Unexpected opcode {opcode}")
    start = _FETCH_ASSET_HEADER.size
    end = start + error_length
    if end > len(data):
        raise ValueError("Error message length exceeds message size")
    return FetchAssetResponse(
        request_id=request_id,
        status=FetchAssetStatus(status),
        error_message=data[start:end].decode("utf-8"),
        data=data[end:],
    )


def server_info(name: str, options: ServerOptions) -> dict:
    return {
        "op": "serverInfo",
        "name": name,
        "capabilities": list(options.capabilities),
        "supportedEncodings": list(options.supported_encodings),
        "metadata": dict(options.metadata),
        "sessionId": options.session_id,
    }


def advertise(channels: Iterable[Channel]) -> dict:
    return {"op": "advertise", "channels": [channel_to_json(c) for c in channels]}


def unadvertise(channel_ids: Iterable[int]) -> dict:
    return {"op": "unadvertise", "channelIds": list(channel_ids)}


def advertise_services(services: Iterable[Service]) -> dict:
    return {"op": "advertiseServices", "services": [service_to_json(s) for s in services]}


def unadvertise_services(service_ids: Iterable[int]) -> dict:
    return {"op": "unadvertiseServices", "serviceIds": list(service_ids)}


def status(level: StatusLevel, message: str) -> dict:
    return {"op": "status", "level": int(level), "message": message}


def parameter_values(parameters: Iterable[Parameter], request_id: Optional[str] = None) -> dict:
    """Build a parameterValues message, leaving out parameters that are not set."""
    result = {
        "op": "parameterValues",
        "parameters": [
            parameter_to_json(p) for p in parameters if p.type != ParameterType.NOT_SET
        ],
    }
    if request_id is not None:
        result["id"] = request_id
    return result