"""Protocol constants, message records and error types shared by the bridge."""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Optional

SUPPORTED_SUBPROTOCOL = "foxglove.websocket.v1"

CAPABILITY_CLIENT_PUBLISH = "clientPublish"
CAPABILITY_TIME = "time"
CAPABILITY_PARAMETERS = "parameters"
CAPABILITY_PARAMETERS_SUBSCRIBE = "parametersSubscribe"
CAPABILITY_SERVICES = "services"
CAPABILITY_CONNECTION_GRAPH = "connectionGraph"
CAPABILITY_ASSETS = "assets"

DEFAULT_CAPABILITIES = (
    CAPABILITY_CLIENT_PUBLISH,
    CAPABILITY_CONNECTION_GRAPH,
    CAPABILITY_PARAMETERS_SUBSCRIBE,
    CAPABILITY_PARAMETERS,
    CAPABILITY_SERVICES,
    CAPABILITY_ASSETS,
)

DEFAULT_SEND_BUFFER_LIMIT_BYTES = 10_000_000  # 10 MB

_SERVICE_HEADER = struct.Struct("<III")


class BinaryOpcode(IntEnum):
    """Opcodes of binary messages sent by the server."""

    MESSAGE_DATA = 1
    TIME_DATA = 2
    SERVICE_CALL_RESPONSE = 3
    FETCH_ASSET_RESPONSE = 4


class ClientBinaryOpcode(IntEnum):
    """Opcodes of binary messages sent by clients."""

    MESSAGE_DATA = 1
    SERVICE_CALL_REQUEST = 2


class WebSocketLogLevel(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ChannelWithoutId:
    topic: str
    encoding: str
    schema_name: str
    schema: str
    schema_encoding: Optional[str] = None


@dataclass
class Channel(ChannelWithoutId):
    id: int = 0


@dataclass
class ClientAdvertisement:
    channel_id: int
    topic: str
    encoding: str
    schema_name: str
    schema: bytes = b""


@dataclass
class ClientMessage:
    """A message published by a client; ``data`` holds the whole raw frame."""

    MSG_PAYLOAD_OFFSET = 5

    log_time: int
    publish_time: int
    sequence: int
    advertisement: ClientAdvertisement
    data: bytes

    @property
    def data_length(self) -> int:
        return len(self.data)

    @property
    def payload(self) -> bytes:
        """The message body, without the opcode and channel id."""
        return self.data[self.MSG_PAYLOAD_OFFSET:]


@dataclass
class ServiceWithoutId:
    name: str
    type: str
    request_schema: str
    response_schema: str


@dataclass
class Service(ServiceWithoutId):
    id: int = 0


@dataclass
class ServiceResponse:
    """A service call request or response in its binary wire layout."""

    service_id: int
    call_id: int
    encoding: str
    data: bytes = b""

    def size(self) -> int:
        return _SERVICE_HEADER.size + len(self.encoding.encode("utf-8")) + len(self.data)

    def to_bytes(self) -> bytes:
        encoding = self.encoding.encode("utf-8")
        header = _SERVICE_HEADER.pack(self.service_id, self.call_id, len(encoding))
        return header + encoding + bytes(self.data)

    @classmethod
    def from_bytes(cls, data) -> "ServiceResponse":
        data = bytes(data)
        if len(data) < _SERVICE_HEADER.size:
            raise ValueError(f"Service message too short: {len(data)} bytes")
        service_id, call_id, encoding_length = _SERVICE_HEADER.unpack_from(data)
        start = _SERVICE_HEADER.size
        end = start + encoding_length
        if end > len(data):
            raise ValueError("Service message encoding length exceeds message size")
        return cls(service_id, call_id, data[start:end].decode("utf-8"), data[end:])


ServiceRequest = ServiceResponse


class FetchAssetStatus(IntEnum):
    SUCCESS = 0
    ERROR = 1


@dataclass
class FetchAssetResponse:
    request_id: int
    status: FetchAssetStatus
    error_message: str = ""
    data: bytes = b""


class ExceptionWithId(RuntimeError):
    """An error that refers to a channel or service by id."""

    def __init__(self, id_: int, message: str):
        super().__init__(message)
        self.id = id_


class ChannelError(ExceptionWithId):
    pass


class ClientChannelError(ExceptionWithId):
    pass


class ServiceError(ExceptionWithId):
    pass


@dataclass
class ServerOptions:
    capabilities: list[str] = field(default_factory=list)
    supported_encodings: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    send_buffer_limit_bytes: int = DEFAULT_SEND_BUFFER_LIMIT_BYTES
    use_tls: bool = False
    certfile: str = ""
    keyfile: str = ""
    session_id: str = ""
    use_compression: bool = False
    client_topic_whitelist_patterns: list[re.Pattern] = field(default_factory=list)


Handler = Optional[Callable[..., Any]]


@dataclass
class ServerHandlers:
    """Callbacks the server invokes for client requests; unset ones are None."""

    subscribe_handler: Handler = None
    unsubscribe_handler: Handler = None
    client_advertise_handler: Handler = None
    client_unadvertise_handler: Handler = None
    client_message_handler: Handler = None
    parameter_request_handler: Handler = None
    parameter_change_handler: Handler = None
    parameter_subscription_handler: Handler = None
    service_request_handler: Handler = None
    subscribe_connection_graph_handler: Handler = None
    fetch_asset_handler: Handler = None