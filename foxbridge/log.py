"""Logging channels and a logger that forwards messages to a callback."""

from __future__ import annotations

import ipaddress
from enum import Enum, IntFlag
from typing import Callable, Union

from foxbridge.common import WebSocketLogLevel
from foxbridge.messages import StatusLevel

LogCallback = Callable[[WebSocketLogLevel, str], None]

_ALL_CHANNELS = 0xFFFFFFFF


class AccessLevel(IntFlag):
    """Access log channels."""

    NONE = 0x0
    CONNECT = 0x1
    DISCONNECT = 0x2
    CONTROL = 0x4
    FRAME_HEADER = 0x8
    FRAME_PAYLOAD = 0x10
    MESSAGE_HEADER = 0x20
    MESSAGE_PAYLOAD = 0x40
    ENDPOINT = 0x80
    DEBUG_HANDSHAKE = 0x100
    DEBUG_CLOSE = 0x200
    DEVEL = 0x400
    APP = 0x800
    HTTP = 0x1000
    FAIL = 0x2000
    ALL = _ALL_CHANNELS


class ErrorLevel(IntFlag):
    """Error log channels."""

    NONE = 0x0
    DEVEL = 0x1
    LIBRARY = 0x2
    INFO = 0x4
    WARN = 0x8
    RERROR = 0x10
    FATAL = 0x20
    ALL = _ALL_CHANNELS


class ChannelTypeHint(Enum):
    ACCESS = 1
    ERROR = 2


_ERROR_LEVEL_MAP = {
    int(ErrorLevel.DEVEL): WebSocketLogLevel.DEBUG,
    int(ErrorLevel.LIBRARY): WebSocketLogLevel.DEBUG,
    int(ErrorLevel.INFO): WebSocketLogLevel.INFO,
    int(ErrorLevel.WARN): WebSocketLogLevel.WARN,
    int(ErrorLevel.RERROR): WebSocketLogLevel.ERROR,
    int(ErrorLevel.FATAL): WebSocketLogLevel.CRITICAL,
}


def ip_address_to_string(
    address: Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address],
) -> str:
    """Format an IP address, wrapping IPv6 addresses in brackets."""
    parsed = ipaddress.ip_address(address)
    if parsed.version == 6:
        return f"[{parsed}]"
    return str(parsed)


def no_op_log_callback(level: WebSocketLogLevel, message: str) -> None:
    """A log callback that discards everything."""


def status_log_level(level: StatusLevel) -> int:
    """The log channel used for a status message of the given level."""
    if level == StatusLevel.INFO:
        return AccessLevel.APP
    if level == StatusLevel.WARNING:
        return ErrorLevel.WARN
    return ErrorLevel.RERROR


class CallbackLogger:
    """Forwards messages on enabled channels to a log callback."""

    def __init__(self, channels: int = _ALL_CHANNELS, hint: ChannelTypeHint = ChannelTypeHint.ACCESS):
        self._static_channels = int(channels)
        self._dynamic_channels = 0
        self._hint = hint
        self._callback: LogCallback = no_op_log_callback

    def set_callback(self, callback: LogCallback) -> None:
        self._callback = callback

    def set_channels(self, channels: int) -> None:
        """Enable channels; passing zero disables every channel."""
        channels = int(channels)
        if channels == 0:
            self.clear_channels(_ALL_CHANNELS)
            return
        self._dynamic_channels |= channels & self._static_channels

    def clear_channels(self, channels: int) -> None:
        self._dynamic_channels &= ~int(channels) & _ALL_CHANNELS

    def write(self, channel: int, message: str) -> None:
        if not self.dynamic_test(channel):
            return
        if self._hint == ChannelTypeHint.ACCESS:
            self._callback(WebSocketLogLevel.INFO, message)
            return
        level = _ERROR_LEVEL_MAP.get(int(channel))
        if level is not None:
            self._callback(level, message)

    def static_test(self, channel: int) -> bool:
        return (int(channel) & self._static_channels) != 0

    def dynamic_test(self, channel: int) -> bool:
        return (int(channel) & self._dynamic_channels) != 0