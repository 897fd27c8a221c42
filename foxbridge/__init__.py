"""Transport-independent server state and messages for the foxglove.websocket.v1 protocol."""

__version__ = "0.1.0"

__all__ = [
    "b64",
    "common",
    "graph",
    "log",
    "messages",
    "param_utils",
    "parameter",
    "serialization",
    "server",
]