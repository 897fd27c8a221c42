"""Protocol server: tracks clients, channels and services and answers client requests.

The server does not own a network socket. A transport hands it connections and
incoming messages; the server replies through each connection's ``send``.
"""

from __future__ import annotations

import dataclasses
import json
import struct
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Union

from foxbridge.common import (
    CAPABILITY_ASSETS,
    CAPABILITY_CLIENT_PUBLISH,
    CAPABILITY_CONNECTION_GRAPH,
    CAPABILITY_PARAMETERS,
    CAPABILITY_PARAMETERS_SUBSCRIBE,
    CAPABILITY_SERVICES,
    Channel,
    ChannelWithoutId,
    ClientAdvertisement,
    ClientBinaryOpcode,
    ClientMessage,
    ExceptionWithId,
    FetchAssetResponse,
    ServerHandlers,
    ServerOptions,
    Service,
    ServiceError,
    ServiceRequest,
    ServiceResponse,
    ServiceWithoutId,
)
from foxbridge.graph import ConnectionGraph, MapOfSets
from foxbridge.log import (
    AccessLevel,
    CallbackLogger,
    ChannelTypeHint,
    ErrorLevel,
    LogCallback,
    no_op_log_callback,
    status_log_level,
)
from foxbridge.messages import (
    StatusLevel,
    advertise,
    advertise_services,
    encode_fetch_asset_response,
    encode_message_data,
    encode_service_response,
    encode_time,
    parameter_values,
    server_info,
    status,
    unadvertise,
    unadvertise_services,
)
from foxbridge.parameter import Parameter, ParameterSubscriptionOperation
from foxbridge.serialization import parameter_from_json

APP = AccessLevel.APP
WARNING = ErrorLevel.WARN
RECOVERABLE = ErrorLevel.RERROR

SEND_BUFFER_WARNING_INTERVAL_S = 2.5

CAPABILITY_BY_CLIENT_OPERATION = {
    "advertise": CAPABILITY_CLIENT_PUBLISH,
    "unadvertise": CAPABILITY_CLIENT_PUBLISH,
    "getParameters": CAPABILITY_PARAMETERS,
    "setParameters": CAPABILITY_PARAMETERS,
    "subscribeParameterUpdates": CAPABILITY_PARAMETERS_SUBSCRIBE,
    "unsubscribeParameterUpdates": CAPABILITY_PARAMETERS_SUBSCRIBE,
    "subscribeConnectionGraph": CAPABILITY_CONNECTION_GRAPH,
    "unsubscribeConnectionGraph": CAPABILITY_CONNECTION_GRAPH,
    "fetchAsset": CAPABILITY_ASSETS,
}

CAPABILITY_BY_CLIENT_BINARY_OPERATION = {
    ClientBinaryOpcode.MESSAGE_DATA: CAPABILITY_CLIENT_PUBLISH,
    ClientBinaryOpcode.SERVICE_CALL_REQUEST: CAPABILITY_SERVICES,
}

_HANDLER_BY_OPERATION: dict[str, Callable[[ServerHandlers], object]] = {
    "subscribe": lambda h: h.subscribe_handler,
    "unsubscribe": lambda h: h.unsubscribe_handler,
    "advertise": lambda h: h.client_advertise_handler,
    "unadvertise": lambda h: h.client_unadvertise_handler,
    "getParameters": lambda h: h.parameter_request_handler,
    "setParameters": lambda h: h.parameter_change_handler,
    "subscribeParameterUpdates": lambda h: h.parameter_subscription_handler,
    "unsubscribeParameterUpdates": lambda h: h.parameter_subscription_handler,
    "subscribeConnectionGraph": lambda h: h.subscribe_connection_graph_handler,
    "unsubscribeConnectionGraph": lambda h: h.subscribe_connection_graph_handler,
    "fetchAsset": lambda h: h.fetch_asset_handler,
}

_CHANNEL_ID = struct.Struct("<I")


def _no_buffer() -> int:
    return 0


@dataclass(eq=False)
class Connection:
    """A client connection as seen by the server; compared by identity."""

    remote_endpoint: str
    send: Callable[[Union[str, bytes]], None]
    resource: str = "/"
    buffered_amount: Callable[[], int] = _no_buffer


@dataclass(eq=False)
class _ClientInfo:
    name: str
    connection: Connection
    subscriptions_by_channel: dict[int, int] = field(default_factory=dict)
    advertised_channels: set[int] = field(default_factory=set)
    subscribed_to_connection_graph: bool = False


def _get(obj, key: str, kind: type):
    if not isinstance(obj, dict):
        raise TypeError(f"Expected a JSON object when reading '{key}'")
    if key not in obj:
        raise KeyError(f"Missing field '{key}'")
    value = obj[key]
    if kind is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    else:
        valid = isinstance(value, kind)
    if not valid:
        raise TypeError(f"Field '{key}' must be of type {kind.__name__}")
    return value


def _optional_request_id(payload: dict) -> Optional[str]:
    return _get(payload, "id", str) if "id" in payload else None


def _string_list(payload: dict, key: str) -> list[str]:
    names = _get(payload, key, list)
    if not all(isinstance(name, str) for name in names):
        raise TypeError(f"Field '{key}' must hold strings")
    return names


def _is_whitelisted(name: str, patterns) -> bool:
    return any(pattern.fullmatch(name) for pattern in patterns)


def _dumps(payload) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


class Server:
    """Keeps the protocol state of all clients and dispatches their requests to handlers."""

    def __init__(
        self,
        name: str,
        logger: LogCallback = no_op_log_callback,
        options: Optional[ServerOptions] = None,
    ):
        self._name = name
        self._logger = logger
        self._options = options if options is not None else ServerOptions()
        self._handlers = ServerHandlers()

        self._alog = CallbackLogger(hint=ChannelTypeHint.ACCESS)
        self._alog.set_callback(logger)
        self._alog.clear_channels(AccessLevel.ALL)
        self._alog.set_channels(APP)
        self._elog = CallbackLogger(hint=ChannelTypeHint.ERROR)
        self._elog.set_callback(logger)
        self._elog.set_channels(int(ErrorLevel.ALL) & ~int(ErrorLevel.DEVEL))

        self._next_channel_id = 0
        self._next_service_id = 0
        self._clients: dict[Connection, _ClientInfo] = {}
        self._channels: dict[int, Channel] = {}
        self._client_channels: dict[Connection, dict[int, ClientAdvertisement]] = {}
        self._client_param_subscriptions: dict[Connection, set[str]] = {}
        self._services: dict[int, ServiceWithoutId] = {}
        self._graph = ConnectionGraph()

        self._clients_lock = threading.RLock()
        self._channels_lock = threading.RLock()
        self._client_channels_lock = threading.RLock()
        self._services_lock = threading.RLock()
        self._param_subscriptions_lock = threading.RLock()

        self._last_buffer_warning = time.monotonic()

        self._text_operations = {
            "subscribe": self._handle_subscribe,
            "unsubscribe": self._handle_unsubscribe,
            "advertise": self._handle_advertise,
            "unadvertise": self._handle_unadvertise,
            "getParameters": self._handle_get_parameters,
            "setParameters": self._handle_set_parameters,
            "subscribeParameterUpdates": self._handle_subscribe_parameter_updates,
            "unsubscribeParameterUpdates": self._handle_unsubscribe_parameter_updates,
            "subscribeConnectionGraph": self._handle_subscribe_connection_graph,
            "unsubscribeConnectionGraph": self._handle_unsubscribe_connection_graph,
            "fetchAsset": self._handle_fetch_asset,
        }

    def set_handlers(self, handlers: ServerHandlers) -> None:
        self._handlers = handlers

    # Connection lifecycle

    def open_connection(self, connection: Connection) -> None:
        """Register a client and send it the server info and current advertisements."""
        endpoint = self.remote_endpoint(connection)
        self._alog.write(APP, f"Client {endpoint} connected via {connection.resource}")

        with self._clients_lock:
            self._clients[connection] = _ClientInfo(endpoint, connection)

        self._send_json(connection, server_info(self._name, self._options))

        with self._channels_lock:
            channels = list(self._channels.values())
        self._send_json(connection, advertise(channels))

        with self._services_lock:
            services = [
                Service(**dataclasses.asdict(service), id=service_id)
                for service_id, service in self._services.items()
            ]
        self._send_json(connection, advertise_services(services))

    def close_connection(self, connection: Connection) -> None:
        """Forget a client, releasing its advertisements and subscriptions."""
        with self._clients_lock:
            client = self._clients.get(connection)
            if client is None:
                self._elog.write(
                    RECOVERABLE,
                    f"Client {self.remote_endpoint(connection)} disconnected but not found in _clients",
                )
                return
            client_name = client.name
            self._alog.write(APP, f"Client {client_name} disconnected")
            old_subscriptions = dict(client.subscriptions_by_channel)
            old_advertised = set(client.advertised_channels)
            was_subscribed_to_graph = client.subscribed_to_connection_graph
            del self._clients[connection]

        for client_channel_id in old_advertised:
            self._alog.write(
                APP,
                f"Client {client_name} unadvertising channel {client_channel_id} due to disconnect",
            )
            if self._handlers.client_unadvertise_handler is not None:
                self._call_on_close(
                    self._handlers.client_unadvertise_handler, client_channel_id, connection
                )

        with self._client_channels_lock:
            self._client_channels.pop(connection, None)

        if self._handlers.unsubscribe_handler is not None:
            for channel_id in old_subscriptions:
                self._call_on_close(self._handlers.unsubscribe_handler, channel_id, connection)

        with self._param_subscriptions_lock:
            subscribed_params = self._client_param_subscriptions.pop(connection, set())
        self._unsubscribe_params_without_subscriptions(connection, subscribed_params)

        if was_subscribed_to_graph:
            if self._graph.unsubscribe() and self._handlers.subscribe_connection_graph_handler:
                self._alog.write(APP, "Unsubscribing from connection graph updates.")
                self._call_on_close(self._handlers.subscribe_connection_graph_handler, False)

    def shutdown(self) -> list[Connection]:
        """Forget every client and return the connections that were open."""
        with self._clients_lock:
            connections = list(self._clients)
            self._clients.clear()
        return connections

    def _call_on_close(self, handler, *args) -> None:
        try:
            handler(*args)
        except Exception as ex:  # noqa: BLE001 - closing must not fail
            self._elog.write(RECOVERABLE, f"Exception caught when closing connection: {ex}")

    # Incoming messages

    def handle_message(self, connection: Connection, message: Union[str, bytes]) -> None:
        """Handle a text (str) or binary (bytes) message from a client."""
        try:
            if isinstance(message, str):
                self._handle_text_message(connection, message)
            else:
                self._handle_binary_message(connection, bytes(message))
        except Exception as ex:  # noqa: BLE001 - reported back to the client
            self._send_status_and_log(connection, StatusLevel.ERROR, str(ex))

    def _handle_text_message(self, connection: Connection, message: str) -> None:
        payload = json.loads(message)
        op = _get(payload, "op", str)

        required = CAPABILITY_BY_CLIENT_OPERATION.get(op)
        if required is not None and not self._has_capability(required):
            self._send_status_and_log(
                connection,
                StatusLevel.ERROR,
                f"Operation '{op}' not supported as server capability '{required}' is missing",
            )
            return

        if not self._has_handler(op):
            self._send_status_and_log(
                connection,
                StatusLevel.ERROR,
                f"Operation '{op}' not supported as server handler function is missing",
            )
            return

        try:
            self._text_operations[op](payload, connection)
        except ExceptionWithId as ex:
            self._send_status_and_log(
                connection, StatusLevel.ERROR, f"{ex} (op: {op}, id: {ex.id})"
            )
        except Exception as ex:  # noqa: BLE001 - reported back to the client
            self._send_status_and_log(connection, StatusLevel.ERROR, f"{ex} (op: {op})")

    def _handle_binary_message(self, connection: Connection, data: bytes) -> None:
        length = len(data)
        if length < 1:
            self._send_status_and_log(
                connection, StatusLevel.ERROR, "Received an empty binary message"
            )
            return

        raw_op = data[0]
        try:
            op: Optional[ClientBinaryOpcode] = ClientBinaryOpcode(raw_op)
        except ValueError:
            op = None

        required = CAPABILITY_BY_CLIENT_BINARY_OPERATION.get(op) if op is not None else None
        if required is not None and not self._has_capability(required):
            self._send_status_and_log(
                connection,
                StatusLevel.ERROR,
                f"Binary operation '{raw_op}' not supported as server capability "
                f"'{required}' is missing",
            )
            return

        if op == ClientBinaryOpcode.MESSAGE_DATA:
            self._handle_client_message_data(connection, data)
        elif op == ClientBinaryOpcode.SERVICE_CALL_REQUEST:
            self._handle_service_call_request(connection, data)
        else:
            self._send_status_and_log(
                connection, StatusLevel.ERROR, f"Unrecognized client opcode {raw_op}"
            )

    def _handle_client_message_data(self, connection: Connection, data: bytes) -> None:
        handler = self._handlers.client_message_handler
        if handler is None:
            return
        if len(data) < 5:
            self._send_status_and_log(
                connection, StatusLevel.ERROR, f"Invalid message length {len(data)}"
            )
            return

        timestamp = time.time_ns()
        (channel_id,) = _CHANNEL_ID.unpack_from(data, 1)
        with self._client_channels_lock:
            publications = self._client_channels.get(connection)
            if publications is None:
                self._send_status_and_log(
                    connection, StatusLevel.ERROR, "Client has no advertised channels"
                )
                return
            advertisement = publications.get(channel_id)
            if advertisement is None:
                self._send_status_and_log(
                    connection, StatusLevel.ERROR, f"Channel {channel_id} is not advertised"
                )
                return
            try:
                handler(ClientMessage(timestamp, timestamp, 0, advertisement, data), connection)
            except ServiceError as ex:
                self._send_status_and_log(connection, StatusLevel.ERROR, str(ex))
            except Exception:  # noqa: BLE001 - reported back to the client
                self._send_status_and_log(
                    connection, StatusLevel.ERROR, "callService: Failed to execute handler"
                )

    def _handle_service_call_request(self, connection: Connection, data: bytes) -> None:
        if len(data) < ServiceRequest(0, 0, "").size():
            self._send_status_and_log(
                connection,
                StatusLevel.ERROR,
                f"Invalid service call request length {len(data)}",
            )
            return

        request = ServiceRequest.from_bytes(data[1:])
        with self._services_lock:
            advertised = request.service_id in self._services
        if not advertised:
            self._send_status_and_log(
                connection,
                StatusLevel.ERROR,
                f"Service {request.service_id} is not advertised",
            )
            return

        if self._handlers.service_request_handler is not None:
            self._handlers.service_request_handler(request, connection)

    # Text operations

    def _client(self, connection: Connection) -> _ClientInfo:
        client = self._clients.get(connection)
        if client is None:
            raise LookupError(f"Client {self.remote_endpoint(connection)} is not connected")
        return client

    def _handle_subscribe(self, payload: dict, connection: Connection) -> None:
        with self._clients_lock:
            known = dict(self._client(connection).subscriptions_by_channel)
        used_ids = set(known.values())

        for sub in _get(payload, "subscriptions", list):
            sub_id = _get(sub, "id", int)
            channel_id = _get(sub, "channelId", int)
            if sub_id in used_ids:
                self._send_status_and_log(
                    connection,
                    StatusLevel.ERROR,
                    f"Client subscription id {sub_id} was already used; ignoring subscription",
                )
                continue
            with self._channels_lock:
                available = channel_id in self._channels
            if not available:
                self._send_status_and_log(
                    connection,
                    StatusLevel.WARNING,
                    f"Channel {channel_id} is not available; ignoring subscription",
                )
                continue

            self._handlers.subscribe_handler(channel_id, connection)
            with self._clients_lock:
                self._client(connection).subscriptions_by_channel.setdefault(channel_id, sub_id)

    def _handle_unsubscribe(self, payload: dict, connection: Connection) -> None:
        with self._clients_lock:
            known = dict(self._client(connection).subscriptions_by_channel)
        channel_by_sub_id = {sub_id: channel_id for channel_id, sub_id in known.items()}

        for sub_id in _get(payload, "subscriptionIds", list):
            if not isinstance(sub_id, int) or isinstance(sub_id, bool):
                raise TypeError("Subscription ids must be integers")
            channel_id = channel_by_sub_id.get(sub_id)
            if channel_id is None:
                self._send_status_and_log(
                    connection,
                    StatusLevel.WARNING,
                    f"Client subscription id {sub_id} did not exist; ignoring unsubscription",
                )
                continue

            self._handlers.unsubscribe_handler(channel_id, connection)
            with self._clients_lock:
                self._client(connection).subscriptions_by_channel.pop(channel_id, None)

    def _handle_advertise(self, payload: dict, connection: Connection) -> None:
        with self._client_channels_lock:
            is_first = connection not in self._client_channels
            publications = self._client_channels.setdefault(connection, {})

            for chan in _get(payload, "channels", list):
                channel_id = _get(chan, "id", int)
                if not is_first and channel_id in publications:
                    self._send_status_and_log(
                        connection,
                        StatusLevel.ERROR,
                        f"Channel {channel_id} was already advertised",
                    )
                    continue

                topic = _get(chan, "topic", str)
                if not _is_whitelisted(topic, self._options.client_topic_whitelist_patterns):
                    self._send_status_and_log(
                        connection,
                        StatusLevel.ERROR,
                        f"Can't advertise channel {channel_id}, topic '{topic}' not whitelisted",
                    )
                    continue

                advertisement = ClientAdvertisement(
                    channel_id=channel_id,
                    topic=topic,
                    encoding=_get(chan, "encoding", str),
                    schema_name=_get(chan, "schemaName", str),
                )
                self._handlers.client_advertise_handler(advertisement, connection)
                with self._clients_lock:
                    self._client(connection).advertised_channels.add(channel_id)
                    publications.setdefault(channel_id, advertisement)

    def _handle_unadvertise(self, payload: dict, connection: Connection) -> None:
        with self._client_channels_lock:
            publications = self._client_channels.get(connection)
            if publications is None:
                self._send_status_and_log(
                    connection, StatusLevel.ERROR, "Client has no advertised channels"
                )
                return

            for channel_id in _get(payload, "channelIds", list):
                if not isinstance(channel_id, int) or isinstance(channel_id, bool):
                    raise TypeError("Channel ids must be integers")
                if channel_id not in publications:
                    continue

                self._handlers.client_unadvertise_handler(channel_id, connection)
                with self._clients_lock:
                    client = self._client(connection)
                    del publications[channel_id]
                    client.advertised_channels.discard(channel_id)

    def _handle_get_parameters(self, payload: dict, connection: Connection) -> None:
        names = _string_list(payload, "parameterNames")
        request_id = _optional_request_id(payload)
        self._handlers.parameter_request_handler(names, request_id, connection)

    def _handle_set_parameters(self, payload: dict, connection: Connection) -> None:
        parameters = [parameter_from_json(p) for p in _get(payload, "parameters", list)]
        request_id = _optional_request_id(payload)
        self._handlers.parameter_change_handler(parameters, request_id, connection)

    def _handle_subscribe_parameter_updates(self, payload: dict, connection: Connection) -> None:
        names = list(dict.fromkeys(_string_list(payload, "parameterNames")))
        with self._param_subscriptions_lock:
            to_subscribe = [name for name in names if not self._is_parameter_subscribed(name)]
            self._client_param_subscriptions.setdefault(connection, set()).update(names)

        if to_subscribe:
            self._handlers.parameter_subscription_handler(
                to_subscribe, ParameterSubscriptionOperation.SUBSCRIBE, connection
            )

    def _handle_unsubscribe_parameter_updates(self, payload: dict, connection: Connection) -> None:
        names = list(dict.fromkeys(_string_list(payload, "parameterNames")))
        with self._param_subscriptions_lock:
            subscribed = self._client_param_subscriptions.setdefault(connection, set())
            subscribed.difference_update(names)
        self._unsubscribe_params_without_subscriptions(connection, names)

    def _handle_subscribe_connection_graph(self, payload: dict, connection: Connection) -> None:
        if self._graph.subscribe():
            self._alog.write(APP, "Subscribing to connection graph updates.")
            self._handlers.subscribe_connection_graph_handler(True)
            with self._clients_lock:
                self._client(connection).subscribed_to_connection_graph = True
        self._send_json(connection, self._graph.snapshot())

    def _handle_unsubscribe_connection_graph(self, payload: dict, connection: Connection) -> None:
        with self._clients_lock:
            client = self._client(connection)
            was_subscribed = client.subscribed_to_connection_graph
            client.subscribed_to_connection_graph = False

        if not was_subscribed:
            self._send_status_and_log(
                connection,
                StatusLevel.ERROR,
                "Client was not subscribed to connection graph updates",
            )
            return
        if self._graph.unsubscribe():
            self._alog.write(APP, "Unsubscribing from connection graph updates.")
            self._handlers.subscribe_connection_graph_handler(False)

    def _handle_fetch_asset(self, payload: dict, connection: Connection) -> None:
        uri = _get(payload, "uri", str)
        request_id = _get(payload, "requestId", int)
        self._handlers.fetch_asset_handler(uri, request_id, connection)

    # Parameter subscriptions

    def _is_parameter_subscribed(self, name: str) -> bool:
        return any(name in names for names in self._client_param_subscriptions.values())

    def _unsubscribe_params_without_subscriptions(
        self, connection: Connection, names: Iterable[str]
    ) -> None:
        with self._param_subscriptions_lock:
            to_unsubscribe = [name for name in names if not self._is_parameter_subscribed(name)]

        handler = self._handlers.parameter_subscription_handler
        if handler is None or not to_unsubscribe:
            return
        for name in to_unsubscribe:
            self._alog.write(APP, f"Unsubscribing from parameter '{name}'.")
        try:
            handler(to_unsubscribe, ParameterSubscriptionOperation.UNSUBSCRIBE, connection)
        except Exception as ex:  # noqa: BLE001 - reported back to the client
            self._send_status_and_log(connection, StatusLevel.ERROR, str(ex))

    # Outgoing data

    def add_channels(self, channels: Iterable[ChannelWithoutId]) -> list[int]:
        """Advertise new channels to all clients and return their ids."""
        channels = list(channels)
        if not channels:
            return []

        new_channels = []
        with self._channels_lock:
            for channel in channels:
                self._next_channel_id += 1
                new_channel = Channel(**dataclasses.asdict(channel), id=self._next_channel_id)
                self._channels[new_channel.id] = new_channel
                new_channels.append(new_channel)

        self._broadcast_json(advertise(new_channels))
        return [channel.id for channel in new_channels]

    def remove_channels(self, channel_ids: Iterable[int]) -> None:
        channel_ids = list(channel_ids)
        if not channel_ids:
            return

        with self._channels_lock:
            for channel_id in channel_ids:
                self._channels.pop(channel_id, None)

        payload = _dumps(unadvertise(channel_ids))
        with self._clients_lock:
            for connection, client in self._clients.items():
                for channel_id in channel_ids:
                    client.subscriptions_by_channel.pop(channel_id, None)
                self._send_raw(connection, payload)

    def publish_parameter_values(
        self,
        connection: Connection,
        parameters: Iterable[Parameter],
        request_id: Optional[str] = None,
    ) -> None:
        self._send_json(connection, parameter_values(parameters, request_id))

    def update_parameter_values(self, parameters: Iterable[Parameter]) -> None:
        """Send changed parameters to the clients subscribed to them."""
        parameters = list(parameters)
        with self._param_subscriptions_lock:
            for connection, names in self._client_param_subscriptions.items():
                selected = [p for p in parameters if p.name in names]
                if selected:
                    self.publish_parameter_values(connection, selected)

    def add_services(self, services: Iterable[ServiceWithoutId]) -> list[int]:
        """Advertise new services to all clients and return their ids."""
        services = list(services)
        if not services:
            return []

        with self._services_lock:
            new_services = []
            for service in services:
                self._next_service_id += 1
                self._services[self._next_service_id] = service
                new_services.append(
                    Service(**dataclasses.asdict(service), id=self._next_service_id)
                )
            self._broadcast_json(advertise_services(new_services))
        return [service.id for service in new_services]

    def remove_services(self, service_ids: Iterable[int]) -> None:
        with self._services_lock:
            removed = [sid for sid in service_ids if self._services.pop(sid, None) is not None]
            if removed:
                self._broadcast_json(unadvertise_services(removed))

    def send_message(
        self, connection: Connection, channel_id: int, timestamp: int, payload
    ) -> None:
        """Forward a message to a client subscribed to the channel."""
        payload = bytes(payload)
        if connection.buffered_amount() + len(payload) >= self._options.send_buffer_limit_bytes:
            now = time.monotonic()
            if now - self._last_buffer_warning > SEND_BUFFER_WARNING_INTERVAL_S:
                self._last_buffer_warning = now
                self._send_status_and_log(
                    connection, StatusLevel.WARNING, "Send buffer limit reached"
                )
            return

        with self._clients_lock:
            client = self._clients.get(connection)
            if client is None:
                return
            sub_id = client.subscriptions_by_channel.get(channel_id)
            if sub_id is None:
                return

        self._send_raw(connection, encode_message_data(sub_id, timestamp, payload))

    def broadcast_time(self, timestamp: int) -> None:
        message = encode_time(timestamp)
        with self._clients_lock:
            for connection in self._clients:
                self._send_raw(connection, message)

    def send_service_response(self, connection: Connection, response: ServiceResponse) -> None:
        self._send_raw(connection, encode_service_response(response))

    def update_connection_graph(
        self,
        published_topics: MapOfSets,
        subscribed_topics: MapOfSets,
        advertised_services: MapOfSets,
    ) -> None:
        """Send what changed in the graph to clients subscribed to it."""
        update = self._graph.update(published_topics, subscribed_topics, advertised_services)
        if update is None:
            return
        payload = _dumps(update)
        with self._clients_lock:
            for connection, client in self._clients.items():
                if client.subscribed_to_connection_graph:
                    self._send_raw(connection, payload)

    def send_fetch_asset_response(
        self, connection: Connection, response: FetchAssetResponse
    ) -> None:
        self._send_raw(connection, encode_fetch_asset_response(response))

    def remote_endpoint(self, connection: Optional[Connection]) -> str:
        if connection is None or not connection.remote_endpoint:
            return "(unknown)"
        return connection.remote_endpoint

    # Helpers

    def _has_capability(self, capability: str) -> bool:
        return capability in self._options.capabilities

    def _has_handler(self, op: str) -> bool:
        lookup = _HANDLER_BY_OPERATION.get(op)
        if lookup is None:
            raise RuntimeError(f"Unknown operation: {op}")
        return lookup(self._handlers) is not None

    def _send_raw(self, connection: Connection, payload: Union[str, bytes]) -> None:
        try:
            connection.send(payload)
        except Exception as ex:  # noqa: BLE001 - a failing client must not stop the server
            self._elog.write(RECOVERABLE, str(ex))

    def _send_json(self, connection: Connection, payload: dict) -> None:
        self._send_raw(connection, _dumps(payload))

    def _broadcast_json(self, payload: dict) -> None:
        message = _dumps(payload)
        with self._clients_lock:
            for connection in self._clients:
                self._send_raw(connection, message)

    def _send_status_and_log(
        self, connection: Connection, level: StatusLevel, message: str
    ) -> None:
        log_message = f"{self.remote_endpoint(connection)}: {message}"
        logger = self._alog if level == StatusLevel.INFO else self._elog
        logger.write(status_log_level(level), log_message)
        self._send_json(connection, status(level, message))