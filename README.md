# foxbridge

Protocol state and message handling for the `foxglove.websocket.v1`
subprotocol. The `Server` class keeps track of connected clients, the data
channels and services advertised to them, their subscriptions, client-side
publications, parameter subscriptions and connection-graph subscriptions. It
answers client requests, reports errors back as `status` messages, and calls
the handler callbacks you supply when clients act.

The package has no dependencies outside the standard library.

## Installation

```
pip install foxbridge
```

For running the test suite:

```
pip install "foxbridge[test]"
pytest
```

## What the package does not do

`foxbridge` does not open a network socket. There is no WebSocket listener,
no TLS setup and no command to start a server. `Server` works on `Connection`
objects that you create for each client; it sends its replies by calling
`Connection.send` with a `str` (JSON text frame) or `bytes` (binary frame),
and you pass incoming frames to `Server.handle_message`. Wiring this to a
WebSocket library, and checking that clients ask for the
`foxglove.websocket.v1` subprotocol (`foxbridge.common.SUPPORTED_SUBPROTOCOL`),
is up to you.

`ServerOptions.use_tls`, `certfile` and `keyfile` are stored but not acted on.
Handlers run synchronously in the thread that calls `handle_message` or
`close_connection`; no worker threads are started.

## Quick start

```python
import json

from foxbridge.common import ChannelWithoutId, ServerHandlers, ServerOptions
from foxbridge.messages import decode_message_data
from foxbridge.server import Connection, Server


def log(level, message):
    print(level.name, message)


server = Server("my_bridge", log, ServerOptions(supported_encodings=["json"]))
server.set_handlers(ServerHandlers(
    subscribe_handler=lambda channel_id, conn: print("subscribe", channel_id),
    unsubscribe_handler=lambda channel_id, conn: print("unsubscribe", channel_id),
))

(channel_id,) = server.add_channels([
    ChannelWithoutId(topic="/chatter", encoding="json", schema_name="Text", schema="{}"),
])

outbox = []
client = Connection(remote_endpoint="127.0.0.1:50000", send=outbox.append)
server.open_connection(client)        # serverInfo, advertise, advertiseServices

server.handle_message(client, json.dumps({
    "op": "subscribe",
    "subscriptions": [{"id": 1, "channelId": channel_id}],
}))
server.send_message(client, channel_id, 123, b'{"data": "hello"}')

subscription_id, timestamp, payload = decode_message_data(outbox[-1])
server.close_connection(client)
```

`Connection.buffered_amount` is a callable returning the number of bytes
waiting to be sent; `send_message` drops messages once that plus the payload
reaches `ServerOptions.send_buffer_limit_bytes`, and warns the client at most
every 2.5 seconds.

## Server operations

- `open_connection`, `close_connection`, `shutdown` – client lifecycle.
  Closing a connection calls the unadvertise, unsubscribe, parameter and
  connection-graph handlers for whatever the client still held.
- `handle_message` – text operations `subscribe`, `unsubscribe`,
  `advertise`, `unadvertise`, `getParameters`, `setParameters`,
  `subscribeParameterUpdates`, `unsubscribeParameterUpdates`,
  `subscribeConnectionGraph`, `unsubscribeConnectionGraph`, `fetchAsset`;
  binary client message data and service call requests.
- `add_channels`, `remove_channels`, `add_services`, `remove_services` –
  advertise to all clients; ids are assigned from 1 upwards.
- `send_message`, `broadcast_time`, `send_service_response`,
  `send_fetch_asset_response`, `publish_parameter_values`,
  `update_parameter_values`, `update_connection_graph`.

Client operations are refused with an error status unless
`ServerOptions.capabilities` lists the matching capability: `clientPublish`,
`parameters`, `parametersSubscribe`, `services`, `connectionGraph`, `assets`.
An operation whose handler is not set is refused as well. Client
advertisements are accepted only for topics that fully match one of
`ServerOptions.client_topic_whitelist_patterns`.

## Modules

- `foxbridge.common` – protocol constants and records (`Channel`, `Service`,
  `ClientAdvertisement`, `ClientMessage`, `ServiceResponse`,
  `FetchAssetResponse`, …), `ServerOptions`, `ServerHandlers`, and the errors
  `ChannelError`, `ClientChannelError`, `ServiceError`, all carrying an `id`.
- `foxbridge.parameter` – `Parameter`, `ParameterValue` (type inferred from
  the Python value) and `ParameterType`.
- `foxbridge.serialization` – JSON conversion for channels, services and
  parameters, including the `byte_array`, `float64` and `float64_array`
  type hints.
- `foxbridge.b64` – `base64_encode` and a strict `base64_decode` that raises
  `ValueError` on bad length, padding or characters.
- `foxbridge.messages` – builders for the JSON messages and encoders and
  decoders for the binary frames, plus `StatusLevel`.
- `foxbridge.param_utils` – conversion between plain parameter trees
  (`bool`, `int`, `float`, `str`, `dict`, `list`) and `ParameterValue`
  (integers are narrowed to 32 bits on the way out), and
  `parse_regex_patterns`, which compiles case-insensitive patterns and drops
  those that fail to compile.
- `foxbridge.log` – `CallbackLogger`, which routes access and error log
  channels to a single `(WebSocketLogLevel, message)` callback.
- `foxbridge.graph` – `ConnectionGraph`, which tracks publishers,
  subscribers and service providers and computes the update messages.
- `foxbridge.server` – `Server` and `Connection`.