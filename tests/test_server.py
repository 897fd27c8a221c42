import json
import re
import struct

import pytest

from foxbridge.common import (
    DEFAULT_CAPABILITIES,
    ChannelError,
    ChannelWithoutId,
    FetchAssetResponse,
    FetchAssetStatus,
    ServerHandlers,
    ServerOptions,
    ServiceRequest,
    ServiceResponse,
    ServiceWithoutId,
)
from foxbridge.messages import decode_fetch_asset_response, decode_message_data, encode_time
from foxbridge.parameter import Parameter, ParameterSubscriptionOperation
from foxbridge.serialization import parameter_from_json
from foxbridge.server import Connection, Server

HELLO_WORLD_BINARY = bytes([11, 0, 0, 0, 104, 101, 108, 108, 111, 32, 119, 111, 114, 108, 100])
PARAM_1_NAME = "/node_1/string_param"
PARAM_2_NAME = "/node_2/int_array_param"


def make_server(capabilities=DEFAULT_CAPABILITIES, **handlers):
    options = ServerOptions(
        capabilities=list(capabilities),
        supported_encodings=["ros1"],
        metadata={"ROS_DISTRO": "noetic"},
        session_id="session-1",
        client_topic_whitelist_patterns=[re.compile(".*")],
    )
    server = Server("foxglove_bridge", lambda level, msg: None, options)
    server.set_handlers(ServerHandlers(**handlers))
    return server


class Client:
    def __init__(self, server, endpoint="127.0.0.1:40000", buffered=0):
        self.sent = []
        self.server = server
        self.connection = Connection(endpoint, self.sent.append, "/", lambda: buffered)
        server.open_connection(self.connection)

    def send(self, obj):
        self.server.handle_message(self.connection, json.dumps(obj))

    def send_binary(self, data):
        self.server.handle_message(self.connection, bytes(data))

    @property
    def texts(self):
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    @property
    def binaries(self):
        return [m for m in self.sent if isinstance(m, bytes)]

    @property
    def statuses(self):
        return [t for t in self.texts if t["op"] == "status"]


def test_open_connection_sends_info_and_advertisements():
    server = make_server()
    server.add_channels([ChannelWithoutId("/a", "ros1", "std_msgs/String", "string data")])
    client = Client(server)
    ops = [t["op"] for t in client.texts]
    assert ops == ["serverInfo", "advertise", "advertiseServices"]
    info = client.texts[0]
    assert info["name"] == "foxglove_bridge"
    assert info["capabilities"] == list(DEFAULT_CAPABILITIES)
    assert info["sessionId"] == "session-1"
    assert client.texts[1]["channels"][0]["topic"] == "/a"
    assert client.texts[1]["channels"][0]["id"] == 1


def test_add_channels_broadcasts_and_numbers_from_one():
    server = make_server()
    client = Client(server)
    ids = server.add_channels(
        [
            ChannelWithoutId("/a", "ros1", "std_msgs/String", ""),
            ChannelWithoutId("/b", "ros1", "std_msgs/String", ""),
        ]
    )
    assert ids == [1, 2]
    last = client.texts[-1]
    assert last["op"] == "advertise"
    assert [c["topic"] for c in last["channels"]] == ["/a", "/b"]
    assert server.add_channels([]) == []


def test_subscription_receives_message():
    calls = []
    server = make_server(subscribe_handler=lambda cid, conn: calls.append(cid))
    (channel_id,) = server.add_channels([ChannelWithoutId("/pub_topic", "ros1", "std_msgs/String", "")])
    clients = [Client(server, f"127.0.0.1:{4000 + i}") for i in range(3)]
    for client in clients:
        client.send({"op": "subscribe", "subscriptions": [{"id": 1, "channelId": channel_id}]})
        server.send_message(client.connection, channel_id, 42, HELLO_WORLD_BINARY)
        assert decode_message_data(client.binaries[-1]) == (1, 42, HELLO_WORLD_BINARY)
    assert calls == [channel_id] * 3


def test_send_message_without_subscription_sends_nothing():
    server = make_server(subscribe_handler=lambda cid, conn: None)
    (channel_id,) = server.add_channels([ChannelWithoutId("/t", "ros1", "x", "")])
    client = Client(server)
    server.send_message(client.connection, channel_id, 1, b"data")
    assert client.binaries == []


def test_send_buffer_limit_drops_message():
    server = make_server(subscribe_handler=lambda cid, conn: None)
    (channel_id,) = server.add_channels([ChannelWithoutId("/t", "ros1", "x", "")])
    client = Client(server, buffered=10_000_000)
    client.send({"op": "subscribe", "subscriptions": [{"id": 1, "channelId": channel_id}]})
    server.send_message(client.connection, channel_id, 1, b"data")
    assert client.binaries == []


def test_subscribe_unknown_channel_warns():
    server = make_server(subscribe_handler=lambda cid, conn: None)
    client = Client(server)
    client.send({"op": "subscribe", "subscriptions": [{"id": 1, "channelId": 7}]})
    assert client.statuses == [
        {"op": "status", "level": 1, "message": "Channel 7 is not available; ignoring subscription"}
    ]


def test_duplicate_subscription_id_is_rejected():
    server = make_server(subscribe_handler=lambda cid, conn: None)
    ids = server.add_channels(
        [ChannelWithoutId("/a", "ros1", "x", ""), ChannelWithoutId("/b", "ros1", "x", "")]
    )
    client = Client(server)
    client.send({"op": "subscribe", "subscriptions": [{"id": 1, "channelId": ids[0]}]})
    client.send({"op": "subscribe", "subscriptions": [{"id": 1, "channelId": ids[1]}]})
    assert client.statuses[-1]["level"] == 2
    assert "subscription id 1 was already used" in client.statuses[-1]["message"]


def test_unsubscribe_calls_handler_and_warns_on_unknown():
    unsubscribed = []
    server = make_server(
        subscribe_handler=lambda cid, conn: None,
        unsubscribe_handler=lambda cid, conn: unsubscribed.append(cid),
    )
    (channel_id,) = server.add_channels([ChannelWithoutId("/a", "ros1", "x", "")])
    client = Client(server)
    client.send({"op": "subscribe", "subscriptions": [{"id": 5, "channelId": channel_id}]})
    client.send({"op": "unsubscribe", "subscriptionIds": [5]})
    assert unsubscribed == [channel_id]
    server.send_message(client.connection, channel_id, 1, b"x")
    assert client.binaries == []
    client.send({"op": "unsubscribe", "subscriptionIds": [5]})
    assert client.statuses[-1]["level"] == 1


def test_handler_error_with_id_reported():
    def fail(cid, conn):
        raise ChannelError(cid, "boom")

    server = make_server(subscribe_handler=fail)
    (channel_id,) = server.add_channels([ChannelWithoutId("/a", "ros1", "x", "")])
    client = Client(server)
    client.send({"op": "subscribe", "subscriptions": [{"id": 1, "channelId": channel_id}]})
    assert client.statuses[-1]["message"] == f"boom (op: subscribe, id: {channel_id})"


def test_publishing_from_client():
    messages = []
    unadvertised = []
    server = make_server(
        client_advertise_handler=lambda adv, conn: None,
        client_unadvertise_handler=lambda cid, conn: unadvertised.append(cid),
        client_message_handler=lambda msg, conn: messages.append(msg),
    )
    client = Client(server)
    client.send(
        {
            "op": "advertise",
            "channels": [
                {"id": 1, "topic": "/foo", "encoding": "ros1", "schemaName": "std_msgs/String"}
            ],
        }
    )
    client.send_binary(bytes([1]) + struct.pack("<I", 1) + HELLO_WORLD_BINARY)
    assert len(messages) == 1
    assert messages[0].payload == HELLO_WORLD_BINARY
    assert messages[0].advertisement.topic == "/foo"
    assert messages[0].sequence == 0
    client.send({"op": "unadvertise", "channelIds": [1]})
    assert unadvertised == [1]
    client.send_binary(bytes([1]) + struct.pack("<I", 1) + b"x")
    assert client.statuses[-1]["message"] == "Channel 1 is not advertised"


def test_binary_message_without_advertisement():
    server = make_server(client_message_handler=lambda msg, conn: None)
    client = Client(server)
    client.send_binary(bytes([1]) + struct.pack("<I", 3))
    assert client.statuses[-1]["message"] == "Client has no advertised channels"


def test_empty_binary_message():
    server = make_server()
    client = Client(server)
    client.send_binary(b"")
    assert client.statuses[-1]["message"] == "Received an empty binary message"


def test_missing_capability():
    server = make_server(capabilities=[], client_advertise_handler=lambda a, c: None)
    client = Client(server)
    client.send({"op": "advertise", "channels": []})
    assert client.statuses[-1]["message"] == (
        "Operation 'advertise' not supported as server capability 'clientPublish' is missing"
    )


def test_missing_handler():
    server = make_server()
    client = Client(server)
    client.send({"op": "getParameters", "parameterNames": []})
    assert client.statuses[-1]["message"] == (
        "Operation 'getParameters' not supported as server handler function is missing"
    )


def test_invalid_json_reports_error():
    server = make_server()
    client = Client(server)
    client.send_raw = server.handle_message(client.connection, "{not json")
    assert client.statuses[-1]["level"] == 2


def test_get_parameters_with_request_id():
    def on_request(names, request_id, conn):
        server.publish_parameter_values(
            conn,
            [Parameter(PARAM_1_NAME, "hello"), Parameter(PARAM_2_NAME, [1.2, 2.1, 3.3])],
            request_id,
        )

    server = make_server(parameter_request_handler=on_request)
    client = Client(server)
    client.send({"op": "getParameters", "parameterNames": [PARAM_1_NAME, PARAM_2_NAME], "id": "req-1"})
    reply = client.texts[-1]
    assert reply["op"] == "parameterValues"
    assert reply["id"] == "req-1"
    params = {p.name: p for p in map(parameter_from_json, reply["parameters"])}
    assert params[PARAM_1_NAME].value.value == "hello"
    assert [v.value for v in params[PARAM_2_NAME].value.value] == [1.2, 2.1, 3.3]


def test_set_parameters_passes_parsed_parameters():
    received = []
    server = make_server(parameter_change_handler=lambda ps, rid, conn: received.append((ps, rid)))
    client = Client(server)
    client.send({"op": "setParameters", "parameters": [{"name": PARAM_1_NAME, "value": "world"}]})
    assert received == [([Parameter(PARAM_1_NAME, "world")], None)]


def test_unset_parameters_are_not_published():
    server = make_server()
    client = Client(server)
    server.publish_parameter_values(client.connection, [Parameter(PARAM_1_NAME)], "req")
    assert client.texts[-1] == {"op": "parameterValues", "parameters": [], "id": "req"}


def test_parameter_subscription():
    ops = []
    server = make_server(
        parameter_subscription_handler=lambda names, op, conn: ops.append((names, op))
    )
    first, second = Client(server, "a:1"), Client(server, "b:2")
    first.send({"op": "subscribeParameterUpdates", "parameterNames": [PARAM_1_NAME]})
    second.send({"op": "subscribeParameterUpdates", "parameterNames": [PARAM_1_NAME]})
    assert ops == [([PARAM_1_NAME], ParameterSubscriptionOperation.SUBSCRIBE)]

    server.update_parameter_values([Parameter(PARAM_1_NAME, "foo"), Parameter("/other", 1)])
    update = first.texts[-1]
    assert [p["name"] for p in update["parameters"]] == [PARAM_1_NAME]
    assert "id" not in update

    first.send({"op": "unsubscribeParameterUpdates", "parameterNames": [PARAM_1_NAME]})
    assert len(ops) == 1
    second.send({"op": "unsubscribeParameterUpdates", "parameterNames": [PARAM_1_NAME]})
    assert ops[-1] == ([PARAM_1_NAME], ParameterSubscriptionOperation.UNSUBSCRIBE)

    count = len(first.sent)
    server.update_parameter_values([Parameter(PARAM_1_NAME, "bar")])
    assert len(first.sent) == count


def test_call_service():
    expected = bytes([1, 5, 0, 0, 0, 104, 101, 108, 108, 111])

    def on_request(request, conn):
        server.send_service_response(
            conn, ServiceResponse(request.service_id, request.call_id, request.encoding, expected)
        )

    server = make_server(service_request_handler=on_request)
    (service_id,) = server.add_services(
        [ServiceWithoutId("/foo_service", "std_srvs/SetBool", "bool data", "bool success")]
    )
    clients = [Client(server, f"c:{i}") for i in range(3)]
    request = ServiceRequest(service_id, 123, "ros1", bytes([1]))
    for client in clients:
        client.send_binary(bytes([2]) + request.to_bytes())
        response = ServiceResponse.from_bytes(client.binaries[-1][1:])
        assert client.binaries[-1][0] == 3
        assert response == ServiceResponse(service_id, 123, "ros1", expected)


def test_service_request_for_unknown_service():
    server = make_server(service_request_handler=lambda r, c: None)
    client = Client(server)
    client.send_binary(bytes([2]) + ServiceRequest(99, 1, "ros1").to_bytes())
    assert client.statuses[-1]["message"] == "Service 99 is not advertised"


def test_short_service_request():
    server = make_server(service_request_handler=lambda r, c: None)
    client = Client(server)
    client.send_binary(bytes([2, 0, 0, 0, 0]))
    assert client.statuses[-1]["message"] == "Invalid service call request length 5"


def test_unknown_binary_opcode():
    server = make_server()
    client = Client(server)
    client.send_binary(bytes([9]))
    assert client.statuses[-1]["message"] == "Unrecognized client opcode 9"


@pytest.mark.parametrize(
    "response",
    [
        FetchAssetResponse(123, FetchAssetStatus.SUCCESS, "", b"Hello, world"),
        FetchAssetResponse(456, FetchAssetStatus.ERROR, "Failed to retrieve asset file:///foo/bar"),
    ],
)
def test_fetch_asset(response):
    requests = []

    def on_fetch(uri, request_id, conn):
        requests.append((uri, request_id))
        server.send_fetch_asset_response(conn, response)

    server = make_server(fetch_asset_handler=on_fetch)
    client = Client(server)
    client.send({"op": "fetchAsset", "uri": "file:///foo/bar", "requestId": response.request_id})
    assert requests == [("file:///foo/bar", response.request_id)]
    assert decode_fetch_asset_response(client.binaries[-1]) == response


def test_remove_channels_and_services():
    server = make_server(subscribe_handler=lambda cid, conn: None)
    (channel_id,) = server.add_channels([ChannelWithoutId("/a", "ros1", "x", "")])
    (service_id,) = server.add_services([ServiceWithoutId("/s", "t", "", "")])
    client = Client(server)
    client.send({"op": "subscribe", "subscriptions": [{"id": 1, "channelId": channel_id}]})
    server.remove_channels([channel_id])
    assert client.texts[-1] == {"op": "unadvertise", "channelIds": [channel_id]}
    server.send_message(client.connection, channel_id, 1, b"x")
    assert client.binaries == []

    count = len(client.sent)
    server.remove_services([42])
    assert len(client.sent) == count
    server.remove_services([service_id, 42])
    assert client.texts[-1] == {"op": "unadvertiseServices", "serviceIds": [service_id]}


def test_broadcast_time():
    server = make_server()
    clients = [Client(server, "a:1"), Client(server, "b:2")]
    server.broadcast_time(1_000_000)
    assert [c.binaries for c in clients] == [[encode_time(1_000_000)]] * 2


def test_connection_graph_subscription():
    graph_calls = []
    server = make_server(subscribe_connection_graph_handler=graph_calls.append)
    client = Client(server)
    client.send({"op": "subscribeConnectionGraph"})
    assert graph_calls == [True]
    assert client.texts[-1]["op"] == "connectionGraphUpdate"
    assert client.texts[-1]["publishedTopics"] == []

    server.update_connection_graph({"/t": {"/pub"}}, {}, {})
    assert client.texts[-1]["publishedTopics"] == [{"name": "/t", "publisherIds": ["/pub"]}]
    count = len(client.sent)
    server.update_connection_graph({"/t": {"/pub"}}, {}, {})
    assert len(client.sent) == count

    client.send({"op": "unsubscribeConnectionGraph"})
    assert graph_calls == [True, False]
    client.send({"op": "unsubscribeConnectionGraph"})
    assert client.statuses[-1]["message"] == "Client was not subscribed to connection graph updates"


def test_close_connection_releases_client_state():
    unsubscribed, unadvertised, param_ops, graph_calls = [], [], [], []
    server = make_server(
        subscribe_handler=lambda cid, conn: None,
        unsubscribe_handler=lambda cid, conn: unsubscribed.append(cid),
        client_advertise_handler=lambda adv, conn: None,
        client_unadvertise_handler=lambda cid, conn: unadvertised.append(cid),
        parameter_subscription_handler=lambda names, op, conn: param_ops.append((names, op)),
        subscribe_connection_graph_handler=graph_calls.append,
    )
    (channel_id,) = server.add_channels([ChannelWithoutId("/a", "ros1", "x", "")])
    client = Client(server)
    client.send({"op": "subscribe", "subscriptions": [{"id": 1, "channelId": channel_id}]})
    client.send(
        {"op": "advertise", "channels": [{"id": 9, "topic": "/foo", "encoding": "ros1", "schemaName": "s"}]}
    )
    client.send({"op": "subscribeParameterUpdates", "parameterNames": ["/p"]})
    client.send({"op": "subscribeConnectionGraph"})

    server.close_connection(client.connection)
    assert unsubscribed == [channel_id]
    assert unadvertised == [9]
    assert param_ops[-1] == (["/p"], ParameterSubscriptionOperation.UNSUBSCRIBE)
    assert graph_calls == [True, False]

    count = len(client.sent)
    server.broadcast_time(5)
    assert len(client.sent) == count


def test_shutdown_returns_open_connections():
    server = make_server()
    first, second = Client(server, "a:1"), Client(server, "b:2")
    connections = server.shutdown()
    assert connections == [first.connection, second.connection]
    assert server.shutdown() == []


def test_remote_endpoint():
    server = make_server()
    client = Client(server, "10.0.0.1:1234")
    assert server.remote_endpoint(client.connection) == "10.0.0.1:1234"
    assert server.remote_endpoint(None) == "(unknown)"