"""Tests for the discovery endpoints, debugger sessions and the relay endpoint."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import lifecycle
from nettap.api import create_app
from nettap.config import NettapConfig
from nettap.errors import ErrorCode
from nettap.services import NettapService
from nettap.types import CaptureEvent, CaptureKind


@pytest.fixture
def service(config: NettapConfig) -> NettapService:
    return NettapService(config)


@pytest.fixture
def client(service: NettapService) -> Iterator[TestClient]:
    with TestClient(create_app(service)) as test_client:
        yield test_client


def feed(client: TestClient, service: NettapService, events: list[CaptureEvent]) -> None:
    """Ingest on the app's event loop, where sessions wait for events."""

    def ingest_all() -> None:
        for event in events:
            service.ingest(event)

    client.portal.call(ingest_all)


def request_id(service: NettapService, cid: str = "c1", origin: int = 1) -> str:
    return service.registry.find(cid, origin).id


class TestDiscovery:
    def test_json_lists_one_target(self, client: TestClient, service: NettapService) -> None:
        targets = client.get("/json").json()
        assert len(targets) == 1
        target = targets[0]
        assert target["id"] == service.target_id
        assert target["webSocketDebuggerUrl"].endswith(f"/devtools/page/{service.target_id}")
        assert target["devtoolsFrontendUrl"].startswith("devtools://devtools/bundled/inspector.html?ws=")
        assert {"title", "type"} <= set(target)

    def test_json_list_alias(self, client: TestClient) -> None:
        assert client.get("/json/list").json() == client.get("/json").json()

    def test_version(self, client: TestClient) -> None:
        version = client.get("/json/version").json()
        assert version["Browser"].startswith("nettap/")
        assert "Protocol-Version" in version
        assert version["webSocketDebuggerUrl"].startswith("ws://")

    def test_health(self, client: TestClient, service: NettapService) -> None:
        feed(client, service, lifecycle())
        health = client.get("/health").json()
        assert health["status"] == "ok"
        assert health["requests"]["retained"] == 1
        assert health["role"] == "unknown"


class TestSession:
    def test_unknown_target_rejected(self, client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/devtools/page/nope") as ws:
                ws.receive_text()

    def test_enable_replays_retained_events(self, client: TestClient, service: NettapService) -> None:
        feed(client, service, lifecycle())
        with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
            ws.send_json({"id": 1, "method": "Network.enable", "params": {"maxTotalBufferSize": 1000}})
            assert ws.receive_json() == {"id": 1, "result": {}}
            methods = [ws.receive_json()["method"] for _ in range(5)]

        assert methods == [
            "Network.requestWillBeSent",
            "Network.responseReceived",
            "Network.dataReceived",
            "Network.dataReceived",
            "Network.loadingFinished",
        ]

    def test_long_request_replays_from_request_will_be_sent(self, client: TestClient, service: NettapService) -> None:
        feed(client, service, lifecycle(chunks=tuple(b"x" for _ in range(12_000))))
        with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
            ws.send_json({"id": 1, "method": "Network.enable"})
            assert ws.receive_json()["id"] == 1
            first = ws.receive_json()

        assert first["method"] == "Network.requestWillBeSent"
        assert first["params"]["requestId"] == request_id(service)

    def test_live_events_after_enable(self, client: TestClient, service: NettapService) -> None:
        with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
            ws.send_json({"id": 1, "method": "Network.enable"})
            assert ws.receive_json()["id"] == 1
            feed(client, service, lifecycle(error="reset"))
            messages = [ws.receive_json() for _ in range(5)]

        assert messages[0]["method"] == "Network.requestWillBeSent"
        assert messages[-1]["method"] == "Network.loadingFailed"
        assert messages[-1]["params"]["errorText"] == "reset"
        assert {m["params"]["requestId"] for m in messages} == {request_id(service)}

    def test_replay_off_starts_at_live_head(self, config: NettapConfig) -> None:
        service = NettapService(replace(config, replay=False))
        with TestClient(create_app(service)) as client:
            feed(client, service, lifecycle("old"))
            with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
                ws.send_json({"id": 1, "method": "Network.enable"})
                assert ws.receive_json()["id"] == 1
                feed(client, service, lifecycle("new"))
                first = ws.receive_json()

        assert first["method"] == "Network.requestWillBeSent"
        assert first["params"]["requestId"] == request_id(service, "new")

    def test_two_sessions_see_same_order(self, client: TestClient, service: NettapService) -> None:
        path = f"/devtools/page/{service.target_id}"
        with client.websocket_connect(path) as first, client.websocket_connect(path) as second:
            for ws in (first, second):
                ws.send_json({"id": 1, "method": "Network.enable"})
                assert ws.receive_json()["id"] == 1
            feed(client, service, lifecycle("a") + lifecycle("b"))
            seen = []
            for ws in (first, second):
                messages = [ws.receive_json() for _ in range(10)]
                seen.append([(m["method"], m["params"]["requestId"]) for m in messages])

        assert seen[0] == seen[1]
        assert seen[0][0] == ("Network.requestWillBeSent", request_id(service, "a"))


class TestCommands:
    def test_get_response_body(self, client: TestClient, service: NettapService) -> None:
        feed(client, service, lifecycle())
        with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
            ws.send_json({"id": 3, "method": "Network.getResponseBody", "params": {"requestId": request_id(service)}})
            reply = ws.receive_json()

        assert reply == {"id": 3, "result": {"body": '{"ok":true}', "base64Encoded": False}}

    def test_body_of_failed_decode_is_an_error(self, client: TestClient, service: NettapService) -> None:
        headers = [("Content-Type", "text/plain"), ("Content-Encoding", "compress")]
        feed(client, service, lifecycle(response_headers=headers))
        with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
            ws.send_json({"id": 1, "method": "Network.getResponseBody", "params": {"requestId": request_id(service)}})
            reply = ws.receive_json()

        assert reply["error"]["code"] == ErrorCode.SERVER_ERROR
        assert service.registry.get(request_id(service)).status == 200

    def test_unknown_request_id(self, client: TestClient, service: NettapService) -> None:
        with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
            ws.send_json({"id": 1, "method": "Network.getResponseBody", "params": {"requestId": "missing"}})
            assert ws.receive_json()["error"]["code"] == ErrorCode.INVALID_PARAMS

    def test_pending_body_does_not_block_other_commands(self, client: TestClient, service: NettapService) -> None:
        events = lifecycle()
        feed(client, service, events[:-1])
        with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
            ws.send_json({"id": 1, "method": "Network.getResponseBody", "params": {"requestId": request_id(service)}})
            ws.send_json({"id": 2, "method": "Runtime.enable"})
            assert ws.receive_json() == {"id": 2, "result": {}}

            feed(client, service, events[-1:])
            reply = ws.receive_json()

        assert reply["id"] == 1
        assert reply["result"]["body"] == '{"ok":true}'

    def test_pending_body_times_out(self, config: NettapConfig) -> None:
        service = NettapService(replace(config, body_timeout=0.2))
        with TestClient(create_app(service)) as client:
            feed(client, service, lifecycle()[:3])
            with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
                ws.send_json({"id": 1, "method": "Network.getResponseBody", "params": {"requestId": request_id(service)}})
                reply = ws.receive_json()

        assert reply["error"]["code"] == ErrorCode.SERVER_ERROR
        assert "Timed out" in reply["error"]["message"]

    def test_protocol_errors_keep_connection_open(self, client: TestClient, service: NettapService) -> None:
        with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
            ws.send_text("{not json")
            assert ws.receive_json()["error"]["code"] == ErrorCode.PARSE_ERROR

            ws.send_json({"id": 1})
            assert ws.receive_json() == {"id": 1, "error": {"code": ErrorCode.INVALID_REQUEST, "message": "Missing method"}}

            ws.send_json({"id": 2, "method": "Debugger.stepInto"})
            assert ws.receive_json()["error"]["code"] == ErrorCode.METHOD_NOT_FOUND

            ws.send_json({"id": 3, "method": "Network.getResponseBody", "params": {}})
            assert ws.receive_json()["error"]["code"] == ErrorCode.INVALID_PARAMS

            ws.send_json({"id": 4, "method": "Page.enable"})
            assert ws.receive_json() == {"id": 4, "result": {}}

    def test_disable_stops_events(self, client: TestClient, service: NettapService) -> None:
        with client.websocket_connect(f"/devtools/page/{service.target_id}") as ws:
            ws.send_json({"id": 1, "method": "Network.enable"})
            assert ws.receive_json()["id"] == 1
            ws.send_json({"id": 2, "method": "Network.disable"})
            assert ws.receive_json()["id"] == 2

            feed(client, service, lifecycle())
            ws.send_json({"id": 3, "method": "Schema.enable"})
            assert ws.receive_json() == {"id": 3, "result": {}}


class TestRelayEndpoint:
    def test_batch_is_ingested_and_acknowledged(self, client: TestClient, service: NettapService) -> None:
        events = lifecycle(origin=777)
        with client.websocket_connect("/ipc") as ws:
            ws.send_text(json.dumps({"seq": 1, "events": [e.to_dict() for e in events]}))
            assert ws.receive_json() == {"ack": 1}

        detail = service.registry.find("c1", 777)
        assert detail is not None
        assert detail.encoded_length == len(b'{"ok":true}')

    def test_malformed_records_are_dropped(self, client: TestClient, service: NettapService) -> None:
        good = CaptureEvent("c9", CaptureKind.START, payload={"url": "http://x/"}, origin=5).to_dict()
        with client.websocket_connect("/ipc") as ws:
            ws.send_text(json.dumps({"seq": 4, "events": [{"kind": "Start"}, good]}))
            assert ws.receive_json() == {"ack": 4}
            ws.send_text("garbage")
            assert ws.receive_json()["ack"] is None

        assert service.registry.find("c9", 5) is not None
        assert service.registry.counters.dropped == 1
