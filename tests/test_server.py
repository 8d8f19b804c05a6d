"""Tests for the HTTP / WebSocket binding."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import WebSocket
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from worldmorse.config_loader import Config
from worldmorse.relay import RelayService
from worldmorse.server import RelayServer, create_relay_server


@pytest.fixture
def relay(clock):
    return RelayService(clock=clock)


@pytest.fixture
def client(relay):
    app = RelayServer(relay).create_app()
    with TestClient(app) as test_client:
        yield test_client


def submit(client, **overrides):
    body = {
        "fromCallsign": "JA1ABC",
        "channel": "7.050",
        "type": "CW_MORSE",
        "payload": {"morse": "-.-. --.-", "textPreview": "CQ"},
    }
    body.update(overrides)
    return client.post("/v1/messages", json=body)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert isinstance(body["ts"], int)

    def test_status(self, client):
        body = client.get("/v1/status").json()
        assert body["ok"] is True
        assert body["subscribers"] == 0
        assert "version" in body


class TestStations:
    def test_register(self, client, clock):
        response = client.post("/v1/stations/register", json={"callsign": "ja1abc"})
        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "station": {"callsign": "JA1ABC", "channel": None, "lastSeenAt": clock.now},
        }

    def test_register_requires_callsign(self, client):
        response = client.post("/v1/stations/register", json={})
        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "callsign_required"}

    def test_malformed_body(self, client):
        response = client.post(
            "/v1/stations/register",
            content="not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "invalid_request"}

    def test_heartbeat_always_ok(self, client):
        assert client.post("/v1/stations/heartbeat", json={"callsign": "NOBODY"}).json() == {"ok": True}
        assert client.post("/v1/stations/heartbeat", json={}).json() == {"ok": True}

    def test_online_after_submit(self, client):
        client.post("/v1/stations/register", json={"callsign": "JA1ABC"})
        submit(client)
        body = client.get("/v1/stations/online", params={"channel": "7.050"}).json()
        assert [s["callsign"] for s in body["stations"]] == ["JA1ABC"]

    def test_online_requires_channel(self, client):
        response = client.get("/v1/stations/online")
        assert response.status_code == 400
        assert response.json()["error"] == "channel_required"

    def test_online_prunes(self, client, clock):
        client.post("/v1/stations/register", json={"callsign": "JA1ABC"})
        submit(client)
        clock.advance(60_001)
        body = client.get("/v1/stations/online", params={"channel": "7.050"}).json()
        assert body == {"ok": True, "stations": []}


class TestMessages:
    def test_submit_and_recent(self, client, clock):
        response = submit(client, toCallsign="w1aw")
        assert response.status_code == 200
        message = response.json()["message"]
        assert message["fromCallsign"] == "JA1ABC"
        assert message["toCallsign"] == "W1AW"
        assert message["ts"] == clock.now
        assert message["payload"] == {"morse": "-.-. --.-", "textPreview": "CQ"}

        recent = client.get("/v1/messages/recent", params={"channel": "7.050"}).json()
        assert recent == {"ok": True, "messages": [message]}

    @pytest.mark.parametrize("field,code", [
        ("fromCallsign", "fromCallsign_required"),
        ("channel", "channel_required"),
        ("type", "type_required"),
    ])
    def test_submit_validation(self, client, field, code):
        response = submit(client, **{field: ""})
        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": code}

    def test_submit_without_payload(self, client):
        response = client.post(
            "/v1/messages", json={"fromCallsign": "JA1ABC", "channel": "7.050", "type": "TEXT"}
        )
        assert response.status_code == 200
        assert response.json()["message"]["payload"] == {}

    def test_recent_limit_clamped(self, client):
        for _ in range(3):
            submit(client)
        params = {"channel": "7.050"}
        assert len(client.get("/v1/messages/recent", params={**params, "limit": 0}).json()["messages"]) == 1
        assert len(client.get("/v1/messages/recent", params={**params, "limit": 2}).json()["messages"]) == 2
        assert len(client.get("/v1/messages/recent", params={**params, "limit": 9999}).json()["messages"]) == 3

    def test_recent_bad_limit(self, client):
        response = client.get("/v1/messages/recent", params={"channel": "7.050", "limit": "many"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_recent_unknown_channel(self, client):
        assert client.get("/v1/messages/recent", params={"channel": "3.560"}).json() == {
            "ok": True, "messages": []
        }


class TestPushSubscriptions:
    def test_websocket_receives_hello_then_messages(self, client):
        with client.websocket_connect("/ws?callsign=JA1ABC&channel=7.050") as ws:
            assert ws.receive_json()["kind"] == "hello"
            message = submit(client).json()["message"]
            event = ws.receive_json()
            assert event == {"kind": "message", "message": message}

    def test_websocket_join_goes_to_others(self, client):
        with client.websocket_connect("/ws?callsign=JA1ABC&channel=7.050") as first:
            assert first.receive_json()["kind"] == "hello"
            with client.websocket_connect("/ws?callsign=W1AW&channel=7.050") as second:
                assert second.receive_json()["kind"] == "hello"
                event = first.receive_json()
                assert event["kind"] == "station"
                assert event["action"] == "join"
                assert event["station"]["callsign"] == "W1AW"

    def test_websocket_other_channel_not_delivered(self, client):
        with client.websocket_connect("/ws?channel=14.060") as other, \
                client.websocket_connect("/ws?channel=7.050") as same:
            assert other.receive_json()["kind"] == "hello"
            assert same.receive_json()["kind"] == "hello"
            submit(client)
            assert same.receive_json()["kind"] == "message"
            submit(client, channel="14.060")
            event = other.receive_json()
            assert event["message"]["channel"] == "14.060"

    def test_websocket_requires_channel(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws?callsign=JA1ABC") as ws:
                ws.receive_json()
        assert exc.value.code == 1008

    def test_websocket_station_left_for_pruning(self, client, relay):
        with client.websocket_connect("/ws?callsign=JA1ABC&channel=7.050") as ws:
            ws.receive_json()
            ws.send_json({"kind": "ping"})
            ws.send_text("garbage")
        body = client.get("/v1/stations/online", params={"channel": "7.050"}).json()
        assert [s["callsign"] for s in body["stations"]] == ["JA1ABC"]

    def test_websocket_detached_when_accept_fails(self, client, relay):
        with patch.object(WebSocket, "accept", AsyncMock(side_effect=RuntimeError("handshake failed"))):
            with pytest.raises(Exception):
                with client.websocket_connect("/ws?callsign=JA1ABC&channel=7.050"):
                    pass
        assert relay.subscriber_count() == 0

    def test_sse_not_attached_when_response_fails(self, client, relay):
        with patch("worldmorse.server.EventSourceResponse", side_effect=RuntimeError("no stream")):
            with pytest.raises(RuntimeError):
                client.get("/v1/events", params={"callsign": "JA1ABC", "channel": "7.050"})
        assert relay.subscriber_count() == 0
        assert client.get("/v1/stations/online", params={"channel": "7.050"}).json()["stations"] == []

    def test_sse_requires_channel(self, client):
        response = client.get("/v1/events", params={"callsign": "JA1ABC"})
        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "channel_required"}


class TestFactory:
    def test_create_relay_server_from_config(self):
        cfg = Config()
        cfg.relay.port = 3999
        cfg.relay.max_messages_per_channel = 5
        cfg.relay.presence_timeout_s = 30
        server = create_relay_server(cfg)
        assert server.port == 3999
        assert server.relay.presence_timeout_ms == 30_000
        assert server.relay.channel_log.max_per_channel == 5
