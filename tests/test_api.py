from __future__ import annotations

import base64
import hashlib
import hmac


def _drain(client) -> None:
    client.portal.call(client.relay.drain)


def test_turn_credentials_are_signed_with_configured_secret(client):
    response = client.get("/api/turn-credentials", params={"user_id": "alice"})
    assert response.status_code == 200
    payload = response.json()

    expiry, user_id = payload["username"].split(":", 1)
    assert user_id == "alice"
    assert int(expiry) > 0
    expected = base64.b64encode(
        hmac.new(b"test-secret", payload["username"].encode(), hashlib.sha1).digest()
    ).decode("ascii")
    assert payload["password"] == expected
    assert payload["ttl"] == 3600
    assert payload["uris"]


def test_turn_credentials_require_user_id(client):
    response = client.get("/api/turn-credentials")
    assert response.status_code == 422


def test_presence_reflects_joined_websockets(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "join", "userId": "presence-user"})
        assert ws.receive_json() == {"type": "userList", "users": ["presence-user"]}

        response = client.get("/api/presence")
        assert response.json() == {"users": ["presence-user"], "count": 1}


def test_call_over_websocket_is_recorded(client):
    with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
        ws_a.send_json({"type": "join", "userId": "ws-alice"})
        assert ws_a.receive_json()["users"] == ["ws-alice"]
        ws_b.send_json({"type": "join", "userId": "ws-bob"})
        assert ws_b.receive_json()["users"] == ["ws-alice", "ws-bob"]
        assert ws_a.receive_json()["users"] == ["ws-alice", "ws-bob"]

        ws_a.send_json({"type": "offer", "from": "ws-alice", "to": "ws-bob", "sdp": "v=0", "isVideoCall": False})
        offer = ws_b.receive_json()
        assert offer["type"] == "offer"
        call_id = offer["callId"]

        ws_b.send_json({"type": "answer", "from": "ws-bob", "to": "ws-alice", "sdp": "v=0", "callId": call_id})
        assert ws_a.receive_json() == {
            "type": "answer",
            "from": "ws-bob",
            "to": "ws-alice",
            "sdp": "v=0",
            "callId": call_id,
        }

        ws_a.send_json({"type": "hangup", "from": "ws-alice", "to": "ws-bob", "callId": call_id})
        assert ws_b.receive_json()["type"] == "hangup"

    _drain(client)

    response = client.get("/api/calls", params={"user_id": "ws-alice"})
    assert response.status_code == 200
    (record,) = response.json()
    assert record["call_id"] == call_id
    assert record["status"] == "completed"
    assert record["is_video"] is False
    assert record["caller_id"] == "ws-alice"
    assert record["callee_id"] == "ws-bob"


def test_call_stats_are_stored_and_served(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "join", "userId": "stats-alice"})
        ws.receive_json()
        ws.send_json(
            {
                "type": "callStats",
                "callId": "stats-call",
                "caller": "stats-alice",
                "callee": "stats-bob",
                "isVideo": True,
                "duration": 12.5,
                "totalSamples": 1,
                "avgSendBitrateKbps": 800.0,
                "avgReceiveBitrateKbps": 750.0,
                "avgPacketLossPercent": 1.0,
                "avgRttMs": 40.0,
                "totalDataUsedBytes": 1_250_000,
                "qualityDistribution": {"good": 1, "moderate": 0, "poor": 0},
                "samples": [{"timestamp": 1.0, "quality": "good"}],
                "rating": 3,
            }
        )
        # checkUser round-trip guarantees the stats frame was processed.
        ws.send_json({"type": "checkUser", "userId": "stats-alice"})
        assert ws.receive_json()["online"] is True

    _drain(client)

    response = client.get("/api/calls/stats-call/stats")
    assert response.status_code == 200
    (stats,) = response.json()
    assert stats["reported_by"] == "stats-alice"
    assert stats["total_samples"] == 1
    assert stats["quality_distribution"] == {"good": 1, "moderate": 0, "poor": 0}
    assert stats["samples"] == [{"timestamp": 1.0, "quality": "good"}]
    assert stats["rating"] == 3


def test_unknown_call_stats_return_404(client):
    response = client.get("/api/calls/missing/stats")
    assert response.status_code == 404


def test_malformed_frames_do_not_close_the_socket(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("{not json")
        ws.send_json({"type": "join", "userId": "sturdy"})
        assert ws.receive_json() == {"type": "userList", "users": ["sturdy"]}
