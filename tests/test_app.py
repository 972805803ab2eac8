from fastapi.testclient import TestClient

from app import app

OFFER = {"sdp": "v=0\r\n", "type": "offer"}
ANSWER = {"sdp": "v=0\r\n", "type": "answer"}


def connected_id(ws):
    frame = ws.receive_json()
    assert frame["type"] == "connected"
    return frame["data"]["id"]


def test_health():
    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "ok"}


def test_join_and_signal_round_trip():
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
            a_id = connected_id(ws_a)
            b_id = connected_id(ws_b)

            ws_a.send_json({"type": "join-room", "data": "app-r1"})
            assert ws_a.receive_json() == {"type": "users-in-room", "data": []}

            ws_b.send_json({"type": "join-room", "data": "app-r1"})
            assert ws_a.receive_json() == {"type": "user-joined", "data": b_id}
            assert ws_b.receive_json() == {"type": "users-in-room", "data": [a_id]}

            ws_b.send_json({"type": "offer", "data": {"target": a_id, "offer": OFFER, "sender": "spoofed"}})
            assert ws_a.receive_json() == {"type": "offer", "data": {"offer": OFFER, "sender": b_id}}

            ws_a.send_json({"type": "answer", "data": {"target": b_id, "answer": ANSWER}})
            assert ws_b.receive_json() == {"type": "answer", "data": {"answer": ANSWER, "sender": a_id}}

            candidate = {"candidate": "candidate:1 1 udp 2130706431 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
            ws_a.send_json({"type": "ice-candidate", "data": {"target": b_id, "candidate": candidate}})
            assert ws_b.receive_json() == {"type": "ice-candidate", "data": {"candidate": candidate, "sender": a_id}}

            details = client.get("/rooms/app-r1").json()
            assert details == {"room_id": "app-r1", "member_count": 2, "members": sorted([a_id, b_id])}
            assert {"room_id": "app-r1", "member_count": 2} in client.get("/rooms").json()["rooms"]


def test_disconnect_announces_user_left_and_drops_empty_room():
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws_a:
            connected_id(ws_a)
            ws_a.send_json({"type": "join-room", "data": "app-r2"})
            ws_a.receive_json()

            with client.websocket_connect("/ws") as ws_b:
                b_id = connected_id(ws_b)
                ws_b.send_json({"type": "join-room", "data": "app-r2"})
                ws_b.receive_json()
                assert ws_a.receive_json() == {"type": "user-joined", "data": b_id}

            assert ws_a.receive_json() == {"type": "user-left", "data": b_id}

        assert client.get("/rooms/app-r2").status_code == 404


def test_explicit_leave_room():
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
            a_id = connected_id(ws_a)
            b_id = connected_id(ws_b)
            ws_a.send_json({"type": "join-room", "data": "app-r3"})
            ws_a.receive_json()
            ws_b.send_json({"type": "join-room", "data": "app-r3"})
            ws_b.receive_json()
            ws_a.receive_json()

            ws_b.send_json({"type": "leave-room"})
            assert ws_a.receive_json() == {"type": "user-left", "data": b_id}
            assert client.get("/rooms/app-r3").json()["members"] == [a_id]


def test_malformed_messages_get_an_error_and_change_nothing():
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            connected_id(ws)

            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "join-room"})
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "offer", "data": {"offer": OFFER}})
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "answer", "data": {"target": "someone"}})
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "dance", "data": None})
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "join-room", "data": "app-r5"})
            assert ws.receive_json() == {"type": "users-in-room", "data": []}


def test_offer_to_unknown_target_is_dropped_silently():
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            connected_id(ws)
            ws.send_json({"type": "offer", "data": {"target": "nobody", "offer": OFFER}})
            ws.send_json({"type": "join-room", "data": "app-r4"})
            # the next frame is the join reply, not an error about the offer
            assert ws.receive_json() == {"type": "users-in-room", "data": []}


def test_unknown_room_details_is_404():
    with TestClient(app) as client:
        response = client.get("/rooms/does-not-exist")
        assert response.status_code == 404
        assert response.json() == {"detail": "Room not found"}
