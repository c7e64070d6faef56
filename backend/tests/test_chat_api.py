"""Tests for the WebSocket protocol and the HTTP history endpoints."""
import pytest
from fastapi import WebSocketDisconnect

from roomchat.chat.schemas import new_message_id


def receive_connected(ws):
    """Helper to receive the handshake frame and the caller's own presence event."""
    connected = ws.receive_json()
    assert connected["type"] == "connected"
    presence = ws.receive_json()
    assert presence["type"] == "presence:update"
    assert presence["data"] == {"userId": connected["userId"], "online": True}
    return connected


def auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestWebSocketHandshake:
    """Tests for /ws/chat authentication and the connected frame."""

    def test_missing_token_is_rejected(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with api_client.websocket_connect("/ws/chat?room=lobby"):
                pass
        assert exc.value.code == 1008

    def test_invalid_token_is_rejected(self, api_client, token, chat_service):
        with pytest.raises(WebSocketDisconnect) as exc:
            with api_client.websocket_connect(f"/ws/chat?room=lobby&token={token('alice', secret='wrong')}"):
                pass
        assert exc.value.code == 1008
        assert chat_service.rooms.connections == {}

    def test_connected_frame(self, api_client, token, chat_service):
        with api_client.websocket_connect(f"/ws/chat?room=lobby&token={token('alice')}") as ws:
            connected = receive_connected(ws)

            room = chat_service.rooms.find_by_key("lobby")
            assert connected["userId"] == "alice"
            assert connected["roomId"] == room.id
            assert connected["connectionId"]
            assert chat_service.presence.is_online("alice")

    def test_header_token_and_default_room(self, api_client, token, chat_service):
        with api_client.websocket_connect("/ws/chat", headers=auth(token("alice"))) as ws:
            connected = receive_connected(ws)
            room = chat_service.rooms.get(connected["roomId"])
            assert room.key == "global"
            assert room.title == "General chat"


class TestWebSocketMessaging:
    """Tests for ops over a live socket."""

    def test_two_clients_same_room(self, api_client, token):
        with api_client.websocket_connect(f"/ws/chat?room=lobby&token={token('alice')}") as ws1:
            receive_connected(ws1)
            with api_client.websocket_connect(f"/ws/chat?room=lobby&token={token('bob')}") as ws2:
                receive_connected(ws2)
                ws1.send_json({"type": "send", "ackId": 1, "data": {"text": "Hello from alice"}})

                joined = ws1.receive_json()
                assert joined["data"] == {"userId": "bob", "online": True}

                new = ws1.receive_json()
                ack = ws1.receive_json()
                assert new["type"] == "message:new"
                assert new["data"]["text"] == "Hello from alice"
                assert ack == {"type": "ack", "ackId": 1, "ok": True, "data": ack["data"]}
                assert ack["data"]["id"] == new["data"]["id"]

                received = ws2.receive_json()
                assert received == new

    def test_failed_op_keeps_connection_open(self, api_client, token):
        with api_client.websocket_connect(f"/ws/chat?room=lobby&token={token('alice')}") as ws:
            receive_connected(ws)

            ws.send_text("this is not json")
            bad = ws.receive_json()
            assert bad["ok"] is False
            assert bad["kind"] == "validation"

            ws.send_json({"type": "edit", "ackId": "e1", "data": {"id": new_message_id(), "text": "x"}})
            missing = ws.receive_json()
            assert missing["ackId"] == "e1"
            assert missing["kind"] == "not_found"

            ws.send_json({"type": "send", "ackId": "s1", "data": {"text": "still here"}})
            assert ws.receive_json()["type"] == "message:new"
            assert ws.receive_json()["ok"] is True

    def test_muted_sender_gets_moderation_ack(self, api_client, token, chat_service):
        with api_client.websocket_connect(f"/ws/chat?room=lobby&token={token('alice')}") as ws:
            receive_connected(ws)
            chat_service.directory.set_flag("alice", "isMuted", True)

            ws.send_json({"type": "send", "ackId": 1, "data": {"text": "hello?"}})
            ack = ws.receive_json()
            assert ack["ok"] is False
            assert ack["kind"] == "moderation"
            assert ack["error"] == "you are muted"

    def test_notification_listener_receives_reply(self, api_client, token):
        with api_client.websocket_connect(f"/ws/chat?room=lobby&token={token('alice')}") as alice:
            receive_connected(alice)
            alice.send_json({"type": "send", "ackId": 1, "data": {"text": "anyone?"}})
            original = alice.receive_json()["data"]
            alice.receive_json()  # ack

        with api_client.websocket_connect(f"/ws/notifications?token={token('alice')}") as listener:
            connected = listener.receive_json()
            assert connected["type"] == "connected"
            assert connected["roomId"] is None

            with api_client.websocket_connect(f"/ws/chat?room=lobby&token={token('bob')}") as bob:
                receive_connected(bob)
                bob.send_json({
                    "type": "send", "ackId": 1,
                    "data": {"text": "me!", "replyTo": original["id"]},
                })
                reply = bob.receive_json()
                assert bob.receive_json()["type"] == "ack"
                assert reply["data"]["replyToOwnerId"] == "alice"
                assert reply["data"]["reply"]["text"] == "anyone?"

                note = listener.receive_json()
                assert note["type"] == "notification:reply"
                assert note["data"]["messageId"] == reply["data"]["id"]
                assert note["data"]["senderId"] == "bob"


class TestHistoryEndpoints:
    """Tests for the HTTP history, search and room endpoints."""

    @pytest.fixture
    def lobby(self, chat_service):
        return chat_service.resolve_room("lobby")

    def seed(self, chat_service, room, count, sender="alice"):
        return [chat_service.store.append(sender, room.id, f"message {i}") for i in range(count)]

    def test_health(self, api_client):
        assert api_client.get("/health").json() == {"status": "ok"}

    def test_requires_token(self, api_client):
        response = api_client.get("/chat/rooms")
        assert response.status_code == 401
        assert response.json() == {"error": "no token", "kind": "unauthenticated"}

    def test_list_rooms_with_unread(self, api_client, token, chat_service, lobby):
        messages = self.seed(chat_service, lobby, 3)
        chat_service.receipts.mark_read([messages[0].id], "bob")

        response = api_client.get("/chat/rooms", headers=auth(token("bob")))
        assert response.status_code == 200
        rooms = {r["key"]: r for r in response.json()["rooms"]}
        assert rooms["global"]["title"] == "General chat"
        assert rooms["lobby"]["unread"] == 2
        assert rooms["global"]["unread"] == 0

    def test_cursor_pagination(self, api_client, token, chat_service, lobby):
        ids = [m.id for m in self.seed(chat_service, lobby, 5)]
        headers = auth(token("bob"))

        first = api_client.get("/chat/messages", params={"roomId": lobby.id, "limit": 2}, headers=headers).json()
        assert [m["id"] for m in first["messages"]] == ids[3:]
        assert first["hasMore"] is True

        oldest = first["messages"][0]
        second = api_client.get("/chat/messages", params={
            "roomId": lobby.id, "limit": 2, "before": oldest["createdAt"], "beforeId": oldest["id"],
        }, headers=headers).json()
        assert [m["id"] for m in second["messages"]] == ids[1:3]

        oldest = second["messages"][0]
        third = api_client.get("/chat/messages", params={
            "roomId": lobby.id, "limit": 2, "before": oldest["createdAt"], "beforeId": oldest["id"],
        }, headers=headers).json()
        assert [m["id"] for m in third["messages"]] == ids[:1]
        assert third["hasMore"] is False

    def test_before_id_requires_before(self, api_client, token, lobby):
        response = api_client.get(
            "/chat/messages", params={"roomId": lobby.id, "beforeId": new_message_id()},
            headers=auth(token("bob")),
        )
        assert response.status_code == 400
        assert response.json()["kind"] == "validation"

    def test_invalid_limit(self, api_client, token, lobby):
        response = api_client.get(
            "/chat/messages", params={"roomId": lobby.id, "limit": 0}, headers=auth(token("bob"))
        )
        assert response.status_code == 400

    def test_unknown_room(self, api_client, token):
        response = api_client.get("/chat/messages", params={"roomId": "nope"}, headers=auth(token("bob")))
        assert response.status_code == 404
        assert response.json() == {"error": "room not found", "kind": "not_found"}

    def test_search(self, api_client, token, chat_service, lobby):
        chat_service.store.append("alice", lobby.id, "Build is GREEN")
        chat_service.store.append("bob", lobby.id, "build is red")
        chat_service.store.append("bob", lobby.id, "coffee")

        response = api_client.get(
            "/chat/search", params={"roomId": lobby.id, "q": "build", "senderId": "bob"},
            headers=auth(token("carol")),
        )
        assert [m["text"] for m in response.json()["messages"]] == ["build is red"]

    def test_get_message_includes_deleted(self, api_client, token, chat_service, lobby):
        [message] = self.seed(chat_service, lobby, 1)
        chat_service.store.soft_delete(message.id, "alice")

        response = api_client.get(f"/chat/messages/{message.id}", headers=auth(token("bob")))
        assert response.status_code == 200
        assert response.json()["deleted"] is True

        missing = api_client.get(f"/chat/messages/{new_message_id()}", headers=auth(token("bob")))
        assert missing.status_code == 404
        malformed = api_client.get("/chat/messages/zzz", headers=auth(token("bob")))
        assert malformed.status_code == 400


class TestAdminEndpoint:
    """Tests for POST /chat/admin/{action}/{target_id}."""

    def test_moderator_bans_user(self, api_client, token, chat_service):
        chat_service.directory.upsert("alice", "Alice")
        response = api_client.post("/chat/admin/ban/alice", headers=auth(token("mod", role="moderator")))
        assert response.status_code == 200
        assert response.json() == {"ok": True, "userId": "alice"}
        assert chat_service.directory.get("alice").isBanned is True

    def test_plain_user_is_forbidden(self, api_client, token, chat_service):
        chat_service.directory.upsert("alice", "Alice")
        response = api_client.post("/chat/admin/mute/alice", headers=auth(token("bob")))
        assert response.status_code == 403
        assert response.json() == {"error": "insufficient role", "kind": "forbidden"}

    def test_unknown_target(self, api_client, token):
        response = api_client.post("/chat/admin/ban/ghost", headers=auth(token("mod", role="admin")))
        assert response.status_code == 404

    def test_unknown_action(self, api_client, token):
        response = api_client.post("/chat/admin/promote/alice", headers=auth(token("mod", role="admin")))
        assert response.status_code == 400

    def test_demoted_token_is_forbidden(self, api_client, token, chat_service):
        chat_service.directory.upsert("alice", "Alice")
        assert api_client.post("/chat/admin/mute/alice", headers=auth(token("mod", role="moderator"))).status_code == 200

        response = api_client.post("/chat/admin/unmute/alice", headers=auth(token("mod")))
        assert response.status_code == 403
        assert chat_service.directory.get("alice").isMuted is True
