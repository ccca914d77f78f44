import json

import pytest

import routers.chat_rooms as chat_rooms

URL = "/api/chat-rooms"


class TestRouting:
    """Action dispatch and error shapes"""

    def test_unknown_get_action_returns_400(self, client):
        response = client.get(f"{URL}?action=nope")
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid action"}

    def test_unknown_post_action_returns_400(self, client):
        response = client.post(f"{URL}?action=nope", json={})
        assert response.status_code == 400

    def test_unsupported_method_returns_405(self, client):
        response = client.put(f"{URL}?action=getRooms")
        assert response.status_code == 405
        assert "error" in response.json()

    def test_invalid_json_body_returns_400(self, client):
        response = client.post(
            f"{URL}?action=createRoom",
            content="not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_unexpected_error_returns_500(self, client, backend, monkeypatch):
        def boom():
            raise RuntimeError("redis went away")
        monkeypatch.setattr(backend, "list_rooms", boom)

        response = client.get(f"{URL}?action=getRooms")
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}


class TestRooms:

    def test_create_room_with_empty_name_returns_400(self, client, fake_redis):
        response = client.post(f"{URL}?action=createRoom", json={"name": ""})
        assert response.status_code == 400
        assert response.json() == {"error": "Room name is required"}
        assert list(fake_redis.scan_iter(match="chat:room:*")) == []

    def test_create_room_returns_201_with_zero_users(self, client):
        response = client.post(f"{URL}?action=createRoom", json={"name": "general"})
        assert response.status_code == 201
        room = response.json()["room"]
        assert room["name"] == "general"
        assert room["userCount"] == 0
        assert len(room["id"]) == 13
        assert isinstance(room["createdAt"], int)

    def test_get_room(self, client, create_room):
        room = create_room("general")
        response = client.get(f"{URL}?action=getRoom&roomId={room['id']}")
        assert response.status_code == 200
        assert response.json() == {"room": room}

    def test_get_room_requires_room_id(self, client):
        response = client.get(f"{URL}?action=getRoom")
        assert response.status_code == 400
        assert response.json() == {"error": "roomId query parameter is required"}

    def test_get_unknown_room_returns_404(self, client):
        response = client.get(f"{URL}?action=getRoom&roomId=missing")
        assert response.status_code == 404
        assert response.json() == {"error": "Room not found"}

    def test_get_rooms_skips_membership_sets(self, client, create_room, create_user):
        room = create_room("general")
        create_user("alice")
        client.post(f"{URL}?action=joinRoom", json={"roomId": room["id"], "username": "alice"})

        response = client.get(f"{URL}?action=getRooms")
        assert response.status_code == 200
        rooms = response.json()["rooms"]
        assert len(rooms) == 1
        assert rooms[0]["id"] == room["id"]
        assert rooms[0]["userCount"] == 1

    def test_get_rooms_empty(self, client):
        response = client.get(f"{URL}?action=getRooms")
        assert response.json() == {"rooms": []}

    def test_delete_room_removes_room_messages_and_members(self, client, fake_redis, create_room, create_user):
        room = create_room("general")
        create_user("alice")
        client.post(f"{URL}?action=joinRoom", json={"roomId": room["id"], "username": "alice"})
        client.post(f"{URL}?action=sendMessage", json={"roomId": room["id"], "username": "alice", "content": "hi"})

        response = client.delete(f"{URL}?action=deleteRoom&roomId={room['id']}")
        assert response.status_code == 200
        assert response.json() == {"success": True}

        assert not fake_redis.exists(f"chat:room:{room['id']}")
        assert not fake_redis.exists(f"chat:messages:{room['id']}")
        assert not fake_redis.exists(f"chat:room:users:{room['id']}")
        assert client.get(f"{URL}?action=getRoom&roomId={room['id']}").status_code == 404
        assert client.get(f"{URL}?action=getMessages&roomId={room['id']}").status_code == 404

    def test_delete_unknown_room_returns_404(self, client):
        response = client.delete(f"{URL}?action=deleteRoom&roomId=missing")
        assert response.status_code == 404

    def test_delete_requires_room_id(self, client):
        response = client.delete(f"{URL}?action=deleteRoom")
        assert response.status_code == 400


class TestUsers:

    def test_create_user(self, client):
        response = client.post(f"{URL}?action=createUser", json={"username": "Alice "})
        assert response.status_code == 201
        user = response.json()["user"]
        assert user["username"] == "alice"
        assert isinstance(user["lastActive"], int)

    def test_create_user_requires_username(self, client):
        response = client.post(f"{URL}?action=createUser", json={})
        assert response.status_code == 400
        assert response.json() == {"error": "Username is required"}

    def test_duplicate_username_returns_409_and_keeps_original(self, client, fake_redis, create_user):
        create_user("alice")
        original = fake_redis.get("chat:users:alice")

        response = client.post(f"{URL}?action=createUser", json={"username": "alice"})
        assert response.status_code == 409
        assert response.json() == {"error": "Username already taken"}
        assert fake_redis.get("chat:users:alice") == original

    def test_user_record_expires(self, fake_redis, create_user):
        create_user("alice")
        assert fake_redis.ttl("chat:users:alice") > 0

    def test_get_users(self, client, create_user):
        create_user("alice")
        create_user("bob")
        response = client.get(f"{URL}?action=getUsers")
        names = sorted(u["username"] for u in response.json()["users"])
        assert names == ["alice", "bob"]


class TestMembership:

    def test_join_unknown_room_returns_404_without_membership_change(self, client, fake_redis, create_user):
        create_user("alice")
        response = client.post(f"{URL}?action=joinRoom", json={"roomId": "missing", "username": "alice"})
        assert response.status_code == 404
        assert response.json() == {"error": "Room not found"}
        assert fake_redis.smembers("chat:room:users:missing") == set()

    def test_join_with_unknown_user_returns_404(self, client, fake_redis, create_room):
        room = create_room("general")
        response = client.post(f"{URL}?action=joinRoom", json={"roomId": room["id"], "username": "ghost"})
        assert response.status_code == 404
        assert response.json() == {"error": "User not found"}
        assert fake_redis.smembers(f"chat:room:users:{room['id']}") == set()

    def test_join_requires_fields(self, client):
        response = client.post(f"{URL}?action=joinRoom", json={"roomId": "abc"})
        assert response.status_code == 400
        assert response.json() == {"error": "Room ID and username are required"}

    def test_join_and_leave_recompute_user_count(self, client, create_room, create_user):
        room = create_room("general")
        create_user("alice")
        create_user("bob")

        for name in ("alice", "bob", "alice"):
            response = client.post(f"{URL}?action=joinRoom", json={"roomId": room["id"], "username": name})
            assert response.json() == {"success": True}
        assert client.get(f"{URL}?action=getRoom&roomId={room['id']}").json()["room"]["userCount"] == 2

        client.post(f"{URL}?action=leaveRoom", json={"roomId": room["id"], "username": "bob"})
        assert client.get(f"{URL}?action=getRoom&roomId={room['id']}").json()["room"]["userCount"] == 1

        users = client.get(f"{URL}?action=getRoomUsers&roomId={room['id']}").json()["users"]
        assert users == ["alice"]

    def test_leave_when_not_member_is_ok(self, client, create_room):
        room = create_room("general")
        response = client.post(f"{URL}?action=leaveRoom", json={"roomId": room["id"], "username": "alice"})
        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_leave_unknown_room_returns_404(self, client):
        response = client.post(f"{URL}?action=leaveRoom", json={"roomId": "missing", "username": "alice"})
        assert response.status_code == 404

    def test_expired_users_are_pruned_from_counts(self, client, fake_redis, create_room, create_user):
        room = create_room("general")
        create_user("alice")
        client.post(f"{URL}?action=joinRoom", json={"roomId": room["id"], "username": "alice"})

        fake_redis.delete("chat:users:alice")

        rooms = client.get(f"{URL}?action=getRooms").json()["rooms"]
        assert rooms[0]["userCount"] == 0
        assert fake_redis.smembers(f"chat:room:users:{room['id']}") == set()

    def test_switch_room(self, client, create_room, create_user):
        first = create_room("first")
        second = create_room("second")
        create_user("alice")
        client.post(f"{URL}?action=joinRoom", json={"roomId": first["id"], "username": "alice"})

        response = client.post(
            f"{URL}?action=switchRoom",
            json={"previousRoomId": first["id"], "nextRoomId": second["id"], "username": "alice"},
        )
        assert response.status_code == 200
        assert client.get(f"{URL}?action=getRoom&roomId={first['id']}").json()["room"]["userCount"] == 0
        assert client.get(f"{URL}?action=getRoom&roomId={second['id']}").json()["room"]["userCount"] == 1

    def test_switch_to_unknown_room_returns_404(self, client, create_user):
        create_user("alice")
        response = client.post(f"{URL}?action=switchRoom", json={"nextRoomId": "missing", "username": "alice"})
        assert response.status_code == 404

    def test_reset_user_counts(self, client, fake_redis, create_room, create_user):
        room = create_room("general")
        create_user("alice")
        client.post(f"{URL}?action=joinRoom", json={"roomId": room["id"], "username": "alice"})

        response = client.post(f"{URL}?action=resetUserCounts", json={"username": "ryo"})
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert not fake_redis.exists(f"chat:room:users:{room['id']}")
        stored = json.loads(fake_redis.get(f"chat:room:{room['id']}"))
        assert stored["userCount"] == 0

    @pytest.mark.parametrize("body", [None, {"username": "alice"}])
    def test_reset_user_counts_requires_admin(self, client, fake_redis, create_room, create_user, body):
        room = create_room("general")
        create_user("alice")
        client.post(f"{URL}?action=joinRoom", json={"roomId": room["id"], "username": "alice"})

        response = client.post(f"{URL}?action=resetUserCounts", json=body)
        assert response.status_code == 403
        assert response.json() == {"error": "Forbidden - Admin access required"}
        assert fake_redis.smembers(f"chat:room:users:{room['id']}") == {"alice"}
        stored = json.loads(fake_redis.get(f"chat:room:{room['id']}"))
        assert stored["userCount"] == 1

    def test_get_room_users_unknown_room_returns_404(self, client):
        response = client.get(f"{URL}?action=getRoomUsers&roomId=missing")
        assert response.status_code == 404
        assert response.json() == {"error": "Room not found"}


class TestMessages:

    @pytest.fixture
    def room(self, create_room, create_user):
        create_user("alice")
        return create_room("general")

    def send(self, client, room_id, content, username="alice"):
        return client.post(
            f"{URL}?action=sendMessage",
            json={"roomId": room_id, "username": username, "content": content},
        )

    def test_send_message_appends_one_entry(self, client, fake_redis, room):
        response = self.send(client, room["id"], "hello")
        assert response.status_code == 201
        message = response.json()["message"]
        assert message["roomId"] == room["id"]
        assert message["username"] == "alice"
        assert message["content"] == "hello"
        assert fake_redis.llen(f"chat:messages:{room['id']}") == 1

        messages = client.get(f"{URL}?action=getMessages&roomId={room['id']}").json()["messages"]
        assert messages == [message]

    def test_message_list_is_capped_at_100(self, client, fake_redis, room):
        for i in range(105):
            assert self.send(client, room["id"], f"message {i}").status_code == 201

        key = f"chat:messages:{room['id']}"
        assert fake_redis.llen(key) == 100
        contents = [json.loads(raw)["content"] for raw in fake_redis.lrange(key, 0, -1)]
        assert contents[0] == "message 104"
        assert contents[-1] == "message 5"

    def test_send_requires_fields(self, client, room):
        response = self.send(client, room["id"], "")
        assert response.status_code == 400
        assert response.json() == {"error": "Room ID, username, and content are required"}

    def test_send_to_unknown_room_returns_404(self, client, room):
        assert self.send(client, "missing", "hello").status_code == 404

    def test_send_from_unknown_user_returns_404(self, client, fake_redis, room):
        response = self.send(client, room["id"], "hello", username="ghost")
        assert response.status_code == 404
        assert response.json() == {"error": "User not found"}
        assert fake_redis.llen(f"chat:messages:{room['id']}") == 0

    def test_message_too_long_returns_400(self, client, room):
        response = self.send(client, room["id"], "x" * 281)
        assert response.status_code == 400

    def test_duplicate_message_rejected(self, client, room):
        assert self.send(client, room["id"], "same").status_code == 201
        response = self.send(client, room["id"], "same")
        assert response.status_code == 400
        assert response.json() == {"error": "Duplicate message detected"}

    def test_send_refreshes_last_active(self, client, fake_redis, room):
        before = json.loads(fake_redis.get("chat:users:alice"))["lastActive"]
        message = self.send(client, room["id"], "hello").json()["message"]
        after = json.loads(fake_redis.get("chat:users:alice"))["lastActive"]
        assert after >= before
        assert after >= message["timestamp"]

    def test_get_messages_unknown_room_returns_404(self, client):
        assert client.get(f"{URL}?action=getMessages&roomId=missing").status_code == 404

    def test_admin_can_delete_message(self, client, fake_redis, room):
        first = self.send(client, room["id"], "keep").json()["message"]
        second = self.send(client, room["id"], "remove").json()["message"]

        response = client.post(
            f"{URL}?action=deleteMessage",
            json={"roomId": room["id"], "messageId": second["id"], "username": "ryo"},
        )
        assert response.status_code == 200
        messages = client.get(f"{URL}?action=getMessages&roomId={room['id']}").json()["messages"]
        assert [m["id"] for m in messages] == [first["id"]]

    def test_non_admin_cannot_delete_message(self, client, room):
        message = self.send(client, room["id"], "hello").json()["message"]
        response = client.post(
            f"{URL}?action=deleteMessage",
            json={"roomId": room["id"], "messageId": message["id"], "username": "alice"},
        )
        assert response.status_code == 403

    def test_delete_unknown_message_returns_404(self, client, room):
        response = client.post(
            f"{URL}?action=deleteMessage",
            json={"roomId": room["id"], "messageId": "nope", "username": "ryo"},
        )
        assert response.status_code == 404
        assert response.json() == {"error": "Message not found"}

    def test_clear_all_messages(self, client, fake_redis, room):
        self.send(client, room["id"], "hello")
        response = client.post(f"{URL}?action=clearAllMessages", json={"username": " Ryo "})
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert not fake_redis.exists(f"chat:messages:{room['id']}")
        assert fake_redis.exists(f"chat:room:{room['id']}")

    @pytest.mark.parametrize("body", [None, {"username": "alice"}])
    def test_clear_all_messages_requires_admin(self, client, fake_redis, room, body):
        self.send(client, room["id"], "hello")
        response = client.post(f"{URL}?action=clearAllMessages", json=body)
        assert response.status_code == 403
        assert response.json() == {"error": "Forbidden - Admin access required"}
        assert fake_redis.llen(f"chat:messages:{room['id']}") == 1


class TestRateLimiting:

    def test_create_user_is_rate_limited(self, client, monkeypatch):
        monkeypatch.setattr(chat_rooms, "RATE_LIMIT_PER_DAY", 2)

        assert client.post(f"{URL}?action=createUser", json={"username": "alice"}).status_code == 201
        assert client.post(f"{URL}?action=createUser", json={"username": "alice"}).status_code == 409
        response = client.post(f"{URL}?action=createUser", json={"username": "alice"})
        assert response.status_code == 429
        assert response.json() == {"error": "Too many requests, please slow down"}

    def test_create_room_limit_is_per_client(self, client, monkeypatch):
        monkeypatch.setattr(chat_rooms, "RATE_LIMIT_PER_DAY", 1)

        first = {"X-Forwarded-For": "10.0.0.1"}
        second = {"X-Forwarded-For": "10.0.0.2"}
        assert client.post(f"{URL}?action=createRoom", json={"name": "a"}, headers=first).status_code == 201
        assert client.post(f"{URL}?action=createRoom", json={"name": "b"}, headers=first).status_code == 429
        assert client.post(f"{URL}?action=createRoom", json={"name": "c"}, headers=second).status_code == 201
