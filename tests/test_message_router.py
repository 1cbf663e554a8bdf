"""
Tests for frame classification, routing scopes and persistence side effects.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from chatrelay.models.models import RoomType, StoredMessage
from conftest import drain, of_type


class TestChatRouting:

    @pytest.mark.asyncio
    async def test_room_chat_reaches_exactly_room_members(self, relay):
        alice = await relay.connect("alice")
        bob = await relay.connect("bob")
        carol = await relay.connect("carol")
        dave = await relay.connect("dave")
        room_id = await relay.create_room(alice, "general")
        other_room = await relay.create_room(dave, "elsewhere")
        await relay.join(alice, room_id)
        await relay.join(bob, room_id)
        await relay.join(dave, other_room)
        relay.clear(alice, bob, carol, dave)

        await relay.send(alice, message_type="chat", text="hello room")

        assert of_type(drain(alice.outbox), "chat")[0]["room_id"] == room_id
        assert of_type(drain(bob.outbox), "chat")[0]["text"] == "hello room"
        assert drain(carol.outbox) == []
        assert drain(dave.outbox) == []

    @pytest.mark.asyncio
    async def test_room_chat_is_persisted(self, relay):
        alice = await relay.connect("alice")
        room_id = await relay.create_room(alice, "general")
        await relay.join(alice, room_id)

        await relay.send(alice, message_type="chat", text="keep me")

        saved = await relay.store.get_room_messages(room_id, 10)
        assert [(m.sender_name, m.content) for m in saved] == [("alice", "keep me")]

    @pytest.mark.asyncio
    async def test_chat_without_room_reaches_everyone_and_is_not_persisted(self, relay):
        alice = await relay.connect("alice")
        bob = await relay.connect("bob")
        room_id = await relay.create_room(alice, "general")
        await relay.join(alice, room_id)
        relay.clear(alice, bob)

        await relay.send(bob, message_type="chat", text="hi all")

        for session in (alice, bob):
            chat = of_type(drain(session.outbox), "chat")
            assert len(chat) == 1
            assert chat[0]["user"] == "bob"
            assert "room_id" not in chat[0]
        assert relay.store.messages == {}
        assert relay.router.messages_relayed == 1

    @pytest.mark.asyncio
    async def test_server_overwrites_sender_fields(self, relay):
        alice = await relay.connect("alice")
        relay.clear(alice)

        await relay.send(
            alice,
            message_type="chat",
            text="spoof",
            user="mallory",
            avatar="http://evil",
            timestamp="2000-01-01T00:00:00Z",
        )

        chat = of_type(drain(alice.outbox), "chat")[0]
        assert chat["user"] == "alice"
        assert "name=alice" in chat["avatar"]
        assert not chat["timestamp"].startswith("2000")

    @pytest.mark.asyncio
    async def test_save_failure_still_delivers_and_reports(self, make_relay):
        relay = make_relay(fail={"save_message"})
        alice = await relay.connect("alice")
        bob = await relay.connect("bob")
        room_id = await relay.create_room(alice, "general")
        await relay.join(alice, room_id)
        await relay.join(bob, room_id)
        relay.clear(alice, bob)

        await relay.send(alice, message_type="chat", text="volatile")

        assert of_type(drain(bob.outbox), "chat")[0]["text"] == "volatile"
        alice_messages = drain(alice.outbox)
        assert of_type(alice_messages, "chat")
        errors = of_type(alice_messages, "error")
        assert errors and "save_message unavailable" in errors[0]["error"]


class TestTyping:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message_type", ["typing", "stop_typing"])
    async def test_typing_never_reaches_sender(self, relay, message_type):
        alice = await relay.connect("alice")
        bob = await relay.connect("bob")
        relay.clear(alice, bob)

        await relay.send(alice, message_type=message_type)

        assert drain(alice.outbox) == []
        assert of_type(drain(bob.outbox), message_type)[0]["user"] == "alice"

    @pytest.mark.asyncio
    async def test_typing_excludes_sender_even_with_shared_name(self, relay):
        first = await relay.connect("sam")
        second = await relay.connect("sam")
        relay.clear(first, second)

        await relay.send(first, message_type="typing")

        assert drain(first.outbox) == []
        assert len(drain(second.outbox)) == 1


class TestCreateRoom:

    @pytest.mark.asyncio
    async def test_ack_to_sender_and_room_list_to_everyone(self, relay):
        alice = await relay.connect("alice")
        bob = await relay.connect("bob")
        relay.clear(alice, bob)

        await relay.send(alice, message_type="create_room", text=json.dumps({"name": "general"}))

        alice_messages = drain(alice.outbox)
        ack = of_type(alice_messages, "create_room")
        assert len(ack) == 1 and ack[0]["room_id"] > 0
        bob_messages = drain(bob.outbox)
        assert of_type(bob_messages, "create_room") == []
        room_list = of_type(bob_messages, "room_list")[0]
        assert [r["name"] for r in room_list["rooms"]] == ["general"]
        assert room_list["text"] == "alice created a new room: general"

    @pytest.mark.asyncio
    async def test_room_and_admin_membership_are_persisted(self, relay):
        alice = await relay.connect("alice")

        room_id = await relay.create_room(alice, "general", room_type="private")

        stored = relay.store.rooms[room_id]
        assert stored.name == "general"
        assert stored.room_type is RoomType.PRIVATE
        assert relay.store.members[room_id] == {alice.user_id: "admin"}
        assert relay.directory.get_room(room_id).roster == {alice.user_id: "admin"}

    @pytest.mark.asyncio
    async def test_identical_names_yield_distinct_rooms(self, relay):
        alice = await relay.connect("alice")
        bob = await relay.connect("bob")

        first = await relay.create_room(alice, "lobby")
        second = await relay.create_room(bob, "lobby")

        assert first != second
        assert sorted(r.name for r in relay.directory.list_rooms()) == ["lobby", "lobby"]

    @pytest.mark.asyncio
    async def test_creator_stays_outside_the_room(self, relay):
        alice = await relay.connect("alice")

        room_id = await relay.create_room(alice, "general")

        assert alice.room_id is None
        assert relay.directory.members(room_id) == set()

    @pytest.mark.asyncio
    async def test_protected_room_stores_password_hash(self, relay):
        alice = await relay.connect("alice")

        with patch("chatrelay.services.message_router.hash_password", return_value="hashed") as hasher:
            await relay.send(
                alice,
                message_type="create_room",
                text=json.dumps({"name": "vault", "room_type": "protected", "password": "s3cret"}),
            )

        hasher.assert_called_once_with("s3cret")
        room = relay.directory.list_rooms()[0]
        assert room.password_hash == "hashed"
        assert room.info().is_protected is True

    @pytest.mark.asyncio
    async def test_store_failure_keeps_transient_room_and_reports(self, make_relay):
        relay = make_relay(fail={"create_room"})
        alice = await relay.connect("alice")
        relay.clear(alice)

        await relay.send(alice, message_type="create_room", text=json.dumps({"name": "offline"}))

        messages = drain(alice.outbox)
        ack = of_type(messages, "create_room")[0]
        assert ack["room_id"] < 0
        assert of_type(messages, "error")[0]["text"] == "Room was created but not saved"
        assert relay.directory.get_room(ack["room_id"]).name == "offline"

    @pytest.mark.asyncio
    async def test_transient_room_chat_is_not_persisted(self, make_relay):
        relay = make_relay(fail={"create_room"})
        alice = await relay.connect("alice")
        room_id = await relay.create_room(alice, "offline")
        await relay.join(alice, room_id)
        relay.clear(alice)

        await relay.send(alice, message_type="chat", text="hi")

        messages = drain(alice.outbox)
        assert of_type(messages, "chat")
        assert of_type(messages, "error") == []

    @pytest.mark.asyncio
    async def test_unparsable_command_is_dropped(self, relay):
        alice = await relay.connect("alice")
        relay.clear(alice)

        await relay.send(alice, message_type="create_room", text="not json")
        await relay.send(alice, message_type="create_room", text=json.dumps({"name": "  "}))

        assert drain(alice.outbox) == []
        assert relay.directory.list_rooms() == []
        assert relay.router.frames_dropped == 2


class TestJoinRoom:

    @pytest.mark.asyncio
    async def test_history_is_replayed_oldest_first(self, relay):
        alice = await relay.connect("alice")
        room_id = await relay.create_room(alice, "general")
        t1 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        stored = [
            StoredMessage(id=3, room_id=room_id, sender_id=2, sender_name="bob", content="third",
                          created_at=t1 + timedelta(minutes=2)),
            StoredMessage(id=1, room_id=room_id, sender_id=2, sender_name="bob", content="first",
                          created_at=t1),
            StoredMessage(id=2, room_id=room_id, sender_id=3, sender_name="carol", content="second",
                          created_at=t1 + timedelta(minutes=1)),
        ]

        async def newest_first(room, limit):
            return stored

        relay.store.get_room_messages = newest_first
        relay.clear(alice)

        await relay.join(alice, room_id)

        history = of_type(drain(alice.outbox), "chat")
        assert [m["text"] for m in history] == ["first", "second", "third"]
        assert [m["user"] for m in history] == ["bob", "carol", "bob"]
        assert all(m["room_id"] == room_id for m in history)

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, relay):
        relay.router.history_limit = 2
        alice = await relay.connect("alice")
        room_id = await relay.create_room(alice, "general")
        await relay.join(alice, room_id)
        for text in ["a", "b", "c"]:
            await relay.send(alice, message_type="chat", text=text)
        await relay.send(alice, message_type="leave_room")
        relay.clear(alice)

        await relay.join(alice, room_id)

        assert [m["text"] for m in of_type(drain(alice.outbox), "chat")] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_history_arriving_after_leaving_is_discarded(self, relay):
        alice = await relay.connect("alice")
        room_id = await relay.create_room(alice, "general")
        await relay.join(alice, room_id)
        await relay.send(alice, message_type="chat", text="old news")
        relay.clear(alice)

        gate = asyncio.Event()
        stored_history = relay.store.get_room_messages

        async def slow_history(room, limit):
            await gate.wait()
            return await stored_history(room, limit)

        relay.store.get_room_messages = slow_history
        replay = asyncio.create_task(
            relay.router._replay_history(alice, relay.directory.get_room(room_id))
        )
        await asyncio.sleep(0)

        assert await alice.exit_room() == room_id
        gate.set()
        await replay

        assert of_type(drain(alice.outbox), "chat") == []

    @pytest.mark.asyncio
    async def test_join_notice_reaches_room_members_only(self, relay):
        alice = await relay.connect("alice")
        bob = await relay.connect("bob")
        carol = await relay.connect("carol")
        room_id = await relay.create_room(alice, "general")
        await relay.join(alice, room_id)
        relay.clear(alice, bob, carol)

        await relay.join(bob, room_id)

        assert of_type(drain(alice.outbox), "room_joined")[0]["user"] == "bob"
        assert of_type(drain(bob.outbox), "room_joined")[0]["room_id"] == room_id
        assert drain(carol.outbox) == []
        assert relay.store.members[room_id][bob.user_id] == "member"

    @pytest.mark.asyncio
    async def test_room_id_may_be_given_in_text(self, relay):
        alice = await relay.connect("alice")
        room_id = await relay.create_room(alice, "general")

        await relay.send(alice, message_type="join_room", text=json.dumps({"room_id": room_id}))

        assert alice.room_id == room_id

    @pytest.mark.asyncio
    async def test_switching_rooms_is_leave_then_join(self, relay):
        alice = await relay.connect("alice")
        bob = await relay.connect("bob")
        first = await relay.create_room(alice, "first")
        second = await relay.create_room(alice, "second")
        await relay.join(alice, first)
        await relay.join(bob, first)
        relay.clear(alice, bob)

        await relay.join(alice, second)

        assert relay.directory.members(first) == {bob.connection_id}
        assert relay.directory.members(second) == {alice.connection_id}
        left = of_type(drain(bob.outbox), "room_left")
        assert left[0]["room_id"] == first and left[0]["user"] == "alice"
        types = [m["message_type"] for m in drain(alice.outbox)]
        assert types.index("room_left") < types.index("room_joined")

    @pytest.mark.asyncio
    async def test_rejoining_current_room_is_idempotent(self, relay):
        alice = await relay.connect("alice")
        room_id = await relay.create_room(alice, "general")
        await relay.join(alice, room_id)
        relay.clear(alice)

        await relay.join(alice, room_id)

        assert [m["message_type"] for m in drain(alice.outbox)] == ["room_joined"]
        assert relay.directory.members(room_id) == {alice.connection_id}

    @pytest.mark.asyncio
    async def test_unknown_room_reports_error(self, relay):
        alice = await relay.connect("alice")
        relay.clear(alice)

        await relay.join(alice, 404)

        errors = of_type(drain(alice.outbox), "error")
        assert errors[0]["error"] == "Room 404 not found"
        assert alice.room_id is None

    @pytest.mark.asyncio
    async def test_room_created_elsewhere_is_found_in_storage(self, relay):
        alice = await relay.connect("alice")
        creator = await relay.store.create_user("elsewhere")
        room_id = await relay.store.create_room("remote", RoomType.PUBLIC, None, creator)

        await relay.join(alice, room_id)

        assert alice.room_id == room_id
        assert relay.directory.get_room(room_id).name == "remote"

    @pytest.mark.asyncio
    async def test_storage_failures_do_not_block_the_join(self, make_relay):
        relay = make_relay(fail={"join_room", "get_room_messages"})
        alice = await relay.connect("alice")
        room_id = await relay.create_room(alice, "general")
        relay.clear(alice)

        await relay.join(alice, room_id)

        messages = drain(alice.outbox)
        assert alice.room_id == room_id
        assert of_type(messages, "room_joined")
        assert [m["text"] for m in of_type(messages, "error")] == [
            "Joined room but membership was not saved",
            "Failed to load room history",
        ]


class TestLeaveRoom:

    @pytest.mark.asyncio
    async def test_leave_notifies_former_members_including_sender(self, relay):
        alice = await relay.connect("alice")
        bob = await relay.connect("bob")
        carol = await relay.connect("carol")
        room_id = await relay.create_room(alice, "general")
        await relay.join(alice, room_id)
        await relay.join(bob, room_id)
        relay.clear(alice, bob, carol)

        await relay.send(alice, message_type="leave_room")

        assert of_type(drain(alice.outbox), "room_left")[0]["room_id"] == room_id
        assert of_type(drain(bob.outbox), "room_left")[0]["user"] == "alice"
        assert drain(carol.outbox) == []

    @pytest.mark.asyncio
    async def test_leave_outside_room_is_silent(self, relay):
        alice = await relay.connect("alice")
        relay.clear(alice)

        await relay.send(alice, message_type="leave_room")

        assert drain(alice.outbox) == []


class TestMalformedFrames:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text",
        [
            "{not json",
            json.dumps({"text": "no type"}),
            json.dumps({"message_type": "shout", "text": "unknown type"}),
            json.dumps({"message_type": "room_list"}),
            json.dumps({"message_type": "error", "text": "forged"}),
        ],
    )
    async def test_bad_frames_are_dropped_and_session_survives(self, relay, text):
        alice = await relay.connect("alice")
        bob = await relay.connect("bob")
        relay.clear(alice, bob)

        await relay.router.route(alice, text)

        assert drain(alice.outbox) == []
        assert drain(bob.outbox) == []
        assert relay.router.frames_dropped == 1

        await relay.send(alice, message_type="chat", text="still here")
        assert of_type(drain(bob.outbox), "chat")[0]["text"] == "still here"
