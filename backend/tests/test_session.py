"""Tests for the socket session state machine, driven with fake connections."""
import pytest

from app.chat.manager import PRESENCE_ROOM, chat_room, user_room
from app.chat.session import ConnectionSession, SessionState
from app.store.schemas import ChatType, MessageContent, MessageCreate, UserStatus

from conftest import FakeConnection


def open_session(runtime):
    conn = FakeConnection()
    sid = runtime.manager.register(conn)
    return ConnectionSession(runtime, sid), conn


async def authenticate(session, token, ack_id=1):
    await session.handle({"event": "authenticate", "data": token, "id": ack_id})


def acks(conn):
    return conn.events("ack")


@pytest.fixture
def direct_chat(store, alice, bob):
    return store.create_chat(ChatType.DIRECT, [alice.id, bob.id])


class TestHandshake:
    @pytest.mark.asyncio
    async def test_authenticate_success(self, runtime, store, alice, token_for):
        session, conn = open_session(runtime)

        await authenticate(session, token_for(alice))

        assert session.state is SessionState.AUTHENTICATED
        assert session.user_id == alice.id
        assert runtime.presence.is_online(alice.id)
        assert runtime.manager.is_member(user_room(alice.id), session.socket_id)
        assert runtime.manager.is_member(PRESENCE_ROOM, session.socket_id)
        assert store.find_user_by_id(alice.id).status == UserStatus.ONLINE
        assert acks(conn) == [{"id": 1, "ok": True, "error": None}]

    @pytest.mark.asyncio
    async def test_bad_token_keeps_session_open(self, runtime, alice):
        session, conn = open_session(runtime)

        await authenticate(session, "not-a-jwt")

        assert session.state is SessionState.CONNECTED
        assert not runtime.presence.is_online(alice.id)
        assert acks(conn) == [{"id": 1, "ok": False, "error": "Invalid token"}]

    @pytest.mark.asyncio
    async def test_token_for_unknown_user(self, runtime):
        session, conn = open_session(runtime)

        await authenticate(session, runtime.tokens.issue("ghost"))

        assert session.state is SessionState.CONNECTED
        assert acks(conn)[0]["ok"] is False

    @pytest.mark.asyncio
    async def test_failed_then_successful_authentication(self, runtime, alice, token_for):
        session, _ = open_session(runtime)
        await authenticate(session, "garbage")
        await authenticate(session, token_for(alice), ack_id=2)
        assert session.state is SessionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_reauthenticate_is_ignored(self, runtime, alice, bob, token_for):
        watcher, watcher_conn = open_session(runtime)
        await authenticate(watcher, token_for(bob))
        session, conn = open_session(runtime)
        await authenticate(session, token_for(alice))

        await authenticate(session, token_for(bob), ack_id=2)

        assert session.user_id == alice.id
        assert len(watcher_conn.events("user_status_change")) == 1
        assert acks(conn)[-1] == {"id": 2, "ok": True, "error": None}

    @pytest.mark.asyncio
    async def test_events_before_authentication_are_rejected(self, runtime, direct_chat):
        session, conn = open_session(runtime)

        await session.handle({"event": "join_chat", "data": direct_chat.id, "id": 7})

        assert runtime.manager.get_room_size(chat_room(direct_chat.id)) == 0
        assert acks(conn) == [{"id": 7, "ok": False, "error": "Not authenticated"}]

    @pytest.mark.asyncio
    async def test_malformed_frames_do_not_raise(self, runtime):
        session, conn = open_session(runtime)
        await session.handle("not an object")
        await session.handle({"data": 1})
        await session.handle({"event": "explode", "id": 3})
        assert acks(conn) == [{"id": 3, "ok": False, "error": "Unknown event: explode"}]


class TestStatusBroadcast:
    @pytest.mark.asyncio
    async def test_online_broadcast_once_to_others(self, runtime, alice, bob, token_for):
        watcher, watcher_conn = open_session(runtime)
        await authenticate(watcher, token_for(bob))
        session, conn = open_session(runtime)

        await authenticate(session, token_for(alice))

        assert watcher_conn.events("user_status_change") == [
            {"userId": alice.id, "status": "online"}
        ]
        assert conn.events("user_status_change") == []

    @pytest.mark.asyncio
    async def test_offline_broadcast_on_disconnect(self, runtime, store, alice, bob, token_for):
        watcher, watcher_conn = open_session(runtime)
        await authenticate(watcher, token_for(bob))
        session, _ = open_session(runtime)
        await authenticate(session, token_for(alice))

        await session.close()

        assert session.state is SessionState.DISCONNECTED
        assert not runtime.presence.is_online(alice.id)
        assert store.find_user_by_id(alice.id).status == UserStatus.OFFLINE
        assert watcher_conn.events("user_status_change")[-1] == {
            "userId": alice.id, "status": "offline"
        }

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, runtime, alice, bob, token_for):
        watcher, watcher_conn = open_session(runtime)
        await authenticate(watcher, token_for(bob))
        session, _ = open_session(runtime)
        await authenticate(session, token_for(alice))

        await session.close()
        await session.close()

        offline = [e for e in watcher_conn.events("user_status_change") if e["status"] == "offline"]
        assert len(offline) == 1

    @pytest.mark.asyncio
    async def test_unauthenticated_close_has_no_side_effects(self, runtime, bob, token_for):
        watcher, watcher_conn = open_session(runtime)
        await authenticate(watcher, token_for(bob))
        session, _ = open_session(runtime)

        await session.close()

        assert watcher_conn.events("user_status_change") == []
        assert runtime.manager.get_connection_count() == 1

    @pytest.mark.asyncio
    async def test_second_tab_keeps_user_online(self, runtime, store, alice, bob, token_for):
        watcher, watcher_conn = open_session(runtime)
        await authenticate(watcher, token_for(bob))
        tab1, _ = open_session(runtime)
        tab2, _ = open_session(runtime)
        await authenticate(tab1, token_for(alice))
        await authenticate(tab2, token_for(alice))

        await tab1.close()

        assert runtime.presence.is_online(alice.id)
        assert store.find_user_by_id(alice.id).status == UserStatus.ONLINE
        statuses = [e["status"] for e in watcher_conn.events("user_status_change")]
        assert statuses == ["online", "online"]

        await tab2.close()

        statuses = [e["status"] for e in watcher_conn.events("user_status_change")]
        assert statuses == ["online", "online", "offline"]


class TestRoomsAndMessages:
    @pytest.mark.asyncio
    async def test_join_requires_participation(self, runtime, direct_chat, carol, token_for):
        session, conn = open_session(runtime)
        await authenticate(session, token_for(carol))

        await session.handle({"event": "join_chat", "data": direct_chat.id, "id": 2})

        assert not runtime.manager.is_member(chat_room(direct_chat.id), session.socket_id)
        assert acks(conn)[-1]["ok"] is False

    @pytest.mark.asyncio
    async def test_join_and_leave_are_idempotent(self, runtime, direct_chat, alice, token_for):
        session, _ = open_session(runtime)
        await authenticate(session, token_for(alice))
        room = chat_room(direct_chat.id)

        await session.handle({"event": "join_chat", "data": direct_chat.id})
        await session.handle({"event": "join_chat", "data": {"chatId": direct_chat.id}})
        assert runtime.manager.get_room_members(room) == {session.socket_id}

        await session.handle({"event": "leave_chat", "data": direct_chat.id})
        await session.handle({"event": "leave_chat", "data": direct_chat.id})
        assert runtime.manager.get_room_size(room) == 0

    @pytest.mark.asyncio
    async def test_send_message_reaches_others_not_sender(
        self, runtime, store, direct_chat, alice, bob, token_for
    ):
        sender, sender_conn = open_session(runtime)
        receiver, receiver_conn = open_session(runtime)
        await authenticate(sender, token_for(alice))
        await authenticate(receiver, token_for(bob))
        for s in (sender, receiver):
            await s.handle({"event": "join_chat", "data": direct_chat.id})

        await sender.handle({
            "event": "send_message",
            "data": {"chatId": direct_chat.id, "message": {"text": "hello"}},
            "id": 9,
        })

        delivered = receiver_conn.events("new_message")
        assert len(delivered) == 1
        assert delivered[0]["chatId"] == direct_chat.id
        assert delivered[0]["message"]["content"]["text"] == "hello"
        assert sender_conn.events("new_message") == []
        assert acks(sender_conn)[-1] == {"id": 9, "ok": True, "error": None}
        assert store.get_unread(direct_chat.id, bob.id) == 1
        assert store.get_unread(direct_chat.id, alice.id) == 0

    @pytest.mark.asyncio
    async def test_send_persisted_message_by_id_counts_once(
        self, runtime, store, direct_chat, alice, bob, token_for
    ):
        _, chat_msg = runtime.chats.post_message(
            direct_chat.id, alice.id, MessageCreate(content=MessageContent(text="via rest"))
        )
        sender, _ = open_session(runtime)
        await authenticate(sender, token_for(alice))
        frame = {
            "event": "send_message",
            "data": {"chatId": direct_chat.id, "message": {"id": chat_msg.id}},
        }

        await sender.handle(frame)
        await sender.handle(frame)

        assert store.get_unread(direct_chat.id, bob.id) == 1

    @pytest.mark.asyncio
    async def test_unread_counts_without_joined_room(
        self, runtime, store, direct_chat, alice, bob, token_for
    ):
        sender, _ = open_session(runtime)
        await authenticate(sender, token_for(alice))

        for i in range(3):
            await sender.handle({
                "event": "send_message",
                "data": {"chatId": direct_chat.id, "message": {"text": f"m{i}"}},
            })

        assert store.get_unread(direct_chat.id, bob.id) == 3

    @pytest.mark.asyncio
    async def test_send_to_foreign_chat_is_ignored(
        self, runtime, store, direct_chat, carol, bob, token_for
    ):
        session, conn = open_session(runtime)
        await authenticate(session, token_for(carol))

        await session.handle({
            "event": "send_message",
            "data": {"chatId": direct_chat.id, "message": {"text": "sneaky"}},
            "id": 4,
        })

        assert acks(conn)[-1]["ok"] is False
        assert store.get_unread(direct_chat.id, bob.id) == 0
        assert store.list_messages(direct_chat.id)[0] == []

    @pytest.mark.asyncio
    async def test_typing_broadcast_excludes_sender(
        self, runtime, direct_chat, alice, bob, token_for
    ):
        typist, typist_conn = open_session(runtime)
        other, other_conn = open_session(runtime)
        await authenticate(typist, token_for(alice))
        await authenticate(other, token_for(bob))
        for s in (typist, other):
            await s.handle({"event": "join_chat", "data": direct_chat.id})

        await typist.handle({"event": "typing_start", "data": direct_chat.id})
        await typist.handle({"event": "typing_stop", "data": {"chatId": direct_chat.id}})

        assert other_conn.events("user_typing") == [
            {"chatId": direct_chat.id, "userId": alice.id, "isTyping": True},
            {"chatId": direct_chat.id, "userId": alice.id, "isTyping": False},
        ]
        assert typist_conn.events("user_typing") == []

    @pytest.mark.asyncio
    async def test_typing_in_foreign_chat_is_rejected(
        self, runtime, direct_chat, bob, carol, token_for
    ):
        member, member_conn = open_session(runtime)
        outsider, outsider_conn = open_session(runtime)
        await authenticate(member, token_for(bob))
        await authenticate(outsider, token_for(carol))
        await member.handle({"event": "join_chat", "data": direct_chat.id})

        await outsider.handle({"event": "typing_start", "data": direct_chat.id, "id": 9})

        assert member_conn.events("user_typing") == []
        assert acks(outsider_conn)[-1] == {
            "id": 9, "ok": False, "error": f"Chat not found: {direct_chat.id}"
        }
