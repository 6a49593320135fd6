from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import pytest
from fastapi.websockets import WebSocketState
from sqlalchemy.exc import OperationalError

from app.config import get_settings
from app.core.errors import ForbiddenError, NotFoundError
from app.models import NotificationType, SessionKind, SessionState
from app.schemas import MessageCreate
from app.services import chat as chat_service
from app.services.notifications import emit_notification
from bella.realtime import ConnectionHandle, get_conversation_bus, get_presence_registry

T0 = datetime(2026, 10, 19, 12, 0, 0)


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)


@pytest.fixture()
def room_id(store, make_user):
    make_user("u1")
    make_user("u2")
    make_user("u3")
    with store.transaction():
        room = store.upsert_chat_room("u1", "u2", now=T0)
    return room.room_id


async def _send(store, user_id: str, conversation_id: str, text: str, at: datetime):
    return await chat_service.send_message(
        store, user_id, conversation_id, MessageCreate(content=text), now=at
    )


@pytest.mark.anyio
async def test_partner_receives_messages_in_order(store, room_id):
    socket = DummyWebSocket()
    handle = ConnectionHandle(user_id="u2", websocket=socket)
    await get_presence_registry().attach(handle)

    await _send(store, "u1", room_id, "A", T0 + timedelta(seconds=1))
    await _send(store, "u1", room_id, "B", T0 + timedelta(seconds=2))

    frames = [frame for frame in socket.sent if frame["event"] == "message"]
    assert [frame["data"]["content"] for frame in frames] == ["A", "B"]
    assert all(frame["data"]["conversationId"] == room_id for frame in frames)
    assert all(frame["data"]["isDelivered"] for frame in frames)


@pytest.mark.anyio
async def test_joined_partner_gets_each_message_once(store, room_id):
    socket = DummyWebSocket()
    handle = ConnectionHandle(user_id="u2", websocket=socket)
    await get_presence_registry().attach(handle)
    await get_conversation_bus().join(handle, room_id)

    await _send(store, "u1", room_id, "hello", T0)

    assert [frame["event"] for frame in socket.sent] == ["message"]


@pytest.mark.anyio
async def test_offline_recipient_messages_stay_undelivered(store, room_id):
    message = await _send(store, "u1", room_id, "ping", T0)

    assert message.is_delivered is False
    assert store.unread_count(room_id, "u2") == 1
    assert chat_service.mark_conversation_read(store, "u2", room_id, now=T0) == 1
    assert store.unread_count(room_id, "u2") == 0


@pytest.mark.anyio
async def test_outsiders_cannot_read_or_write(store, room_id):
    with pytest.raises(ForbiddenError):
        await _send(store, "u3", room_id, "hi", T0)
    with pytest.raises(ForbiddenError):
        chat_service.get_messages(store, "u3", room_id, limit=10)
    with pytest.raises(NotFoundError):
        chat_service.get_messages(store, "u1", "missing-room", limit=10)


@pytest.mark.anyio
async def test_session_id_resolves_to_the_pair_room(store, make_user):
    make_user("u1")
    make_user("u2")
    with store.transaction():
        session = store.create_session("u1", "u2", SessionKind.VIDEO, state=SessionState.ACCEPTED, now=T0)

    await _send(store, "u2", session.id, "from the call", T0)

    assert chat_service.resolve_conversation(store, session.id, "u1") == session.room_id
    [message] = chat_service.get_messages(store, "u1", session.room_id, limit=10)
    assert message.content == "from the call"


@pytest.mark.anyio
async def test_clear_and_delete_are_scoped_to_the_sender(store, room_id):
    mine = await _send(store, "u1", room_id, "mine", T0)
    await _send(store, "u2", room_id, "theirs", T0 + timedelta(seconds=1))

    with pytest.raises(ForbiddenError):
        chat_service.delete_message(store, "u2", room_id, mine.id)
    assert chat_service.clear_conversation(store, "u2", room_id) == 1
    assert [m.content for m in chat_service.get_messages(store, "u1", room_id, limit=10)] == ["mine"]

    chat_service.delete_message(store, "u1", room_id, mine.id)
    assert chat_service.get_messages(store, "u1", room_id, limit=10) == []
    with pytest.raises(NotFoundError):
        chat_service.mark_message_read(store, "u2", room_id, mine.id)


@pytest.mark.anyio
async def test_clear_all_removes_both_sides(store, room_id):
    await _send(store, "u1", room_id, "one", T0)
    await _send(store, "u2", room_id, "two", T0)

    assert chat_service.clear_conversation(store, "u1", room_id, all=True) == 2


@pytest.mark.anyio
async def test_conversation_list_shows_last_message_and_unread(store, room_id):
    await _send(store, "u1", room_id, "first", T0)
    await _send(store, "u1", room_id, "second", T0 + timedelta(seconds=1))

    [conversation] = chat_service.list_conversations(store, "u2")

    assert conversation.partner_id == "u1"
    assert conversation.unread_count == 2
    assert conversation.last_message.content == "second"


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------
@pytest.mark.anyio
async def test_duplicate_notification_is_skipped(store, make_user):
    make_user("u1")

    first = await emit_notification(store, "u1", NotificationType.NEW_MATCH, {}, match_id="m1", now=T0)
    second = await emit_notification(store, "u1", NotificationType.NEW_MATCH, {}, match_id="m1", now=T0)

    assert first is not None
    assert second is None
    assert len(store.list_notifications("u1", limit=10)) == 1


@pytest.mark.anyio
async def test_notification_write_is_retried_on_transient_errors(store, make_user, monkeypatch):
    make_user("u1")
    monkeypatch.setattr(get_settings(), "notification_retry_base_delay", 0.0)
    original = store.create_notification
    calls = {"count": 0}

    def flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("INSERT INTO notifications", {}, Exception("database is locked"))
        return original(*args, **kwargs)

    monkeypatch.setattr(store, "create_notification", flaky)

    notification = await emit_notification(
        store, "u1", NotificationType.CALL_REQUEST, {"callId": "s1"}, session_id="s1", now=T0
    )

    assert calls["count"] == 2
    assert notification is not None
    assert notification.type == NotificationType.CALL_REQUEST


@pytest.mark.anyio
async def test_notification_write_gives_up_after_three_retries(store, make_user, monkeypatch):
    make_user("u1")
    settings = get_settings()
    monkeypatch.setattr(settings, "notification_retry_base_delay", 0.0)
    assert settings.notification_write_retries == 3
    calls = {"count": 0}

    def unavailable(*args, **kwargs):
        calls["count"] += 1
        raise OperationalError("INSERT INTO notifications", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "create_notification", unavailable)

    notification = await emit_notification(
        store, "u1", NotificationType.CALL_REQUEST, {"callId": "s1"}, session_id="s1", now=T0
    )

    assert notification is None
    assert calls["count"] == 4


@pytest.mark.anyio
async def test_online_recipient_gets_the_live_frame(store, make_user):
    make_user("u1")
    socket = DummyWebSocket()
    await get_presence_registry().attach(ConnectionHandle(user_id="u1", websocket=socket))

    notification = await emit_notification(
        store, "u1", NotificationType.CALL_REQUEST, {"callId": "s1"}, session_id="s1", now=T0
    )

    assert socket.sent == [
        {
            "event": "call:incoming",
            "data": {"callId": "s1", "notificationId": notification.id, "type": "CALL_REQUEST"},
        }
    ]
