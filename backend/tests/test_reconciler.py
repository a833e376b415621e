"""Tests for unread counting and read acknowledgment."""
import pytest

from app.chat.reconciler import UnreadReconciler
from app.store.schemas import ChatType, MessageContent, MessageCreate


@pytest.fixture
def reconciler(store):
    return UnreadReconciler(store)


@pytest.fixture
def group(store, alice, bob, carol):
    return store.create_chat(
        ChatType.GROUP, [alice.id, bob.id, carol.id], name="g", admins=[alice.id]
    )


def send(store, chat, sender, body="hi"):
    return store.create_message(chat.id, sender.id, MessageCreate(content=MessageContent(text=body)))


def test_delivery_counts_everyone_but_sender(store, reconciler, group, alice, bob, carol):
    message = send(store, group, alice)

    recipients = reconciler.on_message_delivered(group, message)

    assert sorted(recipients) == sorted([bob.id, carol.id])
    assert store.get_unread(group.id, alice.id) == 0
    assert store.get_unread(group.id, bob.id) == 1
    assert store.get_unread(group.id, carol.id) == 1


def test_replayed_delivery_is_not_double_counted(store, reconciler, group, alice, bob):
    message = send(store, group, alice)
    reconciler.on_message_delivered(group, message)

    assert reconciler.on_message_delivered(group, message) == []
    assert store.get_unread(group.id, bob.id) == 1


def test_n_messages_give_exactly_n_unread(store, reconciler, group, alice, bob, carol):
    for i in range(4):
        sender = alice if i % 2 else carol
        reconciler.on_message_delivered(group, send(store, group, sender, str(i)))

    assert store.get_unread(group.id, bob.id) == 4
    assert store.get_unread(group.id, alice.id) == 2
    assert store.get_unread(group.id, carol.id) == 2


def test_deleted_message_is_not_counted(store, reconciler, group, alice, bob):
    message = send(store, group, alice)
    deleted = store.soft_delete_message(message.id)

    assert reconciler.on_message_delivered(group, deleted) == []
    assert store.get_unread(group.id, bob.id) == 0


def test_read_resets_only_the_reader(store, reconciler, group, alice, bob, carol):
    for _ in range(3):
        reconciler.on_message_delivered(group, send(store, group, alice))

    added = reconciler.on_read(group, bob.id)

    assert added == 3
    assert store.get_unread(group.id, bob.id) == 0
    assert store.get_unread(group.id, carol.id) == 3
    assert store.get_chat(group.id).lastMessage.isRead is True


def test_read_with_nothing_unread_is_zero(store, reconciler, group, bob):
    assert reconciler.on_read(group, bob.id) == 0
    assert store.get_unread(group.id, bob.id) == 0


def test_soft_deleted_chat_keeps_counting(store, reconciler, group, alice, bob):
    store.delete_for_user(group.id, bob.id)
    reconciler.on_message_delivered(group, send(store, group, alice))
    store.restore_for_user(group.id, bob.id)

    assert store.get_unread(group.id, bob.id) == 1
