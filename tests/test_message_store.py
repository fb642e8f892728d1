import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from rentboard.core.firebase import SubscriptionState

pytestmark = pytest.mark.anyio

BASE = datetime(2025, 12, 1, tzinfo=timezone.utc)


def seed_thread(fake, conversation_id, count, sender="a", receiver="b"):
  fake.seed(
    "conversations",
    conversation_id,
    {"participants": sorted([sender, receiver]), "participantsKey": "|".join(sorted([sender, receiver])), "unreadCount": 0},
  )
  for index in range(count):
    fake.seed(
      "messages",
      f"{conversation_id}-m{index}",
      {
        "conversationId": conversation_id,
        "senderId": sender,
        "receiverId": receiver,
        "content": f"hello {index}",
        "read": False,
        "createdAt": BASE + timedelta(minutes=count - index),
      },
    )


async def test_conversation_is_shared_regardless_of_participant_order(context, fake):
  store = context.messages
  first = await store.create_conversation(["bob", "alice"], property_id="p1")
  second = await store.create_conversation(["alice", "bob"])

  assert first == second
  assert len(fake.data["conversations"]) == 1
  stored = fake.data["conversations"][first]
  assert stored["participants"] == ["alice", "bob"]
  assert stored["participantsKey"] == "alice|bob"
  assert stored["propertyId"] == "p1"
  assert [c.id for c in store.conversations] == [first]


async def test_existing_unsorted_conversation_is_reused(context, fake):
  fake.seed("conversations", "legacy", {"participants": ["zoe", "max"], "unreadCount": 0})
  conversation_id = await context.messages.create_conversation(["max", "zoe"])
  assert conversation_id == "legacy"
  assert list(fake.data["conversations"]) == ["legacy"]


async def test_conversation_needs_two_people(context, fake):
  with pytest.raises(ValidationError):
    await context.messages.create_conversation(["alice", "alice"])
  assert context.messages.error
  assert "conversations" not in fake.data


async def test_conversations_are_ordered_by_last_activity(context, fake):
  fake.seed("conversations", "old", {"participants": ["a", "b"], "updatedAt": BASE})
  fake.seed("conversations", "new", {"participants": ["a", "c"], "updatedAt": BASE + timedelta(days=1)})
  fake.seed("conversations", "other", {"participants": ["b", "c"], "updatedAt": BASE + timedelta(days=2)})
  await context.messages.fetch_conversations("a")
  assert [c.id for c in context.messages.conversations] == ["new", "old"]


async def test_send_updates_conversation_summary(context, fake):
  store = context.messages
  conversation_id = await store.create_conversation(["a", "b"])

  await store.send_message(conversation_id, "a", "b", "Is it still available?")
  message_id = await store.send_message(conversation_id, "a", "b", "  Could I visit on Friday?  ")

  stored = fake.data["conversations"][conversation_id]
  assert stored["unreadCount"] == 2
  assert stored["lastMessage"]["id"] == message_id
  assert stored["lastMessage"]["content"] == "Could I visit on Friday?"
  assert fake.data["messages"][message_id]["read"] is False

  local = store.conversations[0]
  assert local.unreadCount == 2
  assert local.lastMessage.content == "Could I visit on Friday?"
  assert local.updatedAt == local.lastMessage.createdAt


async def test_send_rejects_blank_content(context, fake):
  conversation_id = await context.messages.create_conversation(["a", "b"])
  assert await context.messages.send_message(conversation_id, "a", "b", "   ") is None
  assert context.messages.error
  assert "messages" not in fake.data


async def test_mark_as_read_is_idempotent(context, fake):
  seed_thread(fake, "c1", 3)
  fake.seed(
    "messages", "reply", {"conversationId": "c1", "senderId": "b", "receiverId": "a", "content": "hi", "read": False}
  )
  store = context.messages

  assert await store.mark_messages_as_read("c1", "b") == 3
  assert await store.mark_messages_as_read("c1", "b") == 0

  read = {key: record["read"] for key, record in fake.data["messages"].items()}
  assert read == {"c1-m0": True, "c1-m1": True, "c1-m2": True, "reply": False}
  assert fake.data["conversations"]["c1"]["unreadCount"] == 0
  assert [t.role for t in context.notifier.pending()].count("info") == 1


async def test_message_feed_lifecycle(context, fake, wait_until):
  seed_thread(fake, "c1", 2)
  seed_thread(fake, "c2", 1, sender="c", receiver="d")
  store = context.messages

  store.fetch_messages("c1")
  assert store.subscription_state == SubscriptionState.SUBSCRIBING
  assert store.is_loading
  assert await store.wait_for_messages(2.0)
  assert store.subscription_state == SubscriptionState.ACTIVE
  assert not store.is_loading
  assert [m.id for m in store.messages] == ["c1-m1", "c1-m0"]

  await store.send_message("c1", "b", "a", "Sounds good")
  await wait_until(lambda: len(store.messages) == 3)
  assert store.messages[-1].content == "Sounds good"

  store.fetch_messages("c2")
  assert store.active_conversation_id == "c2"
  assert await store.wait_for_messages(2.0)
  await wait_until(lambda: len(fake.listeners) == 1)
  assert [m.conversationId for m in store.messages] == ["c2"]

  store.cleanup()
  assert store.subscription_state == SubscriptionState.UNSUBSCRIBED
  assert store.active_conversation_id is None
  await wait_until(lambda: not fake.listeners)

  await context.gateway.add("messages", {"conversationId": "c2", "content": "late", "createdAt": BASE})
  await asyncio.sleep(0.05)
  assert [m.conversationId for m in store.messages] == ["c2"]


async def test_revoked_feed_reports_an_error(context, fake, wait_until):
  seed_thread(fake, "c1", 1)
  store = context.messages
  store.fetch_messages("c1")
  assert await store.wait_for_messages(2.0)

  fake.revoke("messages")
  await wait_until(lambda: store.error is not None)

  assert store.subscription_state == SubscriptionState.UNSUBSCRIBED
  assert store.error.startswith("Subscription cancel")
  assert context.notifier.pending()[-1].role == "error"
  store.cleanup()


async def test_closing_the_context_stops_the_feed(context, fake, wait_until):
  seed_thread(fake, "c1", 1)
  context.messages.fetch_messages("c1")
  assert await context.messages.wait_for_messages(2.0)
  await context.aclose()
  assert context.messages.subscription_state == SubscriptionState.UNSUBSCRIBED
  await wait_until(lambda: not fake.listeners)


async def test_send_to_unknown_conversation_writes_nothing(context, fake):
  store = context.messages
  assert await store.send_message("ghost", "a", "b", "Anyone there?") is None
  assert store.error == "Conversation not found"
  assert not fake.data.get("messages")
  assert not fake.data.get("conversations")
  assert context.notifier.pending()[-1].role == "error"


async def test_mark_read_on_unknown_conversation_creates_no_stub(context, fake):
  store = context.messages
  assert await store.mark_messages_as_read("ghost", "b") == 0
  assert store.error == "Conversation not found"
  assert "ghost" not in fake.data.get("conversations", {})
  assert not [r for r in fake.requests if r.method in ("PUT", "PATCH")]


async def test_mark_read_refreshes_local_conversation(context, fake):
  seed_thread(fake, "c1", 2)
  fake.data["conversations"]["c1"]["unreadCount"] = 2
  store = context.messages
  await store.fetch_conversations("b")
  await store.select_conversation("c1")
  assert store.selected_conversation.unreadCount == 2

  assert await store.mark_messages_as_read("c1", "b") == 2
  assert store.conversations[0].unreadCount == 0
  assert store.selected_conversation.unreadCount == 0
  assert fake.data["conversations"]["c1"]["participants"] == ["a", "b"]
