import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..core.errors import NotFoundError, StoreError
from ..core.firebase import Query, Subscription, SubscriptionState
from ..models.message import ConversationCreate, ConversationOut, MessageCreate, MessageOut
from .base import FAILURES, EntityStore

if TYPE_CHECKING:
  from .auth_store import AuthStore

logger = logging.getLogger(__name__)

CONVERSATIONS = "conversations"
MESSAGES = "messages"


def participants_key(participants: List[str]) -> str:
  return "|".join(sorted(participants))


class MessageStore(EntityStore):
  """Conversations plus the live feed of the open one (one subscription at a time)."""

  name = "messages"

  def __init__(self, gateway, notifier, auth: Optional["AuthStore"] = None, clock=None):
    super().__init__(gateway, notifier, clock)
    self.auth = auth
    self.conversations: List[ConversationOut] = []
    self.selected_conversation: Optional[ConversationOut] = None
    self.messages: List[MessageOut] = []
    self.active_conversation_id: Optional[str] = None
    self._subscription: Optional[Subscription] = None
    self._awaiting_messages = False
    self._delivered: Optional[asyncio.Event] = None

  @property
  def is_loading(self) -> bool:
    return super().is_loading or self._awaiting_messages

  @property
  def subscription_state(self) -> SubscriptionState:
    if self._subscription is None:
      return SubscriptionState.UNSUBSCRIBED
    return self._subscription.state

  async def fetch_conversations(self, user_id: str) -> None:
    generation = self._begin("conversations")
    with self._tracked():
      try:
        query = Query(CONVERSATIONS, order_by="updatedAt", descending=True).where(
          "participants", "array-contains", user_id
        )
        page = await self.gateway.query(query)
        results = [ConversationOut.model_validate(record) for record in page.records]
      except FAILURES as exc:
        self._fail(exc)
        return
      if self._is_current("conversations", generation):
        self.conversations = results

  async def select_conversation(self, conversation_id: str) -> Optional[ConversationOut]:
    with self._tracked():
      try:
        record = await self.gateway.get(CONVERSATIONS, conversation_id)
        if record is None:
          raise NotFoundError("Conversation not found")
        self.selected_conversation = ConversationOut.model_validate(record)
      except FAILURES as exc:
        self._fail(exc)
        return None
      return self.selected_conversation

  async def _find_existing(self, participants: List[str]) -> Optional[str]:
    key = participants_key(participants)
    page = await self.gateway.query(Query(CONVERSATIONS).where("participantsKey", "==", key))
    if page.records:
      return page.records[0]["id"]
    # Records written before participants were stored sorted have no key.
    page = await self.gateway.query(Query(CONVERSATIONS).where("participants", "array-contains", participants[0]))
    for record in page.records:
      if sorted(record.get("participants") or []) == participants:
        return record["id"]
    return None

  async def create_conversation(self, participants: List[str], property_id: Optional[str] = None) -> str:
    with self._tracked():
      try:
        payload = ConversationCreate(participants=participants, propertyId=property_id)
        ordered = sorted(payload.participants)
        existing = await self._find_existing(ordered)
        if existing:
          return existing
        now = self.clock()
        body: Dict[str, Any] = {
          "participants": ordered,
          "participantsKey": participants_key(ordered),
          "unreadCount": 0,
          "createdAt": now,
          "updatedAt": now,
        }
        if payload.propertyId:
          body["propertyId"] = payload.propertyId
        conversation_id = await self.gateway.add(CONVERSATIONS, body)
        viewer = self.auth.current_user_id if self.auth else None
        await self.fetch_conversations(viewer if viewer in ordered else ordered[0])
      except FAILURES as exc:
        self._fail(exc)
        raise
      logger.info("Conversation %s started between %s", conversation_id, ", ".join(ordered))
      self.notifier.success("Conversation started")
      return conversation_id

  def fetch_messages(self, conversation_id: str) -> None:
    self.cleanup()
    self.error = None
    self.messages = []
    self.active_conversation_id = conversation_id
    self._awaiting_messages = True
    self._delivered = asyncio.Event()
    query = Query(MESSAGES, order_by="createdAt").where("conversationId", "==", conversation_id)
    self._subscription = self.gateway.subscribe(query, self._on_messages, self._on_subscription_error)

  def _on_messages(self, records: List[Dict[str, Any]]) -> None:
    try:
      self.messages = [MessageOut.model_validate(record) for record in records]
    except FAILURES as exc:
      self._fail(exc)
    self._awaiting_messages = False
    if self._delivered:
      self._delivered.set()

  def _on_subscription_error(self, exc: StoreError) -> None:
    self._awaiting_messages = False
    self._fail(exc)
    if self._delivered:
      self._delivered.set()

  async def wait_for_messages(self, timeout: float) -> bool:
    """Wait until the open subscription has delivered once; False on timeout."""
    if self._delivered is None:
      return False
    try:
      await asyncio.wait_for(self._delivered.wait(), timeout)
    except asyncio.TimeoutError:
      return False
    return True

  def cleanup(self) -> None:
    if self._subscription is not None:
      self._subscription.cancel()
      logger.info("Stopped listening to conversation %s", self.active_conversation_id)
    self._subscription = None
    self._awaiting_messages = False
    self._delivered = None
    self.active_conversation_id = None

  async def _require_conversation(self, conversation_id: str) -> None:
    if await self.gateway.get(CONVERSATIONS, conversation_id) is None:
      raise NotFoundError("Conversation not found")

  async def _transact_conversation(self, conversation_id: str, mutate) -> Dict[str, Any]:
    try:
      return await self.gateway.transact(CONVERSATIONS, conversation_id, mutate)
    except NotFoundError:
      raise NotFoundError("Conversation not found") from None

  def _mirror(self, conversation_id: str, record: Dict[str, Any]) -> None:
    updated = ConversationOut.model_validate(record)
    self.conversations = [updated if c.id == conversation_id else c for c in self.conversations]
    if self.selected_conversation and self.selected_conversation.id == conversation_id:
      self.selected_conversation = updated

  async def send_message(
    self, conversation_id: str, sender_id: str, receiver_id: str, content: str
  ) -> Optional[str]:
    with self._tracked():
      try:
        payload = MessageCreate(receiverId=receiver_id, content=content)
        await self._require_conversation(conversation_id)
        now = self.clock()
        message_id = await self.gateway.add(
          MESSAGES,
          {
            "conversationId": conversation_id,
            "senderId": sender_id,
            "receiverId": payload.receiverId,
            "content": payload.content,
            "read": False,
            "createdAt": now,
          },
        )

        def bump(current: Dict[str, Any]) -> Dict[str, Any]:
          current["lastMessage"] = {
            "id": message_id,
            "content": payload.content,
            "senderId": sender_id,
            "createdAt": now,
          }
          current["updatedAt"] = now
          current["unreadCount"] = int(current.get("unreadCount") or 0) + 1
          return current

        record = await self._transact_conversation(conversation_id, bump)
        self._mirror(conversation_id, record)
      except FAILURES as exc:
        self._fail(exc)
        return None
      logger.info("Message %s sent in conversation %s", message_id, conversation_id)
      self.notifier.success("Message sent")
      return message_id

  async def mark_messages_as_read(self, conversation_id: str, user_id: str) -> int:
    with self._tracked():
      try:
        await self._require_conversation(conversation_id)
        query = (
          Query(MESSAGES, order_by="createdAt")
          .where("conversationId", "==", conversation_id)
          .where("receiverId", "==", user_id)
          .where("read", "==", False)
        )
        page = await self.gateway.query(query)
        unread = [record["id"] for record in page.records]
        await asyncio.gather(*(self.gateway.update(MESSAGES, message_id, {"read": True}) for message_id in unread))

        def reset(current: Dict[str, Any]) -> Dict[str, Any]:
          current["unreadCount"] = 0
          return current

        record = await self._transact_conversation(conversation_id, reset)
        self._mirror(conversation_id, record)
      except FAILURES as exc:
        self._fail(exc)
        return 0
      flipped = set(unread)
      self.messages = [m.model_copy(update={"read": True}) if m.id in flipped else m for m in self.messages]
      if unread:
        self.notifier.info(f"{len(unread)} message(s) marked as read")
      return len(unread)
