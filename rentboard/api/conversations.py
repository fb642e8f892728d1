from fastapi import APIRouter, Depends, HTTPException, status

from ..context import MarketplaceContext
from ..core.security import get_session_context
from ..models.message import ConversationCreate, ConversationOut, MessageCreate
from .common import ensure_ok

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


async def load_conversation(context: MarketplaceContext, conversation_id: str) -> ConversationOut:
  conversation = await context.messages.select_conversation(conversation_id)
  ensure_ok(context.messages)
  if context.auth.current_user_id not in conversation.participants:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a participant of this conversation.")
  return conversation


@router.get("", response_model=list[ConversationOut])
async def list_conversations(context: MarketplaceContext = Depends(get_session_context)):
  await context.messages.fetch_conversations(context.auth.current_user_id)
  ensure_ok(context.messages)
  return context.messages.conversations


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_conversation(payload: ConversationCreate, context: MarketplaceContext = Depends(get_session_context)):
  if context.auth.current_user_id not in payload.participants:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You must take part in the conversation.")
  conversation_id = await context.messages.create_conversation(payload.participants, payload.propertyId)
  return {"id": conversation_id}


@router.get("/{conversation_id}/messages", response_model=dict)
async def list_messages(conversation_id: str, context: MarketplaceContext = Depends(get_session_context)):
  await load_conversation(context, conversation_id)
  store = context.messages
  if store.active_conversation_id != conversation_id:
    store.fetch_messages(conversation_id)
    await store.wait_for_messages(context.settings.http_timeout)
  ensure_ok(store)
  return {"messages": store.messages, "subscription": store.subscription_state.value}


@router.post("/{conversation_id}/messages", response_model=dict, status_code=status.HTTP_201_CREATED)
async def send_message(
  conversation_id: str,
  payload: MessageCreate,
  context: MarketplaceContext = Depends(get_session_context),
):
  conversation = await load_conversation(context, conversation_id)
  if payload.receiverId not in conversation.participants:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Receiver is not part of this conversation.")
  message_id = await context.messages.send_message(
    conversation_id, context.auth.current_user_id, payload.receiverId, payload.content
  )
  ensure_ok(context.messages)
  return {"id": message_id}


@router.post("/{conversation_id}/read", response_model=dict)
async def mark_read(conversation_id: str, context: MarketplaceContext = Depends(get_session_context)):
  await load_conversation(context, conversation_id)
  updated = await context.messages.mark_messages_as_read(conversation_id, context.auth.current_user_id)
  ensure_ok(context.messages)
  return {"updated": updated}


@router.delete("/{conversation_id}/subscription", status_code=status.HTTP_204_NO_CONTENT)
async def close_conversation(conversation_id: str, context: MarketplaceContext = Depends(get_session_context)):
  if context.messages.active_conversation_id == conversation_id:
    context.messages.cleanup()
