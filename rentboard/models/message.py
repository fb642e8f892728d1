from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class MessageOut(BaseModel):
  id: str
  conversationId: str = ""
  senderId: str = ""
  receiverId: str = ""
  content: str = ""
  createdAt: Optional[datetime] = None
  read: bool = False


class LastMessage(BaseModel):
  id: str
  content: str = ""
  senderId: str = ""
  createdAt: Optional[datetime] = None


class ConversationOut(BaseModel):
  id: str
  participants: List[str] = Field(default_factory=list)
  participantsKey: Optional[str] = None
  propertyId: Optional[str] = None
  lastMessage: Optional[LastMessage] = None
  unreadCount: int = 0
  createdAt: Optional[datetime] = None
  updatedAt: Optional[datetime] = None


class ConversationCreate(BaseModel):
  participants: List[str]
  propertyId: Optional[str] = None

  @field_validator("participants")
  @classmethod
  def two_participants(cls, value: List[str]) -> List[str]:
    cleaned = [item.strip() for item in value if item and item.strip()]
    if len(set(cleaned)) != 2:
      raise ValueError("A conversation needs exactly two distinct participants")
    return cleaned


class MessageCreate(BaseModel):
  receiverId: str
  content: str

  @field_validator("content")
  @classmethod
  def require_content(cls, value: str) -> str:
    if not value.strip():
      raise ValueError("Message content is required")
    return value.strip()
