from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, field_validator

UserRole = Literal["admin", "owner", "tenant"]


class UserCreate(BaseModel):
  displayName: str
  email: EmailStr
  password: str
  role: UserRole = "tenant"

  @field_validator("password")
  @classmethod
  def password_length(cls, value: str) -> str:
    if len(value) < 8:
      raise ValueError("Password must be at least 8 characters")
    return value


class UserLogin(BaseModel):
  email: EmailStr
  password: str


class IdpLogin(BaseModel):
  providerId: str = "google.com"
  idToken: str
  role: UserRole = "tenant"
  requestUri: str = "http://localhost"


class UserData(BaseModel):
  uid: str
  email: Optional[str] = None
  displayName: Optional[str] = None
  role: UserRole = "tenant"
  createdAt: Optional[datetime] = None
  photoURL: Optional[str] = None


class SessionUser(BaseModel):
  """The identity provider's view of the signed-in user."""

  uid: str
  email: Optional[str] = None
  displayName: Optional[str] = None
  photoURL: Optional[str] = None
  idToken: str
  refreshToken: Optional[str] = None
  expiresAt: Optional[datetime] = None
