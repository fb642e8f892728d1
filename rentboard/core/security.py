import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from ..context import MarketplaceContext
from .settings import Settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def session_expiry(settings: Settings) -> datetime:
  return datetime.now(timezone.utc) + timedelta(days=settings.jwt_expire_days)


def create_access_token(data: dict, settings: Settings, expires_at: Optional[datetime] = None) -> str:
  to_encode = data.copy()
  to_encode.update({"exp": expires_at or session_expiry(settings)})
  return jwt.encode(to_encode, settings.jwt_secret, algorithm="HS256")


def get_app_settings(request: Request) -> Settings:
  return request.app.state.settings


def open_session(request: Request, context: MarketplaceContext) -> str:
  """Keep the context alive server-side and hand out a token pointing at it."""
  settings = request.app.state.settings
  context.expires_at = session_expiry(settings)
  request.app.state.sessions[context.id] = context
  claims = {"sub": context.auth.current_user_id, "sid": context.id, "role": context.auth.role}
  return create_access_token(claims, settings, expires_at=context.expires_at)


async def close_session(request: Request, session_id: Optional[str]) -> None:
  context = request.app.state.sessions.pop(session_id, None)
  if context is not None:
    await context.aclose()
    logger.info("Session %s closed", session_id)


async def sweep_sessions(request: Request) -> None:
  now = datetime.now(timezone.utc)
  expired = [
    session_id
    for session_id, context in request.app.state.sessions.items()
    if context.expires_at is not None and context.expires_at <= now
  ]
  for session_id in expired:
    await close_session(request, session_id)


async def get_context(
  request: Request,
  credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> MarketplaceContext:
  settings = get_app_settings(request)
  await sweep_sessions(request)
  if credentials and credentials.scheme.lower() == "bearer":
    try:
      payload = jwt.decode(credentials.credentials, settings.jwt_secret, algorithms=["HS256"])
    except ExpiredSignatureError as exc:
      # Signature is still checked, so only the token holder can end its session.
      claims = jwt.decode(
        credentials.credentials, settings.jwt_secret, algorithms=["HS256"], options={"verify_exp": False}
      )
      await close_session(request, claims.get("sid"))
      raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired") from exc
    except JWTError as exc:
      raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
    context = request.app.state.sessions.get(payload.get("sid"))
    if context is None:
      raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired")
    return context
  return MarketplaceContext(request.app.state.http_client, settings)


async def get_session_context(context: MarketplaceContext = Depends(get_context)) -> MarketplaceContext:
  if not context.auth.current_user_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
  return context
