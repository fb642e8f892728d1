from fastapi import APIRouter, Depends, Request, status

from ..context import MarketplaceContext
from ..core.security import close_session, get_app_settings, get_session_context, open_session
from ..models.user import IdpLogin, UserCreate, UserLogin
from .common import ensure_ok

router = APIRouter(prefix="/api/auth", tags=["auth"])


def new_context(request: Request) -> MarketplaceContext:
  return MarketplaceContext(request.app.state.http_client, get_app_settings(request))


def session_payload(request: Request, context: MarketplaceContext) -> dict:
  token = open_session(request, context)
  user_data = context.auth.user_data
  return {"token": token, "user": user_data.model_dump() if user_data else {"uid": context.auth.current_user_id}}


@router.post("/register", response_model=dict, status_code=status.HTTP_201_CREATED)
async def register(payload: UserCreate, request: Request):
  context = new_context(request)
  await context.auth.sign_up(payload.email, payload.password, payload.role, payload.displayName)
  ensure_ok(context.auth)
  return session_payload(request, context)


@router.post("/login", response_model=dict)
async def login(payload: UserLogin, request: Request):
  context = new_context(request)
  await context.auth.sign_in(payload.email, payload.password)
  ensure_ok(context.auth)
  return session_payload(request, context)


@router.post("/idp", response_model=dict)
async def login_with_provider(payload: IdpLogin, request: Request):
  context = new_context(request)
  await context.auth.sign_in_with_idp(payload.providerId, payload.idToken, payload.role, payload.requestUri)
  ensure_ok(context.auth)
  return session_payload(request, context)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(request: Request, context: MarketplaceContext = Depends(get_session_context)):
  context.auth.sign_out()
  await close_session(request, context.id)


@router.get("/me", response_model=dict)
async def me(context: MarketplaceContext = Depends(get_session_context)):
  user_data = context.auth.user_data
  return {
    "user": user_data.model_dump() if user_data else None,
    "uid": context.auth.current_user_id,
    "role": context.auth.role,
  }
