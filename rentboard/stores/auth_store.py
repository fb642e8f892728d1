import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from jose import JWTError, jwt

from ..core.errors import NotAuthenticatedError, PermissionDeniedError
from ..models.user import SessionUser, UserCreate, UserData, UserRole
from .base import FAILURES, EntityStore

logger = logging.getLogger(__name__)

USERS = "users"

AuthListener = Callable[[Optional[SessionUser], Optional[UserData]], None]


class AuthStore(EntityStore):
  """Session state backed by the Firebase identity REST API."""

  name = "auth"

  def __init__(self, gateway, notifier, clock=None):
    super().__init__(gateway, notifier, clock)
    self.user: Optional[SessionUser] = None
    self.user_data: Optional[UserData] = None
    self._listeners: List[AuthListener] = []

  @property
  def id_token(self) -> Optional[str]:
    return self.user.idToken if self.user else None

  @property
  def current_user_id(self) -> Optional[str]:
    return self.user.uid if self.user else None

  @property
  def role(self) -> Optional[UserRole]:
    return self.user_data.role if self.user_data else None

  def require_user(self) -> SessionUser:
    if not self.user:
      raise NotAuthenticatedError()
    return self.user

  def require_role(self, *roles: str) -> SessionUser:
    user = self.require_user()
    if self.role not in roles:
      raise PermissionDeniedError(f"This action requires one of the roles: {', '.join(roles)}")
    return user

  def on_auth_state_changed(self, listener: AuthListener) -> Callable[[], None]:
    self._listeners.append(listener)
    listener(self.user, self.user_data)

    def unsubscribe() -> None:
      if listener in self._listeners:
        self._listeners.remove(listener)

    return unsubscribe

  def _set_session(self, user: Optional[SessionUser], user_data: Optional[UserData]) -> None:
    self.user = user
    self.user_data = user_data
    for listener in list(self._listeners):
      listener(user, user_data)

  def _session_from(self, response: Dict[str, Any]) -> SessionUser:
    token = response.get("idToken") or ""
    expires_at = None
    try:
      claims = jwt.get_unverified_claims(token)
      if claims.get("exp"):
        expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    except JWTError:
      pass
    if expires_at is None and response.get("expiresIn"):
      expires_at = self.clock() + timedelta(seconds=int(response["expiresIn"]))
    return SessionUser(
      uid=response["localId"],
      email=response.get("email"),
      displayName=response.get("displayName") or None,
      photoURL=response.get("photoUrl"),
      idToken=token,
      refreshToken=response.get("refreshToken"),
      expiresAt=expires_at,
    )

  async def _load_user_data(self, uid: str) -> Optional[UserData]:
    record = await self.gateway.get(USERS, uid)
    if record is None:
      return None
    record.pop("id", None)
    return UserData.model_validate({**record, "uid": uid})

  async def _save_user_data(self, user_data: UserData) -> None:
    await self.gateway.set(USERS, user_data.uid, user_data.model_dump(exclude_none=True))

  async def sign_up(self, email: str, password: str, role: UserRole, display_name: str) -> Optional[UserData]:
    with self._tracked():
      try:
        payload = UserCreate(email=email, password=password, role=role, displayName=display_name)
        response = await self.gateway.identity_request(
          "signUp", {"email": payload.email, "password": payload.password, "returnSecureToken": True}
        )
        session = self._session_from(response).model_copy(update={"displayName": payload.displayName})
        self.user = session
        await self.gateway.identity_request(
          "update", {"idToken": session.idToken, "displayName": payload.displayName, "returnSecureToken": False}
        )
        user_data = UserData(
          uid=session.uid,
          email=session.email,
          displayName=payload.displayName,
          role=payload.role,
          createdAt=self.clock(),
        )
        await self._save_user_data(user_data)
      except FAILURES as exc:
        self.user = None
        self._fail(exc, notify=False)
        self.notifier.error(self.error or "", title="Registration failed")
        return None
      self._set_session(session, user_data)
      logger.info("User %s registered as %s", session.uid, user_data.role)
      self.notifier.success("Your account has been created successfully", title="Account created")
      return user_data

  async def sign_in(self, email: str, password: str) -> Optional[UserData]:
    with self._tracked():
      try:
        response = await self.gateway.identity_request(
          "signInWithPassword", {"email": email, "password": password, "returnSecureToken": True}
        )
        session = self._session_from(response)
        self.user = session
        user_data = await self._load_user_data(session.uid)
      except FAILURES as exc:
        self.user = None
        self._fail(exc, notify=False)
        self.notifier.error(self.error or "", title="Login failed")
        return None
      self._set_session(session, user_data)
      logger.info("User %s signed in", session.uid)
      self.notifier.success("You have been logged in successfully", title="Welcome back")
      return user_data

  async def sign_in_with_idp(
    self,
    provider_id: str,
    id_token: str,
    role: UserRole = "tenant",
    request_uri: str = "http://localhost",
  ) -> Optional[UserData]:
    with self._tracked():
      try:
        response = await self.gateway.identity_request(
          "signInWithIdp",
          {
            "postBody": f"id_token={id_token}&providerId={provider_id}",
            "requestUri": request_uri,
            "returnSecureToken": True,
            "returnIdpCredential": True,
          },
        )
        session = self._session_from(response)
        self.user = session
        user_data = await self._load_user_data(session.uid)
        created = user_data is None
        if created:
          user_data = UserData(
            uid=session.uid,
            email=session.email,
            displayName=session.displayName,
            photoURL=session.photoURL,
            role=role,
            createdAt=self.clock(),
          )
          await self._save_user_data(user_data)
      except FAILURES as exc:
        self.user = None
        self._fail(exc, notify=False)
        self.notifier.error(self.error or "", title="Provider login failed")
        return None
      self._set_session(session, user_data)
      if created:
        self.notifier.success(f"Your account has been created successfully with {provider_id}", title="Account created")
      else:
        self.notifier.success(f"You have been logged in successfully with {provider_id}", title="Welcome back")
      return user_data

  async def refresh_user_data(self) -> Optional[UserData]:
    if not self.user:
      return None
    with self._tracked():
      try:
        user_data = await self._load_user_data(self.user.uid)
      except FAILURES as exc:
        self._fail(exc)
        return self.user_data
      self._set_session(self.user, user_data)
      return user_data

  def sign_out(self) -> None:
    uid = self.current_user_id
    self._set_session(None, None)
    logger.info("User %s signed out", uid)
    self.notifier.info("You have been logged out successfully", title="Logged out")
