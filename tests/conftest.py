import asyncio
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs

import httpx
import pytest

from rentboard.context import MarketplaceContext
from rentboard.core.dates import encode_dates
from rentboard.core.settings import Settings

DB_HOST = "fake-db.firebaseio.test"
STORAGE_HOST = "storage.test"
IDENTITY_HOST = "identity.test"


def etag_of(value: Any) -> str:
  return hashlib.md5(json.dumps(value, sort_keys=True).encode()).hexdigest()


def get_path(record: Any, path: str) -> Any:
  for part in path.split("/"):
    if not isinstance(record, dict):
      return None
    record = record.get(part)
  return record


class FakeFirebase:
  """In-memory stand-in for the database, storage and identity REST APIs."""

  def __init__(self):
    self.data: Dict[str, Dict[str, Any]] = {}
    self.blobs: Dict[str, bytes] = {}
    self.accounts: Dict[str, Dict[str, Any]] = {}
    self.requests: List[httpx.Request] = []
    self.failures: List[Tuple[str, str, int]] = []
    self.conflicts = 0
    self.interleave: List[Callable[[], None]] = []
    self.gates: List[asyncio.Event] = []
    self.listeners: List[Tuple[str, asyncio.Queue]] = []
    self._counter = 0

  def next_id(self, prefix: str = "-K") -> str:
    self._counter += 1
    return f"{prefix}{self._counter:06d}"

  def seed(self, collection: str, key: str, record: Dict[str, Any]) -> str:
    self.data.setdefault(collection, {})[key] = encode_dates(record)
    return key

  def seed_account(self, email: str, password: str, uid: str, role: str = "tenant", name: str = "Test User"):
    self.accounts[email] = {"localId": uid, "password": password, "displayName": name}
    self.seed("users", uid, {"uid": uid, "email": email, "displayName": name, "role": role})

  def fail(self, method: str, collection: str, status: int = 500):
    self.failures.append((method, collection, status))

  def revoke(self, collection: str):
    for name, queue in self.listeners:
      if name == collection:
        queue.put_nowait(b"event: cancel\ndata: null\n\n")

  def _notify(self, collection: str, path: str, value: Any):
    payload = json.dumps({"path": path, "data": value}).encode()
    for name, queue in self.listeners:
      if name == collection:
        queue.put_nowait(b"event: patch\ndata: " + payload + b"\n\n")

  async def __call__(self, request: httpx.Request) -> httpx.Response:
    self.requests.append(request)
    if request.url.host == DB_HOST:
      if request.method == "GET" and self.gates:
        await self.gates.pop(0).wait()
      return self._database(request)
    if request.url.host == STORAGE_HOST:
      return self._storage(request)
    if request.url.host == IDENTITY_HOST:
      return self._identity(request)
    return httpx.Response(404, text="unknown host")

  def _database(self, request: httpx.Request) -> httpx.Response:
    parts = request.url.path.strip("/")[: -len(".json")].split("/")
    collection, key = parts[0], (parts[1] if len(parts) > 1 else None)
    for index, (method, name, status) in enumerate(self.failures):
      if method == request.method and name == collection:
        self.failures.pop(index)
        return httpx.Response(status, text="simulated failure")
    node = self.data.setdefault(collection, {})
    body = json.loads(request.content) if request.content else None

    if request.method == "GET" and request.headers.get("accept") == "text/event-stream":
      return self._stream(collection)
    if request.method == "GET" and key is None:
      records = dict(node)
      order_by = request.url.params.get("orderBy")
      equal_to = request.url.params.get("equalTo")
      if order_by and equal_to is not None:
        field, expected = json.loads(order_by), json.loads(equal_to)
        records = {k: v for k, v in records.items() if get_path(v, field) == expected}
      return httpx.Response(200, json=records or None)
    if request.method == "GET":
      value = node.get(key)
      headers = {"ETag": etag_of(value)} if request.headers.get("x-firebase-etag") else {}
      return httpx.Response(200, json=value, headers=headers)
    if request.method == "POST":
      new_key = self.next_id()
      node[new_key] = body
      self._notify(collection, f"/{new_key}", body)
      return httpx.Response(200, json={"name": new_key})
    if request.method == "PUT":
      expected = request.headers.get("if-match")
      if expected is not None:
        if self.interleave:
          self.interleave.pop(0)()
        if self.conflicts > 0:
          self.conflicts -= 1
          return httpx.Response(412, json=node.get(key), headers={"ETag": etag_of(node.get(key))})
        if expected != etag_of(node.get(key)):
          return httpx.Response(412, json=node.get(key), headers={"ETag": etag_of(node.get(key))})
      node[key] = body
      self._notify(collection, f"/{key}", body)
      return httpx.Response(200, json=body)
    if request.method == "PATCH":
      current = dict(node.get(key) or {})
      for field, value in (body or {}).items():
        if value is None:
          current.pop(field, None)
        else:
          current[field] = value
      node[key] = current
      self._notify(collection, f"/{key}", body)
      return httpx.Response(200, json=body)
    if request.method == "DELETE":
      node.pop(key, None)
      self._notify(collection, f"/{key}", None)
      return httpx.Response(200, json=None)
    return httpx.Response(405)

  def _stream(self, collection: str) -> httpx.Response:
    queue: asyncio.Queue = asyncio.Queue()
    entry = (collection, queue)
    self.listeners.append(entry)
    initial = json.dumps({"path": "/", "data": self.data.get(collection) or None}).encode()

    async def events():
      try:
        yield b"event: put\ndata: " + initial + b"\n\n"
        while True:
          yield await queue.get()
      finally:
        if entry in self.listeners:
          self.listeners.remove(entry)

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=events())

  def _storage(self, request: httpx.Request) -> httpx.Response:
    if request.method == "POST":
      name = request.url.params["name"]
      self.blobs[name] = request.content
      return httpx.Response(200, json={"name": name, "downloadTokens": self.next_id("tok-")})
    if request.method == "DELETE":
      name = request.url.path.split("/o/", 1)[1]
      if name not in self.blobs:
        return httpx.Response(404, json={"error": {"message": "Not Found"}})
      del self.blobs[name]
      return httpx.Response(204)
    return httpx.Response(405)

  def _session(self, uid: str, email: Optional[str], **extra) -> Dict[str, Any]:
    return {
      "localId": uid,
      "email": email,
      "idToken": f"token-{uid}",
      "refreshToken": f"refresh-{uid}",
      "expiresIn": "3600",
      **extra,
    }

  def _identity(self, request: httpx.Request) -> httpx.Response:
    endpoint = request.url.path.rsplit(":", 1)[-1]
    body = json.loads(request.content)
    if endpoint == "signUp":
      if body["email"] in self.accounts:
        return httpx.Response(400, json={"error": {"message": "EMAIL_EXISTS"}})
      uid = self.next_id("uid-")
      self.accounts[body["email"]] = {"localId": uid, "password": body["password"], "displayName": None}
      return httpx.Response(200, json=self._session(uid, body["email"]))
    if endpoint == "signInWithPassword":
      account = self.accounts.get(body["email"])
      if not account or account["password"] != body["password"]:
        return httpx.Response(400, json={"error": {"message": "INVALID_LOGIN_CREDENTIALS"}})
      return httpx.Response(
        200, json=self._session(account["localId"], body["email"], displayName=account["displayName"] or "")
      )
    if endpoint == "signInWithIdp":
      token = parse_qs(body["postBody"])["id_token"][0]
      uid = f"idp-{token}"
      return httpx.Response(
        200,
        json=self._session(uid, f"{token}@example.com", displayName="Provider User", photoUrl="https://img.test/me.png"),
      )
    if endpoint == "update":
      uid = body["idToken"][len("token-"):]
      for account in self.accounts.values():
        if account["localId"] == uid:
          account["displayName"] = body.get("displayName")
      return httpx.Response(200, json={"localId": uid, "displayName": body.get("displayName")})
    return httpx.Response(404)


class TickingClock:
  """Each call returns a time one second after the previous one."""

  def __init__(self, start: Optional[datetime] = None):
    self.current = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

  def __call__(self) -> datetime:
    self.current += timedelta(seconds=1)
    return self.current


async def eventually(check, timeout: float = 2.0):
  deadline = asyncio.get_running_loop().time() + timeout
  while not check():
    if asyncio.get_running_loop().time() > deadline:
      raise AssertionError("condition not met in time")
    await asyncio.sleep(0.01)


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
def fake() -> FakeFirebase:
  return FakeFirebase()


@pytest.fixture
def settings() -> Settings:
  return Settings(
    firebase_database_url=f"https://{DB_HOST}",
    firebase_api_key="test-key",
    firebase_storage_bucket="bucket",
    firebase_storage_url=f"https://{STORAGE_HOST}/v0",
    firebase_auth_url=f"https://{IDENTITY_HOST}/v1",
    jwt_secret="test-secret",
    page_size=10,
  )


@pytest.fixture
def clock() -> TickingClock:
  return TickingClock()


@pytest.fixture
def http_client(fake) -> httpx.AsyncClient:
  return httpx.AsyncClient(transport=httpx.MockTransport(fake))


@pytest.fixture
def context(http_client, settings, clock) -> MarketplaceContext:
  return MarketplaceContext(http_client, settings, clock=clock)


@pytest.fixture
def wait_until():
  return eventually
