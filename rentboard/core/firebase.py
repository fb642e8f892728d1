import asyncio
import copy
import enum
import json
import logging
import operator
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx

from .dates import decode_fields, encode_dates, encode_timestamp
from .errors import ConfigurationError, NotFoundError, RemoteError, StoreError, WriteConflictError
from .settings import Settings

logger = logging.getLogger(__name__)

DATE_FIELDS: Dict[str, Tuple[str, ...]] = {
  "properties": ("createdAt", "updatedAt", "availability.availableFrom", "availability.availableTo"),
  "bookings": ("startDate", "endDate", "createdAt", "updatedAt"),
  "conversations": ("createdAt", "updatedAt", "lastMessage.createdAt"),
  "messages": ("createdAt",),
  "users": ("createdAt",),
}

def _contains_text(actual: Any, expected: Any) -> bool:
  needle = str(expected).strip().lower()
  if isinstance(actual, dict):
    haystack = [value for value in actual.values() if isinstance(value, str)]
  elif isinstance(actual, str):
    haystack = [actual]
  else:
    return False
  return any(needle in value.lower() for value in haystack)


def _contains_all(actual: Any, expected: Any) -> bool:
  if not isinstance(actual, list):
    return False
  names = {
    str(item.get("name") if isinstance(item, dict) else item).strip().lower() for item in actual
  }
  return all(str(name).strip().lower() in names for name in expected)


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
  "==": operator.eq,
  "!=": operator.ne,
  "<": operator.lt,
  "<=": operator.le,
  ">": operator.gt,
  ">=": operator.ge,
  "array-contains": lambda actual, expected: isinstance(actual, list) and expected in actual,
  "contains-text": _contains_text,
  "contains-all": _contains_all,
}


def build_firebase_url(settings: Settings, resource: str, record_id: Optional[str] = None) -> str:
  if not settings.firebase_database_url:
    raise ConfigurationError("Firebase is not configured.")
  base = str(settings.firebase_database_url).rstrip("/")
  return f"{base}/{resource}{f'/{record_id}' if record_id else ''}.json"


def build_params(
  settings: Settings, auth_token: Optional[str] = None, params: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
  merged = dict(params or {})
  token = auth_token or settings.firebase_database_secret
  if token:
    merged["auth"] = token
  return merged


async def firebase_response(
  client: httpx.AsyncClient,
  settings: Settings,
  resource: str,
  method: str = "GET",
  record_id: Optional[str] = None,
  body: Optional[Any] = None,
  params: Optional[Dict[str, Any]] = None,
  headers: Optional[Dict[str, str]] = None,
  auth_token: Optional[str] = None,
  allowed: Sequence[int] = (),
) -> httpx.Response:
  url = build_firebase_url(settings, resource, record_id)
  try:
    response = await client.request(
      method,
      url,
      params=build_params(settings, auth_token, params),
      json=encode_dates(body) if body is not None else None,
      headers=headers,
    )
  except httpx.HTTPError as exc:
    logger.warning("Firebase %s %s failed: %s", method, resource, exc)
    raise RemoteError(f"Firebase request failed: {exc}") from exc
  if response.status_code >= 400 and response.status_code not in allowed:
    logger.warning("Firebase %s %s returned %s", method, resource, response.status_code)
    raise RemoteError(f"Firebase error {response.status_code}: {response.text}", response.status_code)
  return response


async def firebase_request(
  client: httpx.AsyncClient,
  settings: Settings,
  resource: str,
  method: str = "GET",
  record_id: Optional[str] = None,
  body: Optional[Any] = None,
  params: Optional[Dict[str, Any]] = None,
  auth_token: Optional[str] = None,
) -> Tuple[int, Any]:
  response = await firebase_response(
    client, settings, resource, method=method, record_id=record_id, body=body, params=params, auth_token=auth_token
  )
  if response.status_code == 204:
    return response.status_code, None
  data = response.json() if response.text else None
  return response.status_code, data


def get_path(record: Dict[str, Any], path: str) -> Any:
  node: Any = record
  for part in path.split("."):
    if not isinstance(node, dict):
      return None
    node = node.get(part)
  return node


def _ordering(value: Any) -> Tuple[int, Any]:
  # Same precedence as the database's own ordering: null, booleans, numbers, strings, objects.
  if value is None:
    return (0, 0)
  if isinstance(value, bool):
    return (1, int(value))
  if isinstance(value, (int, float)):
    return (2, value)
  if isinstance(value, str):
    return (3, value)
  return (4, json.dumps(value, sort_keys=True, default=str))


@dataclass(frozen=True)
class Predicate:
  field: str
  op: str
  value: Any

  def __post_init__(self):
    if self.op not in OPERATORS:
      raise ValueError(f"Unsupported operator: {self.op}")

  def matches(self, record: Dict[str, Any]) -> bool:
    actual = get_path(record, self.field)
    expected = encode_timestamp(self.value)
    if self.op == "array-contains":
      return OPERATORS[self.op](actual, expected)
    if actual is None and self.op not in ("==", "!="):
      return False
    try:
      return OPERATORS[self.op](actual, expected)
    except TypeError:
      return False


@dataclass(frozen=True)
class Cursor:
  value: Any
  key: str


@dataclass(frozen=True)
class Query:
  collection: str
  predicates: Tuple[Predicate, ...] = ()
  order_by: Optional[str] = "createdAt"
  descending: bool = False
  limit: Optional[int] = None
  start_after: Optional[Cursor] = None

  def where(self, field_path: str, op: str, value: Any) -> "Query":
    return replace(self, predicates=self.predicates + (Predicate(field_path, op, value),))

  def order(self, field_path: Optional[str], descending: bool = False) -> "Query":
    return replace(self, order_by=field_path, descending=descending)

  def take(self, limit: Optional[int]) -> "Query":
    return replace(self, limit=limit)

  def after(self, cursor: Optional[Cursor]) -> "Query":
    return replace(self, start_after=cursor)


@dataclass
class Page:
  records: List[Dict[str, Any]] = field(default_factory=list)
  cursor: Optional[Cursor] = None

  @property
  def has_more(self) -> bool:
    return self.cursor is not None


def map_snapshot(snapshot: Any) -> List[Dict[str, Any]]:
  if not isinstance(snapshot, dict):
    return []
  results = []
  for record_id, raw in snapshot.items():
    if not isinstance(raw, dict):
      continue
    results.append({**raw, "id": record_id})
  return results


def normalize_record(collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
  return decode_fields(record, DATE_FIELDS.get(collection, ()))


def apply_query(query: Query, records: List[Dict[str, Any]]) -> Page:
  """Filter, order and slice raw records the way the query describes."""
  matched = [record for record in records if all(p.matches(record) for p in query.predicates)]

  def sort_key(record: Dict[str, Any]):
    value = get_path(record, query.order_by) if query.order_by else None
    return (_ordering(value), record["id"])

  matched.sort(key=sort_key, reverse=query.descending)
  if query.start_after is not None:
    boundary = (_ordering(query.start_after.value), query.start_after.key)
    if query.descending:
      matched = [record for record in matched if sort_key(record) < boundary]
    else:
      matched = [record for record in matched if sort_key(record) > boundary]
  cursor = None
  if query.limit is not None:
    matched = matched[: query.limit]
    if matched and len(matched) == query.limit:
      last = matched[-1]
      cursor = Cursor(get_path(last, query.order_by) if query.order_by else None, last["id"])
  return Page(records=matched, cursor=cursor)


class SubscriptionState(str, enum.Enum):
  UNSUBSCRIBED = "unsubscribed"
  SUBSCRIBING = "subscribing"
  ACTIVE = "active"


class Subscription:
  """A live query fed by the database's event stream."""

  def __init__(
    self,
    gateway: "FirebaseGateway",
    query: Query,
    on_change: Callable[[List[Dict[str, Any]]], None],
    on_error: Optional[Callable[[StoreError], None]] = None,
  ):
    self.gateway = gateway
    self.query = query
    self.on_change = on_change
    self.on_error = on_error
    self.state = SubscriptionState.UNSUBSCRIBED
    self._task: Optional[asyncio.Task] = None
    self._closed = False

  def start(self) -> "Subscription":
    self.state = SubscriptionState.SUBSCRIBING
    self._task = asyncio.create_task(self._run())
    return self

  def cancel(self) -> None:
    if self._closed:
      return
    self._closed = True
    self.state = SubscriptionState.UNSUBSCRIBED
    if self._task and not self._task.done():
      self._task.cancel()
    logger.debug("Subscription on %s cancelled", self.query.collection)

  async def _run(self) -> None:
    try:
      await self.gateway.stream_events(self.query, self._handle_event)
      if not self._closed:
        raise RemoteError(f"Event stream for {self.query.collection} closed by the server")
    except asyncio.CancelledError:
      raise
    except StoreError as exc:
      self._fail(exc)

  async def _handle_event(self, event: Optional[str], data: str) -> None:
    if self._closed:
      return
    if event in ("put", "patch"):
      page = await self.gateway.query(self.query)
      if self._closed:
        return
      self.state = SubscriptionState.ACTIVE
      self.on_change(page.records)
    elif event in ("cancel", "auth_revoked"):
      raise RemoteError(f"Subscription {event}: {data}")

  def _fail(self, exc: StoreError) -> None:
    if self._closed:
      return
    self._closed = True
    self.state = SubscriptionState.UNSUBSCRIBED
    logger.warning("Subscription on %s failed: %s", self.query.collection, exc.message)
    if self.on_error:
      self.on_error(exc)


class FirebaseGateway:
  """Database, blob storage and identity calls for one session."""

  def __init__(
    self,
    client: httpx.AsyncClient,
    settings: Settings,
    token_provider: Optional[Callable[[], Optional[str]]] = None,
  ):
    self.client = client
    self.settings = settings
    self.token_provider = token_provider or (lambda: None)

  @property
  def auth_token(self) -> Optional[str]:
    return self.token_provider()

  async def _request(self, collection: str, **kwargs) -> Tuple[int, Any]:
    return await firebase_request(self.client, self.settings, collection, auth_token=self.auth_token, **kwargs)

  def _pushdown(self, query: Query) -> Dict[str, str]:
    if not self.settings.firebase_indexed_queries:
      return {}
    for predicate in query.predicates:
      if predicate.op == "==" and isinstance(predicate.value, (str, int, float, bool)):
        return {
          "orderBy": json.dumps(predicate.field.replace(".", "/")),
          "equalTo": json.dumps(predicate.value),
        }
    return {}

  async def query(self, query: Query) -> Page:
    _, snapshot = await self._request(query.collection, params=self._pushdown(query))
    page = apply_query(query, map_snapshot(snapshot))
    page.records = [normalize_record(query.collection, record) for record in page.records]
    return page

  async def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
    _, data = await self._request(collection, record_id=record_id)
    if not isinstance(data, dict):
      return None
    return normalize_record(collection, {**data, "id": record_id})

  async def add(self, collection: str, data: Dict[str, Any]) -> str:
    body = {key: value for key, value in data.items() if key != "id"}
    _, snapshot = await self._request(collection, method="POST", body=body)
    if not isinstance(snapshot, dict) or not snapshot.get("name"):
      raise RemoteError(f"Firebase did not return a key for the new {collection} record")
    return snapshot["name"]

  async def set(self, collection: str, record_id: str, data: Dict[str, Any]) -> None:
    body = {key: value for key, value in data.items() if key != "id"}
    await self._request(collection, method="PUT", record_id=record_id, body=body)

  async def update(self, collection: str, record_id: str, patch: Dict[str, Any]) -> None:
    body = {key: value for key, value in patch.items() if key != "id"}
    await self._request(collection, method="PATCH", record_id=record_id, body=body)

  async def delete(self, collection: str, record_id: str) -> None:
    await self._request(collection, method="DELETE", record_id=record_id)

  async def transact(
    self,
    collection: str,
    record_id: str,
    mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
  ) -> Dict[str, Any]:
    """Read-modify-write guarded by the record's ETag, retried on conflict."""
    for attempt in range(1, self.settings.write_retry_limit + 1):
      response = await firebase_response(
        self.client,
        self.settings,
        collection,
        record_id=record_id,
        headers={"X-Firebase-ETag": "true"},
        auth_token=self.auth_token,
      )
      current = response.json() if response.text else None
      if not isinstance(current, dict):
        raise NotFoundError(f"{collection}/{record_id} not found")
      updated = mutate(copy.deepcopy(current))
      updated.pop("id", None)
      response = await firebase_response(
        self.client,
        self.settings,
        collection,
        method="PUT",
        record_id=record_id,
        body=updated,
        headers={"if-match": response.headers.get("ETag", "")},
        auth_token=self.auth_token,
        allowed=(412,),
      )
      if response.status_code != 412:
        written = response.json() if response.text else updated
        return normalize_record(collection, {**(written or updated), "id": record_id})
      logger.info("Write conflict on %s/%s (attempt %s)", collection, record_id, attempt)
    raise WriteConflictError(f"Could not update {collection}/{record_id}: too many concurrent writes")

  async def stream_events(self, query: Query, handler: Callable[[Optional[str], str], Any]) -> None:
    url = build_firebase_url(self.settings, query.collection)
    params = build_params(self.settings, self.auth_token, self._pushdown(query))
    timeout = httpx.Timeout(self.settings.http_timeout, read=None)
    try:
      async with self.client.stream(
        "GET", url, params=params, headers={"Accept": "text/event-stream"}, timeout=timeout
      ) as response:
        if response.status_code >= 400:
          await response.aread()
          raise RemoteError(f"Firebase error {response.status_code}: {response.text}", response.status_code)
        logger.info("Listening on %s", query.collection)
        event: Optional[str] = None
        async for line in response.aiter_lines():
          if line.startswith("event:"):
            event = line[len("event:"):].strip()
          elif line.startswith("data:"):
            await handler(event, line[len("data:"):].strip())
          elif not line.strip():
            event = None
    except httpx.HTTPError as exc:
      raise RemoteError(f"Firebase stream failed: {exc}") from exc

  def subscribe(
    self,
    query: Query,
    on_change: Callable[[List[Dict[str, Any]]], None],
    on_error: Optional[Callable[[StoreError], None]] = None,
  ) -> Subscription:
    return Subscription(self, query, on_change, on_error).start()

  def _storage_base(self) -> str:
    if not self.settings.storage_configured:
      raise ConfigurationError("Firebase storage is not configured.")
    return f"{self.settings.firebase_storage_url.rstrip('/')}/b/{self.settings.firebase_storage_bucket}/o"

  def _storage_headers(self) -> Dict[str, str]:
    token = self.auth_token
    return {"Authorization": f"Bearer {token}"} if token else {}

  def blob_url(self, key: str, token: str) -> str:
    return f"{self._storage_base()}/{quote(key, safe='')}?alt=media&token={token}"

  async def upload_blob(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
    base = self._storage_base()
    try:
      response = await self.client.post(
        base,
        params={"uploadType": "media", "name": key},
        content=data,
        headers={"Content-Type": content_type, **self._storage_headers()},
      )
    except httpx.HTTPError as exc:
      raise RemoteError(f"Upload failed: {exc}") from exc
    if response.status_code >= 400:
      logger.warning("Upload of %s returned %s", key, response.status_code)
      raise RemoteError(f"Storage error {response.status_code}: {response.text}", response.status_code)
    payload = response.json() if response.text else {}
    token = (payload.get("downloadTokens") or "").split(",")[0]
    return self.blob_url(key, token)

  async def delete_blob(self, key: str) -> None:
    url = f"{self._storage_base()}/{quote(key, safe='')}"
    try:
      response = await self.client.delete(url, headers=self._storage_headers())
    except httpx.HTTPError as exc:
      raise RemoteError(f"Delete failed: {exc}") from exc
    if response.status_code >= 400:
      logger.warning("Delete of %s returned %s", key, response.status_code)
      raise RemoteError(f"Storage error {response.status_code}: {response.text}", response.status_code)

  async def identity_request(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
    if not self.settings.firebase_api_key:
      raise ConfigurationError("Firebase authentication is not configured.")
    url = f"{self.settings.firebase_auth_url.rstrip('/')}/accounts:{endpoint}"
    try:
      response = await self.client.post(url, params={"key": self.settings.firebase_api_key}, json=body)
    except httpx.HTTPError as exc:
      raise RemoteError(f"Authentication request failed: {exc}") from exc
    data = response.json() if response.text else {}
    if response.status_code >= 400:
      detail = (data.get("error") or {}).get("message") if isinstance(data, dict) else None
      raise RemoteError(detail or f"Authentication error {response.status_code}", response.status_code)
    return data
