import contextlib
import logging
from datetime import datetime
from typing import Callable, Dict, Iterator, Optional

from pydantic import ValidationError

from ..core.dates import utc_now
from ..core.errors import StoreError
from ..core.firebase import FirebaseGateway
from ..core.notifications import Notifier

logger = logging.getLogger(__name__)

FAILURES = (StoreError, ValidationError)


def error_message(exc: Exception) -> str:
  if isinstance(exc, StoreError):
    return exc.message
  if isinstance(exc, ValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    return first.get("msg") or "Invalid record"
  return str(exc)


class EntityStore:
  """Loading, error and stale-result bookkeeping shared by the stores."""

  name = "store"

  def __init__(
    self,
    gateway: FirebaseGateway,
    notifier: Notifier,
    clock: Optional[Callable[[], datetime]] = None,
  ):
    self.gateway = gateway
    self.notifier = notifier
    self.clock = clock or utc_now
    self.error: Optional[str] = None
    self.failure: Optional[Exception] = None
    self._in_flight = 0
    self._generation = 0
    self._latest: Dict[str, int] = {}

  @property
  def is_loading(self) -> bool:
    return self._in_flight > 0

  def clear_error(self) -> None:
    self.error = None
    self.failure = None

  @contextlib.contextmanager
  def _tracked(self) -> Iterator[None]:
    self._in_flight += 1
    self.error = None
    self.failure = None
    try:
      yield
    finally:
      self._in_flight -= 1

  def _begin(self, slot: str) -> int:
    self._generation += 1
    self._latest[slot] = self._generation
    return self._generation

  def _is_current(self, slot: str, generation: int) -> bool:
    current = self._latest.get(slot) == generation
    if not current:
      logger.debug("%s: dropping stale %s result (generation %s)", self.name, slot, generation)
    return current

  def _fail(self, exc: Exception, notify: bool = True) -> str:
    message = error_message(exc)
    self.error = message
    self.failure = exc
    logger.error("%s: %s", self.name, message)
    if notify:
      self.notifier.error(message)
    return message
