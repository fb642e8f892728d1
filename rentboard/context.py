import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import uuid4

import httpx

from .core.dates import utc_now
from .core.firebase import FirebaseGateway
from .core.notifications import Notifier
from .core.settings import Settings
from .stores.auth_store import AuthStore
from .stores.booking_store import BookingStore
from .stores.message_store import MessageStore
from .stores.property_store import PropertyStore

logger = logging.getLogger(__name__)


class MarketplaceContext:
  """Everything one user session works with, built once per session."""

  def __init__(
    self,
    client: httpx.AsyncClient,
    settings: Settings,
    clock: Optional[Callable[[], datetime]] = None,
    notifier: Optional[Notifier] = None,
  ):
    self.id = uuid4().hex
    self.expires_at: Optional[datetime] = None
    self.settings = settings
    self.clock = clock or utc_now
    self.notifier = notifier or Notifier()
    self.gateway = FirebaseGateway(client, settings, token_provider=lambda: self.auth.id_token)
    self.auth = AuthStore(self.gateway, self.notifier, self.clock)
    self.properties = PropertyStore(
      self.gateway, self.notifier, self.auth, clock=self.clock, page_size=settings.page_size
    )
    self.bookings = BookingStore(
      self.gateway, self.notifier, clock=self.clock, strict_transitions=settings.strict_booking_transitions
    )
    self.messages = MessageStore(self.gateway, self.notifier, self.auth, clock=self.clock)

  async def aclose(self) -> None:
    self.messages.cleanup()
    logger.debug("Context %s closed", self.id)

  async def __aenter__(self) -> "MarketplaceContext":
    return self

  async def __aexit__(self, *exc_info) -> None:
    await self.aclose()
