import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from ..core.errors import InvalidTransitionError, NotFoundError
from ..core.firebase import Query
from ..models.booking import BOOKING_TRANSITIONS, BookingCreate, BookingOut, BookingStatus, BookingStatusUpdate
from .base import FAILURES, EntityStore

logger = logging.getLogger(__name__)

COLLECTION = "bookings"
BLOCKING_STATUSES = ("pending", "approved")


def calculate_total_price(start: datetime, end: datetime, price: float, unit: str) -> float:
  days = (end - start).days
  if unit == "day":
    return round(price * days, 2)
  if unit == "week":
    return round(price * days / 7, 2)
  if unit == "month":
    return round(price * days / 30, 2)
  return 0


def unavailable_dates(bookings: Iterable[BookingOut]) -> List[date]:
  """Every calendar day covered by a pending or approved booking, sorted."""
  days = set()
  for booking in bookings:
    if booking.status not in BLOCKING_STATUSES or not booking.startDate or not booking.endDate:
      continue
    current = booking.startDate.date()
    while current <= booking.endDate.date():
      days.add(current)
      current += timedelta(days=1)
  return sorted(days)


def check_transition(current: str, target: str) -> None:
  if target not in BOOKING_TRANSITIONS.get(current, frozenset()):
    raise InvalidTransitionError(f"Cannot change booking status from {current} to {target}")


class BookingStore(EntityStore):
  name = "bookings"

  def __init__(self, gateway, notifier, clock=None, strict_transitions: bool = False):
    super().__init__(gateway, notifier, clock)
    self.strict_transitions = strict_transitions
    self.bookings: List[BookingOut] = []
    self.tenant_bookings: List[BookingOut] = []
    self.owner_bookings: List[BookingOut] = []
    self.property_bookings: List[BookingOut] = []
    self.selected_booking: Optional[BookingOut] = None

  async def _fetch_into(self, slot: str, query: Query) -> None:
    generation = self._begin(slot)
    with self._tracked():
      try:
        page = await self.gateway.query(query)
        results = [BookingOut.model_validate(record) for record in page.records]
      except FAILURES as exc:
        self._fail(exc)
        return
      if self._is_current(slot, generation):
        setattr(self, slot, results)

  def _query(self) -> Query:
    return Query(COLLECTION, order_by="createdAt", descending=True)

  async def fetch_bookings(self) -> None:
    await self._fetch_into("bookings", self._query())

  async def fetch_tenant_bookings(self, tenant_id: str) -> None:
    await self._fetch_into("tenant_bookings", self._query().where("tenantId", "==", tenant_id))

  async def fetch_owner_bookings(self, owner_id: str) -> None:
    await self._fetch_into("owner_bookings", self._query().where("ownerId", "==", owner_id))

  async def fetch_property_bookings(self, property_id: str) -> None:
    await self._fetch_into("property_bookings", self._query().where("propertyId", "==", property_id))

  async def fetch_booking_by_id(self, booking_id: str) -> None:
    generation = self._begin("selected_booking")
    with self._tracked():
      try:
        record = await self.gateway.get(COLLECTION, booking_id)
        if record is None:
          raise NotFoundError("Booking not found")
        booking = BookingOut.model_validate(record)
      except FAILURES as exc:
        self._fail(exc)
        return
      if self._is_current("selected_booking", generation):
        self.selected_booking = booking

  async def create_booking(self, data: Union[BookingCreate, Dict[str, Any]]) -> str:
    with self._tracked():
      try:
        payload = data if isinstance(data, BookingCreate) else BookingCreate.model_validate(data)
        prop = await self.gateway.get("properties", payload.propertyId)
        if prop is None:
          raise NotFoundError("Property not found")
        total = payload.totalPrice
        if total is None:
          total = calculate_total_price(
            payload.startDate, payload.endDate, float(prop.get("price") or 0), prop.get("priceUnit") or "month"
          )
        now = self.clock()
        body = payload.model_dump()
        body.update(
          ownerId=prop.get("ownerId") or "", totalPrice=total, status="pending", createdAt=now, updatedAt=now
        )
        booking_id = await self.gateway.add(COLLECTION, body)
        await self.fetch_bookings()
      except FAILURES as exc:
        self._fail(exc)
        raise
      logger.info("Booking %s requested for property %s", booking_id, payload.propertyId)
      self.notifier.success("Booking request sent")
      return booking_id

  async def update_booking_status(self, booking_id: str, status: BookingStatus) -> None:
    with self._tracked():
      try:
        target = BookingStatusUpdate(status=status).status

        def apply(current: Dict[str, Any]) -> Dict[str, Any]:
          if self.strict_transitions:
            check_transition(current.get("status") or "pending", target)
          current["status"] = target
          current["updatedAt"] = self.clock()
          return current

        try:
          await self.gateway.transact(COLLECTION, booking_id, apply)
        except NotFoundError:
          raise NotFoundError("Booking not found") from None
        if self.selected_booking and self.selected_booking.id == booking_id:
          await self.fetch_booking_by_id(booking_id)
        await self.fetch_bookings()
      except FAILURES as exc:
        self._fail(exc)
        return
      logger.info("Booking %s moved to %s", booking_id, target)
      self.notifier.success(f"Booking {target}")

  async def delete_booking(self, booking_id: str) -> None:
    with self._tracked():
      try:
        await self.gateway.delete(COLLECTION, booking_id)
        await self.fetch_bookings()
      except FAILURES as exc:
        self._fail(exc)
        return
      if self.selected_booking and self.selected_booking.id == booking_id:
        self.selected_booking = None
      logger.info("Booking %s deleted", booking_id)
      self.notifier.success("Booking deleted")
