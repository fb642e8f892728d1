from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from rentboard.context import MarketplaceContext
from rentboard.core.errors import NotFoundError
from rentboard.models.booking import BookingOut
from rentboard.stores.booking_store import calculate_total_price, unavailable_dates

pytestmark = pytest.mark.anyio


def utc(*args):
  return datetime(*args, tzinfo=timezone.utc)


def request_for(property_id="p1", **overrides):
  data = {
    "propertyId": property_id,
    "tenantId": "tenant-1",
    "ownerId": "owner-1",
    "startDate": utc(2026, 3, 1),
    "endDate": utc(2026, 3, 11),
    "message": "Looking forward to it",
  }
  data.update(overrides)
  return data


@pytest.fixture
def listed(fake):
  fake.seed("properties", "p1", {"ownerId": "owner-1", "title": "Loft", "price": 300, "priceUnit": "month"})
  return "p1"


def test_total_price_per_unit():
  start, end = utc(2026, 1, 1), utc(2026, 1, 15)
  assert calculate_total_price(start, end, 10, "day") == 140
  assert calculate_total_price(start, end, 70, "week") == 140
  assert calculate_total_price(start, end, 300, "month") == 140
  assert calculate_total_price(start, end, 100, "year") == 0


def test_unavailable_dates_skip_closed_bookings():
  bookings = [
    BookingOut(id="b1", status="approved", startDate=utc(2026, 2, 1), endDate=utc(2026, 2, 3)),
    BookingOut(id="b2", status="pending", startDate=utc(2026, 2, 3), endDate=utc(2026, 2, 4)),
    BookingOut(id="b3", status="rejected", startDate=utc(2026, 2, 10), endDate=utc(2026, 2, 12)),
  ]
  assert unavailable_dates(bookings) == [date(2026, 2, day) for day in (1, 2, 3, 4)]


async def test_new_bookings_start_pending(context, fake, listed):
  booking_id = await context.bookings.create_booking(request_for(status="approved"))
  stored = fake.data["bookings"][booking_id]
  assert stored["status"] == "pending"
  assert stored["totalPrice"] == 100
  assert [b.id for b in context.bookings.bookings] == [booking_id]
  assert context.notifier.pending()[-1].message == "Booking request sent"


async def test_explicit_total_price_is_kept(context, fake, listed):
  booking_id = await context.bookings.create_booking(request_for(totalPrice=999))
  assert fake.data["bookings"][booking_id]["totalPrice"] == 999


async def test_owner_comes_from_the_listing(context, fake, listed):
  booking_id = await context.bookings.create_booking(request_for(ownerId="tenant-1"))
  assert fake.data["bookings"][booking_id]["ownerId"] == "owner-1"
  await context.bookings.fetch_owner_bookings("owner-1")
  assert [b.id for b in context.bookings.owner_bookings] == [booking_id]


async def test_create_rejects_reversed_dates(context, fake, listed):
  with pytest.raises(ValidationError):
    await context.bookings.create_booking(request_for(startDate=utc(2026, 3, 5), endDate=utc(2026, 3, 1)))
  assert context.bookings.error
  assert "bookings" not in fake.data


async def test_create_for_unknown_property(context):
  with pytest.raises(NotFoundError):
    await context.bookings.create_booking(request_for("nowhere"))
  assert context.bookings.error == "Property not found"


async def test_status_update_advances_updated_at(context, fake, listed):
  store = context.bookings
  booking_id = await store.create_booking(request_for())
  await store.fetch_booking_by_id(booking_id)
  created = store.selected_booking

  await store.update_booking_status(booking_id, "approved")

  assert store.error is None
  assert fake.data["bookings"][booking_id]["status"] == "approved"
  assert store.selected_booking.status == "approved"
  assert store.selected_booking.updatedAt > created.updatedAt
  assert context.notifier.pending()[-1].message == "Booking approved"


async def test_status_update_of_missing_booking_writes_nothing(context, fake):
  await context.bookings.update_booking_status("ghost", "approved")
  assert context.bookings.error == "Booking not found"
  assert "ghost" not in fake.data.get("bookings", {})
  assert not any(r.method in ("PATCH", "PUT") for r in fake.requests)


async def test_unknown_status_is_rejected(context, fake, listed):
  booking_id = await context.bookings.create_booking(request_for())
  await context.bookings.update_booking_status(booking_id, "archived")
  assert context.bookings.error
  assert fake.data["bookings"][booking_id]["status"] == "pending"


async def test_any_transition_allowed_by_default(context, fake, listed):
  store = context.bookings
  booking_id = await store.create_booking(request_for())
  await store.update_booking_status(booking_id, "rejected")
  await store.update_booking_status(booking_id, "approved")
  assert store.error is None
  assert fake.data["bookings"][booking_id]["status"] == "approved"


async def test_strict_transitions(http_client, settings, clock, fake, listed):
  settings.strict_booking_transitions = True
  context = MarketplaceContext(http_client, settings, clock=clock)
  store = context.bookings
  booking_id = await store.create_booking(request_for())

  await store.update_booking_status(booking_id, "rejected")
  await store.update_booking_status(booking_id, "approved")

  assert store.error == "Cannot change booking status from rejected to approved"
  assert store.failure.status_code == 422
  assert fake.data["bookings"][booking_id]["status"] == "rejected"


async def test_strict_transition_is_checked_against_concurrent_writes(http_client, settings, clock, fake, listed):
  settings.strict_booking_transitions = True
  context = MarketplaceContext(http_client, settings, clock=clock)
  store = context.bookings
  booking_id = await store.create_booking(request_for())

  def owner_rejects_first():
    fake.data["bookings"][booking_id]["status"] = "rejected"

  fake.interleave.append(owner_rejects_first)
  await store.update_booking_status(booking_id, "approved")

  assert store.error == "Cannot change booking status from rejected to approved"
  assert fake.data["bookings"][booking_id]["status"] == "rejected"
  assert len([r for r in fake.requests if r.method == "PUT"]) == 1


async def test_role_scoped_fetches(context, fake):
  fake.seed("bookings", "b1", {"propertyId": "p1", "tenantId": "t1", "ownerId": "o1", "status": "pending"})
  fake.seed("bookings", "b2", {"propertyId": "p2", "tenantId": "t2", "ownerId": "o1", "status": "approved"})
  fake.seed("bookings", "b3", {"propertyId": "p1", "tenantId": "t2", "ownerId": "o2", "status": "pending"})
  store = context.bookings

  await store.fetch_tenant_bookings("t2")
  await store.fetch_owner_bookings("o1")
  await store.fetch_property_bookings("p1")

  assert {b.id for b in store.tenant_bookings} == {"b2", "b3"}
  assert {b.id for b in store.owner_bookings} == {"b1", "b2"}
  assert {b.id for b in store.property_bookings} == {"b1", "b3"}
  assert store.bookings == []


async def test_delete_booking(context, fake, listed):
  store = context.bookings
  booking_id = await store.create_booking(request_for())
  await store.fetch_booking_by_id(booking_id)
  await store.delete_booking(booking_id)
  assert booking_id not in fake.data["bookings"]
  assert store.bookings == []
  assert store.selected_booking is None
