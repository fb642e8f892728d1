from datetime import date
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from ..context import MarketplaceContext
from ..core.security import get_context, get_session_context
from ..models.booking import BookingCreate, BookingOut, BookingRequest, BookingStatusUpdate
from ..stores.booking_store import unavailable_dates
from .common import ensure_ok

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


def require_party(context: MarketplaceContext, booking: BookingOut) -> None:
  uid = context.auth.current_user_id
  if uid not in (booking.tenantId, booking.ownerId) and context.auth.role != "admin":
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your booking.")


async def load_booking(context: MarketplaceContext, booking_id: str) -> BookingOut:
  await context.bookings.fetch_booking_by_id(booking_id)
  ensure_ok(context.bookings)
  booking = context.bookings.selected_booking
  require_party(context, booking)
  return booking


@router.get("", response_model=list[BookingOut])
async def list_bookings(context: MarketplaceContext = Depends(get_session_context)):
  context.auth.require_role("admin")
  await context.bookings.fetch_bookings()
  ensure_ok(context.bookings)
  return context.bookings.bookings


@router.get("/tenant/{tenant_id}", response_model=list[BookingOut])
async def tenant_bookings(tenant_id: str, context: MarketplaceContext = Depends(get_session_context)):
  if tenant_id != context.auth.current_user_id:
    context.auth.require_role("admin")
  await context.bookings.fetch_tenant_bookings(tenant_id)
  ensure_ok(context.bookings)
  return context.bookings.tenant_bookings


@router.get("/owner/{owner_id}", response_model=list[BookingOut])
async def owner_bookings(owner_id: str, context: MarketplaceContext = Depends(get_session_context)):
  if owner_id != context.auth.current_user_id:
    context.auth.require_role("admin")
  await context.bookings.fetch_owner_bookings(owner_id)
  ensure_ok(context.bookings)
  return context.bookings.owner_bookings


@router.get("/property/{property_id}", response_model=list[BookingOut])
async def property_bookings(property_id: str, context: MarketplaceContext = Depends(get_session_context)):
  await context.bookings.fetch_property_bookings(property_id)
  ensure_ok(context.bookings)
  return context.bookings.property_bookings


@router.get("/property/{property_id}/unavailable", response_model=List[date])
async def property_unavailable_dates(property_id: str, context: MarketplaceContext = Depends(get_context)):
  await context.bookings.fetch_property_bookings(property_id)
  ensure_ok(context.bookings)
  return unavailable_dates(context.bookings.property_bookings)


@router.get("/{booking_id}", response_model=BookingOut)
async def get_booking(booking_id: str, context: MarketplaceContext = Depends(get_session_context)):
  return await load_booking(context, booking_id)


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_booking(payload: BookingRequest, context: MarketplaceContext = Depends(get_session_context)):
  body = BookingCreate(**payload.model_dump(), tenantId=context.auth.current_user_id)
  booking_id = await context.bookings.create_booking(body)
  return {"id": booking_id}


@router.patch("/{booking_id}/status", response_model=BookingOut)
async def update_status(
  booking_id: str,
  payload: BookingStatusUpdate,
  context: MarketplaceContext = Depends(get_session_context),
):
  await load_booking(context, booking_id)
  await context.bookings.update_booking_status(booking_id, payload.status)
  ensure_ok(context.bookings)
  return context.bookings.selected_booking


@router.delete("/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_booking(booking_id: str, context: MarketplaceContext = Depends(get_session_context)):
  await load_booking(context, booking_id)
  await context.bookings.delete_booking(booking_id)
  ensure_ok(context.bookings)
