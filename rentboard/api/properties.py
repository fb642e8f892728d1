from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status

from ..context import MarketplaceContext
from ..models.property import PropertyCreate, PropertyFilters, PropertyImage, PropertyOut, PropertyUpdate
from ..core.security import get_context, get_session_context
from .common import ensure_ok

router = APIRouter(prefix="/api/properties", tags=["properties"])


def listing(context: MarketplaceContext) -> dict:
  store = context.properties
  return {"items": store.properties, "hasMore": store.has_more, "filters": store.filters}


async def require_owner(context: MarketplaceContext, property_id: str) -> PropertyOut:
  store = context.properties
  await store.fetch_property_by_id(property_id)
  ensure_ok(store)
  prop = store.selected_property
  if prop.ownerId != context.auth.current_user_id and context.auth.role != "admin":
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You do not own this property.")
  return prop


@router.get("", response_model=dict)
async def list_properties(
  location: Optional[str] = None,
  minPrice: Optional[float] = None,
  maxPrice: Optional[float] = None,
  bedrooms: Optional[int] = None,
  bathrooms: Optional[float] = None,
  propertyType: Optional[str] = None,
  amenities: Optional[List[str]] = Query(None),
  limit: Optional[int] = Query(None, ge=1, le=100),
  context: MarketplaceContext = Depends(get_context),
):
  filters = PropertyFilters(
    location=location,
    minPrice=minPrice,
    maxPrice=maxPrice,
    bedrooms=bedrooms,
    bathrooms=bathrooms,
    propertyType=propertyType,
    amenities=amenities,
  )
  await context.properties.fetch_properties(filters, limit)
  ensure_ok(context.properties)
  return listing(context)


@router.get("/more", response_model=dict)
async def more_properties(context: MarketplaceContext = Depends(get_session_context)):
  await context.properties.fetch_more_properties()
  ensure_ok(context.properties)
  return listing(context)


@router.get("/mine", response_model=list[PropertyOut])
async def my_properties(context: MarketplaceContext = Depends(get_session_context)):
  await context.properties.fetch_owner_properties()
  ensure_ok(context.properties)
  return context.properties.user_properties


@router.get("/{property_id}", response_model=PropertyOut)
async def get_property(property_id: str, context: MarketplaceContext = Depends(get_context)):
  await context.properties.fetch_property_by_id(property_id)
  ensure_ok(context.properties)
  return context.properties.selected_property


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_property(payload: PropertyCreate, context: MarketplaceContext = Depends(get_session_context)):
  context.auth.require_role("owner", "admin")
  property_id = await context.properties.create_property(payload)
  return {"id": property_id}


@router.patch("/{property_id}", response_model=PropertyOut)
async def update_property(
  property_id: str,
  payload: PropertyUpdate,
  context: MarketplaceContext = Depends(get_session_context),
):
  await require_owner(context, property_id)
  await context.properties.update_property(property_id, payload)
  ensure_ok(context.properties)
  await context.properties.fetch_property_by_id(property_id)
  ensure_ok(context.properties)
  return context.properties.selected_property


@router.delete("/{property_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_property(property_id: str, context: MarketplaceContext = Depends(get_session_context)):
  await require_owner(context, property_id)
  await context.properties.delete_property(property_id)
  ensure_ok(context.properties)


@router.post("/{property_id}/images", response_model=PropertyImage, status_code=status.HTTP_201_CREATED)
async def upload_image(
  property_id: str,
  file: UploadFile = File(...),
  isFeatured: bool = Form(False),
  context: MarketplaceContext = Depends(get_session_context),
):
  await require_owner(context, property_id)
  data = await file.read()
  return await context.properties.upload_property_image(
    property_id,
    file.filename or "image",
    data,
    file.content_type or "application/octet-stream",
    is_featured=isFeatured,
  )


@router.delete("/{property_id}/images/{image_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_image(property_id: str, image_id: str, context: MarketplaceContext = Depends(get_session_context)):
  await require_owner(context, property_id)
  await context.properties.delete_property_image(property_id, image_id)
  ensure_ok(context.properties)


@router.post("/{property_id}/images/{image_id}/featured", response_model=PropertyOut)
async def feature_image(property_id: str, image_id: str, context: MarketplaceContext = Depends(get_session_context)):
  await require_owner(context, property_id)
  await context.properties.set_featured_image(property_id, image_id)
  ensure_ok(context.properties)
  return context.properties.selected_property
