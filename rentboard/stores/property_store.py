import logging
import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union
from uuid import uuid4

from ..core.errors import NotAuthenticatedError, NotFoundError, StoreError
from ..core.firebase import Cursor, Query
from ..models.property import PropertyCreate, PropertyFilters, PropertyImage, PropertyOut, PropertyUpdate
from .base import FAILURES, EntityStore

if TYPE_CHECKING:
  from .auth_store import AuthStore

logger = logging.getLogger(__name__)

COLLECTION = "properties"


def image_key(property_id: str, image_id: str) -> str:
  return f"properties/{property_id}/{image_id}"


def new_image_id(filename: str) -> str:
  safe_name = re.sub(r"[^A-Za-z0-9._-]+", "_", filename or "image").strip("_") or "image"
  return f"{uuid4().hex}-{safe_name}"


def with_featured(images: List[Dict[str, Any]], featured_id: Optional[str]) -> List[Dict[str, Any]]:
  """Return images with at most one featured entry, the one with ``featured_id``."""
  return [{**image, "isFeatured": featured_id is not None and image.get("id") == featured_id} for image in images]


def single_featured(images: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
  featured = [image.get("id") for image in images if image.get("isFeatured")]
  return with_featured(images, featured[-1] if featured else None)


def build_filter_query(filters: PropertyFilters, page_size: Optional[int]) -> Query:
  query = Query(COLLECTION, order_by="createdAt", descending=True, limit=page_size)
  if filters.minPrice:
    query = query.where("price", ">=", filters.minPrice)
  if filters.maxPrice:
    query = query.where("price", "<=", filters.maxPrice)
  if filters.bedrooms:
    query = query.where("bedrooms", ">=", filters.bedrooms)
  if filters.bathrooms:
    query = query.where("bathrooms", ">=", filters.bathrooms)
  if filters.propertyType:
    query = query.where("propertyType", "==", filters.propertyType)
  if filters.location:
    query = query.where("location", "contains-text", filters.location)
  if filters.amenities:
    query = query.where("amenities", "contains-all", list(filters.amenities))
  return query


class PropertyStore(EntityStore):
  name = "properties"

  def __init__(self, gateway, notifier, auth: "AuthStore", clock=None, page_size: int = 10):
    super().__init__(gateway, notifier, clock)
    self.auth = auth
    self.page_size = page_size
    self.properties: List[PropertyOut] = []
    self.user_properties: List[PropertyOut] = []
    self.selected_property: Optional[PropertyOut] = None
    self.filters = PropertyFilters()
    self.last_visible: Optional[Cursor] = None
    self._active_page_size = page_size

  @property
  def has_more(self) -> bool:
    return self.last_visible is not None

  def set_filters(self, filters: Union[PropertyFilters, Dict[str, Any], None]) -> None:
    self.filters = filters if isinstance(filters, PropertyFilters) else PropertyFilters.model_validate(filters or {})

  def clear_filters(self) -> None:
    self.filters = PropertyFilters()

  async def fetch_properties(
    self, filters: Union[PropertyFilters, Dict[str, Any], None] = None, page_size: Optional[int] = None
  ) -> None:
    generation = self._begin("properties")
    with self._tracked():
      try:
        if filters is not None:
          self.set_filters(filters)
        self._active_page_size = page_size or self.page_size
        page = await self.gateway.query(build_filter_query(self.filters, self._active_page_size))
        results = [PropertyOut.model_validate(record) for record in page.records]
      except FAILURES as exc:
        self._fail(exc)
        return
      if self._is_current("properties", generation):
        self.properties = results
        self.last_visible = page.cursor

  async def fetch_more_properties(self) -> None:
    if self.last_visible is None:
      return
    generation = self._begin("properties")
    with self._tracked():
      try:
        query = build_filter_query(self.filters, self._active_page_size).after(self.last_visible)
        page = await self.gateway.query(query)
        results = [PropertyOut.model_validate(record) for record in page.records]
      except FAILURES as exc:
        self._fail(exc)
        return
      if self._is_current("properties", generation):
        self.properties = self.properties + results
        self.last_visible = page.cursor

  async def _fetch_owned_by(self, owner_id: str, generation: int) -> None:
    query = Query(COLLECTION, order_by="createdAt", descending=True).where("ownerId", "==", owner_id)
    page = await self.gateway.query(query)
    results = [PropertyOut.model_validate(record) for record in page.records]
    if self._is_current("user_properties", generation):
      self.user_properties = results

  async def fetch_user_properties(self, user_id: str) -> None:
    generation = self._begin("user_properties")
    with self._tracked():
      try:
        await self._fetch_owned_by(user_id, generation)
      except FAILURES as exc:
        self._fail(exc)

  async def fetch_owner_properties(self) -> None:
    generation = self._begin("user_properties")
    with self._tracked():
      try:
        owner_id = self.auth.current_user_id
        if not owner_id:
          raise NotAuthenticatedError("You must be logged in to view your properties")
        await self._fetch_owned_by(owner_id, generation)
      except FAILURES as exc:
        self._fail(exc)

  async def fetch_property_by_id(self, property_id: str) -> None:
    generation = self._begin("selected_property")
    with self._tracked():
      try:
        record = await self.gateway.get(COLLECTION, property_id)
        if record is None:
          raise NotFoundError("Property not found")
        prop = PropertyOut.model_validate(record)
      except FAILURES as exc:
        self._fail(exc)
        return
      if self._is_current("selected_property", generation):
        self.selected_property = prop

  async def create_property(self, data: Union[PropertyCreate, Dict[str, Any]]) -> str:
    with self._tracked():
      try:
        owner_id = self.auth.current_user_id
        if not owner_id:
          raise NotAuthenticatedError("You must be logged in to create a property")
        payload = data if isinstance(data, PropertyCreate) else PropertyCreate.model_validate(data)
        now = self.clock()
        body = payload.model_dump(exclude={"ownerId"})
        body["images"] = single_featured(body["images"])
        body.update(ownerId=owner_id, createdAt=now, updatedAt=now)
        property_id = await self.gateway.add(COLLECTION, body)
        await self.fetch_owner_properties()
      except FAILURES as exc:
        self._fail(exc)
        raise
      logger.info("Property %s created by %s", property_id, owner_id)
      self.notifier.success("Property added successfully")
      return property_id

  async def update_property(self, property_id: str, data: Union[PropertyUpdate, Dict[str, Any]]) -> None:
    with self._tracked():
      try:
        payload = data if isinstance(data, PropertyUpdate) else PropertyUpdate.model_validate(data)
        patch = payload.model_dump(exclude_unset=True)
        patch["updatedAt"] = self.clock()
        await self.gateway.update(COLLECTION, property_id, patch)
        await self.fetch_properties()
      except FAILURES as exc:
        self._fail(exc)
        return
      logger.info("Property %s updated", property_id)
      self.notifier.success("Property updated successfully")

  async def delete_property(self, property_id: str) -> None:
    with self._tracked():
      try:
        await self.gateway.delete(COLLECTION, property_id)
        await self.fetch_properties()
      except FAILURES as exc:
        self._fail(exc)
        return
      if self.selected_property and self.selected_property.id == property_id:
        self.selected_property = None
      logger.info("Property %s deleted", property_id)
      self.notifier.success("Property deleted successfully")

  def _replace_selected(self, record: Dict[str, Any]) -> None:
    if self.selected_property and self.selected_property.id == record.get("id"):
      self.selected_property = PropertyOut.model_validate(record)

  async def upload_property_image(
    self,
    property_id: str,
    filename: str,
    data: bytes,
    content_type: str = "application/octet-stream",
    is_featured: bool = False,
  ) -> PropertyImage:
    with self._tracked():
      try:
        image_id = new_image_id(filename)
        key = image_key(property_id, image_id)
        url = await self.gateway.upload_blob(key, data, content_type)
        image = PropertyImage(id=image_id, url=url, isFeatured=is_featured)

        def append_image(current: Dict[str, Any]) -> Dict[str, Any]:
          images = list(current.get("images") or [])
          if is_featured:
            images = with_featured(images, None)
          images.append(image.model_dump())
          current["images"] = images
          current["updatedAt"] = self.clock()
          return current

        try:
          record = await self.gateway.transact(COLLECTION, property_id, append_image)
        except StoreError:
          await self._discard_blob(key)
          raise
        self._replace_selected(record)
      except FAILURES as exc:
        self._fail(exc)
        raise
      logger.info("Image %s added to property %s", image_id, property_id)
      self.notifier.success("Property image uploaded successfully")
      return image

  async def _discard_blob(self, key: str) -> None:
    try:
      await self.gateway.delete_blob(key)
    except StoreError as exc:
      logger.warning("Could not remove orphaned upload %s: %s", key, exc.message)

  async def delete_property_image(self, property_id: str, image_id: str) -> None:
    with self._tracked():
      try:
        await self.gateway.delete_blob(image_key(property_id, image_id))

        def remove_image(current: Dict[str, Any]) -> Dict[str, Any]:
          current["images"] = [img for img in current.get("images") or [] if img.get("id") != image_id]
          current["updatedAt"] = self.clock()
          return current

        record = await self.gateway.transact(COLLECTION, property_id, remove_image)
        self._replace_selected(record)
      except FAILURES as exc:
        self._fail(exc)
        return
      logger.info("Image %s removed from property %s", image_id, property_id)
      self.notifier.success("Property image deleted successfully")

  async def set_featured_image(self, property_id: str, image_id: str) -> None:
    with self._tracked():
      try:

        def feature(current: Dict[str, Any]) -> Dict[str, Any]:
          images = list(current.get("images") or [])
          if not any(img.get("id") == image_id for img in images):
            raise NotFoundError("Image not found")
          current["images"] = with_featured(images, image_id)
          current["updatedAt"] = self.clock()
          return current

        record = await self.gateway.transact(COLLECTION, property_id, feature)
        self._replace_selected(record)
      except FAILURES as exc:
        self._fail(exc)
        return
      self.notifier.success("Featured image updated")
