from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

PriceUnit = Literal["day", "week", "month"]


class Coordinates(BaseModel):
  latitude: float
  longitude: float


class PropertyLocation(BaseModel):
  address: str = ""
  city: str = ""
  state: str = ""
  zipCode: str = ""
  country: str = ""
  coordinates: Optional[Coordinates] = None


class Amenity(BaseModel):
  id: str
  name: str
  icon: Optional[str] = None


class PropertyImage(BaseModel):
  id: str
  url: str
  isFeatured: bool = False


class Availability(BaseModel):
  isAvailable: bool = True
  availableFrom: Optional[datetime] = None
  availableTo: Optional[datetime] = None


class PropertyBase(BaseModel):
  title: str = ""
  description: str = ""
  price: float = 0
  priceUnit: PriceUnit = "month"
  bedrooms: int = 0
  bathrooms: float = 0
  squareFeet: float = 0
  propertyType: str = ""
  location: PropertyLocation = Field(default_factory=PropertyLocation)
  amenities: List[Amenity] = Field(default_factory=list)
  images: List[PropertyImage] = Field(default_factory=list)
  availability: Availability = Field(default_factory=Availability)


class PropertyCreate(PropertyBase):
  title: str
  ownerId: Optional[str] = None

  @field_validator("title")
  @classmethod
  def require_title(cls, value: str) -> str:
    if not value.strip():
      raise ValueError("Title is required")
    return value.strip()

  @field_validator("price", "bedrooms", "bathrooms", "squareFeet")
  @classmethod
  def not_negative(cls, value):
    if value < 0:
      raise ValueError("must not be negative")
    return value


class PropertyUpdate(BaseModel):
  title: Optional[str] = None
  description: Optional[str] = None
  price: Optional[float] = None
  priceUnit: Optional[PriceUnit] = None
  bedrooms: Optional[int] = None
  bathrooms: Optional[float] = None
  squareFeet: Optional[float] = None
  propertyType: Optional[str] = None
  location: Optional[PropertyLocation] = None
  amenities: Optional[List[Amenity]] = None
  availability: Optional[Availability] = None


class PropertyOut(PropertyBase):
  id: str
  ownerId: str = ""
  createdAt: Optional[datetime] = None
  updatedAt: Optional[datetime] = None

  @property
  def featured_image(self) -> Optional[PropertyImage]:
    return next((image for image in self.images if image.isFeatured), None)


class PropertyFilters(BaseModel):
  location: Optional[str] = None
  minPrice: Optional[float] = None
  maxPrice: Optional[float] = None
  bedrooms: Optional[int] = None
  bathrooms: Optional[float] = None
  propertyType: Optional[str] = None
  amenities: Optional[List[str]] = None

  @model_validator(mode="after")
  def check_price_range(self):
    if self.minPrice is not None and self.maxPrice is not None and self.minPrice > self.maxPrice:
      raise ValueError("minPrice must not exceed maxPrice")
    return self
