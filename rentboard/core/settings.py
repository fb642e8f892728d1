import functools
from typing import List, Optional

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: Optional[str]) -> List[str]:
  if not value:
    return []
  return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

  port: int = Field(4000, alias="PORT")
  jwt_secret: str = Field("rentboard_dev_secret", alias="JWT_SECRET")
  jwt_expire_days: int = Field(7, alias="JWT_EXPIRE_DAYS")
  client_origin: str = Field("http://localhost:3000", alias="CLIENT_ORIGIN")
  log_level: str = Field("INFO", alias="LOG_LEVEL")

  firebase_database_url: Optional[AnyHttpUrl] = Field(None, alias="FIREBASE_DATABASE_URL")
  firebase_database_secret: Optional[str] = Field(None, alias="FIREBASE_DATABASE_SECRET")
  firebase_api_key: Optional[str] = Field(None, alias="FIREBASE_API_KEY")
  firebase_storage_bucket: Optional[str] = Field(None, alias="FIREBASE_STORAGE_BUCKET")
  firebase_storage_url: str = Field("https://firebasestorage.googleapis.com/v0", alias="FIREBASE_STORAGE_URL")
  firebase_auth_url: str = Field("https://identitytoolkit.googleapis.com/v1", alias="FIREBASE_AUTH_URL")
  firebase_indexed_queries: bool = Field(True, alias="FIREBASE_INDEXED_QUERIES")

  http_timeout: float = Field(15, alias="HTTP_TIMEOUT")
  page_size: int = Field(10, alias="PAGE_SIZE")
  write_retry_limit: int = Field(5, alias="WRITE_RETRY_LIMIT")
  strict_booking_transitions: bool = Field(False, alias="STRICT_BOOKING_TRANSITIONS")

  allowed_origins: List[str] = Field(default_factory=list)

  @field_validator("allowed_origins", mode="before")
  @classmethod
  def fill_origins(cls, value, info):
    if value:
      return value
    client_origin = info.data.get("client_origin") or "http://localhost:3000"
    return _split_csv(client_origin)

  @field_validator("page_size", "write_retry_limit")
  @classmethod
  def at_least_one(cls, value: int) -> int:
    return max(1, int(value))

  @property
  def storage_configured(self) -> bool:
    return bool(self.firebase_storage_bucket)


@functools.lru_cache
def get_settings() -> Settings:
  return Settings()  # type: ignore[arg-type]
