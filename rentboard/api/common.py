from fastapi import HTTPException, status
from pydantic import ValidationError

from ..core.errors import StoreError
from ..stores.base import EntityStore


def ensure_ok(store: EntityStore) -> None:
  """Turn a failure the store swallowed into an HTTP error for the caller."""
  if store.error is None:
    return
  failure = store.failure
  if isinstance(failure, StoreError):
    code = failure.status_code
  elif isinstance(failure, ValidationError):
    code = status.HTTP_422_UNPROCESSABLE_ENTITY
  else:
    code = status.HTTP_502_BAD_GATEWAY
  raise HTTPException(status_code=code, detail=store.error)
