from typing import Optional


class StoreError(Exception):
  status_code = 500

  def __init__(self, message: str):
    super().__init__(message)
    self.message = message


class ConfigurationError(StoreError):
  status_code = 500


class NotAuthenticatedError(StoreError):
  status_code = 401

  def __init__(self, message: str = "You must be logged in"):
    super().__init__(message)


class PermissionDeniedError(StoreError):
  status_code = 403


class NotFoundError(StoreError):
  status_code = 404


class WriteConflictError(StoreError):
  status_code = 409


class InvalidTransitionError(StoreError):
  status_code = 422


class RemoteError(StoreError):
  """A backend call failed; `remote_status` is the upstream HTTP status when there was one."""

  status_code = 502

  def __init__(self, message: str, remote_status: Optional[int] = None):
    super().__init__(message)
    self.remote_status = remote_status
