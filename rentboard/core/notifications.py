import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, List

from .dates import utc_now

logger = logging.getLogger(__name__)

ROLES = ("success", "error", "info")


@dataclass
class Toast:
  role: str
  title: str
  message: str
  createdAt: datetime = field(default_factory=utc_now)


class Notifier:
  """Transient user-facing messages, the only error channel shown to users."""

  def __init__(self, maxlen: int = 50):
    self._toasts: Deque[Toast] = deque(maxlen=maxlen)

  def notify(self, role: str, message: str, title: str | None = None) -> Toast:
    if role not in ROLES:
      raise ValueError(f"Unknown toast role: {role}")
    toast = Toast(role=role, title=title or role.capitalize(), message=message)
    self._toasts.append(toast)
    return toast

  def success(self, message: str, title: str = "Success") -> Toast:
    return self.notify("success", message, title)

  def error(self, message: str, title: str = "Error") -> Toast:
    return self.notify("error", message, title)

  def info(self, message: str, title: str = "Info") -> Toast:
    return self.notify("info", message, title)

  def pending(self) -> List[Toast]:
    return list(self._toasts)

  def drain(self) -> List[Toast]:
    toasts = list(self._toasts)
    self._toasts.clear()
    return toasts
