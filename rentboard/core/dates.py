from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
  return datetime.now(timezone.utc)


def decode_timestamp(value: Any) -> Optional[datetime]:
  """Epoch ms, ISO strings, seconds/nanoseconds maps or datetimes to aware UTC; else None."""
  if value is None or isinstance(value, bool):
    return None
  if isinstance(value, datetime):
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
  if isinstance(value, date):
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
  if isinstance(value, (int, float)):
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
  if isinstance(value, dict) and "seconds" in value:
    seconds = float(value.get("seconds") or 0)
    nanos = float(value.get("nanoseconds") or value.get("nanos") or 0)
    return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
  if isinstance(value, str):
    text = value.strip()
    if not text:
      return None
    if text.endswith("Z"):
      text = text[:-1] + "+00:00"
    try:
      parsed = datetime.fromisoformat(text)
    except ValueError:
      return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
  return None


def encode_timestamp(value: Any) -> Any:
  if isinstance(value, datetime):
    aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return int(round((aware - EPOCH).total_seconds() * 1000))
  if isinstance(value, date):
    return encode_timestamp(datetime(value.year, value.month, value.day, tzinfo=timezone.utc))
  return value


def encode_dates(data: Any) -> Any:
  """Recursively encode datetimes for a JSON write."""
  if isinstance(data, dict):
    return {key: encode_dates(item) for key, item in data.items()}
  if isinstance(data, (list, tuple)):
    return [encode_dates(item) for item in data]
  return encode_timestamp(data)


def decode_fields(record: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
  """Decode the given dotted date paths in place; missing paths are left alone."""
  for path in fields:
    parts = path.split(".")
    node: Any = record
    for part in parts[:-1]:
      node = node.get(part) if isinstance(node, dict) else None
      if node is None:
        break
    if isinstance(node, dict) and parts[-1] in node:
      node[parts[-1]] = decode_timestamp(node[parts[-1]])
  return record
