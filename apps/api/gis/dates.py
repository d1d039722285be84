#ArcGIS の日付フィールド（Unix ミリ秒 / 秒 / ISO 文字列）を datetime に変換

import math
from datetime import datetime, timezone
from typing import Any

from services.errors import DecodeError

# これより大きい数値はミリ秒、それ以下は秒とみなす
MILLISECONDS_THRESHOLD = 1_000_000_000_000


def _from_number(value: float) -> datetime:
    if math.isnan(value) or math.isinf(value):
        raise DecodeError(f"Invalid date: {value!r}")
    ms = value if value > MILLISECONDS_THRESHOLD else value * 1000
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise DecodeError(f"Invalid date: {value!r} ({e})")


def decode_date(value: Any) -> datetime:
    """Return a timezone-aware UTC datetime or raise DecodeError."""
    if value is None or value == "" or value == 0 or isinstance(value, bool):
        raise DecodeError("Missing date")

    if isinstance(value, (int, float)):
        return _from_number(value)

    if isinstance(value, str):
        text = value.strip()
        try:
            return _from_number(float(text))
        except ValueError:
            pass
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise DecodeError(f"Invalid date: {value!r}")
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt

    raise DecodeError(f"Invalid date format: {value!r}")


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
