from datetime import datetime, timezone

import pytest

from gis.dates import decode_date, to_iso
from services.errors import DecodeError


def test_milliseconds_and_seconds_decode_to_same_instant():
    assert decode_date(1700000000000) == decode_date(1700000000)
    assert decode_date(1700000000000) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def test_numeric_string_and_iso_string():
    assert decode_date("1700000000000") == decode_date(1700000000)
    assert decode_date("2024-03-15T00:00:00Z") == datetime(2024, 3, 15, tzinfo=timezone.utc)
    assert decode_date("2024-03-15") == datetime(2024, 3, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", [None, "", 0, "not a date", True, float("nan"), 10**20, {"x": 1}])
def test_invalid_dates_raise(value):
    with pytest.raises(DecodeError):
        decode_date(value)


def test_to_iso():
    assert to_iso(decode_date(1700000000000)) == "2023-11-14T22:13:20.000Z"
