import datetime as _dt

import pytest

from common.datetime import (from_epoch_seconds, parse_iso8601, to_naive_utc,
                             utcnow)


@pytest.mark.parametrize(
    "s,expected",
    [
        ("2025-08-27T12:00:00Z", _dt.datetime(2025, 8, 27, 12, 0, 0, tzinfo=_dt.timezone.utc)),
        ("2025-08-27T07:00:00-05:00", _dt.datetime(2025, 8, 27, 12, 0, 0, tzinfo=_dt.timezone.utc)),
        ("2025-08-27T12:00:00", _dt.datetime(2025, 8, 27, 12, 0, 0, tzinfo=_dt.timezone.utc)),
    ],
)
def test_parse_iso8601(s, expected):
    assert parse_iso8601(s) == expected


def test_parse_iso8601_rejects_garbage():
    with pytest.raises(ValueError):
        parse_iso8601("next tuesday")
    with pytest.raises(TypeError):
        parse_iso8601(1700000000)


def test_storage_representation():
    value = to_naive_utc("2025-08-27T07:00:00.987-05:00")
    assert value == _dt.datetime(2025, 8, 27, 12, 0, 0)
    assert value.tzinfo is None

    now = utcnow()
    assert now.tzinfo is None
    assert now.microsecond == 0


def test_from_epoch_seconds():
    assert from_epoch_seconds(1_700_000_000) == _dt.datetime(2023, 11, 14, 22, 13, 20)
