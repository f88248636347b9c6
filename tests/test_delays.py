import random
from datetime import datetime, timedelta, timezone

import pytest

from nudge.engine.delays import (
    absolute_send_instant, days_elapsed, min_first_delay, parse_send_time,
    to_absolute, to_naive_utc, to_relative,
)

T0 = datetime(2024, 1, 1, 9, 0)


def random_non_decreasing(rng: random.Random) -> list[int]:
    values = []
    current = rng.randint(0, 10)
    for _ in range(rng.randint(0, 8)):
        current += rng.randint(0, 6)
        values.append(current)
    return values


def test_conversions_match_worked_example():
    assert to_absolute([3, 2]) == [3, 5]
    assert to_absolute([3, 4]) == [3, 7]
    assert to_relative([3, 5, 12]) == [3, 2, 7]
    assert to_absolute([]) == []
    assert to_relative([]) == []


def test_conversions_are_inverses_on_non_decreasing_sequences():
    rng = random.Random(20240101)
    for _ in range(500):
        absolute = random_non_decreasing(rng)
        relative = to_relative(absolute)
        assert to_absolute(relative) == absolute
        assert to_relative(to_absolute(relative)) == relative


def test_days_elapsed_floors_and_clamps():
    assert days_elapsed(T0, T0) == 0
    assert days_elapsed(T0, T0 + timedelta(hours=23, minutes=59)) == 0
    assert days_elapsed(T0, T0 + timedelta(days=1)) == 1
    assert days_elapsed(T0, T0 + timedelta(days=2, hours=20)) == 2
    assert days_elapsed(T0, T0 - timedelta(days=3)) == 0


def test_days_elapsed_accepts_aware_and_naive_mix():
    aware = datetime(2024, 1, 3, 9, 0, tzinfo=timezone.utc)
    assert days_elapsed(T0, aware) == 2


def test_min_first_delay():
    assert min_first_delay(T0, T0) == 1
    assert min_first_delay(T0, T0 + timedelta(hours=23)) == 1
    assert min_first_delay(T0, T0 + timedelta(days=1)) == 2
    assert min_first_delay(T0, T0 - timedelta(days=5)) == 1


@pytest.mark.parametrize("value,expected", [
    ("09:00", (9, 0)),
    ("00:00", (0, 0)),
    ("23:59", (23, 59)),
])
def test_parse_send_time_accepts(value, expected):
    parsed = parse_send_time(value)
    assert (parsed.hour, parsed.minute) == expected


@pytest.mark.parametrize("value", ["9:00", "24:00", "12:60", "noon", "", "09:00:00"])
def test_parse_send_time_rejects(value):
    assert parse_send_time(value) is None


def test_absolute_send_instant_utc():
    assert absolute_send_instant(T0, 3, "09:00", "UTC") == datetime(2024, 1, 4, 9, 0)
    assert absolute_send_instant(T0, 5, "09:00", "UTC") == datetime(2024, 1, 6, 9, 0)
    assert absolute_send_instant(T0, 7, "16:30", "UTC") == datetime(2024, 1, 8, 16, 30)


def test_absolute_send_instant_uses_local_calendar_date():
    # 03:00 UTC on Jan 2 is still Jan 1 in New York
    sent = datetime(2024, 1, 2, 3, 0)
    assert absolute_send_instant(sent, 1, "09:00", "America/New_York") == datetime(2024, 1, 2, 14, 0)


def test_absolute_send_instant_across_dst_change():
    sent = datetime(2024, 3, 9, 15, 0)  # 10:00 EST
    # Mar 10 09:00 is already EDT (UTC-4)
    assert absolute_send_instant(sent, 1, "09:00", "America/New_York") == datetime(2024, 3, 10, 13, 0)


def test_absolute_send_instant_rejects_bad_inputs():
    with pytest.raises(ValueError):
        absolute_send_instant(T0, 1, "25:00", "UTC")
    with pytest.raises(ValueError):
        absolute_send_instant(T0, 1, "09:00", "Mars/Olympus_Mons")


def test_to_naive_utc():
    aware = datetime(2024, 1, 1, 4, 0, tzinfo=timezone(timedelta(hours=-5)))
    assert to_naive_utc(aware) == T0
    assert to_naive_utc(T0) == T0


def test_first_allowed_day_can_already_be_due_at_creation():
    # Sent late in the evening, scheduled just after midnight: less than a
    # full day has elapsed, yet calendar day 1 has started
    sent = datetime(2024, 1, 1, 23, 0)
    created = datetime(2024, 1, 2, 1, 0)
    assert days_elapsed(sent, created) == 0
    assert min_first_delay(sent, created) == 1
    instant = absolute_send_instant(sent, 1, "00:30", "UTC")
    assert instant == datetime(2024, 1, 2, 0, 30)
    assert instant < created
