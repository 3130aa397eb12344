import json
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from periop.windows import (
    WindowParseError,
    WindowSpec,
    expr_to_hour,
    is_active,
    parse_window,
    resolve_window,
    target_time,
)


T = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def at(**delta) -> datetime:
    return T + timedelta(**delta)


@pytest.mark.parametrize(
    "expr, expected",
    [
        ("D-4", -96),
        ("D+2", 48),
        ("D-0", 0),
        ("DOS-2h", -2),
        ("DOS+8h", 8),
        ("DOS-morning", 0),
        ("postop-stable", 24),
        ("D4", None),
        ("DOS-2", None),
        ("d-4", None),
        ("bogus", None),
        ("", None),
        (None, None),
        (4, None),
    ],
)
def test_expr_to_hour(expr, expected):
    assert expr_to_hour(expr) == expected


def test_missing_window_is_inactive_without_target():
    assert is_active(None, T, T) is False
    assert target_time(None, T) is None
    assert is_active({}, T, T) is False
    assert target_time({}, T) is None


def test_from_until_postop_stable_band():
    window = {"from": "D-4", "until": "postop-stable"}
    assert is_active(window, T, at(days=-3)) is True
    assert is_active(window, T, at(hours=12)) is True
    assert is_active(window, T, at(days=2)) is False
    assert is_active(window, T, at(days=-5)) is False
    # Exactly four days out is inside, exactly 24h after is outside.
    assert is_active(window, T, at(hours=-96)) is True
    assert is_active(window, T, at(hours=24)) is False


def test_dos_morning_target_and_activity():
    window = {"when": "DOS-morning"}
    assert target_time(window, T) == datetime(2025, 3, 10, 7, 0, tzinfo=timezone.utc)
    assert is_active(window, T, at(hours=-3)) is True
    assert is_active(window, T, at(hours=-1)) is True
    assert is_active(window, T, T) is True
    assert is_active(window, T, at(hours=-4)) is False
    assert is_active(window, T, at(minutes=1)) is False


def test_dos_morning_uses_calendar_zone():
    scheduled = datetime(2025, 3, 10, 3, 0, tzinfo=timezone.utc)
    target = target_time({"when": "DOS-morning"}, scheduled, ZoneInfo("America/New_York"))
    # 03:00Z is 23:00 EDT on the previous day.
    assert target == datetime(2025, 3, 9, 11, 0, tzinfo=timezone.utc)
    assert target.tzinfo == ZoneInfo("America/New_York")


def test_negative_dos_hours_use_day_band():
    window = {"when": "DOS-2h"}
    assert is_active(window, T, at(hours=-1)) is True
    assert is_active(window, T, at(hours=-2)) is True
    assert is_active(window, T, at(hours=-3)) is False
    # The band is (-22h, 2h] relative to the scheduled time.
    assert is_active(window, T, at(hours=1)) is True
    assert is_active(window, T, at(hours=22)) is False
    assert target_time(window, T) == at(hours=-2)


def test_positive_dos_hours_use_two_hour_band():
    window = {"when": "DOS+8h"}
    assert is_active(window, T, at(hours=-8)) is True
    assert is_active(window, T, at(hours=-7)) is True
    assert is_active(window, T, at(hours=-6)) is False
    assert is_active(window, T, at(hours=-9)) is False


def test_band_edges_are_exact_to_the_millisecond():
    window = {"when": "DOS+2h"}
    assert is_active(window, T, at(hours=-2)) is True
    assert is_active(window, T, at(hours=-2, milliseconds=-1)) is False
    assert is_active(window, T, at(milliseconds=-1)) is True
    assert is_active(window, T, T) is False


def test_day_expression_in_when():
    window = {"when": "D+2"}
    assert is_active(window, T, at(hours=-47)) is True
    assert is_active(window, T, at(hours=-46)) is False
    assert target_time(window, T) == at(days=2)


@pytest.mark.parametrize("when", ["DOS+0h", "DOS-0h", "D+0", "D-0"])
def test_zero_hour_anchor_never_fires(when):
    window = {"when": when}
    for now in (at(hours=-1), T, at(hours=1)):
        assert is_active(window, T, now) is False
    assert target_time(window, T) == T


def test_from_until_with_hour_bound():
    window = {"from": "D-2", "until": "DOS-6h"}
    assert is_active(window, T, at(hours=-10)) is True
    assert is_active(window, T, at(hours=-6)) is True
    assert is_active(window, T, at(hours=-3)) is False
    assert is_active(window, T, at(hours=-49)) is False


def test_from_only_and_until_only():
    assert is_active({"from": "D-1"}, T, at(days=3)) is True
    assert is_active({"from": "D-1"}, T, at(hours=-25)) is False
    assert is_active({"until": "postop-stable"}, T, at(days=-30)) is True
    assert target_time({"until": "postop-stable"}, T) == T


def test_from_wins_over_when_for_target():
    window = {"from": "D-4", "when": "DOS+8h"}
    assert target_time(window, T) == at(hours=-96)


def test_from_date_with_dos_morning_pins_seven_am():
    window = {"from": "D-1", "when": "DOS-morning"}
    assert target_time(window, T) == datetime(2025, 3, 9, 7, 0, tzinfo=timezone.utc)


def test_json_string_and_object_agree():
    window = {"from": "D-4", "until": "postop-stable"}
    encoded = json.dumps(window)
    for now in (at(days=-5), at(days=-3), T, at(hours=12), at(days=2)):
        assert is_active(encoded, T, now) == is_active(window, T, now)
    assert target_time(encoded, T) == target_time(window, T)
    assert is_active(encoded.encode("utf-8"), T, at(days=-3)) is True


def test_window_spec_instances_are_accepted():
    spec = WindowSpec(from_="D-4", until="postop-stable")
    assert is_active(spec, T, at(days=-3)) is True
    assert spec.to_dict() == {"from": "D-4", "until": "postop-stable"}


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        {"when": "bogus"},
        {"from": "D4"},
        {"from": "D-4", "until": "whenever"},
        "[1, 2]",
        "42",
        ["DOS-2h"],
        {"when": "D+" + "9" * 5000},
        {"from": "DOS-" + "1" * 5000 + "h"},
    ],
)
def test_malformed_windows_degrade_quietly(raw):
    assert is_active(raw, T, at(hours=-1)) is False
    assert target_time(raw, T) is None
    assert resolve_window(raw) is None


@pytest.mark.parametrize("raw", [{"when": "DOS+99999999999h"}, {"from": "D+3000000"}, {"when": "D-3000000"}])
def test_out_of_range_offsets_have_no_target_time(raw):
    assert resolve_window(raw) is not None
    assert target_time(raw, T) is None


@pytest.mark.parametrize("raw", [None, "", "   ", "null", {}, {"when": None}, {"when": ""}])
def test_absent_windows_parse_to_none(raw):
    assert parse_window(raw) is None


def test_parse_window_reports_reason():
    with pytest.raises(WindowParseError) as excinfo:
        parse_window("{not json")
    assert excinfo.value.reason == "invalid_json"

    with pytest.raises(WindowParseError) as excinfo:
        parse_window({"when": "bogus"})
    assert excinfo.value.reason == "unknown_expression"

    with pytest.raises(WindowParseError) as excinfo:
        parse_window("[1]")
    assert excinfo.value.reason == "not_an_object"


def test_unknown_keys_are_ignored():
    window = {"when": "DOS+8h", "note": "bring id"}
    assert parse_window(window) == WindowSpec(when="DOS+8h")
    assert is_active(window, T, at(hours=-7)) is True


def test_naive_scheduled_time_is_treated_as_utc():
    naive = datetime(2025, 3, 10, 12, 0)
    assert is_active({"when": "DOS-morning"}, naive, at(hours=-1)) is True
    assert target_time({"when": "DOS-morning"}, naive) == datetime(2025, 3, 10, 7, 0, tzinfo=timezone.utc)
