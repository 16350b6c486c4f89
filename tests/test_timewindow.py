from datetime import date, datetime, time, timedelta, timezone

import pytest

from timewindow import (
    anchor_instant,
    dst_bounds,
    get_matcher,
    is_summer_time,
    last_sunday,
    matches_outbound,
    matches_outbound_tolerant,
    matches_return,
    matches_return_tolerant,
    to_local,
    to_utc,
)

from conftest import utc


@pytest.mark.parametrize("year,month,expected", [
    (2024, 3, date(2024, 3, 31)),
    (2024, 10, date(2024, 10, 27)),
    (2025, 3, date(2025, 3, 30)),
    (2025, 10, date(2025, 10, 26)),
    (2026, 3, date(2026, 3, 29)),
])
def test_last_sunday(year, month, expected):
    assert last_sunday(year, month) == expected


@pytest.mark.parametrize("ts,expected", [
    (utc(2024, 3, 31, 0, 59), False),
    (utc(2024, 3, 31, 1, 0), True),
    (utc(2024, 10, 27, 0, 59), True),
    (utc(2024, 10, 27, 1, 0), False),
    (utc(2024, 1, 15, 12, 0), False),
    (utc(2024, 7, 15, 12, 0), True),
    (utc(2024, 12, 31, 23, 59), False),
])
def test_is_summer_time_boundaries(ts, expected):
    assert is_summer_time(ts) is expected


def test_dst_bounds_are_utc_one_am():
    start, end = dst_bounds(2025)
    assert start == utc(2025, 3, 30, 1, 0)
    assert end == utc(2025, 10, 26, 1, 0)


def test_aware_non_utc_input_is_converted():
    # 02:59 at +02:00 is 00:59Z, one minute before the switch
    ts = datetime(2024, 3, 31, 2, 59, tzinfo=timezone(timedelta(hours=2)))
    assert is_summer_time(ts) is False


def test_to_local():
    assert to_local(utc(2025, 6, 15, 5, 0)) == datetime(2025, 6, 15, 7, 0)
    assert to_local(utc(2025, 1, 15, 6, 0)) == datetime(2025, 1, 15, 7, 0)


def test_to_utc_naive_is_local_wall_clock():
    assert to_utc(datetime(2025, 6, 15, 7, 0)) == utc(2025, 6, 15, 5, 0)
    assert to_utc(datetime(2025, 1, 15, 7, 0)) == utc(2025, 1, 15, 6, 0)


def test_to_utc_aware_passthrough():
    ts = datetime(2025, 6, 15, 7, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_utc(ts) == utc(2025, 6, 15, 5, 0)


def test_anchor_instant():
    assert anchor_instant(date(2025, 6, 15), time(14, 30)) == utc(2025, 6, 15, 14, 30)


class TestOutbound:
    def test_summer_exact(self):
        assert matches_outbound(utc(2025, 6, 15, 5, 0))

    def test_winter_exact(self):
        assert matches_outbound(utc(2025, 1, 15, 6, 0))

    @pytest.mark.parametrize("ts", [
        utc(2025, 6, 15, 5, 1),
        utc(2025, 6, 15, 4, 59),
        utc(2025, 6, 15, 6, 0),
        utc(2025, 1, 15, 5, 0),
        utc(2025, 1, 15, 6, 1),
    ])
    def test_misses(self, ts):
        assert not matches_outbound(ts)


class TestReturn:
    @pytest.mark.parametrize("hour,minute", [(14, 55), (15, 0), (15, 5)])
    def test_summer_band(self, hour, minute):
        assert matches_return(utc(2025, 6, 15, hour, minute))

    @pytest.mark.parametrize("hour,minute", [(15, 55), (16, 0), (16, 5)])
    def test_winter_band(self, hour, minute):
        assert matches_return(utc(2025, 1, 15, hour, minute))

    @pytest.mark.parametrize("ts", [
        utc(2025, 6, 15, 14, 54),
        utc(2025, 6, 15, 15, 6),
        utc(2025, 6, 15, 14, 56),
        utc(2025, 1, 15, 15, 54),
        utc(2025, 1, 15, 16, 6),
        utc(2025, 1, 15, 15, 0),
    ])
    def test_misses(self, ts):
        assert not matches_return(ts)


class TestTolerant:
    def test_outbound_accepts_half_hour(self):
        assert matches_outbound_tolerant(utc(2025, 6, 15, 5, 30))
        assert matches_outbound_tolerant(utc(2025, 6, 15, 4, 30))
        assert not matches_outbound_tolerant(utc(2025, 6, 15, 5, 31))

    def test_return_accepts_quarter_hour(self):
        assert matches_return_tolerant(utc(2025, 6, 15, 15, 15))
        assert not matches_return_tolerant(utc(2025, 6, 15, 15, 16))

    def test_disagrees_with_exact_band(self):
        ts = utc(2025, 6, 15, 15, 10)
        assert matches_return_tolerant(ts)
        assert not matches_return(ts)


def test_get_matcher_defaults_to_exact():
    assert get_matcher("outbound", "exact") is matches_outbound
    assert get_matcher("return", "exact") is matches_return


def test_get_matcher_tolerant():
    assert get_matcher("return", "TOLERANT") is matches_return_tolerant


def test_get_matcher_unknown():
    with pytest.raises(ValueError):
        get_matcher("sideways", "exact")
    with pytest.raises(ValueError):
        get_matcher("outbound", "fuzzy")
