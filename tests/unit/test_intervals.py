from datetime import date, datetime, time, timezone

import pytest

from salon_booking.core.exceptions import InvalidInterval
from salon_booking.utils.intervals import (
    Interval,
    as_naive_utc,
    day_bounds,
    intersect,
    local_to_utc,
    local_window,
    merge,
    overlaps,
    utc_to_local,
)


def dt(hour, minute=0):
    return datetime(2030, 6, 3, hour, minute)


class TestOverlaps:
    def test_touching_intervals_do_not_overlap(self):
        assert not overlaps(dt(9), dt(10), dt(10), dt(11))
        assert not overlaps(dt(11), dt(12), dt(10), dt(11))

    def test_other_covers_start(self):
        assert overlaps(dt(9), dt(10, 30), dt(10), dt(11))

    def test_other_covers_end(self):
        assert overlaps(dt(10, 30), dt(12), dt(10), dt(11))

    def test_other_inside(self):
        assert overlaps(dt(10, 15), dt(10, 45), dt(10), dt(11))

    def test_other_encloses(self):
        assert overlaps(dt(8), dt(12), dt(10), dt(11))

    def test_is_symmetric(self):
        pairs = [
            (dt(9), dt(10, 30), dt(10), dt(11)),
            (dt(9), dt(10), dt(10), dt(11)),
            (dt(8), dt(12), dt(10), dt(11)),
        ]
        for a_start, a_end, b_start, b_end in pairs:
            assert overlaps(a_start, a_end, b_start, b_end) == overlaps(
                b_start, b_end, a_start, a_end
            )


class TestInterval:
    def test_end_must_follow_start(self):
        with pytest.raises(InvalidInterval):
            Interval(dt(10), dt(10))
        with pytest.raises(InvalidInterval):
            Interval(dt(11), dt(10))

    def test_of_rejects_non_positive_duration(self):
        with pytest.raises(InvalidInterval):
            Interval.of(dt(10), 0)
        with pytest.raises(InvalidInterval):
            Interval.of(dt(10), -15)

    def test_of_and_minutes(self):
        interval = Interval.of(dt(10), 75)
        assert interval.end == dt(11, 15)
        assert interval.minutes == 75

    def test_contains(self):
        outer = Interval(dt(9), dt(17))
        assert outer.contains(Interval(dt(9), dt(10, 15)))
        assert outer.contains(Interval(dt(15, 45), dt(17)))
        assert not outer.contains(Interval(dt(16), dt(17, 15)))

    def test_intersection(self):
        a = Interval(dt(9), dt(12))
        b = Interval(dt(11), dt(13))
        assert a.intersection(b) == Interval(dt(11), dt(12))
        assert a.intersection(Interval(dt(12), dt(13))) is None


class TestSetOperations:
    def test_merge_joins_touching_and_overlapping(self):
        merged = merge(
            [
                Interval(dt(13), dt(14)),
                Interval(dt(9), dt(10)),
                Interval(dt(10), dt(11)),
                Interval(dt(10, 30), dt(12)),
            ]
        )
        assert merged == [Interval(dt(9), dt(12)), Interval(dt(13), dt(14))]

    def test_merge_empty(self):
        assert merge([]) == []

    def test_intersect(self):
        branch = [Interval(dt(9), dt(17))]
        staff = [Interval(dt(8), dt(12)), Interval(dt(13), dt(18))]
        assert intersect(branch, staff) == [
            Interval(dt(9), dt(12)),
            Interval(dt(13), dt(17)),
        ]

    def test_intersect_disjoint(self):
        assert intersect([Interval(dt(9), dt(10))], [Interval(dt(11), dt(12))]) == []


class TestTimezones:
    def test_local_to_utc_new_york_summer(self):
        # EDT is UTC-4
        assert local_to_utc(date(2030, 6, 3), time(9, 0), "America/New_York") == dt(13)

    def test_utc_to_local_round_trip_value(self):
        assert utc_to_local(dt(13), "America/New_York") == datetime(2030, 6, 3, 9, 0)

    def test_local_window_midnight_end_means_end_of_day(self):
        window = local_window(date(2030, 6, 3), time(18, 0), time(0, 0), "UTC")
        assert window == Interval(dt(18), datetime(2030, 6, 4, 0, 0))

    def test_day_bounds(self):
        bounds = day_bounds(date(2030, 6, 3), "Asia/Jerusalem")
        # IDT is UTC+3
        assert bounds.start == datetime(2030, 6, 2, 21, 0)
        assert bounds.minutes == 24 * 60

    def test_as_naive_utc(self):
        aware = datetime(2030, 6, 3, 12, 0, tzinfo=timezone.utc)
        assert as_naive_utc(aware) == dt(12)
        assert as_naive_utc(dt(12)) == dt(12)
