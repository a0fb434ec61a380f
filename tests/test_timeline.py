import math

import pytest

from streamrelay.player.models import SeekRange, TimelineSnapshot, TimelineWindow
from streamrelay.player.timeline import format_clock, reconcile

from fakes import FakeMediaElement


class RangeAdapter:
    def __init__(self, seek_range):
        self._seek_range = seek_range

    def seek_range(self):
        return self._seek_range


def test_adapter_seek_range_wins_even_when_media_is_infinite():
    media = FakeMediaElement(duration=math.inf)
    media.current_time = 130.0
    media.seekable = [(0.0, 50.0)]

    snapshot = reconcile(RangeAdapter(SeekRange(start=100.0, end=160.0)), media)

    assert snapshot == TimelineSnapshot(current_time=130.0, duration=160.0, start=100.0, is_live=False)
    assert snapshot.relative_time == 30.0
    assert snapshot.relative_duration == 60.0


def test_native_seekable_range_is_second_choice():
    media = FakeMediaElement(duration=math.inf)
    media.seekable = [(5.0, 20.0), (20.0, 90.0)]

    snapshot = reconcile(RangeAdapter(SeekRange(start=0.0, end=math.inf)), media)

    assert snapshot.window == TimelineWindow(start=5.0, duration=90.0, is_live=False)


def test_infinite_duration_without_ranges_is_live():
    media = FakeMediaElement(duration=math.inf)

    snapshot = reconcile(None, media)

    assert snapshot.is_live
    assert snapshot.duration == 0.0
    assert not snapshot.window.seekable


def test_finite_duration_without_ranges_is_on_demand():
    media = FakeMediaElement(duration=300.0)
    media.buffered = [(0.0, 12.5)]

    snapshot = reconcile(None, media)

    assert not snapshot.is_live
    assert snapshot.duration == 300.0
    assert snapshot.buffered == 12.5
    assert snapshot.window.seekable


@pytest.mark.parametrize("start", [-4.0, math.nan])
def test_invalid_start_is_clamped(start):
    media = FakeMediaElement(duration=math.nan)

    snapshot = reconcile(RangeAdapter(SeekRange(start=start, end=40.0)), media)

    assert snapshot.start == 0.0
    assert snapshot.duration == 40.0


def test_nan_duration_reports_zero():
    snapshot = reconcile(None, FakeMediaElement(duration=math.nan))

    assert snapshot.duration == 0.0
    assert snapshot.is_live


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0:00"), (9.9, "0:09"), (75, "1:15"), (3600, "1:00:00"), (3725, "1:02:05"), (-1, "0:00"), (math.inf, "0:00")],
)
def test_format_clock(seconds, expected):
    assert format_clock(seconds) == expected
