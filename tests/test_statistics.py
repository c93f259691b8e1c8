"""Tests for ShadowPilot traffic statistics."""

import pytest

from shadowpilot.core.statistics import TrafficCounters, TrafficStatistics


@pytest.fixture
def stats():
    return TrafficStatistics()


def test_starts_at_zero(stats):
    counters = stats.snapshot()
    assert counters.upload_bytes == 0
    assert counters.download_bytes == 0


def test_absolute_snapshots_become_deltas(stats):
    assert stats.ingest(100, 250) == (100, 250)
    assert stats.ingest(150, 300) == (50, 50)
    assert stats.upload_bytes == 150
    assert stats.download_bytes == 300


def test_counter_restart_never_decreases_totals(stats):
    stats.ingest(1000, 2000)
    delta = stats.ingest(10, 20)
    assert delta == (10, 20)
    assert stats.upload_bytes == 1010
    assert stats.download_bytes == 2020


def test_reset(stats):
    stats.ingest(5, 5)
    stats.reset()
    assert stats.upload_bytes == 0
    assert stats.ingest(3, 4) == (3, 4)


def test_snapshot_is_a_copy(stats):
    stats.ingest(1, 1)
    snap = stats.snapshot()
    stats.ingest(2, 2)
    assert snap.upload_bytes == 1


def test_counters_to_dict():
    data = TrafficCounters(upload_bytes=7, download_bytes=9, updated=1.5).to_dict()
    assert data == {"upload": 7, "download": 9, "updated": 1.5}
