import logging

import pytest

from quota_gateway.security import STRIKE_PROHIBITED_CONTENT, STRIKE_RATE_LIMITED, SuspiciousActivityMonitor

ADDR = "0x" + "cd" * 20


class _Clock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def test_threshold_strikes_flag_subscriber(caplog):
    mon = SuspiciousActivityMonitor(threshold=3, window_seconds=60, clock=_Clock())
    assert not mon.record_strike(ADDR, STRIKE_RATE_LIMITED)
    assert not mon.record_strike(ADDR, STRIKE_RATE_LIMITED)
    with caplog.at_level(logging.WARNING, logger="quota_gateway.security"):
        assert mon.record_strike("0x" + "CD" * 20, STRIKE_RATE_LIMITED)
    assert mon.is_flagged(ADDR)
    assert any("Flagged subscriber" in r.getMessage() for r in caplog.records)
    # already flagged: later strikes do not re-flag
    assert not mon.record_strike(ADDR, STRIKE_RATE_LIMITED)


def test_strike_kinds_are_counted_separately():
    mon = SuspiciousActivityMonitor(threshold=2, window_seconds=60, clock=_Clock())
    mon.record_strike(ADDR, STRIKE_RATE_LIMITED)
    mon.record_strike(ADDR, STRIKE_PROHIBITED_CONTENT)
    assert not mon.is_flagged(ADDR)


def test_strikes_expire_with_window():
    clock = _Clock()
    mon = SuspiciousActivityMonitor(threshold=2, window_seconds=60, clock=clock)
    mon.record_strike(ADDR, STRIKE_PROHIBITED_CONTENT)
    clock.t += 60
    assert not mon.record_strike(ADDR, STRIKE_PROHIBITED_CONTENT)
    assert not mon.is_flagged(ADDR)


def test_manual_flag_clear_and_snapshot_order():
    clock = _Clock()
    mon = SuspiciousActivityMonitor(clock=clock)
    mon.flag("0xAA", "manual review")
    clock.t += 1
    mon.flag("0xbb", "chargeback")

    snap = mon.snapshot()
    assert snap["flagged_total"] == 2
    assert [f["subscriber_id"] for f in snap["flagged"]] == ["0xbb", "0xaa"]
    assert snap["flagged"][1] == {"subscriber_id": "0xaa", "reason": "manual review", "flagged_at": 1000.0, "strikes": 0}

    assert mon.clear("0xaa")
    assert not mon.is_flagged("0xAA")
    assert not mon.clear("0xaa")


def test_flag_table_is_bounded():
    mon = SuspiciousActivityMonitor(max_keys=2, clock=_Clock())
    for sid in ("0x01", "0x02", "0x03"):
        mon.flag(sid, "test")
    assert not mon.is_flagged("0x01")
    assert mon.snapshot()["flagged_total"] == 2


@pytest.mark.parametrize("threshold,window", [(0, 60), (3, 0)])
def test_rejects_non_positive_settings(threshold, window):
    with pytest.raises(ValueError):
        SuspiciousActivityMonitor(threshold=threshold, window_seconds=window)
