import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from voting_power_tracker.engine import VotingPowerEngine
from voting_power_tracker.exceptions import NotTracked, SnapshotNotFound
from voting_power_tracker.models import BehaviorProfile

from conftest import make_address


def track(engine, reader, n, power, **kwargs):
    address = make_address(n)
    reader.set(address, power, **kwargs)
    engine.start_tracking(address)
    return address


def test_start_tracking_reports_current_power(engine, reader):
    address = track(engine, reader, 1, 500)
    assert engine.get_current_power(address) == 500


def test_concentration_for_three_holders(engine, reader):
    track(engine, reader, 1, 100)
    track(engine, reader, 2, 100)
    track(engine, reader, 3, 800)

    metrics = engine.get_concentration_metrics()

    assert metrics.concentration_ratios["CR1"] == pytest.approx(80.0)
    assert metrics.gini > 0.4
    assert metrics.nakamoto == 1
    assert metrics.hhi == pytest.approx(0.66)
    assert metrics.holder_count == 3


def test_concentration_without_snapshot_creates_one(engine):
    metrics = engine.get_concentration_metrics()
    snapshot = engine.get_snapshot()
    assert metrics.snapshot_id == snapshot.id
    assert snapshot.description == "on-demand"
    assert metrics.nakamoto == 0


def test_analytics_are_memoized_until_next_snapshot(engine, reader):
    track(engine, reader, 1, 100)
    first = engine.get_concentration_metrics()
    assert engine.get_concentration_metrics() is first

    track(engine, reader, 2, 300)
    assert engine.get_concentration_metrics() is first

    snapshot = engine.create_snapshot()
    fresh = engine.get_concentration_metrics()
    assert fresh is not first
    assert fresh.snapshot_id == snapshot.id
    assert fresh.holder_count == 2
    # Older snapshots are still addressable by id
    assert engine.get_concentration_metrics(first.snapshot_id).holder_count == 1


def test_unknown_snapshot_id_raises(engine):
    with pytest.raises(SnapshotNotFound):
        engine.get_concentration_metrics("snapshot_0_0")


def test_segments_use_configured_breakpoints(engine, reader):
    track(engine, reader, 1, 50)
    track(engine, reader, 2, 500)
    track(engine, reader, 3, 500000)

    segments = engine.get_segments()

    assert [s.holder_count for s in segments] == [1, 1, 0, 0, 1]
    assert segments[0].profile.data_incomplete


def test_segments_with_behaviour_source(reader, blocks, clock, config):
    class Behaviour:
        def profile(self, address):
            return BehaviorProfile(delegation_rate=0.5, voting_frequency=0.9, consistency=1.0)

    with VotingPowerEngine(reader, blocks, config, behavior_source=Behaviour(),
                           clock=clock) as engine:
        track(engine, reader, 1, 50)
        micro = engine.get_segments()[0]
    assert micro.profile.voting_frequency == pytest.approx(0.9)
    assert not micro.profile.data_incomplete


def test_top_holders(engine, reader):
    for n, power in enumerate([10, 40, 30, 20], 1):
        track(engine, reader, n, power)
    engine.create_snapshot()

    top = engine.get_top_holders(2)
    assert [h.power for h in top] == [40, 30]


def test_predict_untracked_raises(engine):
    with pytest.raises(NotTracked):
        engine.predict(make_address(1), 30)


def test_predict_with_short_history_is_empty(engine, reader, clock):
    address = track(engine, reader, 1, 500)
    for power in (510, 520):
        clock.advance(days=1)
        reader.set(address, power)
        engine.record_change(address, "acquire", 10)

    assert len(engine.get_record(address).history) == 3
    assert engine.predict(address, 30) == []


def test_predictions_refresh_after_change(engine, reader, clock):
    address = track(engine, reader, 1, 1000)
    for _ in range(engine.config.min_history_points):
        clock.advance(days=1)
        engine.record_change(address, "acquire", 0)

    flat = engine.predict(address, 5)
    assert [p.predicted_power for p in flat] == [1000] * 5
    assert engine.get_record(address).predictions[0].predicted_power == 1000

    clock.advance(days=1)
    reader.set(address, 2000)
    engine.record_change(address, "acquire", 1000)

    grown = engine.predict(address, 5)
    assert grown[0].predicted_power > 2000


def test_stop_tracking_removes_holder_from_next_snapshot(engine, reader):
    keep = track(engine, reader, 1, 100)
    drop = track(engine, reader, 2, 200)
    engine.stop_tracking(drop)
    engine.stop_tracking(drop)

    snapshot = engine.create_snapshot()
    assert [h.address for h in snapshot.holders] == [keep]


def test_forecasts_flag_short_series(engine, reader):
    track(engine, reader, 1, 100)
    forecasts = engine.get_forecasts()
    assert {f.term for f in forecasts} == {"short", "medium", "long"}
    assert all(f.data_incomplete for f in forecasts)


def test_refresh_loop_builds_snapshots(engine, reader):
    track(engine, reader, 1, 100)
    engine.start_refresh(0.01)
    engine.start_refresh(0.01)

    deadline = time.monotonic() + 2
    while time.monotonic() < deadline and engine.snapshots.latest() is None:
        time.sleep(0.01)

    engine.shutdown()
    latest = engine.snapshots.latest()
    assert latest is not None
    assert latest.description == "scheduled"


class GatedSignals:
    """Signal source whose market reading blocks once armed, until released."""

    def __init__(self):
        self.armed = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def delegation_trend(self, address):
        return 0.0

    def market_condition(self):
        if self.armed:
            self.armed = False
            self.entered.set()
            self.release.wait(5)
        return 0.0

    def proposal_activity(self, address):
        return 0.0


def test_slow_prediction_does_not_outlive_a_change(reader, blocks, clock, config):
    signals = GatedSignals()
    engine = VotingPowerEngine(reader, blocks, config, signal_source=signals, clock=clock)
    address = track(engine, reader, 1, 1000)
    for _ in range(config.min_history_points):
        clock.advance(days=1)
        engine.record_change(address, "acquire", 0)

    signals.armed = True
    with ThreadPoolExecutor(max_workers=1) as pool:
        stale = pool.submit(engine.predict, address, 3)
        assert signals.entered.wait(5)

        clock.advance(days=1)
        reader.set(address, 5000)
        engine.record_change(address, "acquire", 4000)

        signals.release.set()
        assert stale.result(timeout=5)[0].predicted_power == 1000

    fresh = engine.predict(address, 3)
    assert fresh[0].predicted_power >= 5000
    engine.shutdown()


def test_predict_untracked_leaves_no_cache_keys(engine):
    with pytest.raises(NotTracked):
        engine.predict(make_address(1), 30)
    with pytest.raises(NotTracked):
        engine.get_address_analytics(make_address(1))
    assert engine.store._derived_keys == {}


def test_address_analytics_rank_and_velocity(engine, reader, clock):
    track(engine, reader, 1, 100)
    address = track(engine, reader, 2, 300)
    track(engine, reader, 3, 600)
    snapshot = engine.create_snapshot()

    analytics = engine.get_address_analytics(address)
    assert analytics.snapshot_id == snapshot.id
    assert analytics.current_power == 300
    assert analytics.ranking.rank == 2
    assert analytics.ranking.total_addresses == 3
    assert analytics.ranking.percentile_rank == pytest.approx(200 / 3)
    assert analytics.ranking.share == pytest.approx(30.0)
    assert analytics.ranking.rank_category == "small"
    assert analytics.velocity.daily_change == 0
    assert analytics.velocity.direction == "sideways"
    assert engine.get_address_analytics(address) is analytics

    clock.advance(days=2)
    reader.set(address, 900)
    engine.record_change(address, "acquire", 600)

    updated = engine.get_address_analytics(address)
    assert updated is not analytics
    assert updated.ranking.rank == 1
    assert updated.velocity.daily_change == 600
    assert updated.velocity.weekly_change == 600
    assert updated.velocity.direction == "upward"


def test_addresses_by_power(engine, reader):
    low = track(engine, reader, 1, 100)
    high = track(engine, reader, 2, 700)
    delegate = track(engine, reader, 3, 10, received=400)

    assert [r.address for r in engine.get_addresses_by_power()] == [high, delegate, low]
    assert [r.address for r in engine.get_addresses_by_power(1, "delegations")] == [delegate]
