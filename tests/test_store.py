import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from voting_power_tracker.cache import TTLCache
from voting_power_tracker.config import Config
from voting_power_tracker.exceptions import (
    AlreadyTracked,
    NotTracked,
    UpstreamReadError,
    UpstreamReadTimeout,
)
from voting_power_tracker.models import PowerHistoryPoint
from voting_power_tracker.store import PowerRecordStore

from conftest import make_address


@pytest.fixture
def cache():
    return TTLCache()


@pytest.fixture
def store(reader, blocks, cache, config, clock):
    s = PowerRecordStore(reader, blocks, cache, config, clock=clock)
    yield s
    s.close()


def history_point(ts, power, amount):
    return PowerHistoryPoint(timestamp=ts, block_number=1, power=power, change_type="transfer_in",
                             change_amount=amount, source="token_transfer")


def test_start_tracking_seeds_record(store, reader, clock):
    address = make_address(1)
    reader.set(address, 500)

    record = store.start_tracking(address)

    assert record.address == address
    assert record.current_power == 500
    assert record.effective_power == 500
    assert record.block_number == 1001
    assert len(record.history) == 1
    point = record.history[0]
    assert point.change_type == "acquire"
    assert point.change_amount == 0
    assert point.source == "initialization"
    assert point.timestamp == clock()


def test_start_tracking_normalizes_address(store, reader):
    address = "0x" + make_address(0xABC)[2:].upper()
    reader.set(address, 1)
    record = store.start_tracking(address)
    assert record.address == address.lower()
    assert store.is_tracked(address.lower())


def test_start_tracking_twice_raises(store, reader):
    address = make_address(1)
    reader.set(address, 500)
    store.start_tracking(address)

    with pytest.raises(AlreadyTracked) as exc:
        store.start_tracking(address)
    assert exc.value.address == address


def test_start_tracking_rejects_invalid_address(store):
    with pytest.raises(ValueError):
        store.start_tracking("not-an-address")


def test_start_tracking_propagates_upstream_failure(store, reader):
    address = make_address(1)
    reader.set(address, 500)
    reader.fail = True

    with pytest.raises(UpstreamReadError) as exc:
        store.start_tracking(address)
    assert exc.value.retryable
    assert not store.is_tracked(address)


def test_start_tracking_times_out(reader, blocks, cache, clock):
    config = Config(token_decimals=0, read_timeout=0.05)
    store = PowerRecordStore(reader, blocks, cache, config, clock=clock)
    address = make_address(1)
    reader.set(address, 500)
    reader.delay = 0.5
    try:
        with pytest.raises(UpstreamReadTimeout):
            store.start_tracking(address)
    finally:
        store.close()


def test_stop_tracking_is_idempotent(store, reader, cache):
    address = make_address(1)
    reader.set(address, 500)
    store.start_tracking(address)

    store.stop_tracking(address)
    store.stop_tracking(address)

    assert not store.is_tracked(address)
    assert cache.get(f"voting_power:{address}") == (None, False)
    with pytest.raises(NotTracked):
        store.get_record(address)


def test_stop_tracking_untracked_address_is_noop(store):
    store.stop_tracking(make_address(7))
    assert store.tracked_addresses() == []


def test_get_current_power_uses_cache(store, reader):
    address = make_address(1)
    reader.set(address, 500)
    store.start_tracking(address)
    calls = reader.calls

    assert store.get_current_power(address) == 500
    assert reader.calls == calls


def test_get_current_power_falls_back_to_last_known(store, reader, cache):
    address = make_address(1)
    reader.set(address, 500)
    store.start_tracking(address)
    cache.delete(f"voting_power:{address}")
    reader.fail = True

    assert store.get_current_power(address) == 500


def test_get_current_power_untracked_and_unknown_raises(store):
    with pytest.raises(NotTracked):
        store.get_current_power(make_address(9))


def test_get_current_power_untracked_upstream_failure_raises(store, reader):
    reader.fail = True
    with pytest.raises(UpstreamReadError):
        store.get_current_power(make_address(9))


def test_record_change_appends_point(store, reader, clock):
    address = make_address(1)
    reader.set(address, 500)
    store.start_tracking(address)

    clock.advance(hours=1)
    reader.set(address, 700)
    point = store.record_change(address, "transfer_in", 200, tx_hash="0xabc")

    assert point.power == 700
    assert point.change_type == "transfer_in"
    assert point.source == "token_transfer"
    assert point.tx_hash == "0xabc"
    record = store.get_record(address)
    assert record.effective_power == 700
    assert [p.power for p in record.history] == [500, 700]
    assert store.get_current_power(address) == 700


def test_record_change_with_delegation_keeps_invariant(store, reader):
    address = make_address(1)
    reader.set(address, 1000)
    store.start_tracking(address)

    reader.set(address, 1000, delegated=1000, received=250)
    store.record_change(address, "delegate", 1000)

    record = store.get_record(address)
    assert record.effective_power == 250
    assert record.effective_power == (
        record.current_power + record.received_delegations - record.delegated_power)


def test_record_change_upstream_failure_keeps_state(store, reader):
    address = make_address(1)
    reader.set(address, 500)
    store.start_tracking(address)
    reader.fail = True

    assert store.record_change(address, "transfer_in", 100) is None
    record = store.get_record(address)
    assert record.effective_power == 500
    assert len(record.history) == 1


def test_record_change_rejects_unknown_type(store, reader):
    address = make_address(1)
    reader.set(address, 500)
    store.start_tracking(address)
    with pytest.raises(ValueError):
        store.record_change(address, "mint", 1)


def test_record_change_untracked_raises(store):
    with pytest.raises(NotTracked):
        store.record_change(make_address(3), "acquire", 1)


def test_history_is_capped_and_ordered(store, reader, clock, config):
    address = make_address(1)
    reader.set(address, 0)
    store.start_tracking(address)

    for i in range(1, config.history_cap + 11):
        clock.advance(minutes=5)
        reader.set(address, i)
        store.record_change(address, "acquire", 1)

    history = list(store.get_record(address).history)
    assert len(history) == config.history_cap
    assert history[-1].power == config.history_cap + 10
    assert history[0].power == 11
    assert all(a.timestamp <= b.timestamp for a, b in zip(history, history[1:]))


def test_history_timestamps_stay_monotonic_when_clock_steps_back(store, reader, clock):
    address = make_address(1)
    reader.set(address, 10)
    store.start_tracking(address)
    start = clock()

    clock.advance(minutes=-5)
    reader.set(address, 20)
    point = store.record_change(address, "acquire", 10)
    assert point.timestamp == start


def test_get_history_range_is_inclusive(store, reader, clock):
    address = make_address(1)
    reader.set(address, 10)
    store.start_tracking(address)
    times = [clock()]
    for power in (20, 30, 40):
        clock.advance(days=1)
        reader.set(address, power)
        store.record_change(address, "acquire", 10)
        times.append(clock())

    window = store.get_history(address, times[1], times[2])
    assert [p.power for p in window] == [20, 30]
    assert store.get_history(address, times[3] + timedelta(seconds=1), times[3] + timedelta(days=1)) == []
    assert store.get_history(make_address(99), times[0], times[3]) == []


def test_returned_records_are_copies(store, reader):
    address = make_address(1)
    reader.set(address, 500)
    record = store.start_tracking(address)
    record.history.clear()
    record.effective_power = 0

    fresh = store.get_record(address)
    assert fresh.effective_power == 500
    assert len(fresh.history) == 1


def test_invalid_upstream_reading_is_rejected(store, reader):
    address = make_address(1)
    reader.set(address, 100, delegated=200)
    with pytest.raises(UpstreamReadError):
        store.start_tracking(address)


def test_threshold_alert_fires(store, reader):
    address = make_address(1)
    reader.set(address, 500)
    store.start_tracking(address)
    alert = store.set_threshold_alert(address, 600, "above", "voting_threshold")

    reader.set(address, 550)
    store.record_change(address, "acquire", 50)
    assert store.triggered_alerts() == []

    reader.set(address, 700)
    store.record_change(address, "acquire", 150)
    fired = store.triggered_alerts()
    assert len(fired) == 1
    assert fired[0].alert == alert
    assert fired[0].power == 700


def test_threshold_alert_validation(store, reader):
    address = make_address(1)
    with pytest.raises(NotTracked):
        store.set_threshold_alert(address, 1, "above")
    reader.set(address, 5)
    store.start_tracking(address)
    with pytest.raises(ValueError):
        store.set_threshold_alert(address, 1, "sideways")
    with pytest.raises(ValueError):
        store.set_threshold_alert(address, 1, "above", "bogus")


def test_copy_powers_omits_history(store, reader):
    for n in range(1, 4):
        reader.set(make_address(n), n * 100)
        store.start_tracking(make_address(n))

    copies = store.copy_powers()
    assert sorted(c.effective_power for c in copies) == [100, 200, 300]
    assert all(len(c.history) == 0 for c in copies)


def test_addresses_by_power_orders_and_limits(store, reader):
    heavy = make_address(1)
    reader.set(heavy, 100, received=900)
    mid = make_address(2)
    reader.set(mid, 600)
    light = make_address(3)
    reader.set(light, 300, received=50)
    for address in (heavy, mid, light):
        store.start_tracking(address)

    assert [r.address for r in store.addresses_by_power()] == [heavy, mid, light]
    assert [r.address for r in store.addresses_by_power(limit=2)] == [heavy, mid]
    assert [r.address for r in store.addresses_by_power(sort_by="delegations")] == [heavy, light, mid]
    assert store.addresses_by_power(limit=0) == []
    with pytest.raises(ValueError):
        store.addresses_by_power(sort_by="age")


def test_generation_changes_with_power_only(store, reader):
    address = make_address(1)
    reader.set(address, 100)
    store.start_tracking(address)
    first = store.generation(address)

    store.cache.delete(f"voting_power:{address}")
    store.get_current_power(address)
    assert store.generation(address) == first

    reader.set(address, 200)
    store.record_change(address, "acquire", 100)
    assert store.generation(address) > first

    with pytest.raises(NotTracked):
        store.generation(make_address(2))


def test_seed_history_prepends_older_points(store, reader, clock):
    address = make_address(1)
    reader.set(address, 300)
    store.start_tracking(address)
    generation = store.generation(address)
    start = clock()

    points = [
        history_point(start - timedelta(days=1), 300, 100),
        history_point(start - timedelta(days=2), 200, 200),
        history_point(start + timedelta(days=1), 999, 1),  # newer than the record
    ]
    assert store.seed_history(address, points) == 2

    history = list(store.get_record(address).history)
    assert [p.power for p in history] == [200, 300, 300]
    assert [p.timestamp for p in history] == sorted(p.timestamp for p in history)
    assert store.generation(address) > generation
    assert store.seed_history(address, points) == 0


def test_seed_history_keeps_newest_under_cap(store, reader, clock, config):
    address = make_address(1)
    reader.set(address, 1)
    store.start_tracking(address)
    older = [history_point(clock() - timedelta(days=d), 1, 0) for d in range(1, 100)]

    store.seed_history(address, older)

    history = store.get_record(address).history
    assert len(history) == config.history_cap
    assert history[-1].source == "initialization"


def test_seed_history_untracked_raises(store):
    with pytest.raises(NotTracked):
        store.seed_history(make_address(1), [])


def test_register_derived_key_requires_tracked_address(store):
    with pytest.raises(NotTracked):
        store.register_derived_key(make_address(1), "power_predictions:x:30:1")
    assert store._derived_keys == {}


def test_locks_are_retired_for_untracked_addresses(store, reader, clock):
    address = make_address(1)
    reader.set(address, 10)
    store.start_tracking(address)

    assert store.get_history(make_address(2), clock(), clock()) == []
    with pytest.raises(NotTracked):
        store.get_current_power(make_address(3))
    assert list(store._locks) == [address]

    store.stop_tracking(address)
    assert store._locks == {}


def test_triggered_alerts_are_bounded(reader, blocks, cache, clock):
    config = Config(token_decimals=0, read_timeout=1.0, alert_log_cap=3)
    store = PowerRecordStore(reader, blocks, cache, config, clock=clock)
    address = make_address(1)
    reader.set(address, 10)
    store.start_tracking(address)
    store.set_threshold_alert(address, 5, "above")

    for n in range(5):
        reader.set(address, 20 + n)
        store.record_change(address, "acquire", 1)

    fired = store.triggered_alerts()
    assert [event.power for event in fired] == [22, 23, 24]
    store.close()


def test_slow_read_does_not_block_other_addresses(store, reader):
    slow_address, fast_address = make_address(1), make_address(2)
    for address in (slow_address, fast_address):
        reader.set(address, 100)
        store.start_tracking(address)

    gate = threading.Event()
    reader.gates[slow_address] = gate
    calls = reader.calls
    with ThreadPoolExecutor(max_workers=1) as pool:
        slow = pool.submit(store.record_change, slow_address, "acquire", 0)
        deadline = time.monotonic() + 5
        while reader.calls == calls and time.monotonic() < deadline:
            time.sleep(0.01)

        assert store.record_change(fast_address, "acquire", 0) is not None
        assert not slow.done()

        gate.set()
        assert slow.result(timeout=5) is not None


def test_concurrent_changes_to_one_address_are_serialized(store, reader, config):
    address = make_address(1)
    reader.set(address, 500, delegated=200, received=50)
    store.start_tracking(address)
    reader.delay = 0.001

    with ThreadPoolExecutor(max_workers=8) as pool:
        points = list(pool.map(
            lambda _: store.record_change(address, "transfer_in", 1), range(80)))

    assert all(p is not None for p in points)
    record = store.get_record(address)
    history = list(record.history)
    assert len(history) == config.history_cap
    blocks = [p.block_number for p in history]
    assert blocks == sorted(set(blocks))
    timestamps = [p.timestamp for p in history]
    assert timestamps == sorted(timestamps)
    assert record.effective_power == \
        record.current_power + record.received_delegations - record.delegated_power == 350
