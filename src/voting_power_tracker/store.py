"""
Per-address voting power records and their history.

Each address has its own lock: writers for different addresses never block
each other, and the registry lock is only held for map lookups/updates,
never while talking to the chain.
"""

import copy
import itertools
import logging
import threading
from contextlib import contextmanager
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import replace
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, Iterator, List, Optional, Set

from .config import Config
from .exceptions import (
    AlreadyTracked,
    InconsistentSnapshot,
    NotTracked,
    UpstreamReadError,
    UpstreamReadTimeout,
)
from .interfaces import BalanceReader, BlockSource, Cache
from .models import (
    CHANGE_SOURCES,
    CHANGE_TYPES,
    BalanceReading,
    PowerHistoryPoint,
    ThresholdAlert,
    TriggeredAlert,
    VotingPowerRecord,
)
from .utils import POWER_KEY, address_cache_key, normalize_address

logger = logging.getLogger(__name__)

ALERT_DIRECTIONS = ("above", "below")
ALERT_CATEGORIES = ("voting_threshold", "delegation_limit", "proposal_quorum", "custom")

# Ranking orders for addresses_by_power
SORT_KEYS = {
    "voting_power": lambda r: r.effective_power,
    "delegations": lambda r: r.received_delegations,
}


class PowerRecordStore:
    """In-memory registry of tracked addresses and their power history."""

    def __init__(self, reader: BalanceReader, blocks: BlockSource, cache: Cache,
                 config: Config, clock: Callable[[], datetime] = datetime.now,
                 predictor=None, executor: Optional[ThreadPoolExecutor] = None):
        self.reader = reader
        self.blocks = blocks
        self.cache = cache
        self.config = config
        self.clock = clock
        self.predictor = predictor

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.read_workers, thread_name_prefix="balance-read")

        self._records: Dict[str, VotingPowerRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._derived_keys: Dict[str, Set[str]] = {}
        self._alerts: Dict[str, List[ThresholdAlert]] = {}
        self._triggered: Deque[TriggeredAlert] = deque(maxlen=config.alert_log_cap)
        self._generations = itertools.count(1)
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Tracking lifecycle
    # ------------------------------------------------------------------

    def start_tracking(self, address: str) -> VotingPowerRecord:
        """Register an address, seeding its history from the current chain state."""
        address = normalize_address(address)

        with self._locked(address):
            if self._get(address) is not None:
                raise AlreadyTracked(address)

            # No prior state exists, so upstream failures propagate here
            reading = self._read(address)
            if reading is None:
                raise NotTracked(address)

            block_number = self.blocks.current_block()
            now = self.clock()
            record = VotingPowerRecord(
                address=address,
                current_power=reading.power,
                delegated_power=reading.delegated_power,
                received_delegations=reading.received_delegations,
                effective_power=reading.effective_power,
                block_number=block_number,
                updated_at=now,
                history=deque(maxlen=self.config.history_cap),
                generation=self._next_generation(),
            )
            record.history.append(PowerHistoryPoint(
                timestamp=now,
                block_number=block_number,
                power=reading.effective_power,
                change_type="acquire",
                change_amount=0,
                source="initialization",
            ))

            with self._registry_lock:
                if address in self._records:
                    raise AlreadyTracked(address)
                self._records[address] = record
                total = len(self._records)

            self.cache.set(address_cache_key(POWER_KEY, address),
                           record.effective_power, self.config.power_cache_ttl)

        logger.info(f"Started tracking voting power for {address} ({total} tracked)")
        return copy.deepcopy(record)

    def stop_tracking(self, address: str) -> None:
        """Forget an address and purge its cache entries. Safe to call twice."""
        address = normalize_address(address)

        with self._locked(address):
            with self._registry_lock:
                removed = self._records.pop(address, None)
                self._alerts.pop(address, None)
            self.invalidate_address(address)

        if removed is not None:
            logger.info(f"Stopped tracking voting power for {address}")

    def is_tracked(self, address: str) -> bool:
        return self._get(normalize_address(address)) is not None

    def tracked_addresses(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._records)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_current_power(self, address: str) -> int:
        """Effective voting power, served from cache when fresh."""
        address = normalize_address(address)
        key = address_cache_key(POWER_KEY, address)

        cached, found = self.cache.get(key)
        if found:
            return cached

        with self._locked(address):
            cached, found = self.cache.get(key)
            if found:
                return cached

            record = self._get(address)
            try:
                reading = self._read(address)
            except UpstreamReadError as e:
                if record is None:
                    raise
                logger.warning(
                    f"Using last known power for {address} after upstream failure: {e}")
                return record.effective_power

            if reading is None:
                if record is None:
                    raise NotTracked(address)
                logger.warning(
                    f"Upstream returned no data for {address}, using last known power")
                return record.effective_power

            if record is not None:
                if not record.same_power(reading):
                    record.generation = self._next_generation()
                record.apply_reading(reading, record.block_number, self.clock())

            self.cache.set(key, reading.effective_power, self.config.power_cache_ttl)
            return reading.effective_power

    def get_history(self, address: str, start: datetime, end: datetime) -> List[PowerHistoryPoint]:
        """History points with start <= timestamp <= end."""
        address = normalize_address(address)

        with self._locked(address):
            record = self._get(address)
            if record is None:
                return []
            return [p for p in record.history if start <= p.timestamp <= end]

    def get_record(self, address: str) -> VotingPowerRecord:
        address = normalize_address(address)

        with self._locked(address):
            record = self._get(address)
            if record is None:
                raise NotTracked(address)
            return copy.deepcopy(record)

    def copy_powers(self) -> List[VotingPowerRecord]:
        """Consistent copies of every record's power fields, without history.

        Each record is locked only while it is copied.
        """
        copies = []
        for address in self.tracked_addresses():
            with self._locked(address):
                record = self._get(address)
                if record is None:
                    continue  # stopped while we were iterating
                copies.append(replace(record, history=deque(), predictions=[]))
        return copies

    def addresses_by_power(self, limit: int = 100,
                           sort_by: str = "voting_power") -> List[VotingPowerRecord]:
        """Tracked records (without history) ranked by power or received delegations."""
        if sort_by not in SORT_KEYS:
            raise ValueError(f"Unknown ranking order: {sort_by!r}")
        key = SORT_KEYS[sort_by]
        ranked = sorted(self.copy_powers(), key=lambda r: (-key(r), r.address))
        return ranked[:max(0, limit)]

    def generation(self, address: str) -> int:
        """Version of the address's power and history; changes on every update."""
        address = normalize_address(address)
        with self._registry_lock:
            record = self._records.get(address)
            if record is None:
                raise NotTracked(address)
            return record.generation

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def record_change(self, address: str, change_type: str, change_amount: int,
                      tx_hash: Optional[str] = None) -> Optional[PowerHistoryPoint]:
        """Append a history point for a power change event.

        Transient upstream failures are logged and the record is left as it
        was; None is returned in that case.
        """
        if change_type not in CHANGE_TYPES:
            raise ValueError(f"Unknown change type: {change_type!r}")
        address = normalize_address(address)

        with self._locked(address):
            record = self._get(address)
            if record is None:
                raise NotTracked(address)

            self.cache.delete(address_cache_key(POWER_KEY, address))
            try:
                reading = self._read(address)
            except UpstreamReadError as e:
                logger.warning(
                    f"Keeping last known state for {address}, {change_type} not recorded: {e}")
                return None
            if reading is None:
                logger.warning(
                    f"Upstream returned no data for {address}, {change_type} not recorded")
                return None

            try:
                block_number = self.blocks.current_block()
            except Exception as e:
                logger.warning(f"Failed to get current block number: {e}")
                block_number = record.block_number

            now = self.clock()
            if record.history and now < record.history[-1].timestamp:
                # History stays ascending even if the clock steps back
                now = record.history[-1].timestamp

            record.apply_reading(reading, max(block_number, record.block_number), now)
            record.generation = self._next_generation()
            self._check_invariant(record)

            point = PowerHistoryPoint(
                timestamp=now,
                block_number=record.block_number,
                power=record.effective_power,
                change_type=change_type,
                change_amount=change_amount,
                source=CHANGE_SOURCES[change_type],
                tx_hash=tx_hash,
            )
            record.history.append(point)  # deque maxlen drops the oldest

            self.invalidate_address(address)
            self.cache.set(address_cache_key(POWER_KEY, address),
                           record.effective_power, self.config.power_cache_ttl)

            if self.predictor is not None:
                record.predictions = self.predictor.predict(
                    record, self.config.prediction_horizon_days, now)

            self._check_alerts(record, now)

        logger.info(
            f"Tracked power change for {address}: {change_type} {change_amount}, "
            f"effective power {point.power}")
        return point

    def seed_history(self, address: str, points: Iterable[PowerHistoryPoint]) -> int:
        """Prepend reconstructed points older than the record's first point.

        Returns how many points were added; the history cap keeps the newest.
        """
        address = normalize_address(address)

        with self._locked(address):
            record = self._get(address)
            if record is None:
                raise NotTracked(address)

            first = record.history[0].timestamp if record.history else None
            older = sorted((p for p in points if first is None or p.timestamp < first),
                           key=lambda p: (p.timestamp, p.block_number))
            if not older:
                return 0

            record.history = deque(older + list(record.history),
                                   maxlen=self.config.history_cap)
            record.generation = self._next_generation()
            self.invalidate_address(address)
            self.cache.set(address_cache_key(POWER_KEY, address),
                           record.effective_power, self.config.power_cache_ttl)

            if self.predictor is not None:
                record.predictions = self.predictor.predict(
                    record, self.config.prediction_horizon_days, self.clock())

        logger.info(f"Seeded {len(older)} historical points for {address}")
        return len(older)

    # ------------------------------------------------------------------
    # Cache ownership
    # ------------------------------------------------------------------

    def register_derived_key(self, address: str, key: str) -> None:
        """Tie an extra cache key to a tracked address so mutations invalidate it."""
        with self._registry_lock:
            if address not in self._records:
                raise NotTracked(address)
            self._derived_keys.setdefault(address, set()).add(key)

    def invalidate_address(self, address: str) -> None:
        with self._registry_lock:
            derived = self._derived_keys.pop(address, set())
        for key in [address_cache_key(POWER_KEY, address)] + sorted(derived):
            self.cache.delete(key)

    # ------------------------------------------------------------------
    # Threshold alerts
    # ------------------------------------------------------------------

    def set_threshold_alert(self, address: str, threshold: int, direction: str,
                            category: str = "custom") -> ThresholdAlert:
        if direction not in ALERT_DIRECTIONS:
            raise ValueError(f"Unknown alert direction: {direction!r}")
        if category not in ALERT_CATEGORIES:
            raise ValueError(f"Unknown alert category: {category!r}")
        address = normalize_address(address)

        alert = ThresholdAlert(
            address=address,
            threshold=threshold,
            direction=direction,
            category=category,
            message=f"Voting power {direction} threshold of {threshold} for {address}",
        )
        with self._registry_lock:
            if address not in self._records:
                raise NotTracked(address)
            self._alerts.setdefault(address, []).append(alert)

        logger.info(f"Set {category} alert for {address}: {direction} {threshold}")
        return alert

    def triggered_alerts(self) -> List[TriggeredAlert]:
        with self._registry_lock:
            return list(self._triggered)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, address: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(address)
            if lock is None:
                lock = self._locks[address] = threading.Lock()
            return lock

    @contextmanager
    def _locked(self, address: str) -> Iterator[None]:
        """Hold the address lock. Locks of untracked addresses are retired on release."""
        while True:
            lock = self._lock_for(address)
            lock.acquire()
            with self._registry_lock:
                if self._locks.get(address) is lock:
                    break
            lock.release()  # retired while we waited

        try:
            yield
        finally:
            with self._registry_lock:
                if address not in self._records and self._locks.get(address) is lock:
                    del self._locks[address]
            lock.release()

    def _next_generation(self) -> int:
        with self._registry_lock:
            return next(self._generations)

    def _get(self, address: str) -> Optional[VotingPowerRecord]:
        with self._registry_lock:
            return self._records.get(address)

    def _read(self, address: str) -> Optional[BalanceReading]:
        """Read upstream with a bounded wait."""
        future = self._executor.submit(self.reader.read_balance, address)
        try:
            reading = future.result(timeout=self.config.read_timeout)
        except FutureTimeout as e:
            future.cancel()
            raise UpstreamReadTimeout(
                f"Balance read for {address} timed out after {self.config.read_timeout}s",
                address=address) from e
        except UpstreamReadError:
            raise
        except Exception as e:
            raise UpstreamReadError(
                f"Balance read failed for {address}: {e}", address=address) from e

        if reading is None:
            return None
        if min(reading.power, reading.delegated_power, reading.received_delegations) < 0 \
                or reading.delegated_power > reading.power:
            raise UpstreamReadError(
                f"Inconsistent balance reading for {address}: {reading}", address=address)
        return reading

    @staticmethod
    def _check_invariant(record: VotingPowerRecord) -> None:
        expected = record.current_power + record.received_delegations - record.delegated_power
        if record.effective_power != expected or record.delegated_power > record.current_power:
            logger.error(f"Effective power invariant violated for {record.address}")
            raise InconsistentSnapshot(
                f"Effective power invariant violated for {record.address}")

    def _check_alerts(self, record: VotingPowerRecord, now: datetime) -> None:
        with self._registry_lock:
            alerts = list(self._alerts.get(record.address, []))

        fired = [TriggeredAlert(alert=a, power=record.effective_power, triggered_at=now)
                 for a in alerts if a.is_triggered(record.effective_power)]
        if not fired:
            return

        with self._registry_lock:
            self._triggered.extend(fired)
        for event in fired:
            logger.warning(f"Threshold alert: {event.alert.message} (power {event.power})")
