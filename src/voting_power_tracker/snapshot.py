"""
Point-in-time snapshots of the tracked holder population.
"""

import itertools
import logging
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Callable, List, Optional

from .cache import SingleFlight
from .config import Config
from .exceptions import InconsistentSnapshot, SnapshotNotFound
from .interfaces import BlockSource
from .models import (
    ComparativeRanking,
    DelegationMetrics,
    DistributionMetrics,
    HolderEntry,
    Snapshot,
    VotingPowerRecord,
)
from .store import PowerRecordStore

logger = logging.getLogger(__name__)

CURRENT_SNAPSHOT_KEY = "snapshot:current"


def delegation_status(record: VotingPowerRecord) -> str:
    if record.delegated_power > 0 and record.delegated_power == record.current_power:
        return "delegated"
    if record.delegated_power > 0:
        return "mixed"
    return "self_voting"


def median_power(powers: List[int]) -> int:
    """Median of base-unit amounts, rounded down for even-sized populations."""
    if not powers:
        return 0
    ordered = sorted(powers)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) // 2


def rank_holders(records: List[VotingPowerRecord], total: int) -> List[HolderEntry]:
    """Rank by effective power descending; equal powers are ordered by address."""
    ranked = sorted(records, key=lambda r: (-r.effective_power, r.address))
    return [
        HolderEntry(
            address=r.address,
            power=r.effective_power,
            percentage=(r.effective_power * 100 / total) if total else 0.0,
            rank=i,
            delegated_power=r.delegated_power,
            received_delegations=r.received_delegations,
            delegation_status=delegation_status(r),
        )
        for i, r in enumerate(ranked, 1)
    ]


def summarize_distribution(holders: List[HolderEntry], total: int) -> DistributionMetrics:
    count = len(holders)
    active = sum(1 for h in holders if h.power > 0)
    return DistributionMetrics(
        total_holders=count,
        active_holders=active,
        participation_rate=active / count if count else 0.0,
        average_power=total // count if count else 0,
        median_power=median_power([h.power for h in holders]),
        top_holder_percentage=holders[0].percentage if holders else 0.0,
    )


def comparative_ranking(snapshot: Snapshot, address: str, power: int,
                        rank_category: str) -> ComparativeRanking:
    """Rank an address's current power against the other holders of a snapshot.

    Equal powers share the better rank. The address counts as a holder even if
    it was not tracked when the snapshot was taken.
    """
    others = [h.power for h in snapshot.holders if h.address != address]
    total_addresses = len(others) + 1
    rank = 1 + sum(1 for p in others if p > power)
    total_power = sum(others) + power
    return ComparativeRanking(
        rank=rank,
        percentile_rank=(total_addresses - rank + 1) * 100 / total_addresses,
        total_addresses=total_addresses,
        share=power * 100 / total_power if total_power else 0.0,
        rank_category=rank_category,
    )


def summarize_delegation(records: List[VotingPowerRecord]) -> DelegationMetrics:
    delegated = sum(r.delegated_power for r in records)
    own = sum(r.current_power for r in records)
    delegators = sum(1 for r in records if r.delegated_power > 0)
    return DelegationMetrics(
        total_delegated_power=delegated,
        delegation_rate=delegated / own if own else 0.0,
        delegator_count=delegators,
        average_delegation_size=delegated // delegators if delegators else 0,
    )


class SnapshotBuilder:
    """Builds snapshots from the record store and retains the most recent ones."""

    def __init__(self, store: PowerRecordStore, blocks: BlockSource, config: Config,
                 clock: Callable[[], datetime] = datetime.now,
                 single_flight: Optional[SingleFlight] = None):
        self.store = store
        self.blocks = blocks
        self.config = config
        self.clock = clock
        self.single_flight = single_flight or SingleFlight()

        self._snapshots: "OrderedDict[str, Snapshot]" = OrderedDict()
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._last_block = 0

    def create_snapshot(self, description: str = "") -> Snapshot:
        """Build a snapshot of the current population.

        Callers arriving while a build is running receive that build's result.
        """
        return self.single_flight.do(CURRENT_SNAPSHOT_KEY, lambda: self._build(description))

    def latest(self) -> Optional[Snapshot]:
        with self._lock:
            if not self._snapshots:
                return None
            return next(reversed(self._snapshots.values()))

    def get(self, snapshot_id: str) -> Snapshot:
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFound(snapshot_id)
        return snapshot

    def snapshots(self) -> List[Snapshot]:
        """Retained snapshots, oldest first."""
        with self._lock:
            return list(self._snapshots.values())

    def _build(self, description: str) -> Snapshot:
        try:
            block_number = self.blocks.current_block()
        except Exception as e:
            logger.warning(f"Failed to get current block number, reusing {self._last_block}: {e}")
            block_number = self._last_block
        self._last_block = max(self._last_block, block_number)
        now = self.clock()

        # Record locks are released once copy_powers returns
        records = self.store.copy_powers()
        self._validate(records)

        total = sum(r.effective_power for r in records)
        holders = rank_holders(records, total)

        snapshot = Snapshot(
            id=f"snapshot_{int(now.timestamp() * 1000)}_{next(self._sequence)}",
            timestamp=now,
            block_number=self._last_block,
            description=description,
            total_voting_power=total,
            holders=holders,
            distribution_metrics=summarize_distribution(holders, total),
            delegation_metrics=summarize_delegation(records),
        )

        with self._lock:
            self._snapshots[snapshot.id] = snapshot
            while len(self._snapshots) > self.config.snapshot_retention:
                self._snapshots.popitem(last=False)

        logger.info(
            f"Created voting power snapshot {snapshot.id} at block {snapshot.block_number}: "
            f"{len(holders)} holders, total power {total}")
        return snapshot

    @staticmethod
    def _validate(records: List[VotingPowerRecord]) -> None:
        for r in records:
            expected = r.current_power + r.received_delegations - r.delegated_power
            if r.effective_power < 0 or r.effective_power != expected:
                logger.error(
                    f"Aborting snapshot: inconsistent power for {r.address} "
                    f"(effective {r.effective_power}, expected {expected})")
                raise InconsistentSnapshot(
                    f"Inconsistent voting power for {r.address}: {r.effective_power}")
