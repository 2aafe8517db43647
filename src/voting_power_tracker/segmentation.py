"""
Power-range segmentation of a snapshot's holders.
"""

import bisect
import logging
from typing import List, Optional, Sequence

from .interfaces import BehaviorSource
from .models import BehaviorProfile, HolderEntry, Segment, Snapshot

logger = logging.getLogger(__name__)


class SegmentationEngine:
    """Buckets holders by power using ascending base-unit thresholds.

    A holder with power p falls in bucket i when thresholds[i-1] <= p < thresholds[i].
    """

    def __init__(self, thresholds: Sequence[int], names: Sequence[str],
                 behavior_source: Optional[BehaviorSource] = None):
        if len(names) != len(thresholds) + 1:
            raise ValueError("Need exactly one more segment name than thresholds")
        if list(thresholds) != sorted(set(thresholds)):
            raise ValueError("Segment thresholds must be strictly ascending")
        self.thresholds = list(thresholds)
        self.names = list(names)
        self.behavior_source = behavior_source

    def bucket_index(self, power: int) -> int:
        return bisect.bisect_right(self.thresholds, power)

    def segment(self, snapshot: Snapshot) -> List[Segment]:
        buckets: List[List[HolderEntry]] = [[] for _ in self.names]
        for holder in snapshot.holders:
            buckets[self.bucket_index(holder.power)].append(holder)

        total = snapshot.total_voting_power
        segments = []
        for i, (name, members) in enumerate(zip(self.names, buckets)):
            power = sum(h.power for h in members)
            segments.append(Segment(
                name=name,
                min_power=self.thresholds[i - 1] if i > 0 else 0,
                max_power=self.thresholds[i] if i < len(self.thresholds) else None,
                holder_count=len(members),
                total_power=power,
                percentage=power * 100 / total if total else 0.0,
                average_power=power // len(members) if members else 0,
                profile=self._profile([h.address for h in members]),
            ))
        return segments

    def _profile(self, addresses: List[str]) -> BehaviorProfile:
        """Average the behaviour source over a bucket's addresses."""
        if not addresses:
            return BehaviorProfile()
        if self.behavior_source is None:
            return BehaviorProfile(data_incomplete=True)

        profiles = []
        incomplete = False
        for address in addresses:
            try:
                profile = self.behavior_source.profile(address)
            except Exception as e:
                logger.warning(f"Behaviour data unavailable for {address}: {e}")
                profile = None
            if profile is None:
                incomplete = True
                continue
            profiles.append(profile)
            incomplete = incomplete or profile.data_incomplete

        if not profiles:
            return BehaviorProfile(data_incomplete=True)

        n = len(profiles)
        return BehaviorProfile(
            delegation_rate=sum(p.delegation_rate for p in profiles) / n,
            voting_frequency=sum(p.voting_frequency for p in profiles) / n,
            consistency=sum(p.consistency for p in profiles) / n,
            data_incomplete=incomplete,
        )
