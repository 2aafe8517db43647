"""
Data models for governance voting power tracking.
"""

from dataclasses import dataclass, field, asdict, is_dataclass
from datetime import datetime
from typing import Optional, List, Dict, Any, Deque
from collections import deque

CHANGE_TYPES = ("acquire", "delegate", "undelegate", "transfer_in", "transfer_out")

CHANGE_SOURCES = {
    "acquire": "token_purchase",
    "delegate": "delegation",
    "undelegate": "undelegation",
    "transfer_in": "token_transfer",
    "transfer_out": "token_transfer",
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if is_dataclass(value) and not isinstance(value, type):
        return _jsonable(asdict(value))
    if isinstance(value, (list, tuple, deque)):
        return [_jsonable(v) for v in value]
    # Token amounts can exceed the safe integer range of JSON consumers
    if isinstance(value, int) and not isinstance(value, bool) and abs(value) > 2 ** 53:
        return str(value)
    return value


class Serializable:
    """Mixin giving dataclasses a JSON-friendly dict form."""

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class BalanceReading(Serializable):
    """Upstream balance and one-hop delegation data for an address."""
    power: int
    delegated_power: int = 0
    received_delegations: int = 0

    @property
    def effective_power(self) -> int:
        return self.power + self.received_delegations - self.delegated_power


@dataclass(frozen=True)
class PowerHistoryPoint(Serializable):
    """A single change in an address's voting power."""
    timestamp: datetime
    block_number: int
    power: int  # effective power after the change
    change_type: str
    change_amount: int
    source: str
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class PredictionFactor(Serializable):
    type: str  # historical_trend, delegation_pattern, market_condition, proposal_activity
    weight: float
    impact: float
    description: str


@dataclass(frozen=True)
class PowerPrediction(Serializable):
    """Projected voting power for one future day."""
    timestamp: datetime
    predicted_power: int
    confidence: float
    factors: List[PredictionFactor]
    bullish_power: int
    bearish_power: int
    scenario: str = "neutral"


@dataclass
class VotingPowerRecord(Serializable):
    """Tracked voting power state and history for one address."""
    address: str
    current_power: int
    delegated_power: int
    received_delegations: int
    effective_power: int
    block_number: int
    updated_at: datetime
    history: Deque[PowerHistoryPoint] = field(default_factory=deque)
    predictions: List[PowerPrediction] = field(default_factory=list)
    generation: int = 0  # bumped by the store whenever power or history changes

    def same_power(self, reading: BalanceReading) -> bool:
        return (self.current_power, self.delegated_power, self.received_delegations) == \
            (reading.power, reading.delegated_power, reading.received_delegations)

    def apply_reading(self, reading: BalanceReading, block_number: int,
                      updated_at: datetime) -> None:
        self.current_power = reading.power
        self.delegated_power = reading.delegated_power
        self.received_delegations = reading.received_delegations
        self.effective_power = reading.effective_power
        self.block_number = block_number
        self.updated_at = updated_at


@dataclass(frozen=True)
class HolderEntry(Serializable):
    """One holder within a snapshot ranking."""
    address: str
    power: int
    percentage: float
    rank: int
    delegated_power: int = 0
    received_delegations: int = 0
    delegation_status: str = "self_voting"  # delegated, self_voting, mixed


@dataclass(frozen=True)
class DistributionMetrics(Serializable):
    total_holders: int
    active_holders: int
    participation_rate: float
    average_power: int
    median_power: int
    top_holder_percentage: float


@dataclass(frozen=True)
class DelegationMetrics(Serializable):
    total_delegated_power: int
    delegation_rate: float
    delegator_count: int
    average_delegation_size: int


@dataclass(frozen=True)
class Snapshot(Serializable):
    """Immutable point-in-time view of the tracked population."""
    id: str
    timestamp: datetime
    block_number: int
    description: str
    total_voting_power: int
    holders: List[HolderEntry]
    distribution_metrics: DistributionMetrics
    delegation_metrics: DelegationMetrics

    def top_holders(self, limit: int = 10) -> List[HolderEntry]:
        return self.holders[:limit]

    @property
    def holder_count(self) -> int:
        return len(self.holders)


@dataclass(frozen=True)
class LorenzPoint(Serializable):
    population_percentage: float
    power_percentage: float


@dataclass(frozen=True)
class ConcentrationMetrics(Serializable):
    """Inequality and concentration statistics for one snapshot."""
    snapshot_id: str
    holder_count: int
    gini: float
    hhi: float
    nakamoto: int
    entropy: float
    concentration_ratios: Dict[str, float]
    effective_holders: float
    theil_index: float
    top_decile_share: float
    risk_level: str  # low, medium, high, critical
    decentralization_score: int
    lorenz_curve: List[LorenzPoint] = field(default_factory=list)


@dataclass(frozen=True)
class BehaviorProfile(Serializable):
    delegation_rate: float = 0.0
    voting_frequency: float = 0.0
    consistency: float = 0.0
    data_incomplete: bool = False


@dataclass(frozen=True)
class Segment(Serializable):
    """Holders whose power falls within one configured range."""
    name: str
    min_power: int
    max_power: Optional[int]  # None means unbounded
    holder_count: int
    total_power: int
    percentage: float
    average_power: int
    profile: BehaviorProfile


@dataclass(frozen=True)
class PopulationForecast(Serializable):
    term: str  # short, medium, long
    horizon_days: int
    predicted_total_power: int
    predicted_active_holders: int
    growth_rate: float
    confidence: float
    data_incomplete: bool = False


@dataclass(frozen=True)
class ThresholdAlert(Serializable):
    address: str
    threshold: int
    direction: str  # above, below
    category: str  # voting_threshold, delegation_limit, proposal_quorum, custom
    message: str

    def is_triggered(self, power: int) -> bool:
        if self.direction == "above":
            return power > self.threshold
        return power < self.threshold


@dataclass(frozen=True)
class TriggeredAlert(Serializable):
    alert: ThresholdAlert
    power: int
    triggered_at: datetime


@dataclass(frozen=True)
class PowerVelocity(Serializable):
    """Change in effective power over the trailing day, week and month."""
    daily_change: int
    weekly_change: int
    monthly_change: int
    direction: str  # upward, downward, sideways


@dataclass(frozen=True)
class ComparativeRanking(Serializable):
    rank: int
    percentile_rank: float
    total_addresses: int
    share: float
    rank_category: str


@dataclass(frozen=True)
class AddressAnalytics(Serializable):
    address: str
    snapshot_id: str
    current_power: int
    ranking: ComparativeRanking
    velocity: PowerVelocity
