"""
Voting power forecasts.

Per-address predictions come from a day-over-day growth model fitted to the
trailing history window. Population forecasts extrapolate total power and
active holders across the retained snapshots.
"""

import logging
import statistics
from datetime import date, datetime, timedelta
from decimal import Decimal, localcontext
from typing import List, Optional, Sequence, Tuple

from .config import Config
from .interfaces import SignalSource
from .models import (
    PopulationForecast,
    PowerVelocity,
    PowerHistoryPoint,
    PowerPrediction,
    PredictionFactor,
    Snapshot,
    VotingPowerRecord,
)

logger = logging.getLogger(__name__)

# (factor type, weight, description); weights sum to 1
FACTOR_WEIGHTS = (
    ("historical_trend", 0.4, "Based on historical power changes"),
    ("delegation_pattern", 0.3, "Delegation pattern analysis"),
    ("market_condition", 0.2, "Current market conditions"),
    ("proposal_activity", 0.1, "Recent proposal participation"),
)

FORECAST_TERMS = (("short", 7), ("medium", 30), ("long", 180))

SECONDS_PER_DAY = 86400

# Extra significant digits carried beyond the amount being projected
PROJECTION_GUARD_DIGITS = 30

VELOCITY_WINDOWS = (("daily_change", 1), ("weekly_change", 7), ("monthly_change", 30))


def daily_closes(points: Sequence[PowerHistoryPoint]) -> List[Tuple[date, int]]:
    """Last recorded power for each calendar day, ascending."""
    closes = {}
    for point in points:
        closes[point.timestamp.date()] = point.power
    return sorted(closes.items())


def estimate_trend(points: Sequence[PowerHistoryPoint]) -> Tuple[float, float]:
    """Mean and population std-dev of day-over-day relative changes.

    Gaps of several days are converted to an equivalent daily rate; days
    starting from zero power are skipped.
    """
    closes = daily_closes(points)
    changes = []
    for (day0, power0), (day1, power1) in zip(closes, closes[1:]):
        if power0 <= 0:
            continue
        gap = (day1 - day0).days
        changes.append((power1 / power0) ** (1 / gap) - 1)

    if not changes:
        return 0.0, 0.0
    return statistics.fmean(changes), statistics.pstdev(changes)


def project_power(power: int, daily_rate: float, days: int) -> int:
    """Compound a daily rate over a number of days, never below zero."""
    base = 1 + daily_rate
    if base <= 0:
        return 0
    with localcontext() as ctx:
        ctx.prec = len(str(abs(power))) + PROJECTION_GUARD_DIGITS
        return max(0, int(Decimal(power) * Decimal(base) ** days))


def horizon_confidence(day: int, horizon: int, floor: float) -> float:
    """Linear decay from ~1 at day 1 down to the floor at the horizon."""
    return max(floor, 1.0 - (day / horizon) * (1.0 - floor))


def power_velocity(points: Sequence[PowerHistoryPoint], power_now: int,
                   now: datetime) -> PowerVelocity:
    """Power change against the last point at least 1, 7 and 30 days old.

    Windows reaching past the recorded history compare against the oldest point.
    """
    changes = {}
    for name, days in VELOCITY_WINDOWS:
        cutoff = now - timedelta(days=days)
        reference = None
        for point in points:
            if point.timestamp > cutoff:
                break
            reference = point
        if reference is None:
            reference = points[0] if points else None
        changes[name] = power_now - reference.power if reference is not None else 0

    weekly = changes["weekly_change"]
    direction = "upward" if weekly > 0 else "downward" if weekly < 0 else "sideways"
    return PowerVelocity(direction=direction, **changes)


class TrendPredictor:
    """Fits a trend/volatility model per address and projects it forward."""

    def __init__(self, config: Config, signal_source: Optional[SignalSource] = None):
        self.config = config
        self.signal_source = signal_source

    def is_modeled(self, record: VotingPowerRecord) -> bool:
        return len(record.history) >= self.config.min_history_points

    def predict(self, record: VotingPowerRecord, horizon_days: int,
                now: datetime) -> List[PowerPrediction]:
        """Daily predictions for 1..horizon_days; empty while history is insufficient."""
        if horizon_days < 1 or not self.is_modeled(record):
            return []

        window = list(record.history)[-self.config.prediction_window:]
        trend, volatility = estimate_trend(window)
        factors = self._factors(record.address, trend)
        power_now = record.effective_power

        predictions = []
        for day in range(1, horizon_days + 1):
            predictions.append(PowerPrediction(
                timestamp=now + timedelta(days=day),
                predicted_power=project_power(power_now, trend, day),
                confidence=horizon_confidence(day, horizon_days, self.config.confidence_floor),
                factors=factors,
                bullish_power=project_power(power_now, trend + volatility, day),
                bearish_power=project_power(power_now, trend - volatility, day),
            ))

        logger.debug(
            f"Predicted {horizon_days} days for {record.address}: "
            f"trend={trend:.6f} volatility={volatility:.6f}")
        return predictions

    def _factors(self, address: str, trend: float) -> List[PredictionFactor]:
        impacts = {
            "historical_trend": trend,
            "delegation_pattern": self._signal("delegation_trend", address),
            "market_condition": self._signal("market_condition"),
            "proposal_activity": self._signal("proposal_activity", address),
        }
        return [PredictionFactor(type=name, weight=weight, impact=impacts[name],
                                 description=description)
                for name, weight, description in FACTOR_WEIGHTS]

    def _signal(self, name: str, *args) -> float:
        """Collaborator signal, neutral (0) when unavailable."""
        if self.signal_source is None:
            return 0.0
        try:
            return float(getattr(self.signal_source, name)(*args))
        except Exception as e:
            logger.warning(f"Signal {name} unavailable, using neutral impact: {e}")
            return 0.0


def forecast_population(snapshots: Sequence[Snapshot],
                        confidence_floor: float = 0.1) -> List[PopulationForecast]:
    """Short, medium and long term forecasts from the retained snapshots."""
    latest = snapshots[-1] if snapshots else None
    total = latest.total_voting_power if latest else 0
    active = latest.distribution_metrics.active_holders if latest else 0

    span_days = 0.0
    if len(snapshots) >= 2:
        span_days = (latest.timestamp - snapshots[0].timestamp).total_seconds() / SECONDS_PER_DAY

    # Less than a day of observations is too short to extrapolate from
    if span_days < 1:
        return [PopulationForecast(term=term, horizon_days=days, predicted_total_power=total,
                                   predicted_active_holders=active, growth_rate=0.0,
                                   confidence=confidence_floor, data_incomplete=True)
                for term, days in FORECAST_TERMS]

    first = snapshots[0]
    growth = 0.0
    if first.total_voting_power > 0:
        growth = (total / first.total_voting_power) ** (1 / span_days) - 1
    active_per_day = (active - first.distribution_metrics.active_holders) / span_days

    forecasts = []
    for term, days in FORECAST_TERMS:
        forecasts.append(PopulationForecast(
            term=term,
            horizon_days=days,
            predicted_total_power=project_power(total, growth, days),
            predicted_active_holders=max(0, round(active + active_per_day * days)),
            growth_rate=growth,
            confidence=max(confidence_floor, span_days / (span_days + days)),
        ))
    return forecasts
