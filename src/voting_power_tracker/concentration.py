"""
Inequality and concentration statistics over a snapshot.

Every function here is pure: results depend only on the powers passed in,
so a given snapshot always yields the same metrics.
"""

import logging
import math
from typing import Dict, List, Sequence, Tuple

from .exceptions import InconsistentSnapshot
from .models import ConcentrationMetrics, LorenzPoint, Snapshot

logger = logging.getLogger(__name__)

CONCENTRATION_RATIO_SIZES = (1, 5, 10)

# (CR1 share above which the level applies, level, decentralization score)
RISK_LEVELS = (
    (50.0, "critical", 20),
    (30.0, "high", 40),
    (15.0, "medium", 60),
)


def _shares(powers: Sequence[int], total: int) -> List[float]:
    return [p / total for p in powers]


def lorenz_curve(powers: Sequence[int]) -> List[LorenzPoint]:
    """Cumulative population% vs cumulative power%, holders ascending by power."""
    total = sum(powers)
    n = len(powers)
    points = [LorenzPoint(population_percentage=0.0, power_percentage=0.0)]
    if n == 0 or total == 0:
        return points

    cumulative = 0
    for i, power in enumerate(sorted(powers), 1):
        cumulative += power
        points.append(LorenzPoint(
            population_percentage=i * 100 / n,
            power_percentage=cumulative * 100 / total,
        ))
    return points


def gini_coefficient(powers: Sequence[int]) -> float:
    """Gini = 1 - 2 * area under the Lorenz curve, clamped to [0, 1]."""
    total = sum(powers)
    n = len(powers)
    if n == 0 or total == 0:
        return 0.0

    # Trapezoid areas with integer numerators: sum(prev + cur) / (2 * n * total)
    twice_area_numerator = 0
    previous = cumulative = 0
    for power in sorted(powers):
        cumulative += power
        twice_area_numerator += previous + cumulative
        previous = cumulative

    area = twice_area_numerator / (2 * n * total)
    return min(1.0, max(0.0, 1.0 - 2.0 * area))


def herfindahl_index(powers: Sequence[int]) -> float:
    """Sum of squared shares; 0 for an empty or powerless population."""
    total = sum(powers)
    if total == 0:
        return 0.0
    return sum(p * p for p in powers) / (total * total)


def nakamoto_coefficient(powers: Sequence[int]) -> int:
    """Fewest top holders whose combined power reaches half of the total."""
    total = sum(powers)
    if total == 0:
        return 0

    cumulative = 0
    for count, power in enumerate(sorted(powers, reverse=True), 1):
        cumulative += power
        if cumulative * 2 >= total:
            return count
    return len(powers)


def entropy_index(powers: Sequence[int]) -> float:
    """Shannon entropy of the power shares, in bits."""
    total = sum(powers)
    if total == 0:
        return 0.0
    return -sum(s * math.log2(s) for s in _shares(powers, total) if s > 0)


def theil_index(powers: Sequence[int]) -> float:
    """Theil T index: ln(n) minus the natural-log entropy of the shares."""
    total = sum(powers)
    n = len(powers)
    if n <= 1 or total == 0:
        return 0.0
    entropy_nats = -sum(s * math.log(s) for s in _shares(powers, total) if s > 0)
    return max(0.0, math.log(n) - entropy_nats)


def concentration_ratio(powers: Sequence[int], k: int) -> float:
    """Percentage of total power held by the top k holders."""
    total = sum(powers)
    if total == 0:
        return 0.0
    top = sum(sorted(powers, reverse=True)[:k])
    return top * 100 / total


def concentration_ratios(powers: Sequence[int]) -> Dict[str, float]:
    return {f"CR{k}": concentration_ratio(powers, k) for k in CONCENTRATION_RATIO_SIZES}


def top_decile_share(powers: Sequence[int]) -> float:
    """Percentage held by the top 10% of holders (at least one holder)."""
    if not powers:
        return 0.0
    return concentration_ratio(powers, max(1, math.ceil(len(powers) * 0.1)))


def effective_holders(hhi: float, holder_count: int) -> float:
    if hhi <= 0:
        return float(holder_count)
    return 1.0 / hhi


def assess_centralization(cr1: float) -> Tuple[str, int]:
    """Risk level and decentralization score from the largest holder's share."""
    for limit, level, score in RISK_LEVELS:
        if cr1 > limit:
            return level, score
    return "low", 100


def analyze(snapshot: Snapshot) -> ConcentrationMetrics:
    """Compute all concentration metrics for a snapshot."""
    powers = [h.power for h in snapshot.holders]
    if any(p < 0 for p in powers) or sum(powers) != snapshot.total_voting_power:
        logger.error(
            f"Snapshot {snapshot.id} holder powers do not add up to its total "
            f"{snapshot.total_voting_power}")
        raise InconsistentSnapshot(
            f"Snapshot {snapshot.id} has inconsistent holder powers")

    hhi = herfindahl_index(powers)
    ratios = concentration_ratios(powers)
    risk_level, score = assess_centralization(ratios["CR1"])

    metrics = ConcentrationMetrics(
        snapshot_id=snapshot.id,
        holder_count=len(powers),
        gini=gini_coefficient(powers),
        hhi=hhi,
        nakamoto=nakamoto_coefficient(powers),
        entropy=entropy_index(powers),
        concentration_ratios=ratios,
        effective_holders=effective_holders(hhi, len(powers)),
        theil_index=theil_index(powers),
        top_decile_share=top_decile_share(powers),
        risk_level=risk_level,
        decentralization_score=score,
        lorenz_curve=lorenz_curve(powers),
    )
    logger.debug(
        f"Concentration for {snapshot.id}: gini={metrics.gini:.4f} hhi={metrics.hhi:.4f} "
        f"nakamoto={metrics.nakamoto}")
    return metrics
