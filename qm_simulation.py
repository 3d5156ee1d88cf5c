"""
What-if simulation over the QM rating calculator.

Runs the calculator over a "current" and a hypothetical "what-if" score
set, reports the delta, and ranks the measures still short of target so
improvement effort can be prioritized.  All functions are pure; callers
re-run them whenever inputs change.
"""

import logging
import math
import random
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from qm_config import MeasureCatalog, MeasureDefinition
from qm_rating import (
    MeasureStatus,
    aggregate,
    points_for,
    required_change_pct,
    status_for,
)

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY_LIMIT = 5

# Tiers on the wrong side of the `good` threshold.
PRIORITY_STATUSES = frozenset({
    MeasureStatus.FAIR,
    MeasureStatus.POOR,
    MeasureStatus.CRITICAL,
})

# Sample data spread around the national average (x0.8 .. x1.2).
SAMPLE_SPREAD = (0.8, 1.2)


def _round1(x: float) -> float:
    """One decimal, half-up, matching how facilities report measure rates."""
    return math.floor(x * 10 + 0.5) / 10


@dataclass(frozen=True)
class ComparisonResult:
    current_rating: float
    what_if_rating: float
    delta: float  # what_if - current; positive means the scenario improves


@dataclass(frozen=True)
class PriorityItem:
    """A measure below target, with how much fixing it is worth."""
    measure: MeasureDefinition
    observed_value: float
    status: MeasureStatus
    improvement_gap: float   # distance past the `good` threshold, >= 0
    impact_potential: float  # improvement_gap * weight

    @property
    def target(self) -> float:
        return self.measure.thresholds.good

    @property
    def required_change_pct(self) -> float:
        return required_change_pct(self.measure, self.observed_value)


@dataclass(frozen=True)
class MeasureChange:
    """One measure whose what-if value differs from its current value."""
    measure: MeasureDefinition
    current_value: float
    what_if_value: float
    current_points: int
    what_if_points: int

    @property
    def change(self) -> float:
        return self.what_if_value - self.current_value

    @property
    def points_change(self) -> int:
        return self.what_if_points - self.current_points


def compare(
    catalog: MeasureCatalog,
    current: Mapping[str, float],
    what_if: Mapping[str, float],
) -> ComparisonResult:
    """Rate both score sets and report the signed difference."""
    current_rating = aggregate(catalog, current)
    what_if_rating = aggregate(catalog, what_if)
    # Both ratings are already one-decimal; re-rounding drops float noise
    # such as 3.6 - 3.3 == 0.2999999999999998.
    delta = round(what_if_rating - current_rating, 1)
    return ComparisonResult(
        current_rating=current_rating,
        what_if_rating=what_if_rating,
        delta=delta,
    )


def _improvement_gap(measure: MeasureDefinition, value: float) -> float:
    good = measure.thresholds.good
    if measure.lower_is_better:
        return value - good
    return good - value


def rank_priorities(
    catalog: MeasureCatalog,
    current: Mapping[str, float],
    limit: int = DEFAULT_PRIORITY_LIMIT,
) -> List[PriorityItem]:
    """Measures rated fair/poor/critical, biggest weighted gap first.

    Ties keep catalog declaration order.  An empty list means every
    measure present is on track.
    """
    if limit < 0:
        raise ValueError(f"limit must be >= 0, got {limit}")

    items = []
    known_ids = set()
    for measure in catalog.all_measures():
        known_ids.add(measure.id)
        if measure.id not in current:
            continue
        value = current[measure.id]
        status = status_for(measure, value)
        if status not in PRIORITY_STATUSES:
            continue
        gap = _improvement_gap(measure, value)
        items.append(PriorityItem(
            measure=measure,
            observed_value=value,
            status=status,
            improvement_gap=gap,
            impact_potential=gap * measure.weight,
        ))

    unknown = sorted(k for k in current if k not in known_ids)
    if unknown:
        logger.warning("rank_priorities skipping unknown measure id(s): %s", ", ".join(unknown))

    # Equal impact falls back to catalog order.
    items = sorted(
        items, key=lambda item: (-item.impact_potential, catalog.order_of(item.measure.id))
    )
    return items[:limit]


# =============================================================================
# What-if scenario helpers
# =============================================================================

def reset_what_if(current: Mapping[str, float]) -> Dict[str, float]:
    """A fresh what-if set equal to *current*."""
    return dict(current)


def changed_measures(
    catalog: MeasureCatalog,
    current: Mapping[str, float],
    what_if: Mapping[str, float],
) -> List[MeasureChange]:
    """Measures whose what-if value differs from the current one.

    A measure missing from *what_if* keeps its current value.  Only
    measures with a current value are considered.
    """
    changes = []
    for measure in catalog.all_measures():
        if measure.id not in current:
            continue
        current_value = current[measure.id]
        what_if_value = what_if.get(measure.id, current_value)
        if what_if_value == current_value:
            continue
        changes.append(MeasureChange(
            measure=measure,
            current_value=current_value,
            what_if_value=what_if_value,
            current_points=points_for(measure, current_value),
            what_if_points=points_for(measure, what_if_value),
        ))
    return changes


def slider_range(
    measure: MeasureDefinition, current_value: Optional[float] = None
) -> Tuple[float, float]:
    """(min, max) bounds for a what-if input on *measure*."""
    if not measure.lower_is_better:
        return (0.0, 100.0)
    if current_value is None:
        return (0.0, measure.thresholds.poor * 1.5)
    return (0.0, max(30.0, current_value * 2))


def sample_scores(
    catalog: MeasureCatalog, rng: Optional[random.Random] = None
) -> Dict[str, float]:
    """Demo score set: each national average scaled by U(0.8, 1.2).

    Pass a seeded random.Random for reproducible output.
    """
    rng = rng or random.Random()
    low, high = SAMPLE_SPREAD
    return {
        measure.id: _round1(measure.national_average * rng.uniform(low, high))
        for measure in catalog.all_measures()
    }
