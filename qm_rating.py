"""
QM star-rating calculator.

Pure functions over a MeasureCatalog and an observed score set
(measure id -> raw percentage).  Nothing here does I/O or holds state,
so concurrent callers can share QM_CATALOG freely.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping

from qm_config import MeasureCatalog, MeasureDefinition

logger = logging.getLogger(__name__)

MIN_RATING = 1.0
MAX_RATING = 5.0
# Returned when no known measure is present: insufficient data, assume average.
DEFAULT_RATING = 3.0


class MeasureStatus(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


# Tier order matches the threshold ladder: index 0 is the best tier.
_STATUS_LADDER = (
    MeasureStatus.EXCELLENT,
    MeasureStatus.GOOD,
    MeasureStatus.FAIR,
    MeasureStatus.POOR,
    MeasureStatus.CRITICAL,
)


class InvalidObservedScores(ValueError):
    """An observed score payload could not be turned into numeric values."""


@dataclass(frozen=True)
class MeasureScore:
    """Per-measure line of a rating breakdown."""
    measure: MeasureDefinition
    value: float
    points: int
    status: MeasureStatus

    @property
    def weighted_points(self) -> float:
        return self.points * self.measure.weight


def _tier_index(measure: MeasureDefinition, value: float) -> int:
    """Index of the first cut point *value* meets, 4 if it meets none.

    Boundaries are inclusive on the better side: a value equal to a
    threshold counts as meeting it.
    """
    for i, cut in enumerate(measure.thresholds.as_tuple()):
        if measure.lower_is_better:
            if value <= cut:
                return i
        elif value >= cut:
            return i
    return len(_STATUS_LADDER) - 1


def points_for(measure: MeasureDefinition, value: float) -> int:
    """Point score 1-5 for one observed value (5 = meets `excellent`)."""
    return 5 - _tier_index(measure, value)


def status_for(measure: MeasureDefinition, value: float) -> MeasureStatus:
    """Qualitative tier for one observed value."""
    return _STATUS_LADDER[_tier_index(measure, value)]


def round_rating(x: float) -> float:
    """Round to one decimal, half away from zero for positive ratings.

    Uses floor(x * 10 + 0.5) instead of Python's round() to avoid banker's
    rounding (round(3.25, 1) -> 3.2).
    """
    return math.floor(x * 10 + 0.5) / 10


def _known_entries(catalog: MeasureCatalog, observed: Mapping[str, float]):
    """Yield (measure, value) for ids present in the catalog, in catalog order.

    Unknown ids are skipped with a warning: observed data may lag the catalog.
    """
    known_ids = set()
    for measure in catalog.all_measures():
        known_ids.add(measure.id)
        if measure.id in observed:
            yield measure, observed[measure.id]
    unknown = sorted(k for k in observed if k not in known_ids)
    if unknown:
        logger.warning(
            "Skipping %d unknown measure id(s) (catalog %s): %s",
            len(unknown), catalog.version, ", ".join(unknown),
        )


def aggregate(catalog: MeasureCatalog, observed: Mapping[str, float]) -> float:
    """Weighted composite star rating in [1.0, 5.0], one decimal.

    Only measures present in *observed* contribute to numerator and
    denominator; absent measures are not penalized.  Returns
    DEFAULT_RATING when nothing known is present.
    """
    weighted_sum = 0.0
    weight_sum = 0.0
    for measure, value in _known_entries(catalog, observed):
        weighted_sum += points_for(measure, value) * measure.weight
        weight_sum += measure.weight

    if weight_sum == 0:
        return DEFAULT_RATING

    rating = round_rating(weighted_sum / weight_sum)
    return min(MAX_RATING, max(MIN_RATING, rating))


def measure_breakdown(
    catalog: MeasureCatalog, observed: Mapping[str, float]
) -> List[MeasureScore]:
    """Points and status for every known measure in *observed*, catalog order."""
    return [
        MeasureScore(
            measure=measure,
            value=value,
            points=points_for(measure, value),
            status=status_for(measure, value),
        )
        for measure, value in _known_entries(catalog, observed)
    ]


def status_counts(
    catalog: MeasureCatalog, observed: Mapping[str, float]
) -> Dict[MeasureStatus, int]:
    """Number of measures in each tier.  Every tier is present as a key."""
    counts = {status: 0 for status in _STATUS_LADDER}
    for measure, value in _known_entries(catalog, observed):
        counts[status_for(measure, value)] += 1
    return counts


def required_change_pct(measure: MeasureDefinition, value: float) -> float:
    """Relative change (%) needed to reach the `good` threshold.

    Reduction for lower-is-better measures, improvement otherwise.
    0.0 when *value* already meets `good`.
    """
    good = measure.thresholds.good
    if measure.lower_is_better:
        if value <= good or value == 0:
            return 0.0
        return (value - good) / value * 100
    if value >= good or good == 0:
        return 0.0
    return (good - value) / good * 100


def star_count(rating: float) -> int:
    """Filled stars shown for a rating, 1-5."""
    return int(min(MAX_RATING, max(MIN_RATING, math.floor(rating + 0.5))))


def coerce_observed(raw) -> Dict[str, float]:
    """Validate an incoming score mapping (e.g. decoded JSON).

    Values must be finite numbers; booleans are rejected even though they
    are ints.  Unknown ids pass through untouched: aggregation skips them.
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise InvalidObservedScores(
            f"scores must be an object of measure id -> number, got {type(raw).__name__}"
        )
    observed = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            raise InvalidObservedScores(f"measure id must be a string, got {key!r}")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidObservedScores(f"score for {key!r} must be a number, got {value!r}")
        value = float(value)
        if not math.isfinite(value):
            raise InvalidObservedScores(f"score for {key!r} must be finite, got {value!r}")
        observed[key] = value
    return observed
