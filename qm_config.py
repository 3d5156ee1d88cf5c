"""
Quality Measure catalog for the QM star-rating engine.

Owns every CMS quality measure the engine scores: direction, threshold
ladder and weight (the scoring schema), plus the display payload
(name, description, national average, action plan) kept in separate
records so the scoring functions never touch presentation text.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.  QM_CATALOG is built and
validated at import time: an invalid catalog aborts startup.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Tuple


LONG_STAY = "long_stay"
SHORT_STAY = "short_stay"
GROUPS = (LONG_STAY, SHORT_STAY)


# =============================================================================
# Errors
# =============================================================================

class CatalogInvalid(ValueError):
    """The catalog violates an invariant and must not be used."""


class MeasureNotFound(KeyError):
    """No measure with the requested id exists in the catalog."""

    def __init__(self, measure_id: str):
        super().__init__(measure_id)
        self.measure_id = measure_id

    def __str__(self) -> str:
        return f"Unknown quality measure: {self.measure_id!r}"


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class MeasureThresholds:
    """Four cut points mapping a raw percentage onto the 5..2 point ladder.

    Strictly increasing for lower-is-better measures, strictly decreasing
    otherwise.  Anything past `poor` scores 1 point ("critical").
    """
    excellent: float
    good: float
    fair: float
    poor: float

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.excellent, self.good, self.fair, self.poor)


@dataclass(frozen=True)
class MeasureSpec:
    """Scoring schema for one measure."""
    id: str
    lower_is_better: bool
    thresholds: MeasureThresholds
    weight: float  # > 0; 1.0 or 1.5 in the CMS catalog
    group: str     # LONG_STAY or SHORT_STAY


@dataclass(frozen=True)
class MeasureContent:
    """Display payload for one measure.  Never read by the scoring code."""
    id: str
    name: str
    description: str
    national_average: float  # informational only
    action_plan: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MeasureDefinition:
    """A MeasureSpec joined with its MeasureContent."""
    spec: MeasureSpec
    content: MeasureContent

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def lower_is_better(self) -> bool:
        return self.spec.lower_is_better

    @property
    def thresholds(self) -> MeasureThresholds:
        return self.spec.thresholds

    @property
    def weight(self) -> float:
        return self.spec.weight

    @property
    def group(self) -> str:
        return self.spec.group

    @property
    def name(self) -> str:
        return self.content.name

    @property
    def description(self) -> str:
        return self.content.description

    @property
    def national_average(self) -> float:
        return self.content.national_average

    @property
    def action_plan(self) -> Tuple[str, ...]:
        return self.content.action_plan


@dataclass(frozen=True)
class MeasureCatalog:
    """Read-only registry of measures, partitioned into long- and short-stay.

    A single module-level instance (QM_CATALOG) is the source of truth.
    Bump `version` on every change that alters rating outputs.
    """
    version: str
    long_stay: Tuple[MeasureDefinition, ...]
    short_stay: Tuple[MeasureDefinition, ...]

    def all_measures(self) -> Tuple[MeasureDefinition, ...]:
        """Long-stay then short-stay, in declaration order."""
        return self.long_stay + self.short_stay

    def group(self, name: str) -> Tuple[MeasureDefinition, ...]:
        if name == LONG_STAY:
            return self.long_stay
        if name == SHORT_STAY:
            return self.short_stay
        raise ValueError(f"Unknown measure group {name!r}, expected one of {GROUPS}")

    def by_id(self, measure_id: str) -> MeasureDefinition:
        for measure in self.all_measures():
            if measure.id == measure_id:
                return measure
        raise MeasureNotFound(measure_id)

    def order_of(self, measure_id: str) -> int:
        for i, measure in enumerate(self.all_measures()):
            if measure.id == measure_id:
                return i
        raise MeasureNotFound(measure_id)

    def validate(self) -> None:
        """Raise CatalogInvalid if any catalog invariant is violated."""
        seen = set()
        for group_name, measures in ((LONG_STAY, self.long_stay), (SHORT_STAY, self.short_stay)):
            for m in measures:
                if m.spec.id != m.content.id:
                    raise CatalogInvalid(
                        f"Spec {m.spec.id!r} joined with content for {m.content.id!r}"
                    )
                if m.id in seen:
                    raise CatalogInvalid(f"Duplicate measure id {m.id!r}")
                seen.add(m.id)
                if m.group != group_name:
                    raise CatalogInvalid(
                        f"Measure {m.id!r} is tagged {m.group!r} but declared under {group_name!r}"
                    )
                # Exclude NaN as well as zero / negative weights.
                if not m.weight > 0:
                    raise CatalogInvalid(f"Measure {m.id!r} weight must be > 0, got {m.weight}")
                _check_monotonic(m)

    def __len__(self) -> int:
        return len(self.long_stay) + len(self.short_stay)


def _check_monotonic(measure: MeasureDefinition) -> None:
    cuts = measure.thresholds.as_tuple()
    pairs = list(zip(cuts, cuts[1:]))
    if measure.lower_is_better:
        ok = all(a < b for a, b in pairs)
        direction = "strictly increasing"
    else:
        ok = all(a > b for a, b in pairs)
        direction = "strictly decreasing"
    if not ok:
        raise CatalogInvalid(
            f"Measure {measure.id!r} thresholds {cuts} must be {direction} "
            f"(lower_is_better={measure.lower_is_better})"
        )


def build_catalog(
    version: str,
    specs: Iterable[MeasureSpec],
    contents: Iterable[MeasureContent],
) -> MeasureCatalog:
    """Join spec and content records by id, partition by group, validate.

    Spec order is preserved within each group.  A spec without content
    (or content without a spec) is a configuration error.
    """
    specs = tuple(specs)
    content_by_id: Dict[str, MeasureContent] = {}
    for c in contents:
        if c.id in content_by_id:
            raise CatalogInvalid(f"Duplicate content record for {c.id!r}")
        content_by_id[c.id] = c

    spec_ids = [s.id for s in specs]
    orphans = sorted(set(content_by_id) - set(spec_ids))
    if orphans:
        raise CatalogInvalid(f"Content without a measure spec: {orphans}")

    long_stay, short_stay = [], []
    for s in specs:
        if s.id not in content_by_id:
            raise CatalogInvalid(f"Measure {s.id!r} has no content record")
        if s.group not in GROUPS:
            raise CatalogInvalid(f"Measure {s.id!r} has unknown group {s.group!r}")
        target = long_stay if s.group == LONG_STAY else short_stay
        target.append(MeasureDefinition(spec=s, content=content_by_id[s.id]))

    catalog = MeasureCatalog(
        version=version,
        long_stay=tuple(long_stay),
        short_stay=tuple(short_stay),
    )
    catalog.validate()
    return catalog


# =============================================================================
# QM_CATALOG — CMS Five-Star quality measures
# =============================================================================

# Thresholds per the CMS Five-Star Quality Rating System Technical Users'
# Guide as used by the research dashboards.  Rehospitalization and
# functional improvement carry 1.5x weight.

_MEASURE_SPECS = (
    # Long-stay
    MeasureSpec("ls_falls", True, MeasureThresholds(1.5, 2.5, 4.0, 5.5), 1.0, LONG_STAY),
    MeasureSpec("ls_antipsychotic", True, MeasureThresholds(8.0, 12.0, 18.0, 25.0), 1.0, LONG_STAY),
    MeasureSpec("ls_pressure_ulcer", True, MeasureThresholds(3.0, 5.0, 8.0, 12.0), 1.0, LONG_STAY),
    MeasureSpec("ls_uti", True, MeasureThresholds(1.5, 2.5, 4.0, 6.0), 1.0, LONG_STAY),
    MeasureSpec("ls_weight_loss", True, MeasureThresholds(3.0, 5.0, 7.0, 10.0), 1.0, LONG_STAY),
    MeasureSpec("ls_catheter", True, MeasureThresholds(0.5, 1.0, 2.0, 3.5), 1.0, LONG_STAY),
    MeasureSpec("ls_physical_restraints", True, MeasureThresholds(0.0, 0.2, 0.5, 1.0), 1.0, LONG_STAY),
    MeasureSpec("ls_depression", True, MeasureThresholds(2.0, 3.5, 5.5, 8.0), 1.0, LONG_STAY),
    # Short-stay
    MeasureSpec("ss_rehospitalization", True, MeasureThresholds(15.0, 18.0, 24.0, 30.0), 1.5, SHORT_STAY),
    MeasureSpec("ss_ed_visits", True, MeasureThresholds(7.0, 9.0, 13.0, 18.0), 1.0, SHORT_STAY),
    MeasureSpec("ss_function_improved", False, MeasureThresholds(82.0, 78.0, 70.0, 60.0), 1.5, SHORT_STAY),
    MeasureSpec("ss_new_pressure_ulcer", True, MeasureThresholds(0.3, 0.7, 1.5, 2.5), 1.0, SHORT_STAY),
    MeasureSpec("ss_pain", True, MeasureThresholds(10.0, 13.0, 18.0, 25.0), 1.0, SHORT_STAY),
)

_MEASURE_CONTENT = (
    MeasureContent(
        id="ls_falls",
        name="Falls with Major Injury",
        description="Percentage of long-stay residents who experienced one or more falls with major injury",
        national_average=3.2,
        action_plan=(
            "Implement hourly rounding checks for high-risk residents",
            "Install bed/chair alarms for residents with fall history",
            "Review and adjust medications that increase fall risk",
            "Ensure proper footwear and assistive devices are available",
            "Conduct environmental safety audits (lighting, clutter, wet floors)",
        ),
    ),
    MeasureContent(
        id="ls_antipsychotic",
        name="Antipsychotic Medication Use",
        description="Percentage of long-stay residents who received an antipsychotic medication",
        national_average=14.5,
        action_plan=(
            "Review all antipsychotic orders for clinical appropriateness",
            "Implement non-pharmacological interventions for behavioral symptoms",
            "Conduct gradual dose reduction trials where appropriate",
            "Train staff on person-centered dementia care approaches",
            "Document behaviors and triggers to identify root causes",
        ),
    ),
    MeasureContent(
        id="ls_pressure_ulcer",
        name="Pressure Ulcers (High Risk)",
        description="Percentage of high-risk long-stay residents with pressure ulcers",
        national_average=6.8,
        action_plan=(
            "Implement turning/repositioning schedules every 2 hours",
            "Use pressure-redistributing mattresses and cushions",
            "Conduct weekly skin assessments and document findings",
            "Optimize nutrition and hydration for wound healing",
            "Address incontinence promptly to prevent skin breakdown",
        ),
    ),
    MeasureContent(
        id="ls_uti",
        name="Urinary Tract Infections",
        description="Percentage of long-stay residents with a urinary tract infection",
        national_average=3.1,
        action_plan=(
            "Review catheter use and implement removal protocols",
            "Ensure proper perineal care and hygiene practices",
            "Increase fluid intake for at-risk residents",
            "Train staff on aseptic catheter insertion techniques",
            "Monitor for early signs of UTI and treat promptly",
        ),
    ),
    MeasureContent(
        id="ls_weight_loss",
        name="Weight Loss",
        description="Percentage of long-stay residents who lose too much weight",
        national_average=5.8,
        action_plan=(
            "Conduct monthly weight monitoring for all residents",
            "Provide fortified foods and supplements as needed",
            "Address swallowing difficulties with speech therapy",
            "Review medications affecting appetite",
            "Offer preferred foods and dining environment improvements",
        ),
    ),
    MeasureContent(
        id="ls_catheter",
        name="Catheter Left in Bladder",
        description="Percentage of long-stay residents with a catheter inserted and left in their bladder",
        national_average=1.6,
        action_plan=(
            "Implement nurse-driven catheter removal protocols",
            "Review all catheter orders daily for continued need",
            "Try bladder training and intermittent catheterization",
            "Document medical necessity for any ongoing catheter use",
            "Track catheter days and set reduction goals",
        ),
    ),
    MeasureContent(
        id="ls_physical_restraints",
        name="Physical Restraints",
        description="Percentage of long-stay residents who were physically restrained",
        national_average=0.4,
        action_plan=(
            "Implement restraint-free care environment policies",
            "Use alternatives: low beds, motion sensors, 1:1 supervision",
            "Train staff on de-escalation techniques",
            "Review and discontinue restraint orders promptly",
            "Involve family in care planning discussions",
        ),
    ),
    MeasureContent(
        id="ls_depression",
        name="Depressive Symptoms",
        description="Percentage of long-stay residents who have depressive symptoms",
        national_average=4.2,
        action_plan=(
            "Screen all residents for depression on admission and quarterly",
            "Implement activity programs to increase engagement",
            "Ensure adequate lighting and outdoor time",
            "Consider psychiatric consultation for treatment-resistant cases",
            "Train staff to recognize and report mood changes",
        ),
    ),
    MeasureContent(
        id="ss_rehospitalization",
        name="Rehospitalization",
        description="Percentage of short-stay residents who were re-hospitalized after a nursing home admission",
        national_average=21.8,
        action_plan=(
            "Implement INTERACT (Interventions to Reduce Acute Care Transfers)",
            "Conduct thorough admission assessments to identify risks",
            "Ensure timely follow-up with physicians after hospital discharge",
            "Improve medication reconciliation processes",
            "Train staff to recognize early warning signs of decline",
        ),
    ),
    MeasureContent(
        id="ss_ed_visits",
        name="Emergency Department Visits",
        description="Percentage of short-stay residents who had an outpatient emergency department visit",
        national_average=11.3,
        action_plan=(
            "Develop protocols for managing common conditions in-house",
            "Ensure 24/7 access to nursing and medical staff",
            "Use telehealth for after-hours physician consultations",
            "Train staff on when ED visits are truly necessary",
            "Implement care pathways for falls, chest pain, respiratory distress",
        ),
    ),
    MeasureContent(
        id="ss_function_improved",
        name="Functional Improvement",
        description="Percentage of short-stay residents whose function improved",
        national_average=74.5,
        action_plan=(
            "Increase therapy intensity and frequency where appropriate",
            "Set individualized, measurable rehab goals",
            "Encourage patient participation in all ADLs",
            "Coordinate therapy with nursing care plans",
            "Monitor progress weekly and adjust treatment plans",
        ),
    ),
    MeasureContent(
        id="ss_new_pressure_ulcer",
        name="New Pressure Ulcers",
        description="Percentage of short-stay residents with new or worsening pressure ulcers",
        national_average=1.2,
        action_plan=(
            "Conduct skin assessment within 24 hours of admission",
            "Implement turning schedule from day one",
            "Use pressure-relieving devices for at-risk patients",
            "Document skin condition at every shift change",
            "Address nutrition deficits immediately",
        ),
    ),
    MeasureContent(
        id="ss_pain",
        name="Moderate to Severe Pain",
        description="Percentage of short-stay residents who reported moderate to severe pain",
        national_average=16.2,
        action_plan=(
            "Implement routine pain assessments (at least daily)",
            "Use multimodal pain management approaches",
            "Ensure timely administration of PRN pain medications",
            "Consider non-pharmacological interventions (heat, massage, positioning)",
            "Review and optimize pain medication regimens",
        ),
    ),
)


QM_CATALOG = build_catalog("1.0.0", _MEASURE_SPECS, _MEASURE_CONTENT)
