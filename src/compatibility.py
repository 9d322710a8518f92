"""
Compatibility analysis of statute changes.

Classifies each change of a StatuteDiff as Breaking, BackwardCompatible,
ForwardCompatible or NonBreaking and aggregates a worst-case verdict.

Threshold changes are direction-aware: for a lower bound (age >= 20)
lowering the threshold relaxes eligibility, for an upper bound
(income <= 3000000) raising it does. Integer thresholds are normalised
so that `> 17` and `>= 18` compare equal.

Analysis is total: anything it cannot reason about is classified
Breaking and logged, never raised.
"""

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any

from statute import (
    NUMERIC_CONDITIONS,
    ComparisonOp,
    Condition,
    CustomCondition,
    DateRangeCondition,
    Effect,
    Statute,
    TemporalValidity,
    pair_conditions,
)
from statute_diff import Change, ChangeTarget, ChangeType, StatuteDiff

logger = logging.getLogger(__name__)


class ChangeCompatibility(Enum):
    """Compatibility class of a change."""

    NON_BREAKING = "non_breaking"
    BACKWARD_COMPATIBLE = "backward_compatible"
    FORWARD_COMPATIBLE = "forward_compatible"
    BREAKING = "breaking"

    @property
    def rank(self) -> int:
        """Aggregation severity: Breaking > Forward > Backward > NonBreaking."""
        return _RANK[self]


_RANK = {
    ChangeCompatibility.NON_BREAKING: 0,
    ChangeCompatibility.BACKWARD_COMPATIBLE: 1,
    ChangeCompatibility.FORWARD_COMPATIBLE: 2,
    ChangeCompatibility.BREAKING: 3,
}


class ConditionComparison(Enum):
    """How a modified condition relates to its previous revision."""

    EQUIVALENT = "equivalent"
    RELAXED = "relaxed"
    TIGHTENED = "tightened"
    DIFFERENT = "different"


class EquivalenceResult(Enum):
    EQUIVALENT = "equivalent"
    NOT_EQUIVALENT = "not_equivalent"
    UNKNOWN = "unknown"


class EffectScopeChange(Enum):
    """Direction in which the population or magnitude of an effect moved."""

    EXPANDED = "expanded"
    NARROWED = "narrowed"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ChangeAnalysis:
    """Verdict for one change."""

    change: Change
    compatibility: ChangeCompatibility
    relaxes_conditions: bool = False
    tightens_conditions: bool = False
    explanation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "change": self.change.to_dict(),
            "compatibility": self.compatibility.value,
            "relaxes_conditions": self.relaxes_conditions,
            "tightens_conditions": self.tightens_conditions,
            "explanation": self.explanation,
        }


@dataclass(frozen=True)
class CompatibilitySummary:
    """Counts per class and the worst-case overall verdict."""

    total_changes: int
    breaking_changes: int
    backward_compatible_changes: int
    forward_compatible_changes: int
    non_breaking_changes: int
    overall_compatibility: ChangeCompatibility

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_changes": self.total_changes,
            "breaking_changes": self.breaking_changes,
            "backward_compatible_changes": self.backward_compatible_changes,
            "forward_compatible_changes": self.forward_compatible_changes,
            "non_breaking_changes": self.non_breaking_changes,
            "overall_compatibility": self.overall_compatibility.value,
        }


# ============================================================
# Condition comparison
# ============================================================


def _normalized_bound(op: ComparisonOp, value: Any) -> tuple[Any, bool]:
    """
    Reduce a strict integer bound to its inclusive form.

    Returns:
        (threshold, strict) where strict is only ever True for non-integers
    """
    if isinstance(value, int) and op.is_strict:
        return (value + 1 if op.is_lower_bound else value - 1), False
    return value, op.is_strict


def _compare_thresholds(
    old_op: ComparisonOp, old_value: Any, new_op: ComparisonOp, new_value: Any
) -> ConditionComparison:
    if old_op.bound != new_op.bound or old_op.bound == "exact":
        if old_op == new_op and old_value == new_value:
            return ConditionComparison.EQUIVALENT
        return ConditionComparison.DIFFERENT

    old_t, old_strict = _normalized_bound(old_op, old_value)
    new_t, new_strict = _normalized_bound(new_op, new_value)
    if (old_t, old_strict) == (new_t, new_strict):
        return ConditionComparison.EQUIVALENT

    # Position of the bound on the number line; a strict bound sits just
    # past its threshold in the excluding direction.
    if old_op.is_lower_bound:
        moved_up = (new_t, new_strict) > (old_t, old_strict)
        return ConditionComparison.TIGHTENED if moved_up else ConditionComparison.RELAXED

    moved_down = (new_t, not new_strict) < (old_t, not old_strict)
    return ConditionComparison.TIGHTENED if moved_down else ConditionComparison.RELAXED


def _compare_windows(
    old_window: tuple[date, date],
    new_window: tuple[date, date],
) -> ConditionComparison:
    (old_start, old_end), (new_start, new_end) = old_window, new_window
    if old_window == new_window:
        return ConditionComparison.EQUIVALENT
    if new_start <= old_start and new_end >= old_end:
        return ConditionComparison.RELAXED
    if new_start >= old_start and new_end <= old_end:
        return ConditionComparison.TIGHTENED
    return ConditionComparison.DIFFERENT


def _date_range_window(condition: DateRangeCondition) -> tuple[date, date]:
    return (condition.start or date.min, condition.end or date.max)


def compare_conditions(old: Condition, new: Condition) -> ConditionComparison:
    """
    Compare two revisions of the same precondition.

    Args:
        old: Previous condition
        new: Revised condition

    Returns:
        RELAXED if more subjects qualify under `new`, TIGHTENED if fewer,
        EQUIVALENT if exactly the same subjects qualify, DIFFERENT if the
        populations are incomparable or the conditions cannot be reasoned about
    """
    if old == new:
        return ConditionComparison.EQUIVALENT
    if type(old) is not type(new):
        return ConditionComparison.DIFFERENT

    if isinstance(old, NUMERIC_CONDITIONS):
        return _compare_thresholds(old.operator, old.value, new.operator, new.value)
    if isinstance(old, DateRangeCondition):
        return _compare_windows(_date_range_window(old), _date_range_window(new))
    return ConditionComparison.DIFFERENT


# ============================================================
# Per-change analysis
# ============================================================


def _analysis(change: Change, compatibility: ChangeCompatibility, explanation: str,
              relaxes: bool = False, tightens: bool = False) -> ChangeAnalysis:
    return ChangeAnalysis(
        change=change,
        compatibility=compatibility,
        relaxes_conditions=relaxes,
        tightens_conditions=tightens,
        explanation=explanation,
    )


def _unanalyzable(change: Change, reason: str) -> ChangeAnalysis:
    logger.warning(
        "Cannot analyze %s change on %s (%s); treating as breaking",
        change.change_type.value, change.target_label, reason,
    )
    return _analysis(change, ChangeCompatibility.BREAKING, f"Unanalyzable change: {reason}")


def _analyze_precondition(change: Change) -> ChangeAnalysis:
    if change.change_type == ChangeType.ADDED:
        return _analysis(
            change, ChangeCompatibility.BREAKING,
            "New precondition may exclude previously eligible subjects",
            tightens=True,
        )
    if change.change_type == ChangeType.REMOVED:
        return _analysis(
            change, ChangeCompatibility.BACKWARD_COMPATIBLE,
            "Removing a precondition broadens eligibility",
            relaxes=True,
        )

    old, new = change.old_value, change.new_value
    if old is None or new is None:
        return _unanalyzable(change, "modified precondition without both values")
    if isinstance(old, CustomCondition) or isinstance(new, CustomCondition):
        return _analysis(
            change, ChangeCompatibility.BREAKING,
            "Custom conditions are opaque; change treated as breaking",
        )

    comparison = compare_conditions(old, new)
    if comparison == ConditionComparison.EQUIVALENT:
        return _analysis(
            change, ChangeCompatibility.NON_BREAKING,
            f"'{old}' and '{new}' admit exactly the same subjects",
        )
    if comparison == ConditionComparison.RELAXED:
        return _analysis(
            change, ChangeCompatibility.BACKWARD_COMPATIBLE,
            f"'{old}' -> '{new}' relaxes eligibility",
            relaxes=True,
        )
    if comparison == ConditionComparison.TIGHTENED:
        return _analysis(
            change, ChangeCompatibility.BREAKING,
            f"'{old}' -> '{new}' tightens eligibility",
            tightens=True,
        )
    return _analysis(
        change, ChangeCompatibility.BREAKING,
        f"'{old}' -> '{new}' changes eligibility in an incomparable way",
    )


def _analyze_effect(change: Change) -> ChangeAnalysis:
    old, new = change.old_value, change.new_value
    if not isinstance(old, Effect) or not isinstance(new, Effect):
        return _unanalyzable(change, "effect values missing")

    if old.effect_type != new.effect_type:
        return _analysis(
            change, ChangeCompatibility.BREAKING,
            f"Effect type changed from {old.effect_type.value} to {new.effect_type.value}",
        )
    if old.parameters != new.parameters:
        return _analysis(change, ChangeCompatibility.BREAKING, "Effect parameters changed")

    if old.amount is not None and new.amount is not None:
        if new.amount < old.amount:
            return _analysis(
                change, ChangeCompatibility.BREAKING,
                f"Effect amount reduced from {old.amount:g} to {new.amount:g}",
            )
        if new.amount > old.amount:
            return _analysis(
                change, ChangeCompatibility.BACKWARD_COMPATIBLE,
                f"Effect amount increased from {old.amount:g} to {new.amount:g}",
            )
        return _analysis(
            change, ChangeCompatibility.NON_BREAKING,
            "Only the effect description changed; amount is unchanged",
        )

    if old.amount != new.amount:
        return _analysis(
            change, ChangeCompatibility.BREAKING, "Structured effect amount added or removed"
        )
    return _analysis(
        change, ChangeCompatibility.BREAKING,
        "Effect description changed with no structured amount to compare",
    )


def _validity_window(validity: Any) -> tuple[date, date] | None:
    if validity is None:
        return (date.min, date.max)
    if isinstance(validity, TemporalValidity):
        return validity.active_window()
    return None


def _analyze_temporal(change: Change) -> ChangeAnalysis:
    old_window = _validity_window(change.old_value)
    new_window = _validity_window(change.new_value)
    if old_window is None or new_window is None:
        return _unanalyzable(change, "temporal values are not TemporalValidity")

    comparison = _compare_windows(old_window, new_window)
    if comparison == ConditionComparison.EQUIVALENT:
        return _analysis(
            change, ChangeCompatibility.NON_BREAKING,
            "Active window is unchanged",
        )
    if comparison == ConditionComparison.RELAXED:
        return _analysis(
            change, ChangeCompatibility.BACKWARD_COMPATIBLE,
            "Active window widened",
            relaxes=True,
        )
    if comparison == ConditionComparison.TIGHTENED:
        return _analysis(
            change, ChangeCompatibility.BREAKING,
            "Active window narrowed",
            tightens=True,
        )
    return _analysis(change, ChangeCompatibility.BREAKING, "Active window shifted")


def analyze_single_change(change: Change) -> ChangeAnalysis:
    """Classify one change. Never raises."""
    target = change.target
    if target in (ChangeTarget.TITLE, ChangeTarget.VERSION):
        return _analysis(
            change, ChangeCompatibility.NON_BREAKING,
            f"{target.value.capitalize()} changes do not affect evaluation outcomes",
        )
    if target == ChangeTarget.PRECONDITION:
        return _analyze_precondition(change)
    if target == ChangeTarget.EFFECT:
        return _analyze_effect(change)
    if target == ChangeTarget.DISCRETION_LOGIC:
        return _analysis(
            change, ChangeCompatibility.BREAKING,
            "Discretion logic changes may alter outcomes of reviewed decisions",
        )
    if target == ChangeTarget.TEMPORAL_VALIDITY:
        return _analyze_temporal(change)
    return _unanalyzable(change, f"unknown target {target!r}")


def analyze_changes(statute_diff: StatuteDiff) -> list[ChangeAnalysis]:
    """Classify every change of a diff, preserving diff order."""
    return [analyze_single_change(change) for change in statute_diff.changes]


def summarize_compatibility(analyses: Sequence[ChangeAnalysis]) -> CompatibilitySummary:
    """
    Aggregate per-change verdicts.

    The overall verdict is the most severe class present; an empty list is
    NonBreaking.
    """
    counts = {c: 0 for c in ChangeCompatibility}
    for analysis in analyses:
        counts[analysis.compatibility] += 1

    overall = max(
        (c for c, n in counts.items() if n),
        key=lambda c: c.rank,
        default=ChangeCompatibility.NON_BREAKING,
    )

    return CompatibilitySummary(
        total_changes=len(analyses),
        breaking_changes=counts[ChangeCompatibility.BREAKING],
        backward_compatible_changes=counts[ChangeCompatibility.BACKWARD_COMPATIBLE],
        forward_compatible_changes=counts[ChangeCompatibility.FORWARD_COMPATIBLE],
        non_breaking_changes=counts[ChangeCompatibility.NON_BREAKING],
        overall_compatibility=overall,
    )


def identify_breaking_changes(analyses: Sequence[ChangeAnalysis]) -> list[ChangeAnalysis]:
    return [a for a in analyses if a.compatibility == ChangeCompatibility.BREAKING]


def identify_backward_compatible_changes(analyses: Sequence[ChangeAnalysis]) -> list[ChangeAnalysis]:
    return [a for a in analyses if a.compatibility == ChangeCompatibility.BACKWARD_COMPATIBLE]


# ============================================================
# Equivalence
# ============================================================


def detect_equivalent_conditions(old: Condition, new: Condition) -> EquivalenceResult:
    """
    Logical equivalence despite syntactic differences (e.g. age >= 18 vs age > 17).

    Custom conditions are opaque, so two different ones are UNKNOWN.
    """
    comparison = compare_conditions(old, new)
    if comparison == ConditionComparison.EQUIVALENT:
        return EquivalenceResult.EQUIVALENT
    if isinstance(old, CustomCondition) and isinstance(new, CustomCondition):
        return EquivalenceResult.UNKNOWN
    return EquivalenceResult.NOT_EQUIVALENT


def detect_equivalent_preconditions(
    old: Sequence[Condition], new: Sequence[Condition]
) -> EquivalenceResult:
    """Order-insensitive equivalence of two precondition lists (AND semantics)."""
    if len(old) != len(new):
        return EquivalenceResult.NOT_EQUIVALENT

    unknown = False
    for ours, theirs in ((old, new), (new, old)):
        for condition in ours:
            results = {detect_equivalent_conditions(condition, other) for other in theirs}
            if EquivalenceResult.EQUIVALENT in results:
                continue
            if EquivalenceResult.UNKNOWN in results:
                unknown = True
                continue
            return EquivalenceResult.NOT_EQUIVALENT

    return EquivalenceResult.UNKNOWN if unknown else EquivalenceResult.EQUIVALENT


def detect_equivalent_statutes(old: Statute, new: Statute) -> EquivalenceResult:
    """Whether two revisions decide every case identically."""
    if old.id != new.id or old.effect != new.effect:
        return EquivalenceResult.NOT_EQUIVALENT
    if old.discretion_logic != new.discretion_logic:
        return EquivalenceResult.NOT_EQUIVALENT
    if _validity_window(old.temporal_validity) != _validity_window(new.temporal_validity):
        return EquivalenceResult.NOT_EQUIVALENT
    return detect_equivalent_preconditions(old.preconditions, new.preconditions)


def _is_cosmetic(change: Change) -> bool:
    if change.target in (ChangeTarget.TITLE, ChangeTarget.VERSION):
        return True
    if change.target == ChangeTarget.PRECONDITION and change.change_type == ChangeType.MODIFIED:
        return compare_conditions(change.old_value, change.new_value) == ConditionComparison.EQUIVALENT
    return False


def filter_equivalent_changes(statute_diff: StatuteDiff) -> list[Change]:
    """Changes that can alter an evaluation outcome (drops cosmetic and equivalent rewrites)."""
    return [c for c in statute_diff.changes if not _is_cosmetic(c)]


# ============================================================
# Effect scope
# ============================================================

_NUMBER = re.compile(r"\d+(?:\.\d+)?")


def _magnitude(effect: Effect) -> float | None:
    if effect.amount is not None:
        return effect.amount
    match = _NUMBER.search(effect.description.replace(",", ""))
    return float(match.group()) if match else None


def _precondition_scope(old: Statute, new: Statute) -> EffectScopeChange:
    expands = narrows = False
    for _, before, after in pair_conditions(old.preconditions, new.preconditions):
        if after is None:
            expands = True
        elif before is None:
            narrows = True
        else:
            comparison = compare_conditions(before, after)
            if comparison == ConditionComparison.RELAXED:
                expands = True
            elif comparison in (ConditionComparison.TIGHTENED, ConditionComparison.DIFFERENT):
                narrows = True

    if expands and narrows:
        return EffectScopeChange.CHANGED
    if expands:
        return EffectScopeChange.EXPANDED
    if narrows:
        return EffectScopeChange.NARROWED
    return EffectScopeChange.UNCHANGED


def _effect_magnitude(old: Effect, new: Effect) -> EffectScopeChange:
    if old.effect_type != new.effect_type:
        return EffectScopeChange.CHANGED
    before, after = _magnitude(old), _magnitude(new)
    if before is None or after is None or before == after:
        return EffectScopeChange.UNCHANGED
    return EffectScopeChange.EXPANDED if after > before else EffectScopeChange.NARROWED


def analyze_effect_scope_change(old: Statute, new: Statute) -> EffectScopeChange:
    """
    Combine eligibility scope and effect magnitude into one direction.

    The magnitude falls back to the first number in the description when
    the effect has no structured amount.
    """
    scope = _precondition_scope(old, new)
    magnitude = _effect_magnitude(old.effect, new.effect)

    if scope == EffectScopeChange.UNCHANGED:
        return magnitude
    if magnitude == EffectScopeChange.UNCHANGED or magnitude == scope:
        return scope
    return EffectScopeChange.CHANGED
