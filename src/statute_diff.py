"""
Structural diff between two revisions of a statute.

Produces an ordered list of typed changes plus an impact assessment.
Preconditions are matched by identity (kind + subject) rather than list
position, so reordering alone produces no changes.

Output order is canonical and deterministic:
    Title, Preconditions (condition-kind order), Effect, Discretion logic,
    Temporal validity, Version
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from monitoring import metrics
from statute import Condition, Statute, pair_conditions

logger = logging.getLogger(__name__)


class DiffError(Exception):
    """Base exception for diff operations."""
    pass


class MismatchedIdentityError(DiffError):
    """Raised when diffing two statutes with different identifiers."""

    def __init__(self, old_id: str, new_id: str):
        self.old_id = old_id
        self.new_id = new_id
        super().__init__(f"Cannot diff statutes with different ids: '{old_id}' vs '{new_id}'")


class ChangeTarget(Enum):
    """Part of the statute a change applies to, in canonical output order."""

    TITLE = "title"
    PRECONDITION = "precondition"
    EFFECT = "effect"
    DISCRETION_LOGIC = "discretion_logic"
    TEMPORAL_VALIDITY = "temporal_validity"
    VERSION = "version"


class ChangeType(Enum):
    """Kind of change."""

    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class Severity(IntEnum):
    """Impact severity, ordered from least to most severe."""

    NONE = 0
    MINOR = 1
    MODERATE = 2
    MAJOR = 3
    BREAKING = 4


@dataclass(frozen=True)
class Change:
    """
    One detected difference between two statute revisions.

    old_value/new_value hold the typed values (Condition, Effect,
    TemporalValidity, str, int); None on the missing side of an
    added/removed change.
    """

    target: ChangeTarget
    change_type: ChangeType
    description: str
    old_value: Any = None
    new_value: Any = None
    condition_key: str | None = None

    @property
    def target_label(self) -> str:
        if self.condition_key:
            return f"{self.target.value}[{self.condition_key}]"
        return self.target.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target.value,
            "change_type": self.change_type.value,
            "condition_key": self.condition_key,
            "description": self.description,
            "old_value": _display(self.old_value),
            "new_value": _display(self.new_value),
        }


@dataclass
class ImpactAssessment:
    """Aggregate impact of a diff."""

    severity: Severity = Severity.NONE
    affects_eligibility: bool = False
    affects_outcome: bool = False
    discretion_changed: bool = False
    notes: list[str] = field(default_factory=list)

    def raise_to(self, severity: Severity) -> None:
        self.severity = max(self.severity, severity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.name,
            "affects_eligibility": self.affects_eligibility,
            "affects_outcome": self.affects_outcome,
            "discretion_changed": self.discretion_changed,
            "notes": list(self.notes),
        }


@dataclass(frozen=True)
class StatuteDiff:
    """Ordered changes between two revisions of one statute."""

    statute_id: str
    old_version: int
    new_version: int
    changes: tuple[Change, ...]
    impact: ImpactAssessment

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def __len__(self) -> int:
        return len(self.changes)

    def __iter__(self):
        return iter(self.changes)


def _display(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _check_identity(old: Statute, new: Statute) -> None:
    if old.id != new.id:
        raise MismatchedIdentityError(old.id, new.id)


def _validity_window(statute: Statute):
    validity = statute.temporal_validity
    if validity is None:
        return None
    return (validity.effective_date, validity.expiry_date)


def _diff_preconditions(
    old: Sequence[Condition],
    new: Sequence[Condition],
    impact: ImpactAssessment,
) -> list[Change]:
    changes: list[Change] = []
    added = removed = 0
    for key, before, after in pair_conditions(old, new):
        if before is None:
            changes.append(Change(
                target=ChangeTarget.PRECONDITION,
                change_type=ChangeType.ADDED,
                description=f"Precondition added: {after}",
                new_value=after,
                condition_key=key,
            ))
            added += 1
        elif after is None:
            changes.append(Change(
                target=ChangeTarget.PRECONDITION,
                change_type=ChangeType.REMOVED,
                description=f"Precondition removed: {before}",
                old_value=before,
                condition_key=key,
            ))
            removed += 1
        elif before != after:
            changes.append(Change(
                target=ChangeTarget.PRECONDITION,
                change_type=ChangeType.MODIFIED,
                description=f"Precondition modified: {before} -> {after}",
                old_value=before,
                new_value=after,
                condition_key=key,
            ))
            impact.affects_eligibility = True
            impact.raise_to(Severity.MODERATE)

    if added:
        impact.affects_eligibility = True
        impact.raise_to(Severity.MAJOR)
        impact.notes.append("New eligibility conditions added")
    if removed:
        impact.affects_eligibility = True
        impact.raise_to(Severity.MAJOR)
        impact.notes.append("Eligibility conditions removed")

    return changes


def _diff_effect(old: Statute, new: Statute, impact: ImpactAssessment) -> Change | None:
    if old.effect == new.effect:
        return None
    impact.affects_outcome = True
    impact.raise_to(Severity.MAJOR)
    if old.effect.effect_type != new.effect.effect_type:
        impact.notes.append(
            f"Effect type changed from {old.effect.effect_type.value} "
            f"to {new.effect.effect_type.value}"
        )
    return Change(
        target=ChangeTarget.EFFECT,
        change_type=ChangeType.MODIFIED,
        description="Effect was modified",
        old_value=old.effect,
        new_value=new.effect,
    )


def _diff_discretion(old: Statute, new: Statute, impact: ImpactAssessment) -> Change | None:
    before, after = old.discretion_logic, new.discretion_logic
    if before == after:
        return None

    impact.discretion_changed = True
    if before is None:
        impact.raise_to(Severity.MAJOR)
        return Change(
            target=ChangeTarget.DISCRETION_LOGIC,
            change_type=ChangeType.ADDED,
            description="Discretion logic was added",
            new_value=after,
        )
    if after is None:
        impact.raise_to(Severity.MAJOR)
        return Change(
            target=ChangeTarget.DISCRETION_LOGIC,
            change_type=ChangeType.REMOVED,
            description="Discretion logic was removed",
            old_value=before,
        )
    impact.raise_to(Severity.MODERATE)
    return Change(
        target=ChangeTarget.DISCRETION_LOGIC,
        change_type=ChangeType.MODIFIED,
        description="Discretion logic was modified",
        old_value=before,
        new_value=after,
    )


def diff(old: Statute, new: Statute) -> StatuteDiff:
    """
    Compute the structural diff between two revisions of a statute.

    Preconditions are matched by identity key, which for numeric
    comparisons includes the bound direction: age >= 18 -> age == 18 is
    reported as a removal plus an addition, while age >= 18 -> age > 20
    is a single modification.

    Args:
        old: Earlier revision
        new: Later revision

    Returns:
        StatuteDiff with changes in canonical order

    Raises:
        MismatchedIdentityError: If the statutes have different ids
    """
    _check_identity(old, new)

    changes: list[Change] = []
    impact = ImpactAssessment()

    if old.title != new.title:
        changes.append(Change(
            target=ChangeTarget.TITLE,
            change_type=ChangeType.MODIFIED,
            description="Title was modified",
            old_value=old.title,
            new_value=new.title,
        ))
        impact.raise_to(Severity.MINOR)

    changes.extend(_diff_preconditions(old.preconditions, new.preconditions, impact))

    effect_change = _diff_effect(old, new, impact)
    if effect_change:
        changes.append(effect_change)

    discretion_change = _diff_discretion(old, new, impact)
    if discretion_change:
        changes.append(discretion_change)

    if _validity_window(old) != _validity_window(new):
        changes.append(Change(
            target=ChangeTarget.TEMPORAL_VALIDITY,
            change_type=ChangeType.MODIFIED,
            description="Temporal validity was modified",
            old_value=old.temporal_validity,
            new_value=new.temporal_validity,
        ))
        impact.raise_to(Severity.MODERATE)

    if old.version != new.version:
        changes.append(Change(
            target=ChangeTarget.VERSION,
            change_type=ChangeType.MODIFIED,
            description=f"Version changed from {old.version} to {new.version}",
            old_value=old.version,
            new_value=new.version,
        ))

    metrics.increment("statute_diffs_computed")
    logger.debug(
        "Diffed statute %s v%s -> v%s: %d change(s)",
        old.id, old.version, new.version, len(changes),
    )

    return StatuteDiff(
        statute_id=old.id,
        old_version=old.version,
        new_version=new.version,
        changes=tuple(changes),
        impact=impact,
    )


def diff_sequence(versions: Sequence[Statute]) -> list[StatuteDiff]:
    """Diff each consecutive pair in a revision history; fewer than two versions yields []."""
    return [diff(versions[i], versions[i + 1]) for i in range(len(versions) - 1)]


def diff_preconditions_only(old: Statute, new: Statute) -> list[Change]:
    """Compare only the preconditions of two revisions."""
    _check_identity(old, new)
    return _diff_preconditions(old.preconditions, new.preconditions, ImpactAssessment())


def diff_effect_only(old: Statute, new: Statute) -> Change | None:
    """Compare only the effects of two revisions; None when unchanged."""
    _check_identity(old, new)
    return _diff_effect(old, new, ImpactAssessment())


def filter_changes_by_type(statute_diff: StatuteDiff, change_type: ChangeType) -> list[Change]:
    return [c for c in statute_diff.changes if c.change_type == change_type]


def count_changes_by_target(statute_diff: StatuteDiff) -> dict[str, int]:
    counts: dict[str, int] = {}
    for change in statute_diff.changes:
        counts[change.target.value] = counts.get(change.target.value, 0) + 1
    return counts


def has_breaking_changes(statute_diff: StatuteDiff) -> bool:
    """True when the impact severity is MAJOR or worse."""
    return statute_diff.impact.severity >= Severity.MAJOR


@dataclass
class DetailedSummary:
    """Summary of a diff with confidence scores and plain-language insights."""

    statute_id: str
    change_count: int
    severity: Severity
    summary_text: str
    change_detection_confidence: float
    impact_assessment_confidence: float
    overall_confidence: float
    counts_by_type: dict[str, int]
    counts_by_target: dict[str, int]
    insights: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "statute_id": self.statute_id,
            "change_count": self.change_count,
            "severity": self.severity.name,
            "summary_text": self.summary_text,
            "change_detection_confidence": self.change_detection_confidence,
            "impact_assessment_confidence": self.impact_assessment_confidence,
            "overall_confidence": self.overall_confidence,
            "counts_by_type": dict(self.counts_by_type),
            "counts_by_target": dict(self.counts_by_target),
            "insights": list(self.insights),
        }


def detailed_summary(statute_diff: StatuteDiff) -> DetailedSummary:
    """
    Richer companion to summarize().

    Change detection is structural, so its confidence is high (1.0 for an
    empty diff, 0.95 otherwise). Impact confidence is 0.9 when any impact
    flag is set, 0.85 for MODERATE or worse, 0.8 for MINOR and 0.95 when
    nothing changed. The overall score is their mean.
    """
    impact = statute_diff.impact
    change_count = len(statute_diff.changes)

    change_confidence = 1.0 if change_count == 0 else 0.95
    if impact.affects_eligibility or impact.affects_outcome or impact.discretion_changed:
        impact_confidence = 0.9
    elif impact.severity >= Severity.MODERATE:
        impact_confidence = 0.85
    elif impact.severity == Severity.MINOR:
        impact_confidence = 0.8
    else:
        impact_confidence = 0.95

    insights = []
    if impact.affects_eligibility:
        insights.append("This change affects who is eligible for the statute's provisions.")
    if impact.affects_outcome:
        insights.append("This change modifies the outcome or effect of the statute.")
    if impact.discretion_changed:
        insights.append("Discretionary judgment requirements have been modified.")

    counts_by_type = {t.value: len(filter_changes_by_type(statute_diff, t)) for t in ChangeType}
    if counts_by_type[ChangeType.ADDED.value]:
        insights.append(f"{counts_by_type[ChangeType.ADDED.value]} new element(s) added.")
    if counts_by_type[ChangeType.REMOVED.value]:
        insights.append(f"{counts_by_type[ChangeType.REMOVED.value]} element(s) removed.")
    if counts_by_type[ChangeType.MODIFIED.value]:
        insights.append(f"{counts_by_type[ChangeType.MODIFIED.value]} element(s) modified.")

    return DetailedSummary(
        statute_id=statute_diff.statute_id,
        change_count=change_count,
        severity=impact.severity,
        summary_text=summarize(statute_diff),
        change_detection_confidence=change_confidence,
        impact_assessment_confidence=impact_confidence,
        overall_confidence=(change_confidence + impact_confidence) / 2,
        counts_by_type=counts_by_type,
        counts_by_target=count_changes_by_target(statute_diff),
        insights=insights,
    )


# ============================================================
# Formatters
# ============================================================


def summarize(statute_diff: StatuteDiff) -> str:
    """Plain-text summary of a diff."""
    lines = [
        f"Diff for statute '{statute_diff.statute_id}' "
        f"(v{statute_diff.old_version} -> v{statute_diff.new_version})",
        f"Severity: {statute_diff.impact.severity.name}",
        f"Changes: {len(statute_diff.changes)}",
        "",
    ]
    for change in statute_diff.changes:
        lines.append(
            f"  [{change.change_type.name}] {change.target_label}: {change.description}"
        )

    if statute_diff.impact.notes:
        lines.append("")
        lines.append("Impact Notes:")
        lines.extend(f"  - {note}" for note in statute_diff.impact.notes)

    return "\n".join(lines) + "\n"


def format_markdown(statute_diff: StatuteDiff, analyses: Sequence[Any] | None = None) -> str:
    """
    Render a diff as a Markdown report.

    Args:
        statute_diff: Diff to render
        analyses: Optional per-change compatibility analyses, in the same
            order as the diff's changes

    Returns:
        Markdown document
    """
    impact = statute_diff.impact
    out = [
        f"# Statute `{statute_diff.statute_id}`: "
        f"v{statute_diff.old_version} → v{statute_diff.new_version}",
        "",
        f"**Severity:** {impact.severity.name}  ",
        f"**Affects eligibility:** {'yes' if impact.affects_eligibility else 'no'}  ",
        f"**Affects outcome:** {'yes' if impact.affects_outcome else 'no'}",
        "",
    ]

    if not statute_diff.changes:
        out.append("_No changes._")
        return "\n".join(out) + "\n"

    header = "| # | Target | Change | Old | New |"
    divider = "|---|--------|--------|-----|-----|"
    if analyses is not None:
        header += " Compatibility |"
        divider += "---------------|"
    out.extend([header, divider])

    for i, change in enumerate(statute_diff.changes):
        row = (
            f"| {i + 1} | {change.target_label} | {change.change_type.value} "
            f"| {_cell(change.old_value)} | {_cell(change.new_value)} |"
        )
        if analyses is not None:
            row += f" {analyses[i].compatibility.value} |"
        out.append(row)

    if impact.notes:
        out.append("")
        out.append("## Notes")
        out.extend(f"- {note}" for note in impact.notes)

    return "\n".join(out) + "\n"


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("|", "\\|")


def diff_to_dict(statute_diff: StatuteDiff) -> dict[str, Any]:
    """JSON-ready representation of a diff."""
    return {
        "statute_id": statute_diff.statute_id,
        "old_version": statute_diff.old_version,
        "new_version": statute_diff.new_version,
        "changes": [c.to_dict() for c in statute_diff.changes],
        "impact": statute_diff.impact.to_dict(),
    }
