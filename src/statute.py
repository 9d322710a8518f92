"""
Statute rule model.

Versioned representation of a legal rule consumed by the differ, the
compatibility analyzer and the audit trail:
- Typed preconditions (closed set of condition classes)
- Effect with an optional structured amount
- Temporal validity window (effective date / sunset)
- Version number, stable identifier

All types are immutable values with structural equality.
"""

import json
import os
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Union


class StatuteFormatError(ValueError):
    """Raised when a statute document cannot be parsed."""
    pass


class ComparisonOp(Enum):
    """Comparison operators used by numeric conditions."""

    EQUAL = "=="
    NOT_EQUAL = "!="
    GREATER_THAN = ">"
    GREATER_OR_EQUAL = ">="
    LESS_THAN = "<"
    LESS_OR_EQUAL = "<="

    @property
    def symbol(self) -> str:
        return self.value

    @property
    def is_lower_bound(self) -> bool:
        """Eligibility requires value >= / > threshold."""
        return self in (ComparisonOp.GREATER_THAN, ComparisonOp.GREATER_OR_EQUAL)

    @property
    def is_upper_bound(self) -> bool:
        """Eligibility requires value <= / < threshold."""
        return self in (ComparisonOp.LESS_THAN, ComparisonOp.LESS_OR_EQUAL)

    @property
    def is_strict(self) -> bool:
        return self in (ComparisonOp.GREATER_THAN, ComparisonOp.LESS_THAN)

    @property
    def bound(self) -> str:
        """Bound direction: "lower", "upper" or "exact"."""
        if self.is_lower_bound:
            return "lower"
        if self.is_upper_bound:
            return "upper"
        return "exact"

    @classmethod
    def parse(cls, raw: str) -> "ComparisonOp":
        """Accept either the symbol ("<=") or the member name ("LESS_OR_EQUAL")."""
        for op in cls:
            if raw == op.value or raw.upper() == op.name:
                return op
        raise StatuteFormatError(f"Unknown comparison operator: {raw!r}")


class ConditionKind(Enum):
    """
    Condition kinds in canonical enumeration order.

    The differ emits precondition changes in this order, so the member
    order here is part of the diff output contract.
    """

    AGE = "age"
    INCOME = "income"
    RESIDENCY_DURATION = "residency_duration"
    HAS_ATTRIBUTE = "has_attribute"
    ATTRIBUTE_EQUALS = "attribute_equals"
    GEOGRAPHIC = "geographic"
    DATE_RANGE = "date_range"
    CUSTOM = "custom"

    @property
    def order(self) -> int:
        return list(ConditionKind).index(self)


class RegionType(Enum):
    """Geographic region granularity."""

    COUNTRY = "country"
    STATE = "state"
    CITY = "city"
    DISTRICT = "district"
    POSTAL_CODE = "postal_code"
    CUSTOM = "custom"


# ============================================================
# Conditions
# ============================================================


class _ConditionMixin:
    """Shared identity helpers for condition dataclasses."""

    @property
    def identity_key(self) -> str:
        return condition_key(self)


@dataclass(frozen=True)
class AgeCondition(_ConditionMixin):
    """Age comparison (e.g. age >= 18)."""

    operator: ComparisonOp
    value: int

    kind = ConditionKind.AGE

    @property
    def subject(self) -> str:
        return self.operator.bound

    def __str__(self) -> str:
        return f"age {self.operator.symbol} {self.value}"


@dataclass(frozen=True)
class IncomeCondition(_ConditionMixin):
    """Income comparison (e.g. income <= 3000000)."""

    operator: ComparisonOp
    value: int

    kind = ConditionKind.INCOME

    @property
    def subject(self) -> str:
        return self.operator.bound

    def __str__(self) -> str:
        return f"income {self.operator.symbol} {self.value}"


@dataclass(frozen=True)
class ResidencyDurationCondition(_ConditionMixin):
    """Residency duration in months."""

    operator: ComparisonOp
    months: int

    kind = ConditionKind.RESIDENCY_DURATION

    @property
    def value(self) -> int:
        return self.months

    @property
    def subject(self) -> str:
        return self.operator.bound

    def __str__(self) -> str:
        return f"residency {self.operator.symbol} {self.months} months"


@dataclass(frozen=True)
class HasAttributeCondition(_ConditionMixin):
    """Attribute existence check."""

    key: str

    kind = ConditionKind.HAS_ATTRIBUTE

    @property
    def subject(self) -> str:
        return self.key

    def __str__(self) -> str:
        return f"has_attribute({self.key})"


@dataclass(frozen=True)
class AttributeEqualsCondition(_ConditionMixin):
    """Attribute value check (e.g. HasDependents == "true")."""

    key: str
    value: str

    kind = ConditionKind.ATTRIBUTE_EQUALS

    @property
    def subject(self) -> str:
        return self.key

    def __str__(self) -> str:
        return f'{self.key} == "{self.value}"'


@dataclass(frozen=True)
class GeographicCondition(_ConditionMixin):
    """Region membership check."""

    region_type: RegionType
    region_id: str

    kind = ConditionKind.GEOGRAPHIC

    @property
    def subject(self) -> str:
        return self.region_type.value

    def __str__(self) -> str:
        return f"in {self.region_type.value}({self.region_id})"


@dataclass(frozen=True)
class DateRangeCondition(_ConditionMixin):
    """Decision date must fall within [start, end]; either side may be open."""

    start: date | None = None
    end: date | None = None

    kind = ConditionKind.DATE_RANGE

    @property
    def subject(self) -> str:
        return ""

    def __str__(self) -> str:
        if self.start and self.end:
            return f"date in [{self.start}, {self.end}]"
        if self.start:
            return f"date >= {self.start}"
        if self.end:
            return f"date <= {self.end}"
        return "date (any)"


@dataclass(frozen=True)
class CustomCondition(_ConditionMixin):
    """Free-form condition; opaque to analysis."""

    description: str

    kind = ConditionKind.CUSTOM

    @property
    def subject(self) -> str:
        return self.description

    def __str__(self) -> str:
        return f"custom({self.description})"


Condition = Union[
    AgeCondition,
    IncomeCondition,
    ResidencyDurationCondition,
    HasAttributeCondition,
    AttributeEqualsCondition,
    GeographicCondition,
    DateRangeCondition,
    CustomCondition,
]

NUMERIC_CONDITIONS = (AgeCondition, IncomeCondition, ResidencyDurationCondition)

def condition_key(condition: Condition) -> str:
    """Human-readable identity key, e.g. "age:lower" or "attribute_equals:HasDependents"."""
    subject = condition.subject
    return f"{condition.kind.value}:{subject}" if subject else condition.kind.value


def _pairing_order(condition: Condition) -> tuple[Any, str]:
    if isinstance(condition, NUMERIC_CONDITIONS):
        return (condition.value, str(condition))
    return (0, str(condition))


def pair_conditions(
    old: Sequence[Condition], new: Sequence[Condition]
) -> list[tuple[str, Condition | None, Condition | None]]:
    """
    Match the preconditions of two revisions by identity key.

    Conditions present unchanged in both lists cancel out as a multiset.
    What is left of each identity group is paired in threshold order; the
    second and later pairs of a group get an ordinal suffix ("#2", "#3").
    List order never affects the result.

    Returns:
        (key, old condition or None, new condition or None) for every
        condition that differs, sorted by (kind order, key, ordinal)
    """
    groups: dict[str, tuple[list[Condition], list[Condition]]] = {}
    for condition in old:
        groups.setdefault(condition_key(condition), ([], []))[0].append(condition)
    for condition in new:
        groups.setdefault(condition_key(condition), ([], []))[1].append(condition)

    ordered = []
    for base, (before, after) in groups.items():
        remaining = list(after)
        unmatched = []
        for condition in before:
            if condition in remaining:
                remaining.remove(condition)
            else:
                unmatched.append(condition)
        unmatched.sort(key=_pairing_order)
        remaining.sort(key=_pairing_order)

        kind_order = (before or after)[0].kind.order
        for ordinal in range(max(len(unmatched), len(remaining))):
            key = base if ordinal == 0 else f"{base}#{ordinal + 1}"
            ordered.append((
                (kind_order, base, ordinal),
                key,
                unmatched[ordinal] if ordinal < len(unmatched) else None,
                remaining[ordinal] if ordinal < len(remaining) else None,
            ))

    ordered.sort(key=lambda entry: entry[0])
    return [(key, before, after) for _, key, before, after in ordered]


def condition_to_dict(condition: Condition) -> dict[str, Any]:
    """Serialize a condition to a tagged dict."""
    data: dict[str, Any] = {"kind": condition.kind.value}
    if isinstance(condition, NUMERIC_CONDITIONS):
        data["operator"] = condition.operator.symbol
        data["value"] = condition.value
    elif isinstance(condition, HasAttributeCondition):
        data["key"] = condition.key
    elif isinstance(condition, AttributeEqualsCondition):
        data["key"] = condition.key
        data["value"] = condition.value
    elif isinstance(condition, GeographicCondition):
        data["region_type"] = condition.region_type.value
        data["region_id"] = condition.region_id
    elif isinstance(condition, DateRangeCondition):
        data["start"] = condition.start.isoformat() if condition.start else None
        data["end"] = condition.end.isoformat() if condition.end else None
    elif isinstance(condition, CustomCondition):
        data["description"] = condition.description
    return data


def condition_from_dict(data: dict[str, Any]) -> Condition:
    """
    Parse a tagged condition dict.

    Raises:
        StatuteFormatError: If the kind is unknown or fields are missing
    """
    try:
        kind = ConditionKind(data["kind"])
    except (KeyError, ValueError) as e:
        raise StatuteFormatError(f"Unknown or missing condition kind: {data.get('kind')!r}") from e

    try:
        if kind == ConditionKind.AGE:
            return AgeCondition(ComparisonOp.parse(data["operator"]), int(data["value"]))
        if kind == ConditionKind.INCOME:
            return IncomeCondition(ComparisonOp.parse(data["operator"]), int(data["value"]))
        if kind == ConditionKind.RESIDENCY_DURATION:
            months = data.get("months", data.get("value"))
            return ResidencyDurationCondition(ComparisonOp.parse(data["operator"]), int(months))
        if kind == ConditionKind.HAS_ATTRIBUTE:
            return HasAttributeCondition(str(data["key"]))
        if kind == ConditionKind.ATTRIBUTE_EQUALS:
            return AttributeEqualsCondition(str(data["key"]), _attribute_value(data["value"]))
        if kind == ConditionKind.GEOGRAPHIC:
            return GeographicCondition(RegionType(data["region_type"]), str(data["region_id"]))
        if kind == ConditionKind.DATE_RANGE:
            return DateRangeCondition(_parse_date(data.get("start")), _parse_date(data.get("end")))
        return CustomCondition(str(data["description"]))
    except (KeyError, TypeError, ValueError) as e:
        if isinstance(e, StatuteFormatError):
            raise
        raise StatuteFormatError(f"Invalid {kind.value} condition: {e}") from e


def _attribute_value(value: Any) -> str:
    # YAML turns `true` into a bool; attribute values are compared as strings
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ============================================================
# Effect and temporal validity
# ============================================================


class EffectType(Enum):
    """Kind of legal effect a statute produces."""

    GRANT = "grant"
    REVOKE = "revoke"
    OBLIGATION = "obligation"
    PROHIBITION = "prohibition"
    MONETARY_TRANSFER = "monetary_transfer"
    STATUS_CHANGE = "status_change"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Effect:
    """
    Legal effect of a statute.

    `amount` is the structured magnitude (benefit, credit, fine). When it
    is absent the description is the only information about magnitude.
    """

    effect_type: EffectType
    description: str
    amount: float | None = None
    parameters: tuple[tuple[str, str], ...] = ()

    @classmethod
    def create(
        cls,
        effect_type: EffectType,
        description: str,
        amount: float | None = None,
        parameters: dict[str, str] | None = None,
    ) -> "Effect":
        return cls(
            effect_type=effect_type,
            description=description,
            amount=amount,
            parameters=tuple(sorted((parameters or {}).items())),
        )

    def __str__(self) -> str:
        text = f"{self.effect_type.value.upper()}: {self.description}"
        if self.amount is not None:
            text += f" ({self.amount:g})"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "effect_type": self.effect_type.value,
            "description": self.description,
            "amount": self.amount,
            "parameters": dict(self.parameters),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Effect":
        try:
            amount = data.get("amount")
            return cls.create(
                effect_type=EffectType(data["effect_type"]),
                description=str(data.get("description", "")),
                amount=float(amount) if amount is not None else None,
                parameters={str(k): str(v) for k, v in (data.get("parameters") or {}).items()},
            )
        except (KeyError, ValueError) as e:
            raise StatuteFormatError(f"Invalid effect: {e}") from e


@dataclass(frozen=True)
class TemporalValidity:
    """Effective date and sunset of a statute, plus enactment bookkeeping."""

    effective_date: date | None = None
    expiry_date: date | None = None
    enacted_at: datetime | None = None
    amended_at: datetime | None = None

    def active_window(self) -> tuple[date, date]:
        """Closed [start, end] active interval; open sides become date.min/max."""
        return (self.effective_date or date.min, self.expiry_date or date.max)

    def is_active_on(self, day: date) -> bool:
        start, end = self.active_window()
        return start <= day <= end

    def __str__(self) -> str:
        start = self.effective_date.isoformat() if self.effective_date else "-"
        end = self.expiry_date.isoformat() if self.expiry_date else "-"
        return f"[{start}, {end}]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "effective_date": self.effective_date.isoformat() if self.effective_date else None,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "enacted_at": self.enacted_at.isoformat() if self.enacted_at else None,
            "amended_at": self.amended_at.isoformat() if self.amended_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TemporalValidity":
        try:
            return cls(
                effective_date=_parse_date(data.get("effective_date")),
                expiry_date=_parse_date(data.get("expiry_date")),
                enacted_at=_parse_datetime(data.get("enacted_at")),
                amended_at=_parse_datetime(data.get("amended_at")),
            )
        except ValueError as e:
            raise StatuteFormatError(f"Invalid temporal validity: {e}") from e


# ============================================================
# Statute
# ============================================================


@dataclass(frozen=True)
class Statute:
    """
    One revision of a legal rule.

    Two statutes with the same `id` and different `version` are successive
    revisions of the same rule.
    """

    id: str
    title: str
    effect: Effect
    preconditions: tuple[Condition, ...] = field(default_factory=tuple)
    temporal_validity: TemporalValidity | None = None
    version: int = 1
    discretion_logic: str | None = None
    jurisdiction: str | None = None

    def with_precondition(self, condition: Condition) -> "Statute":
        return replace(self, preconditions=self.preconditions + (condition,))

    def with_preconditions(self, *conditions: Condition) -> "Statute":
        return replace(self, preconditions=tuple(conditions))

    def with_title(self, title: str) -> "Statute":
        return replace(self, title=title)

    def with_effect(self, effect: Effect) -> "Statute":
        return replace(self, effect=effect)

    def with_temporal_validity(self, validity: TemporalValidity | None) -> "Statute":
        return replace(self, temporal_validity=validity)

    def with_version(self, version: int) -> "Statute":
        return replace(self, version=version)

    def with_discretion(self, logic: str | None) -> "Statute":
        return replace(self, discretion_logic=logic)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "version": self.version,
            "preconditions": [condition_to_dict(c) for c in self.preconditions],
            "effect": self.effect.to_dict(),
            "temporal_validity": (
                self.temporal_validity.to_dict() if self.temporal_validity else None
            ),
            "discretion_logic": self.discretion_logic,
            "jurisdiction": self.jurisdiction,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Statute":
        """
        Build a statute from a parsed JSON/YAML document.

        Raises:
            StatuteFormatError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise StatuteFormatError("Statute document must be a mapping")
        for required in ("id", "title", "effect"):
            if required not in data:
                raise StatuteFormatError(f"Statute is missing required field '{required}'")

        validity = data.get("temporal_validity")
        try:
            version = int(data.get("version", 1))
        except (TypeError, ValueError) as e:
            raise StatuteFormatError(f"Invalid version: {data.get('version')!r}") from e

        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            effect=Effect.from_dict(data["effect"]),
            preconditions=tuple(
                condition_from_dict(c) for c in data.get("preconditions") or []
            ),
            temporal_validity=TemporalValidity.from_dict(validity) if validity else None,
            version=version,
            discretion_logic=data.get("discretion_logic"),
            jurisdiction=data.get("jurisdiction"),
        )


def load_statute(path: str) -> Statute:
    """
    Load a statute from a JSON or YAML file.

    Args:
        path: File path; ".yaml"/".yml" are parsed as YAML, everything else as JSON

    Returns:
        Parsed Statute

    Raises:
        StatuteFormatError: If the file cannot be parsed
    """
    import yaml

    try:
        with open(path, encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise StatuteFormatError(f"Cannot read statute file {path}: {e}") from e

    extension = os.path.splitext(path)[1].lower()
    try:
        if extension in (".yaml", ".yml"):
            data = yaml.safe_load(raw)
        else:
            data = json.loads(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise StatuteFormatError(f"Invalid statute document {path}: {e}") from e

    return Statute.from_dict(data)
