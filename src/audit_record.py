"""
Audit record model and hash chain.

Each record is an immutable decision event. Its record_hash is the
SHA-256 of the canonical JSON of its content plus previous_hash, so
recomputing hashes from the first record reproduces every stored hash
unless something was edited.
"""

import hashlib
import json
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class EventType(Enum):
    AUTOMATIC_DECISION = "automatic_decision"
    DISCRETIONARY_REVIEW = "discretionary_review"
    HUMAN_OVERRIDE = "human_override"
    APPEAL = "appeal"
    STATUTE_MODIFIED = "statute_modified"
    SIMULATION_RUN = "simulation_run"


class ActorKind(Enum):
    SYSTEM = "system"
    USER = "user"
    EXTERNAL = "external"


class ResultKind(Enum):
    DETERMINISTIC = "deterministic"
    REQUIRES_DISCRETION = "requires_discretion"
    VOID = "void"
    OVERRIDDEN = "overridden"


@dataclass(frozen=True)
class Actor:
    """Who triggered the event: a system component, a user or an external system."""

    kind: ActorKind
    identifier: str
    role: str | None = None

    @classmethod
    def system(cls, component: str) -> "Actor":
        return cls(ActorKind.SYSTEM, component)

    @classmethod
    def user(cls, user_id: str, role: str) -> "Actor":
        return cls(ActorKind.USER, user_id, role)

    @classmethod
    def external(cls, system_id: str) -> "Actor":
        return cls(ActorKind.EXTERNAL, system_id)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "identifier": self.identifier, "role": self.role}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Actor":
        return cls(ActorKind(data["kind"]), data["identifier"], data.get("role"))


@dataclass(frozen=True)
class EvaluatedCondition:
    """A precondition as it was evaluated for this decision."""

    description: str
    result: bool
    input_value: str | None = None
    threshold: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "result": self.result,
            "input_value": self.input_value,
            "threshold": self.threshold,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvaluatedCondition":
        return cls(
            description=data["description"],
            result=bool(data["result"]),
            input_value=data.get("input_value"),
            threshold=data.get("threshold"),
        )


@dataclass(frozen=True)
class DecisionContext:
    """Inputs of a decision."""

    attributes: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    evaluated_conditions: tuple[EvaluatedCondition, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "attributes": dict(self.attributes),
            "metadata": dict(self.metadata),
            "evaluated_conditions": [c.to_dict() for c in self.evaluated_conditions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DecisionContext":
        return cls(
            attributes=dict(data.get("attributes") or {}),
            metadata=dict(data.get("metadata") or {}),
            evaluated_conditions=tuple(
                EvaluatedCondition.from_dict(c) for c in data.get("evaluated_conditions") or []
            ),
        )


@dataclass(frozen=True)
class DecisionResult:
    """
    Outcome of a decision.

    payload keys by kind:
        DETERMINISTIC: effect_applied, parameters
        REQUIRES_DISCRETION: issue, narrative_hint, assigned_to
        VOID: reason
        OVERRIDDEN: original_result, new_result, justification
    """

    kind: ResultKind
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def deterministic(
        cls, effect_applied: str, parameters: dict[str, str] | None = None
    ) -> "DecisionResult":
        return cls(ResultKind.DETERMINISTIC, {
            "effect_applied": effect_applied,
            "parameters": dict(parameters or {}),
        })

    @classmethod
    def requires_discretion(
        cls, issue: str, narrative_hint: str | None = None, assigned_to: str | None = None
    ) -> "DecisionResult":
        return cls(ResultKind.REQUIRES_DISCRETION, {
            "issue": issue,
            "narrative_hint": narrative_hint,
            "assigned_to": assigned_to,
        })

    @classmethod
    def void(cls, reason: str) -> "DecisionResult":
        return cls(ResultKind.VOID, {"reason": reason})

    @classmethod
    def overridden(
        cls, original: "DecisionResult", new: "DecisionResult", justification: str
    ) -> "DecisionResult":
        return cls(ResultKind.OVERRIDDEN, {
            "original_result": original.to_dict(),
            "new_result": new.to_dict(),
            "justification": justification,
        })

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, **self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DecisionResult":
        payload = {k: v for k, v in data.items() if k != "kind"}
        return cls(ResultKind(data["kind"]), payload)


def as_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def _canonical_json(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class AuditRecord:
    """
    One decision event.

    A record is unsealed (record_hash None) until the store links it to
    the chain tip and computes its hash.
    """

    id: str
    timestamp: datetime
    event_type: EventType
    actor: Actor
    statute_id: str
    subject_id: str
    context: DecisionContext
    result: DecisionResult
    previous_hash: str | None = None
    record_hash: str | None = None

    def __post_init__(self):
        # Always UTC-aware: the hash covers timestamp.isoformat()
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))

    @classmethod
    def create(
        cls,
        event_type: EventType,
        actor: Actor,
        statute_id: str,
        subject_id: str,
        result: DecisionResult,
        context: DecisionContext | None = None,
        timestamp: datetime | None = None,
    ) -> "AuditRecord":
        """Build an unsealed record with a fresh id and a UTC timestamp."""
        return cls(
            id=str(uuid.uuid4()),
            timestamp=timestamp or datetime.now(UTC),
            event_type=event_type,
            actor=actor,
            statute_id=statute_id,
            subject_id=subject_id,
            context=context or DecisionContext(),
            result=result,
        )

    @property
    def is_sealed(self) -> bool:
        return self.record_hash is not None

    @property
    def is_override(self) -> bool:
        return (
            self.result.kind == ResultKind.OVERRIDDEN
            or self.event_type == EventType.HUMAN_OVERRIDE
        )

    def content_dict(self) -> dict[str, Any]:
        """Every hashed field, previous_hash included."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "actor": self.actor.to_dict(),
            "statute_id": self.statute_id,
            "subject_id": self.subject_id,
            "context": self.context.to_dict(),
            "result": self.result.to_dict(),
            "previous_hash": self.previous_hash,
        }

    def compute_hash(self) -> str:
        return compute_record_hash(self)

    def sealed(self, previous_hash: str | None) -> "AuditRecord":
        """Copy linked to previous_hash with its record_hash computed."""
        linked = replace(self, previous_hash=previous_hash, record_hash=None)
        return replace(linked, record_hash=compute_record_hash(linked))

    def verify(self) -> bool:
        return self.record_hash is not None and self.record_hash == compute_record_hash(self)

    def to_dict(self) -> dict[str, Any]:
        data = self.content_dict()
        data["record_hash"] = self.record_hash
        return data

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditRecord":
        return cls(
            id=str(data["id"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            event_type=EventType(data["event_type"]),
            actor=Actor.from_dict(data["actor"]),
            statute_id=data["statute_id"],
            subject_id=data["subject_id"],
            context=DecisionContext.from_dict(data.get("context") or {}),
            result=DecisionResult.from_dict(data["result"]),
            previous_hash=data.get("previous_hash"),
            record_hash=data.get("record_hash"),
        )


def compute_record_hash(record: AuditRecord) -> str:
    """SHA-256 hex digest of the record's canonical content and previous_hash."""
    return hashlib.sha256(_canonical_json(record.content_dict()).encode("utf-8")).hexdigest()


@dataclass
class IntegrityReport:
    """Outcome of a hash-chain verification pass."""

    verified: bool
    checked: int
    first_invalid_id: str | None = None
    invalid_ids: list[str] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "checked": self.checked,
            "first_invalid_id": self.first_invalid_id,
            "invalid_ids": list(self.invalid_ids),
            "reason": self.reason,
        }


def verify_chain(records: Iterable[AuditRecord], anchor: str | None = None) -> IntegrityReport:
    """
    Recompute the hash chain in order.

    Once a record fails (bad linkage or a hash that does not recompute),
    it and every later record are reported as invalid.

    Args:
        records: Records in chain order
        anchor: Expected previous_hash of the first record (None for a
            chain that starts at genesis; the last purged hash after retention)

    Returns:
        IntegrityReport
    """
    report = IntegrityReport(verified=True, checked=0)
    expected_previous = anchor

    for record in records:
        report.checked += 1
        if report.first_invalid_id is None:
            if record.previous_hash != expected_previous:
                report.reason = f"record {record.id} is not linked to its predecessor"
            elif not record.verify():
                report.reason = f"record {record.id} content does not match its hash"
            if report.reason:
                report.verified = False
                report.first_invalid_id = record.id
        if report.first_invalid_id is not None:
            report.invalid_ids.append(record.id)
        expected_previous = record.record_hash

    return report
