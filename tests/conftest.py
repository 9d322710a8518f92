"""
Pytest configuration and shared fixtures for statute audit tests.

This module provides shared fixtures and test configuration including:
- src/ on sys.path
- Metrics reset between tests
- Sample statute revisions
- Audit record factories with controllable timestamps
"""

import os
import sys
from datetime import UTC, datetime, timedelta

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Keep the test environment independent of a developer's .env / shell
for _var in (
    "AUDIT_STORAGE_BACKEND",
    "AUDIT_LOG_FILE",
    "AUDIT_ENCRYPTION_ENABLED",
    "AUDIT_ENCRYPTION_KEY",
    "AUDIT_STREAM_WINDOW",
    "AUDIT_STREAM_SLIDE",
    "AUDIT_STREAM_MAX_BUFFER",
):
    os.environ.pop(_var, None)

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Give every test a clean metrics collector."""
    from monitoring import metrics

    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def pension_statute():
    """Pension statute v1: age >= 20, grant of 1000."""
    from statute import AgeCondition, ComparisonOp, Effect, EffectType, Statute

    return Statute(
        id="pension-2024",
        title="Basic Pension",
        effect=Effect.create(EffectType.GRANT, "Monthly pension", amount=1000),
        preconditions=(AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 20),),
    )


@pytest.fixture
def tax_credit_statute():
    """Tax credit v1: income <= 3,000,000."""
    from statute import ComparisonOp, Effect, EffectType, IncomeCondition, Statute

    return Statute(
        id="tax-credit",
        title="Low Income Tax Credit",
        effect=Effect.create(EffectType.MONETARY_TRANSFER, "Credit of 50000", amount=50000),
        preconditions=(IncomeCondition(ComparisonOp.LESS_OR_EQUAL, 3_000_000),),
    )


@pytest.fixture
def make_record():
    """Factory for unsealed audit records; `offset` is seconds after BASE_TIME."""
    from audit_record import Actor, AuditRecord, DecisionResult, EventType

    def factory(
        statute_id="pension-2024",
        subject_id="citizen-1",
        offset=0,
        event_type=EventType.AUTOMATIC_DECISION,
        result=None,
    ):
        return AuditRecord.create(
            event_type=event_type,
            actor=Actor.system("eligibility-engine"),
            statute_id=statute_id,
            subject_id=subject_id,
            result=result or DecisionResult.deterministic("grant", {"amount": "1000"}),
            timestamp=BASE_TIME + timedelta(seconds=offset),
        )

    return factory


@pytest.fixture
def memory_storage():
    from storage import MemoryAuditStorage

    return MemoryAuditStorage()
