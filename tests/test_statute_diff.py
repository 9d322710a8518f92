"""
Tests for the statute differ.

Tests:
- diff() change detection per target
- Canonical ordering and determinism
- Identity / symmetry properties
- Impact assessment
- Helper functions and formatters
"""

import json
import os
import sys
from datetime import date, datetime

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from monitoring import metrics
from statute import (
    AgeCondition,
    AttributeEqualsCondition,
    ComparisonOp,
    CustomCondition,
    Effect,
    EffectType,
    HasAttributeCondition,
    IncomeCondition,
    TemporalValidity,
)
from statute_diff import (
    ChangeTarget,
    ChangeType,
    MismatchedIdentityError,
    Severity,
    count_changes_by_target,
    detailed_summary,
    diff,
    diff_effect_only,
    diff_preconditions_only,
    diff_sequence,
    diff_to_dict,
    filter_changes_by_type,
    format_markdown,
    has_breaking_changes,
    summarize,
)


class TestDiffBasics:
    """Tests for basic diff behaviour."""

    def test_identical_statutes(self, pension_statute):
        """Test diffing a statute with itself yields no changes."""
        result = diff(pension_statute, pension_statute)
        assert result.is_empty
        assert len(result) == 0
        assert result.impact.severity == Severity.NONE

    def test_mismatched_ids(self, pension_statute, tax_credit_statute):
        """Test statutes with different ids cannot be diffed."""
        with pytest.raises(MismatchedIdentityError) as exc_info:
            diff(pension_statute, tax_credit_statute)
        assert exc_info.value.old_id == "pension-2024"
        assert exc_info.value.new_id == "tax-credit"

    def test_age_threshold_lowered(self, pension_statute):
        """Test age >= 20 -> age >= 18 is a single precondition modification."""
        new = pension_statute.with_preconditions(AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 18))
        result = diff(pension_statute, new)

        assert len(result) == 1
        change = result.changes[0]
        assert change.target == ChangeTarget.PRECONDITION
        assert change.change_type == ChangeType.MODIFIED
        assert change.condition_key == "age:lower"
        assert change.old_value == AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 20)
        assert change.new_value == AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 18)
        assert result.impact.severity == Severity.MODERATE
        assert result.impact.affects_eligibility

    def test_title_change_is_minor(self, pension_statute):
        """Test a title change is MINOR."""
        result = diff(pension_statute, pension_statute.with_title("State Pension"))
        assert [c.target for c in result] == [ChangeTarget.TITLE]
        assert result.impact.severity == Severity.MINOR
        assert not has_breaking_changes(result)

    def test_version_only(self, pension_statute):
        """Test a version bump is reported without raising severity."""
        result = diff(pension_statute, pension_statute.with_version(2))
        assert [c.target for c in result] == [ChangeTarget.VERSION]
        assert result.changes[0].old_value == 1
        assert result.changes[0].new_value == 2
        assert result.impact.severity == Severity.NONE
        assert result.old_version == 1
        assert result.new_version == 2

    def test_precondition_added(self, pension_statute):
        """Test an added precondition is MAJOR and noted."""
        new = pension_statute.with_precondition(HasAttributeCondition("Resident"))
        result = diff(pension_statute, new)

        assert len(result) == 1
        assert result.changes[0].change_type == ChangeType.ADDED
        assert result.changes[0].old_value is None
        assert result.impact.severity == Severity.MAJOR
        assert "New eligibility conditions added" in result.impact.notes
        assert has_breaking_changes(result)

    def test_precondition_removed(self, pension_statute):
        """Test a removed precondition is MAJOR."""
        result = diff(pension_statute, pension_statute.with_preconditions())
        assert result.changes[0].change_type == ChangeType.REMOVED
        assert result.changes[0].new_value is None
        assert result.impact.severity == Severity.MAJOR

    def test_effect_change(self, pension_statute):
        """Test an effect change is MAJOR and affects the outcome."""
        new = pension_statute.with_effect(
            Effect.create(EffectType.GRANT, "Monthly pension", amount=1200)
        )
        result = diff(pension_statute, new)
        assert [c.target for c in result] == [ChangeTarget.EFFECT]
        assert result.impact.affects_outcome
        assert result.impact.severity == Severity.MAJOR

    def test_effect_type_change_noted(self, pension_statute):
        """Test effect type changes are noted."""
        new = pension_statute.with_effect(Effect.create(EffectType.REVOKE, "Monthly pension"))
        result = diff(pension_statute, new)
        assert any("grant" in note and "revoke" in note for note in result.impact.notes)

    def test_discretion_added(self, pension_statute):
        """Test adding discretion logic."""
        result = diff(pension_statute, pension_statute.with_discretion("Case officer review"))
        assert result.changes[0].target == ChangeTarget.DISCRETION_LOGIC
        assert result.changes[0].change_type == ChangeType.ADDED
        assert result.impact.discretion_changed
        assert result.impact.severity == Severity.MAJOR

    def test_discretion_modified(self, pension_statute):
        """Test modifying discretion logic is MODERATE."""
        old = pension_statute.with_discretion("Review A")
        result = diff(old, old.with_discretion("Review B"))
        assert result.changes[0].change_type == ChangeType.MODIFIED
        assert result.impact.severity == Severity.MODERATE

    def test_temporal_window_change(self, pension_statute):
        """Test an effective-date change is reported."""
        old = pension_statute.with_temporal_validity(TemporalValidity(date(2024, 1, 1)))
        new = pension_statute.with_temporal_validity(TemporalValidity(date(2024, 4, 1)))
        result = diff(old, new)
        assert [c.target for c in result] == [ChangeTarget.TEMPORAL_VALIDITY]
        assert result.impact.severity == Severity.MODERATE

    def test_temporal_bookkeeping_ignored(self, pension_statute):
        """Test enactment timestamps alone are not a temporal change."""
        old = pension_statute.with_temporal_validity(
            TemporalValidity(date(2024, 1, 1), enacted_at=datetime(2023, 6, 1))
        )
        new = pension_statute.with_temporal_validity(
            TemporalValidity(date(2024, 1, 1), enacted_at=datetime(2023, 7, 1))
        )
        assert diff(old, new).is_empty


class TestDiffProperties:
    """Tests for ordering, determinism and symmetry."""

    def _rich_pair(self, pension_statute):
        old = pension_statute.with_preconditions(
            AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 20),
            CustomCondition("Good standing"),
            HasAttributeCondition("Resident"),
        )
        new = (
            pension_statute
            .with_title("State Pension")
            .with_preconditions(
                HasAttributeCondition("Citizen"),
                AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 18),
                IncomeCondition(ComparisonOp.LESS_OR_EQUAL, 50000),
            )
            .with_effect(Effect.create(EffectType.GRANT, "Monthly pension", amount=900))
            .with_discretion("Review")
            .with_temporal_validity(TemporalValidity(expiry_date=date(2030, 1, 1)))
            .with_version(3)
        )
        return old, new

    def test_canonical_order(self, pension_statute):
        """Test changes come out in target order, preconditions by kind order."""
        old, new = self._rich_pair(pension_statute)
        result = diff(old, new)

        targets = [c.target for c in result]
        assert targets == sorted(targets, key=list(ChangeTarget).index)
        keys = [c.condition_key for c in result if c.target == ChangeTarget.PRECONDITION]
        assert keys == [
            "age:lower",
            "income:upper",
            "has_attribute:Citizen",
            "has_attribute:Resident",
            "custom:Good standing",
        ]

    def test_deterministic(self, pension_statute):
        """Test repeated diffs are identical."""
        old, new = self._rich_pair(pension_statute)
        assert diff(old, new) == diff(old, new)

    def test_reordering_is_not_a_change(self, pension_statute):
        """Test preconditions are matched by identity, not position."""
        a = HasAttributeCondition("Resident")
        b = AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 20)
        assert diff(
            pension_statute.with_preconditions(a, b),
            pension_statute.with_preconditions(b, a),
        ).is_empty

    def test_reordering_duplicate_identities_is_not_a_change(self, pension_statute):
        """Test reordering two same-key preconditions produces no changes."""
        lower = AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 18)
        higher = AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 20)
        assert diff(
            pension_statute.with_preconditions(lower, higher),
            pension_statute.with_preconditions(higher, lower),
        ).is_empty

    def test_unchanged_duplicate_survives_edit_of_sibling(self, pension_statute):
        """Test only the edited one of two same-key preconditions is reported."""
        ge = ComparisonOp.GREATER_OR_EQUAL
        result = diff(
            pension_statute.with_preconditions(AgeCondition(ge, 18), AgeCondition(ge, 20)),
            pension_statute.with_preconditions(AgeCondition(ge, 25), AgeCondition(ge, 18)),
        )
        assert len(result) == 1
        change = result.changes[0]
        assert (change.old_value.value, change.new_value.value) == (20, 25)
        assert change.condition_key == "age:lower"

    def test_ordinal_keys_sort_numerically(self, pension_statute):
        """Test the tenth duplicate sorts after the second."""
        ge = ComparisonOp.GREATER_OR_EQUAL
        old = pension_statute.with_preconditions(*(AgeCondition(ge, i) for i in range(1, 12)))
        new = pension_statute.with_preconditions(*(AgeCondition(ge, i + 100) for i in range(1, 12)))
        keys = [c.condition_key for c in diff(old, new)]
        assert keys == ["age:lower"] + [f"age:lower#{i}" for i in range(2, 12)]

    def test_bound_direction_change_is_remove_plus_add(self, pension_statute):
        """Test age >= 18 -> age == 18 is a removal and an addition, not a modification."""
        result = diff(
            pension_statute.with_preconditions(AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 18)),
            pension_statute.with_preconditions(AgeCondition(ComparisonOp.EQUAL, 18)),
        )
        assert [(c.change_type, c.condition_key) for c in result] == [
            (ChangeType.ADDED, "age:exact"),
            (ChangeType.REMOVED, "age:lower"),
        ]

    def test_same_direction_change_is_modification(self, pension_statute):
        """Test age >= 18 -> age > 20 keeps its identity and is one modification."""
        result = diff(
            pension_statute.with_preconditions(AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 18)),
            pension_statute.with_preconditions(AgeCondition(ComparisonOp.GREATER_THAN, 20)),
        )
        assert [(c.change_type, c.condition_key) for c in result] == [
            (ChangeType.MODIFIED, "age:lower"),
        ]

    def test_symmetry(self, pension_statute):
        """Test added in one direction is removed in the other."""
        old, new = self._rich_pair(pension_statute)
        forward = {
            c.condition_key: c.change_type
            for c in diff(old, new) if c.target == ChangeTarget.PRECONDITION
        }
        backward = {
            c.condition_key: c.change_type
            for c in diff(new, old) if c.target == ChangeTarget.PRECONDITION
        }
        flipped = {
            ChangeType.ADDED: ChangeType.REMOVED,
            ChangeType.REMOVED: ChangeType.ADDED,
            ChangeType.MODIFIED: ChangeType.MODIFIED,
        }
        assert backward == {key: flipped[kind] for key, kind in forward.items()}

    def test_diff_counter(self, pension_statute):
        """Test each diff increments the metrics counter."""
        diff(pension_statute, pension_statute)
        diff(pension_statute, pension_statute.with_version(2))
        assert metrics.get_counter("statute_diffs_computed") == 2


class TestDiffHelpers:
    """Tests for helper functions."""

    def test_diff_sequence(self, pension_statute):
        """Test consecutive revisions are diffed pairwise."""
        v2 = pension_statute.with_version(2)
        v3 = v2.with_version(3).with_title("Pension")
        results = diff_sequence([pension_statute, v2, v3])
        assert len(results) == 2
        assert (results[1].old_version, results[1].new_version) == (2, 3)
        assert diff_sequence([pension_statute]) == []

    def test_preconditions_only(self, pension_statute):
        """Test precondition-only diff ignores other targets."""
        new = pension_statute.with_title("X").with_precondition(HasAttributeCondition("R"))
        changes = diff_preconditions_only(pension_statute, new)
        assert [c.change_type for c in changes] == [ChangeType.ADDED]

    def test_effect_only(self, pension_statute):
        """Test effect-only diff."""
        assert diff_effect_only(pension_statute, pension_statute.with_title("X")) is None
        new = pension_statute.with_effect(Effect.create(EffectType.GRANT, "More", amount=2000))
        assert diff_effect_only(pension_statute, new).target == ChangeTarget.EFFECT

    def test_filter_and_count(self, tax_credit_statute):
        """Test filtering by change type and counting by target."""
        new = tax_credit_statute.with_preconditions(
            IncomeCondition(ComparisonOp.LESS_OR_EQUAL, 4_000_000),
            AttributeEqualsCondition("HasDependents", "true"),
        ).with_version(2)
        result = diff(tax_credit_statute, new)

        assert len(filter_changes_by_type(result, ChangeType.ADDED)) == 1
        assert count_changes_by_target(result) == {"precondition": 2, "version": 1}


class TestFormatters:
    """Tests for summarize / markdown / dict output."""

    def test_summarize(self, pension_statute):
        """Test plain-text summary content."""
        new = pension_statute.with_precondition(HasAttributeCondition("Resident"))
        text = summarize(diff(pension_statute, new))
        assert "pension-2024" in text
        assert "Severity: MAJOR" in text
        assert "[ADDED] precondition[has_attribute:Resident]" in text
        assert "Impact Notes:" in text

    def test_markdown_with_analyses(self, pension_statute):
        """Test markdown table includes a compatibility column when analyses are given."""
        from compatibility import analyze_changes

        new = pension_statute.with_preconditions(AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 18))
        result = diff(pension_statute, new)
        markdown = format_markdown(result, analyze_changes(result))
        assert "| Compatibility |" in markdown
        assert "backward_compatible" in markdown

    def test_markdown_no_changes(self, pension_statute):
        """Test markdown for an empty diff."""
        assert "_No changes._" in format_markdown(diff(pension_statute, pension_statute))

    def test_diff_to_dict_is_json_ready(self, pension_statute):
        """Test the dict form serializes to JSON."""
        new = pension_statute.with_preconditions(AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 18))
        data = json.loads(json.dumps(diff_to_dict(diff(pension_statute, new))))
        assert data["statute_id"] == "pension-2024"
        assert data["changes"][0]["old_value"] == "age >= 20"
        assert data["impact"]["severity"] == "MODERATE"


class TestDetailedSummary:
    """Tests for detailed_summary()."""

    def test_empty_diff(self, pension_statute):
        """Test an empty diff has full detection confidence and no insights."""
        summary = detailed_summary(diff(pension_statute, pension_statute))
        assert summary.statute_id == "pension-2024"
        assert summary.change_count == 0
        assert summary.severity == Severity.NONE
        assert summary.overall_confidence == pytest.approx((1.0 + 0.95) / 2)
        assert summary.insights == []

    def test_title_only(self, pension_statute):
        """Test a cosmetic change scores MINOR confidence and counts one modification."""
        summary = detailed_summary(diff(pension_statute, pension_statute.with_title("State Pension")))
        assert summary.severity == Severity.MINOR
        assert summary.impact_assessment_confidence == pytest.approx(0.8)
        assert summary.counts_by_target == {"title": 1}
        assert summary.counts_by_type == {"added": 0, "removed": 0, "modified": 1}
        assert summary.insights == ["1 element(s) modified."]

    def test_eligibility_insights(self, pension_statute):
        """Test eligibility changes produce an eligibility insight plus change counts."""
        new = pension_statute.with_preconditions(
            AgeCondition(ComparisonOp.GREATER_OR_EQUAL, 18),
            HasAttributeCondition("Resident"),
        )
        summary = detailed_summary(diff(pension_statute, new))
        assert summary.impact_assessment_confidence == pytest.approx(0.9)
        assert summary.overall_confidence == pytest.approx((0.95 + 0.9) / 2)
        assert summary.insights == [
            "This change affects who is eligible for the statute's provisions.",
            "1 new element(s) added.",
            "1 element(s) modified.",
        ]
        assert summary.summary_text == summarize(diff(pension_statute, new))

    def test_to_dict_is_json_ready(self, pension_statute):
        """Test the dict form serializes to JSON."""
        new = pension_statute.with_effect(
            Effect.create(EffectType.GRANT, "Monthly pension", amount=900)
        )
        data = json.loads(json.dumps(detailed_summary(diff(pension_statute, new)).to_dict()))
        assert data["severity"] == "MAJOR"
        assert "This change modifies the outcome or effect of the statute." in data["insights"]
