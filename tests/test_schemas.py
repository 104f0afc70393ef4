import pytest
from pydantic import ValidationError

from bridgescore.errors import InvalidFrameworkError
from bridgescore.schemas import (
    Call, CreditColor, FrameworkConfig, HistoryEntry, ScoreBreakdown, StepDefinition, StepScore,
    default_framework, round_half_up,
)


def _steps(*pairs):
    return [StepScore(step_key=key, credit=credit, weight=weight) for key, credit, weight in pairs]


class TestFrameworkConfig:
    def test_default_framework_sums_to_twenty(self):
        framework = default_framework()

        assert framework.total_weight == 20
        assert framework.step_keys == [
            "pinpoint_pain", "qualify", "solution_success", "qa", "next_steps", "close_or_schedule"
        ]

    def test_steps_sorted_by_order(self):
        framework = FrameworkConfig(max_score=5, steps=[
            StepDefinition(key="b", name="B", weight=2, order=2),
            StepDefinition(key="a", name="A", weight=3, order=1),
        ])

        assert framework.step_keys == ["a", "b"]

    def test_weights_must_sum_to_max_score(self):
        with pytest.raises(InvalidFrameworkError):
            FrameworkConfig(max_score=20, steps=[StepDefinition(key="a", name="A", weight=5, order=1)])

    def test_duplicate_keys_rejected(self):
        with pytest.raises(InvalidFrameworkError):
            FrameworkConfig(max_score=4, steps=[
                StepDefinition(key="a", name="A", weight=2, order=1),
                StepDefinition(key="a", name="A again", weight=2, order=2),
            ])

    def test_total_is_reserved(self):
        with pytest.raises(InvalidFrameworkError):
            FrameworkConfig(max_score=2, steps=[StepDefinition(key="total", name="Total", weight=2, order=1)])

    def test_weight_must_be_positive(self):
        with pytest.raises(ValidationError):
            StepDefinition(key="a", name="A", weight=0, order=1)

    def test_step_name_falls_back_to_title_case(self):
        assert default_framework().step_name("qa") == "Q&A"
        assert default_framework().step_name("rapport_building") == "Rapport Building"


class TestStepScore:
    def test_credit_domain(self):
        with pytest.raises(ValidationError):
            StepScore(step_key="qa", credit=0.75, weight=3)

    def test_color_follows_credit(self):
        assert StepScore(step_key="qa", credit=1, weight=3).color == CreditColor.FULL
        assert StepScore(step_key="qa", credit=0.5, weight=3).color == CreditColor.PARTIAL
        assert StepScore(step_key="qa", credit=0, weight=3).color == CreditColor.NONE
        assert CreditColor.FULL.value == "green"


class TestScoreBreakdown:
    def test_total_rounds_half_up(self):
        breakdown = ScoreBreakdown.from_steps(_steps(("qa", 0.5, 3), ("next_steps", 1, 4)))

        assert breakdown.total == 6
        assert round_half_up(2.5) == 3
        assert round_half_up(1.5) == 2

    def test_total_must_match_weighted_sum(self):
        with pytest.raises(ValidationError):
            ScoreBreakdown(steps=_steps(("qa", 1, 3)), total=2)

    def test_step_keys_unique(self):
        with pytest.raises(ValidationError):
            ScoreBreakdown.from_steps(_steps(("qa", 1, 3), ("qa", 0, 3)))

    def test_record_is_keyed_in_order_with_total(self):
        breakdown = ScoreBreakdown.from_steps([
            StepScore(step_key="pinpoint_pain", credit=1, weight=4, notes="Excellent pain discovery"),
            StepScore(step_key="qualify", credit=0, weight=3, notes="Poor qualification"),
        ])

        record = breakdown.to_record()

        assert list(record) == ["pinpoint_pain", "qualify", "total"]
        assert record["pinpoint_pain"] == {"credit": 1.0, "weight": 4, "notes": "Excellent pain discovery"}
        assert record["total"] == 4
        assert ScoreBreakdown.from_record(record) == breakdown

    def test_from_record_recomputes_total(self):
        record = {"qa": {"credit": 1, "weight": 3, "notes": ""}, "total": 17}

        assert ScoreBreakdown.from_record(record).total == 3

    def test_from_record_defaults_missing_fields(self):
        record = {"qa": {"weight": 3}, "next_steps": {"credit": "bogus", "weight": 4}, "close_or_schedule": None}

        breakdown = ScoreBreakdown.from_record(record)

        assert [step.credit for step in breakdown.steps] == [0.0, 0.0, 0.0]
        assert breakdown.get("close_or_schedule").weight == 0
        assert breakdown.total == 0

    def test_from_record_coerces_out_of_domain_credit(self):
        record = {"qa": {"credit": 0.7, "weight": 3}, "qualify": {"credit": 2, "weight": 3, "color": "green"}}

        breakdown = ScoreBreakdown.from_record(record)

        assert breakdown.get("qa").credit == 0.5
        assert breakdown.get("qualify").credit == 1.0

    def test_from_record_accepts_list_shape(self):
        record = [
            {"step": "qa", "credit": 1, "weight": 3, "notes": "Excellent Q&A"},
            {"step_key": "next_steps", "credit": 0.5, "weight": 4},
            "garbage",
        ]

        breakdown = ScoreBreakdown.from_record(record)

        assert breakdown.step_keys == ["qa", "next_steps"]
        assert breakdown.total == 5

    def test_from_record_none_is_empty(self):
        breakdown = ScoreBreakdown.from_record(None)

        assert breakdown.steps == []
        assert breakdown.total == 0


class TestCall:
    def test_legacy_record_without_versions(self):
        call = Call.from_record({
            "id": "legacy-1",
            "transcript": "hello",
            "score_breakdown": {"qa": {"credit": 1, "weight": 3, "notes": "Excellent Q&A"}, "total": 3},
        })

        assert call.rule_version_id is None
        assert call.framework_version is None
        assert call.total == 3

    def test_record_shape(self):
        breakdown = ScoreBreakdown.from_steps(_steps(("qa", 1, 3)))
        call = Call(org_id="org-1", transcript="hello", breakdown=breakdown, rule_version_id="v1",
                    framework_version="1.0")

        record = call.to_record()

        assert record["score_total"] == 3
        assert record["score_breakdown"]["total"] == 3
        assert Call.from_record(record) == call


class TestHistoryEntry:
    def test_entries_are_immutable(self):
        breakdown = ScoreBreakdown.from_steps(_steps(("qa", 1, 3)))
        entry = HistoryEntry(call_id="c1", rule_version_id="v1", framework_version="1.0",
                             total=3, breakdown=breakdown)

        with pytest.raises(ValidationError):
            entry.total = 10
