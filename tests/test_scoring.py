import csv
import json
import pytest

from bridgescore.errors import InvalidInputError
from bridgescore.schemas import (
    Call, FrameworkConfig, HistoryEntry, ScoreBreakdown, StepDefinition, StepScore, default_framework,
)
from bridgescore.scoring import OutputGenerator, TranscriptScorer, score


class TestTranscriptScorer:
    def setup_method(self):
        self.scorer = TranscriptScorer()
        self.framework = default_framework()

    def test_discovery_call_breakdown(self, discovery_transcript):
        breakdown = self.scorer.score(discovery_transcript, self.framework)

        credits = {step.step_key: step.credit for step in breakdown.steps}
        assert credits == {
            "pinpoint_pain": 1.0,
            "qualify": 0.0,
            "solution_success": 0.0,
            "qa": 0.5,
            "next_steps": 0.5,
            "close_or_schedule": 1.0,
        }
        # 4 + 1.5 + 2 + 3 = 10.5, rounded half up
        assert breakdown.total == 11

    def test_steps_follow_framework_order_and_weights(self, discovery_transcript):
        breakdown = self.scorer.score(discovery_transcript, self.framework)

        assert breakdown.step_keys == self.framework.step_keys
        assert [step.weight for step in breakdown.steps] == [4, 3, 3, 3, 4, 3]

    def test_deterministic(self, discovery_transcript):
        first = self.scorer.score(discovery_transcript, self.framework)
        second = TranscriptScorer().score(discovery_transcript, self.framework)

        assert first == second
        assert first.to_record() == second.to_record()

    def test_every_step_has_notes(self, discovery_transcript):
        breakdown = self.scorer.score(discovery_transcript, self.framework)

        assert all(step.notes for step in breakdown.steps)
        assert breakdown.get("close_or_schedule").notes.startswith("Strong close")

    @pytest.mark.parametrize("transcript", ["", "   ", "\n\t\n"])
    def test_empty_transcript_rejected(self, transcript):
        with pytest.raises(InvalidInputError):
            self.scorer.score(transcript, self.framework)

    def test_non_string_rejected(self):
        with pytest.raises(InvalidInputError):
            self.scorer.score(None, self.framework)

    def test_total_within_bounds(self):
        breakdown = self.scorer.score("Hello, thanks for your time.", self.framework)

        assert 0 <= breakdown.total <= self.framework.max_score
        assert breakdown.total == 0

    def test_custom_rule_set(self, discovery_transcript, lenient_rule_set):
        breakdown = TranscriptScorer(lenient_rule_set).score(discovery_transcript, self.framework)

        assert breakdown.get("qualify").credit == 1.0
        assert breakdown.total == 14

    def test_step_without_rule_scores_zero(self, discovery_transcript):
        framework = FrameworkConfig(version="2.0", max_score=10, steps=[
            StepDefinition(key="pinpoint_pain", name="Pinpoint Pain", weight=6, order=1),
            StepDefinition(key="rapport", name="Rapport", weight=4, order=2),
        ])

        breakdown = self.scorer.score(discovery_transcript, framework)

        assert breakdown.get("rapport").credit == 0.0
        assert "No scoring rule" in breakdown.get("rapport").notes
        assert breakdown.total == 6

    def test_module_level_score_uses_default_framework(self, discovery_transcript):
        assert score(discovery_transcript).total == 11


class TestOutputGenerator:
    def setup_method(self):
        self.generator = OutputGenerator()
        strong = ScoreBreakdown.from_steps([
            StepScore(step_key="pinpoint_pain", credit=1, weight=4, notes="Excellent pain discovery"),
            StepScore(step_key="qualify", credit=1, weight=3, notes="Fully qualified"),
        ])
        weak = ScoreBreakdown.from_steps([
            StepScore(step_key="pinpoint_pain", credit=0.5, weight=4, notes="Some pain discovery"),
            StepScore(step_key="qualify", credit=0, weight=3, notes="Poor qualification"),
        ])
        self.calls = [
            Call(id="weak-call", org_id="org-1", transcript="...", breakdown=weak),
            Call(id="strong-call", org_id="org-1", transcript="...", breakdown=strong, rule_version_id="v1",
                 framework_version="1.0"),
        ]

    def test_json_output_omits_transcript(self, tmp_path):
        path = tmp_path / "calls.json"

        self.generator.generate_json_output(self.calls, path)

        data = json.loads(path.read_text())
        assert [row["id"] for row in data] == ["weak-call", "strong-call"]
        assert "transcript" not in data[0]
        assert data[1]["score_breakdown"]["total"] == 7

    def test_csv_output(self, tmp_path):
        path = tmp_path / "calls.csv"

        self.generator.generate_csv_output(self.calls, path)

        with open(path) as f:
            rows = list(csv.DictReader(f))
        assert rows[0]["call_id"] == "weak-call"
        assert rows[0]["pinpoint_pain_credit"] == "0.5"
        assert rows[1]["qualify_notes"] == "Fully qualified"
        assert rows[1]["total"] == "7"

    def test_leaderboard_ranks_by_total(self, tmp_path):
        path = tmp_path / "leaderboard.md"

        self.generator.generate_leaderboard(self.calls, path)

        content = path.read_text()
        assert "**Total Calls Scored**: 2" in content
        assert content.index("strong-call") < content.index("weak-call")

    def test_history_jsonl_encodes_breakdown_as_string(self, tmp_path):
        path = tmp_path / "history.jsonl"
        entry = HistoryEntry(call_id="strong-call", rule_version_id="v1", framework_version="1.0",
                             total=7, breakdown=self.calls[1].breakdown)

        self.generator.generate_history_jsonl([entry], path)

        lines = path.read_text().splitlines()
        assert len(lines) == 1
        row = json.loads(lines[0])
        assert row["score_total"] == 7
        assert json.loads(row["score_breakdown"])["qualify"]["credit"] == 1.0
