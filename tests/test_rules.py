import pytest

from bridgescore.rules import (
    RuleSet, ScoringRules, SignalGroup, StepRule, default_rule_set, load_rule_set,
)


class TestSignalGroup:
    def test_counts_distinct_phrases(self):
        group = SignalGroup(label="pain indicators", phrases=["problem", "frustrating"])

        assert group.count("problem after problem, so frustrating") == 2

    def test_counts_every_occurrence_when_asked(self):
        group = SignalGroup(label="questions", patterns=[r"\?"], count_occurrences=True)

        assert group.count("why? how? when?") == 3

    def test_phrases_match_whole_words_only(self):
        group = SignalGroup(label="pain indicators", phrases=["pain"])

        assert group.count("we are painting the office") == 0
        assert group.count("the pain is real") == 1

    def test_multi_word_phrase(self):
        group = SignalGroup(label="authority signals", phrases=["decision maker"])

        assert group.count("who is the decision maker here") == 1


class TestScoringRules:
    def setup_method(self):
        self.rules = ScoringRules(default_rule_set())

    def test_normalize_lowercases_and_fixes_quotes(self):
        text = self.rules.normalize("I’LL Send It\r\nTomorrow")

        assert text == "i'll send it\ntomorrow"

    def test_pinpoint_pain_full_credit(self, discovery_transcript):
        result = self.rules.check("pinpoint_pain", self.rules.normalize(discovery_transcript))

        assert result.credit == 1.0
        assert result.notes == "Excellent pain discovery: 5 pain indicators, 2 pain questions"
        assert result.counts == {"pain indicators": 5, "pain questions": 2}

    def test_qualify_no_credit_without_signals(self, discovery_transcript):
        result = self.rules.check("qualify", self.rules.normalize(discovery_transcript))

        assert result.credit == 0.0
        assert result.notes.startswith("Poor qualification")

    def test_qualify_partial_needs_two_signal_types(self):
        text = self.rules.normalize("What budget do you have? Who is the decision maker?")

        result = self.rules.check("qualify", text)

        assert result.credit == 0.5
        assert result.notes == "Partially qualified: 1 budget signals, 1 authority signals, 0 timeline signals"

    def test_qualify_full_with_budget_authority_and_timeline(self):
        text = self.rules.normalize(
            "What budget have you set aside? Who needs to approve it? What is your timeline?"
        )

        assert self.rules.check("qualify", text).credit == 1.0

    def test_close_needs_two_kinds_of_evidence(self):
        schedule_only = self.rules.normalize("We should schedule something.")
        schedule_and_date = self.rules.normalize("Let's schedule it for Friday at 2pm.")

        assert self.rules.check("close_or_schedule", schedule_only).credit == 0.5
        assert self.rules.check("close_or_schedule", schedule_and_date).credit == 1.0

    def test_qa_counts_questions(self, discovery_transcript):
        result = self.rules.check("qa", self.rules.normalize(discovery_transcript))

        assert result.credit == 0.5
        assert result.counts["questions"] == 3

    def test_unknown_step_scores_zero(self):
        result = self.rules.check("rapport", "anything at all")

        assert result.credit == 0.0
        assert result.notes == "No scoring rule for step 'rapport' in bridge-v1"

    def test_explicit_full_groups(self):
        rule_set = RuleSet(name="custom", steps={
            "rapport": StepRule(
                groups=[
                    SignalGroup(label="greetings", phrases=["hello", "hi"], full_min=1, partial_min=1),
                    SignalGroup(label="small talk", phrases=["weekend", "weather"], full_min=1, partial_min=1),
                ],
                full_groups=1,
                full_note="Good rapport",
                partial_note="Some rapport",
                none_note="No rapport",
            )
        })

        result = ScoringRules(rule_set).check("rapport", "hello there")

        assert result.credit == 1.0
        assert result.notes == "Good rapport: 1 greetings, 0 small talk"


class TestDefaultRuleSet:
    def test_covers_every_default_step(self):
        rule_set = default_rule_set()

        assert set(rule_set.steps) == {
            "pinpoint_pain", "qualify", "solution_success", "qa", "next_steps", "close_or_schedule"
        }
        assert rule_set.name == "bridge-v1"

    def test_fresh_copy_each_time(self):
        first = default_rule_set()
        first.steps.pop("qa")

        assert "qa" in default_rule_set().steps


class TestLoadRuleSet:
    def test_yaml_overrides_merge_over_defaults(self, tmp_path):
        path = tmp_path / "strict.yaml"
        path.write_text(
            """
name: strict-qa
description: Needs more questions for Q&A credit
steps:
  qa:
    groups:
      - label: questions
        patterns: ['\\?']
        count_occurrences: true
        full_min: 10
        partial_min: 6
    full_note: Excellent Q&A
    partial_note: Moderate Q&A
    none_note: Poor Q&A
"""
        )

        rule_set = load_rule_set(path)

        assert rule_set.name == "strict-qa"
        assert rule_set.steps["qa"].groups[0].full_min == 10
        assert "pinpoint_pain" in rule_set.steps

    def test_name_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "house-rules.yaml"
        path.write_text("steps: {}\n")

        assert load_rule_set(path).name == "house-rules"

    def test_invalid_rule_rejected(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("steps:\n  qa:\n    groups: []\n")

        with pytest.raises(ValueError):
            load_rule_set(path)
