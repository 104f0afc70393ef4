import re
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Dict, Union

import yaml
from pydantic import BaseModel, Field


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern)


def _phrase_pattern(phrase: str) -> str:
    # Phrases match on word boundaries so "pain" does not fire inside "painting"
    return r"(?<!\w)" + re.escape(phrase.lower()) + r"(?!\w)"


class SignalGroup(BaseModel):
    """One kind of evidence for a step, e.g. budget language or pain questions"""
    label: str = Field(..., description="Plural noun used in notes, e.g. 'pain indicators'")
    phrases: List[str] = Field(default_factory=list, description="Literal words/phrases, matched on word boundaries")
    patterns: List[str] = Field(default_factory=list, description="Regular expressions run against lowercased text")
    count_occurrences: bool = Field(
        default=False,
        description="Count every match instead of the number of distinct phrases/patterns found",
    )
    full_min: Optional[int] = Field(None, ge=1, description="Matches needed for this group to support full credit")
    partial_min: Optional[int] = Field(None, ge=1, description="Matches needed for this group to support partial credit")

    def count(self, text: str) -> int:
        expressions = [_phrase_pattern(p) for p in self.phrases] + list(self.patterns)
        if self.count_occurrences:
            return sum(len(_compile(expr).findall(text)) for expr in expressions)
        return sum(1 for expr in expressions if _compile(expr).search(text))


class StepRule(BaseModel):
    """Decides the credit for one step from its signal groups.

    Full credit needs ``full_groups`` groups (default: every group that sets
    ``full_min``) to reach their ``full_min``. Otherwise partial credit needs
    ``partial_groups`` groups to reach their ``partial_min``.
    """
    groups: List[SignalGroup] = Field(..., min_length=1)
    full_groups: Optional[int] = Field(None, ge=1)
    partial_groups: int = Field(default=1, ge=1)
    full_note: str = Field(..., description="Notes prefix when full credit is given")
    partial_note: str = Field(..., description="Notes prefix when partial credit is given")
    none_note: str = Field(..., description="Notes prefix when no credit is given")


class StepCheck(BaseModel):
    credit: float
    notes: str
    counts: Dict[str, int] = Field(default_factory=dict)


class RuleSet(BaseModel):
    """Named collection of step rules, stored on a rule version"""
    name: str = Field(..., description="Rule set identifier, e.g. bridge-v1")
    description: Optional[str] = None
    steps: Dict[str, StepRule] = Field(default_factory=dict, description="Rules keyed by step key")

    def rule_for(self, step_key: str) -> Optional[StepRule]:
        return self.steps.get(step_key)


class ScoringRules:
    """Evaluates transcript text against a rule set, one step at a time"""

    def __init__(self, rule_set: RuleSet):
        self.rule_set = rule_set

    @staticmethod
    def normalize(transcript: str) -> str:
        text = transcript.replace("’", "'").replace("‘", "'")
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        return text.lower()

    def check(self, step_key: str, text: str) -> StepCheck:
        rule = self.rule_set.rule_for(step_key)
        if rule is None:
            return StepCheck(credit=0.0, notes=f"No scoring rule for step '{step_key}' in {self.rule_set.name}")

        matched = [(group, group.count(text)) for group in rule.groups]

        full_eligible = [(g, n) for g, n in matched if g.full_min is not None]
        full_needed = rule.full_groups or len(full_eligible)
        full_met = sum(1 for g, n in full_eligible if n >= g.full_min)
        partial_met = sum(1 for g, n in matched if g.partial_min is not None and n >= g.partial_min)

        if full_eligible and full_met >= full_needed:
            credit, prefix = 1.0, rule.full_note
        elif partial_met >= rule.partial_groups:
            credit, prefix = 0.5, rule.partial_note
        else:
            credit, prefix = 0.0, rule.none_note

        detail = ", ".join(f"{n} {g.label}" for g, n in matched)
        return StepCheck(
            credit=credit,
            notes=f"{prefix}: {detail}",
            counts={g.label: n for g, n in matched},
        )


_WEEKDAYS = r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b"
_MONTHS = r"\b(january|february|march|april|june|july|august|september|october|november|december)\b"


BRIDGE_V1 = {
    "name": "bridge-v1",
    "description": "Keyword and phrase heuristics for the six-step bridge selling framework",
    "steps": {
        "pinpoint_pain": {
            "groups": [
                {
                    "label": "pain indicators",
                    "phrases": [
                        "problem", "problems", "issue", "issues", "challenge", "challenges",
                        "struggle", "struggling", "difficult", "pain", "frustrating", "frustrated",
                        "costing", "losing", "waste", "wasting", "inefficient", "bottleneck",
                    ],
                    "full_min": 3,
                    "partial_min": 2,
                },
                {
                    "label": "pain questions",
                    "patterns": [
                        r"\bwhat\b[^.?!\n]*\b(problem|problems|challenge|challenges|issue|issues|pain)\b",
                        r"\bhow\b[^.?!\n]*\b(affect|affecting|affects|impact|impacting)\b",
                        r"\btell me (more )?about\b[^.?!\n]*\b(problem|challenge|issue|pain|struggle)",
                        r"\bwhat happens if\b",
                    ],
                    "full_min": 2,
                    "partial_min": 1,
                },
            ],
            "full_note": "Excellent pain discovery",
            "partial_note": "Some pain discovery",
            "none_note": "Minimal pain discovery",
        },
        "qualify": {
            "groups": [
                {
                    "label": "budget signals",
                    "phrases": ["budget", "cost", "price", "pricing", "investment", "spend", "afford", "funding"],
                    "full_min": 1,
                    "partial_min": 1,
                },
                {
                    "label": "authority signals",
                    "phrases": [
                        "decision maker", "decision-maker", "sign off", "sign-off", "approve", "approval",
                        "authority", "stakeholder", "stakeholders", "final say", "procurement",
                    ],
                    "full_min": 1,
                    "partial_min": 1,
                },
                {
                    "label": "timeline signals",
                    "phrases": [
                        "timeline", "deadline", "by when", "urgent", "priority", "go live", "go-live",
                        "this quarter", "next quarter", "launch date", "timeframe", "time frame",
                    ],
                    "full_min": 1,
                    "partial_min": 1,
                },
            ],
            "partial_groups": 2,
            "full_note": "Fully qualified",
            "partial_note": "Partially qualified",
            "none_note": "Poor qualification",
        },
        "solution_success": {
            "groups": [
                {
                    "label": "solution terms",
                    "phrases": [
                        "solution", "solve", "fix", "address", "help", "benefit", "advantage",
                        "feature", "capability", "outcome", "result", "results", "roi",
                    ],
                    "full_min": 4,
                    "partial_min": 2,
                },
                {
                    "label": "success examples",
                    "phrases": [
                        "example", "case study", "for instance", "similar", "customers like",
                        "clients like", "another client", "companies like",
                    ],
                    "full_min": 1,
                },
            ],
            "full_note": "Strong solution presentation",
            "partial_note": "Basic solution presentation",
            "none_note": "Weak solution presentation",
        },
        "qa": {
            "groups": [
                {
                    "label": "questions",
                    "patterns": [r"\?"],
                    "count_occurrences": True,
                    "full_min": 5,
                    "partial_min": 3,
                },
                {
                    "label": "objection indicators",
                    "phrases": [
                        "concern", "concerns", "worry", "worried", "hesitant", "hesitation",
                        "doubt", "objection", "risk", "makes sense", "does that answer",
                    ],
                    "full_min": 2,
                    "partial_min": 1,
                },
            ],
            "full_note": "Excellent Q&A",
            "partial_note": "Moderate Q&A",
            "none_note": "Poor Q&A",
        },
        "next_steps": {
            "groups": [
                {
                    "label": "next step indicators",
                    "phrases": [
                        "next step", "next steps", "follow up", "follow-up", "move forward", "proposal",
                        "trial", "pilot", "send over", "recap", "action item", "action items",
                    ],
                    "full_min": 2,
                    "partial_min": 1,
                },
                {
                    "label": "commitments",
                    "phrases": ["i will", "i'll", "we will", "we'll", "going to", "plan to", "need to"],
                    "full_min": 2,
                    "partial_min": 1,
                },
            ],
            "full_note": "Clear next steps",
            "partial_note": "Some next steps",
            "none_note": "No clear next steps",
        },
        "close_or_schedule": {
            "groups": [
                {
                    "label": "close attempts",
                    "phrases": [
                        "sign", "signed", "agreement", "deal", "contract", "purchase order",
                        "move ahead", "get started", "kick off", "close",
                    ],
                    "full_min": 1,
                    "partial_min": 1,
                },
                {
                    "label": "schedule mentions",
                    "phrases": [
                        "schedule", "scheduled", "calendar", "invite", "appointment", "book a time",
                        "booked", "set up a time",
                    ],
                    "full_min": 1,
                    "partial_min": 1,
                },
                {
                    "label": "date/time references",
                    "patterns": [
                        _WEEKDAYS,
                        _MONTHS,
                        r"\b\d{1,2}:\d{2}\b",
                        r"\b\d{1,2}\s?(am|pm)\b",
                        r"\b\d{1,2}/\d{1,2}\b",
                        r"\btomorrow\b",
                        r"\bnext week\b",
                    ],
                    "full_min": 1,
                },
            ],
            "full_groups": 2,
            "full_note": "Strong close",
            "partial_note": "Partial close",
            "none_note": "No close",
        },
    },
}


def default_rule_set() -> RuleSet:
    return RuleSet.model_validate(BRIDGE_V1)


def load_rule_set(path: Union[str, Path]) -> RuleSet:
    """Load a rule set from YAML; steps it omits fall back to bridge-v1"""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    base = default_rule_set()
    steps = {key: rule.model_dump() for key, rule in base.steps.items()}
    steps.update(data.get("steps") or {})
    return RuleSet.model_validate({
        "name": data.get("name") or Path(path).stem,
        "description": data.get("description"),
        "steps": steps,
    })
