from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import math
import uuid

from .errors import InvalidFrameworkError
from .rules import RuleSet, default_rule_set


CREDIT_LEVELS = (0.0, 0.5, 1.0)

# Reserved key carried next to the step entries in the persisted breakdown
TOTAL_KEY = "total"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def round_half_up(value: float) -> int:
    """Round x.5 upwards so 1.5 -> 2 and 2.5 -> 3"""
    return int(math.floor(value + 0.5))


class CreditColor(str, Enum):
    FULL = "green"
    PARTIAL = "yellow"
    NONE = "red"

    @classmethod
    def for_credit(cls, credit: float) -> "CreditColor":
        if credit >= 1:
            return cls.FULL
        if credit >= 0.5:
            return cls.PARTIAL
        return cls.NONE


class StepDefinition(BaseModel):
    key: str = Field(..., min_length=1, description="Stable step identifier, e.g. pinpoint_pain")
    name: str = Field(..., description="Display name, e.g. Pinpoint Pain")
    weight: int = Field(..., gt=0, description="Points contributed when fully credited")
    order: int = Field(..., description="Position of the step within the framework")


class FrameworkConfig(BaseModel):
    """Ordered scoring steps whose weights sum to max_score"""
    version: str = Field(default="1.0", description="Framework version label")
    max_score: int = Field(default=20, gt=0, description="Fixed total the step weights must add up to")
    steps: List[StepDefinition] = Field(..., description="Step definitions, sorted by order")

    @field_validator("steps")
    @classmethod
    def _sort_steps(cls, steps: List[StepDefinition]) -> List[StepDefinition]:
        return sorted(steps, key=lambda step: step.order)

    @model_validator(mode="after")
    def _check_steps(self) -> "FrameworkConfig":
        if not self.steps:
            raise InvalidFrameworkError("Framework must define at least one step")

        keys = [step.key for step in self.steps]
        duplicates = sorted({key for key in keys if keys.count(key) > 1})
        if duplicates:
            raise InvalidFrameworkError(f"Duplicate step keys: {', '.join(duplicates)}")
        if TOTAL_KEY in keys:
            raise InvalidFrameworkError(f"'{TOTAL_KEY}' is reserved and cannot be a step key")

        if self.total_weight != self.max_score:
            raise InvalidFrameworkError(
                f"Step weights sum to {self.total_weight}, expected {self.max_score}"
            )
        return self

    @property
    def total_weight(self) -> int:
        return sum(step.weight for step in self.steps)

    @property
    def step_keys(self) -> List[str]:
        return [step.key for step in self.steps]

    def get_step(self, key: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.key == key:
                return step
        return None

    def step_name(self, key: str) -> str:
        step = self.get_step(key)
        return step.name if step else key.replace("_", " ").title()


DEFAULT_STEPS = [
    StepDefinition(key="pinpoint_pain", name="Pinpoint Pain", weight=4, order=1),
    StepDefinition(key="qualify", name="Qualify", weight=3, order=2),
    StepDefinition(key="solution_success", name="Solution Success", weight=3, order=3),
    StepDefinition(key="qa", name="Q&A", weight=3, order=4),
    StepDefinition(key="next_steps", name="Next Steps", weight=4, order=5),
    StepDefinition(key="close_or_schedule", name="Close or Schedule", weight=3, order=6),
]


def default_framework(version: str = "1.0") -> FrameworkConfig:
    """The six-step bridge selling framework (weights sum to 20)"""
    return FrameworkConfig(version=version, max_score=20, steps=[step.model_copy() for step in DEFAULT_STEPS])


class StepScore(BaseModel):
    step_key: str = Field(..., description="Key of the step definition that was scored")
    credit: float = Field(..., description="0, 0.5 or 1")
    weight: int = Field(..., ge=0, description="Weight copied from the step definition at scoring time")
    notes: str = Field(default="", description="Short justification for the credit")

    @field_validator("credit")
    @classmethod
    def _check_credit(cls, credit: float) -> float:
        if credit not in CREDIT_LEVELS:
            raise ValueError(f"credit must be one of {CREDIT_LEVELS}, got {credit}")
        return float(credit)

    @property
    def color(self) -> CreditColor:
        return CreditColor.for_credit(self.credit)

    @property
    def points(self) -> float:
        return self.credit * self.weight


def _coerce_credit(value: Any) -> float:
    try:
        credit = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(credit):
        return 0.0
    if credit >= 1:
        return 1.0
    if credit >= 0.5:
        return 0.5
    return 0.0


def _coerce_weight(value: Any) -> int:
    try:
        weight = int(value)
    except (TypeError, ValueError):
        return 0
    return max(weight, 0)


class ScoreBreakdown(BaseModel):
    """Per-step credits plus the weighted total"""
    steps: List[StepScore] = Field(..., description="One entry per step, in framework order")
    total: int = Field(..., ge=0, description="round(sum(credit * weight))")

    @model_validator(mode="after")
    def _check_invariants(self) -> "ScoreBreakdown":
        keys = [step.step_key for step in self.steps]
        if len(set(keys)) != len(keys):
            raise ValueError("Step keys in a breakdown must be unique")
        if TOTAL_KEY in keys:
            raise ValueError(f"'{TOTAL_KEY}' cannot be used as a step key")
        expected = round_half_up(sum(step.points for step in self.steps))
        if self.total != expected:
            raise ValueError(f"total {self.total} does not match weighted sum {expected}")
        return self

    @classmethod
    def from_steps(cls, steps: List[StepScore]) -> "ScoreBreakdown":
        return cls(steps=steps, total=round_half_up(sum(step.points for step in steps)))

    @property
    def max_score(self) -> int:
        return sum(step.weight for step in self.steps)

    @property
    def step_keys(self) -> List[str]:
        return [step.step_key for step in self.steps]

    def get(self, step_key: str) -> Optional[StepScore]:
        for step in self.steps:
            if step.step_key == step_key:
                return step
        return None

    def to_record(self) -> Dict[str, Any]:
        """Persisted shape: step keys in framework order plus a sibling total"""
        record: Dict[str, Any] = {}
        for step in self.steps:
            record[step.step_key] = {"credit": step.credit, "weight": step.weight, "notes": step.notes}
        record[TOTAL_KEY] = self.total
        return record

    @classmethod
    def from_record(cls, record: Any) -> "ScoreBreakdown":
        """Build a breakdown from a persisted (possibly legacy or partial) record.

        Accepts the keyed shape written by to_record, older keyed records that
        also carry a color field, and list-shaped records of
        {step, credit, weight, notes}. Missing fields default to credit 0,
        weight 0 and empty notes; the total is always recomputed.
        """
        if record is None:
            return cls(steps=[], total=0)

        if isinstance(record, list):
            items = []
            for item in record:
                if not isinstance(item, dict):
                    continue
                key = item.get("step_key") or item.get("step") or item.get("key")
                if key and key != TOTAL_KEY:
                    items.append((str(key), item))
        elif isinstance(record, dict):
            items = [(str(key), value) for key, value in record.items() if key != TOTAL_KEY]
        else:
            raise ValueError(f"Unsupported score breakdown record: {type(record).__name__}")

        steps = []
        seen = set()
        for key, value in items:
            if key in seen:
                continue
            seen.add(key)
            value = value if isinstance(value, dict) else {}
            notes = value.get("notes")
            steps.append(StepScore(
                step_key=key,
                credit=_coerce_credit(value.get("credit")),
                weight=_coerce_weight(value.get("weight")),
                notes=notes if isinstance(notes, str) else "",
            ))
        return cls.from_steps(steps)


class RuleVersion(BaseModel):
    """A named configuration of the scoring rules an organization can select"""
    id: str = Field(default_factory=new_id, description="Rule version identifier")
    org_id: str = Field(..., description="Owning organization")
    name: str = Field(..., description="Display name")
    version: str = Field(..., description="Version label, e.g. 1.2")
    is_active: bool = Field(default=False, description="Whether this is the organization's active version")
    rule_set: RuleSet = Field(default_factory=default_rule_set, description="Heuristics used by the scorer")
    created_at: datetime = Field(default_factory=utc_now)


class Call(BaseModel):
    """A submitted transcript and the score currently attached to it"""
    id: str = Field(default_factory=new_id, description="Call identifier")
    org_id: Optional[str] = Field(None, description="Owning organization")
    user_id: Optional[str] = Field(None, description="Rep who submitted the call")
    transcript: str = Field(..., description="Raw transcript text")
    breakdown: ScoreBreakdown = Field(..., description="Current score breakdown")
    rule_version_id: Optional[str] = Field(None, description="Rule version that produced the current score")
    framework_version: Optional[str] = Field(None, description="Framework version that produced the current score")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def total(self) -> int:
        return self.breakdown.total

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "user_id": self.user_id,
            "transcript": self.transcript,
            "score_total": self.breakdown.total,
            "score_breakdown": self.breakdown.to_record(),
            "rule_version_id": self.rule_version_id,
            "framework_version": self.framework_version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Call":
        """Read a persisted call; version columns and timestamps may be absent"""
        data = {
            "id": record["id"],
            "org_id": record.get("org_id"),
            "user_id": record.get("user_id"),
            "transcript": record.get("transcript") or "",
            "breakdown": ScoreBreakdown.from_record(record.get("score_breakdown")),
            "rule_version_id": record.get("rule_version_id"),
            "framework_version": record.get("framework_version"),
        }
        for field in ("created_at", "updated_at"):
            if record.get(field):
                data[field] = record[field]
        return cls(**data)


class HistoryEntry(BaseModel):
    """Immutable audit record of a score once attached to a call"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    call_id: str = Field(..., description="Call the score belonged to")
    rule_version_id: str = Field(..., description="Rule version that produced the score")
    framework_version: str = Field(..., description="Framework version in effect")
    total: int = Field(..., ge=0)
    breakdown: ScoreBreakdown = Field(..., description="Snapshot of the breakdown")
    created_at: datetime = Field(default_factory=utc_now)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "call_id": self.call_id,
            "rule_version_id": self.rule_version_id,
            "framework_version": self.framework_version,
            "score_total": self.total,
            "score_breakdown": self.breakdown.to_record(),
            "created_at": self.created_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            id=record["id"],
            call_id=record["call_id"],
            rule_version_id=record["rule_version_id"],
            framework_version=record.get("framework_version") or "1.0",
            total=record["score_total"],
            breakdown=ScoreBreakdown.from_record(record.get("score_breakdown")),
            created_at=record["created_at"],
        )


class Pivot(BaseModel):
    id: str = Field(default_factory=new_id)
    step_key: str = Field(..., description="Step the prompt coaches")
    prompt: str = Field(..., description="Scripted coaching question")
    org_id: Optional[str] = Field(None, description="Owning organization; None for the shared library")
    created_at: datetime = Field(default_factory=utc_now)


class PivotSuggestions(BaseModel):
    step_key: str
    prompts: List[str] = Field(default_factory=list, description="At most three prompts")
    more_count: int = Field(default=0, ge=0, description="Prompts available beyond the ones returned")

    @property
    def has_suggestions(self) -> bool:
        return bool(self.prompts)


class CoachingAnalysis(BaseModel):
    strengths: List[StepScore] = Field(default_factory=list, description="Up to three steps with credit >= 0.5")
    improvements: List[StepScore] = Field(default_factory=list, description="Up to three steps with credit < 0.5")


class RescoreResult(BaseModel):
    call_id: str
    new_breakdown: ScoreBreakdown
    history_written: bool = Field(..., description="True if a history entry was appended")
    changed: bool = Field(..., description="True if the total or breakdown content changed")
    rule_version_id: Optional[str] = None
    framework_version: Optional[str] = None
    previous_total: int
    previous_rule_version_id: Optional[str] = None
