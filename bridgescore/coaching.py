from typing import Any, List, Union

from .schemas import CoachingAnalysis, ScoreBreakdown, StepScore


class CoachingAnalyzer:
    """Derives strengths and areas for improvement from a score breakdown.

    Steps are ranked by credit (highest first), then by weight (highest
    first), then by their position in the framework. Strengths are the top
    entries with credit >= 0.5 and improvements the top entries below 0.5,
    each capped at ``limit``.

    Note that equal-credit steps are not kept in plain framework order: a
    heavier step ranks ahead of a lighter one declared before it, so with
    every step at full credit the strengths are the highest-weight steps.
    Framework order only separates steps of equal credit and equal weight.
    """

    def __init__(self, limit: int = 3):
        self.limit = limit

    def analyze(self, breakdown: Union[ScoreBreakdown, dict, list, Any]) -> CoachingAnalysis:
        if not isinstance(breakdown, ScoreBreakdown):
            # Raw records get the defensive treatment: missing credit counts as 0
            breakdown = ScoreBreakdown.from_record(breakdown)

        ranked = self.rank(breakdown.steps)
        strengths = [step for step in ranked if step.credit >= 0.5][:self.limit]
        improvements = [step for step in ranked if step.credit < 0.5][:self.limit]
        return CoachingAnalysis(strengths=strengths, improvements=improvements)

    @staticmethod
    def rank(steps: List[StepScore]) -> List[StepScore]:
        positioned = list(enumerate(steps))
        positioned.sort(key=lambda item: (-item[1].credit, -item[1].weight, item[0]))
        return [step for _, step in positioned]


def analyze(breakdown: Union[ScoreBreakdown, dict, list]) -> CoachingAnalysis:
    return CoachingAnalyzer().analyze(breakdown)
