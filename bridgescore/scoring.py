import json
import csv
from pathlib import Path
from typing import List, Optional
from datetime import date, datetime

from .errors import InvalidInputError
from .rules import RuleSet, ScoringRules, default_rule_set
from .schemas import Call, FrameworkConfig, HistoryEntry, ScoreBreakdown, StepScore, default_framework


class TranscriptScorer:
    """Deterministic rule-based scorer: (transcript, framework) -> ScoreBreakdown.

    Pure computation; the same transcript, framework and rule set always
    produce an identical breakdown, notes included.
    """

    def __init__(self, rule_set: Optional[RuleSet] = None):
        self.rules = ScoringRules(rule_set or default_rule_set())

    @property
    def rule_set(self) -> RuleSet:
        return self.rules.rule_set

    def score(self, transcript: str, framework: FrameworkConfig) -> ScoreBreakdown:
        if not isinstance(transcript, str) or not transcript.strip():
            raise InvalidInputError("Transcript is empty; nothing to score")

        text = self.rules.normalize(transcript)
        steps = []
        for step in framework.steps:
            check = self.rules.check(step.key, text)
            steps.append(StepScore(
                step_key=step.key,
                credit=check.credit,
                weight=step.weight,
                notes=check.notes,
            ))
        return ScoreBreakdown.from_steps(steps)


def score(transcript: str, framework: Optional[FrameworkConfig] = None,
          rule_set: Optional[RuleSet] = None) -> ScoreBreakdown:
    return TranscriptScorer(rule_set).score(transcript, framework or default_framework())


class OutputGenerator:
    """Writes scored calls and history entries for reporting consumers"""

    def generate_json_output(self, calls: List[Call], output_path: Path):
        output_data = [self._call_row(call) for call in calls]

        with open(output_path, 'w') as f:
            json.dump(output_data, f, indent=2, default=self._json_serializer)

    def generate_csv_output(self, calls: List[Call], output_path: Path):
        if not calls:
            return

        # Union of step keys in first-seen order; calls scored under other frameworks leave gaps
        step_keys: List[str] = []
        for call in calls:
            for key in call.breakdown.step_keys:
                if key not in step_keys:
                    step_keys.append(key)

        with open(output_path, 'w', newline='') as f:
            writer = csv.writer(f)

            header = ['call_id', 'org_id', 'user_id', 'created_at', 'total', 'max_score',
                      'rule_version_id', 'framework_version']
            for key in step_keys:
                header.extend([f'{key}_credit', f'{key}_notes'])
            writer.writerow(header)

            for call in calls:
                row = [
                    call.id,
                    call.org_id or '',
                    call.user_id or '',
                    call.created_at.isoformat(),
                    call.total,
                    call.breakdown.max_score,
                    call.rule_version_id or '',
                    call.framework_version or '',
                ]
                for key in step_keys:
                    step = call.breakdown.get(key)
                    row.extend([step.credit, step.notes] if step else ['', ''])
                writer.writerow(row)

    def generate_leaderboard(self, calls: List[Call], output_path: Path,
                             framework: Optional[FrameworkConfig] = None):
        if not calls:
            return

        framework = framework or default_framework()
        ranked = sorted(calls, key=lambda c: (-c.total, c.created_at))
        average = sum(c.total for c in ranked) / len(ranked)

        markdown_content = f"""# BridgeScore - Call Leaderboard

## Summary Statistics
- **Total Calls Scored**: {len(ranked)}
- **Average Score**: {average:.1f}/{framework.max_score}

## Step Coverage
"""
        for step in framework.steps:
            full = sum(1 for c in ranked if c.breakdown.get(step.key) and c.breakdown.get(step.key).credit == 1)
            markdown_content += f"- **{step.name}**: full credit on {full} of {len(ranked)} calls\n"

        header_cells = ' | '.join(step.name for step in framework.steps)
        divider = '|'.join('---' for _ in framework.steps)
        markdown_content += f"""
## Ranked Results

| Rank | Call ID | Org | Date | Score | {header_cells} |
|------|---------|-----|------|-------|{divider}|
"""
        for i, call in enumerate(ranked, 1):
            cells = []
            for step in framework.steps:
                step_score = call.breakdown.get(step.key)
                cells.append(f"{step_score.credit:g}" if step_score else '-')
            markdown_content += (
                f"| {i} | {call.id} | {call.org_id or 'N/A'} | {call.created_at.date()} | "
                f"**{call.total}/{call.breakdown.max_score}** | {' | '.join(cells)} |\n"
            )

        with open(output_path, 'w') as f:
            f.write(markdown_content)

    def generate_history_jsonl(self, entries: List[HistoryEntry], output_path: Path):
        with open(output_path, 'w') as f:
            for entry in entries:
                record = entry.to_record()
                record['score_breakdown'] = json.dumps(record['score_breakdown'])
                f.write(json.dumps(record, default=self._json_serializer) + '\n')

    def generate_calls_jsonl(self, calls: List[Call], output_path: Path):
        with open(output_path, 'w') as f:
            for call in calls:
                record = self._call_row(call)
                record['score_breakdown'] = json.dumps(record['score_breakdown'])
                f.write(json.dumps(record, default=self._json_serializer) + '\n')

    def _call_row(self, call: Call) -> dict:
        record = call.to_record()
        record.pop('transcript')
        return record

    def _json_serializer(self, obj):
        if isinstance(obj, (date, datetime)):
            return obj.isoformat()
        raise TypeError(f"Object of type {type(obj)} is not JSON serializable")
