from typing import Optional, Tuple

from .config import Settings
from .errors import (
    InvalidInputError, PartialWriteError, ScoringFailedError, UnknownCallError, UnknownRuleVersionError,
)
from .history import ScoreHistoryLedger
from .repositories import ScoreStore
from .schemas import Call, FrameworkConfig, RescoreResult, RuleVersion, ScoreBreakdown
from .scoring import TranscriptScorer


class RescoreOrchestrator:
    """Scores new calls and re-scores existing ones under a chosen rule version.

    Replacing a call's score and appending its history entry happen in one
    store transaction. A history entry is written only when the score
    actually changed and the rule version is known.
    """

    def __init__(self, store: ScoreStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or Settings()
        self.ledger = ScoreHistoryLedger(store.history)

    def resolve_version(self, org_id: Optional[str], rule_version_id: Optional[str] = None) -> Optional[RuleVersion]:
        """Explicit version if given, else the organization's active one (may be None)"""
        if rule_version_id is not None:
            version = self.store.rule_versions.get(rule_version_id)
            if version is None:
                raise UnknownRuleVersionError(rule_version_id)
            return version
        if org_id is None:
            return None
        return self.store.rule_versions.get_active(org_id)

    def score_transcript(self, transcript: str, version: Optional[RuleVersion],
                         org_id: Optional[str]) -> Tuple[ScoreBreakdown, FrameworkConfig]:
        framework = self.store.frameworks.get_for_org(version.org_id if version else org_id)
        scorer = TranscriptScorer(version.rule_set if version else None)
        return scorer.score(transcript, framework), framework

    def submit(self, org_id: Optional[str], transcript: str, user_id: Optional[str] = None,
               rule_version_id: Optional[str] = None) -> Call:
        """Score a new transcript and store it as a call.

        The first score is not a replacement, so no history entry is written.
        Raises InvalidInputError for an empty transcript.
        """
        version = self.resolve_version(org_id, rule_version_id)
        breakdown, framework = self.score_transcript(transcript, version, org_id)
        call = Call(
            org_id=org_id,
            user_id=user_id,
            transcript=transcript,
            breakdown=breakdown,
            rule_version_id=version.id if version else None,
            framework_version=framework.version,
        )
        with self.store.transaction():
            self.store.calls.add(call)
        return call

    def rescore(self, call_id: str, rule_version_id: Optional[str] = None) -> RescoreResult:
        call = self.store.calls.get(call_id)
        if call is None:
            raise UnknownCallError(call_id)

        version = self.resolve_version(call.org_id, rule_version_id)
        try:
            breakdown, framework = self.score_transcript(call.transcript, version, call.org_id)
        except (InvalidInputError, ValueError) as e:
            raise ScoringFailedError(f"Could not rescore call {call_id}: {e}") from e

        version_id = version.id if version else None
        attempts = self.settings.write_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._replace(call_id, breakdown, version_id, framework.version)
            except PartialWriteError:
                # Full replacement, so repeating the write is idempotent
                if attempt >= attempts:
                    raise
        raise PartialWriteError(f"Could not write score for call {call_id}")

    def _replace(self, call_id: str, breakdown: ScoreBreakdown, version_id: Optional[str],
                 framework_version: str) -> RescoreResult:
        with self.store.transaction():
            current = self.store.calls.get(call_id)
            if current is None:
                raise UnknownCallError(call_id)

            changed = current.total != breakdown.total or current.breakdown != breakdown
            updated = self.store.calls.replace_score(call_id, breakdown, version_id, framework_version)

            history_written = changed and version_id is not None
            if history_written:
                self.ledger.record(updated)

        return RescoreResult(
            call_id=call_id,
            new_breakdown=breakdown,
            history_written=history_written,
            changed=changed,
            rule_version_id=version_id,
            framework_version=framework_version,
            previous_total=current.total,
            previous_rule_version_id=current.rule_version_id,
        )
