from typing import List

from .errors import MissingRuleVersionError
from .repositories import HistoryRepository
from .schemas import Call, HistoryEntry


class ScoreHistoryLedger:
    """Append-only audit trail of every score replacement on a call"""

    def __init__(self, repository: HistoryRepository):
        self.repository = repository

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        self.repository.append(entry)
        return entry

    def record(self, call: Call) -> HistoryEntry:
        """Snapshot the call's current score; the call must carry a rule version"""
        if call.rule_version_id is None:
            raise MissingRuleVersionError(call.id)
        entry = HistoryEntry(
            call_id=call.id,
            rule_version_id=call.rule_version_id,
            framework_version=call.framework_version or "1.0",
            total=call.breakdown.total,
            # Detached copy; the call's breakdown is shared with the rescore result
            breakdown=call.breakdown.model_copy(deep=True),
        )
        return self.append(entry)

    def list_for(self, call_id: str) -> List[HistoryEntry]:
        return self.repository.list_for(call_id)
