"""Typed storage interfaces the core depends on, plus an in-memory adapter.

Concrete stores implement every repository and ``ScoreStore.transaction()``,
which applies the writes made inside it as one unit: all of them or none.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .errors import UnknownCallError, UnknownRuleVersionError
from .schemas import (
    Call, FrameworkConfig, HistoryEntry, Pivot, RuleVersion, ScoreBreakdown,
    default_framework, utc_now,
)


class CallRepository(ABC):
    @abstractmethod
    def get(self, call_id: str) -> Optional[Call]:
        ...

    @abstractmethod
    def add(self, call: Call) -> None:
        ...

    @abstractmethod
    def replace_score(self, call_id: str, breakdown: ScoreBreakdown,
                      rule_version_id: Optional[str], framework_version: Optional[str]) -> Call:
        """Swap the call's current score; raises UnknownCallError"""

    @abstractmethod
    def list(self, org_id: Optional[str] = None) -> List[Call]:
        """Calls ordered by creation time, optionally for one organization"""


class HistoryRepository(ABC):
    @abstractmethod
    def append(self, entry: HistoryEntry) -> None:
        ...

    @abstractmethod
    def list_for(self, call_id: str) -> List[HistoryEntry]:
        """Entries for a call, oldest first"""


class RuleVersionRepository(ABC):
    @abstractmethod
    def get(self, version_id: str) -> Optional[RuleVersion]:
        ...

    @abstractmethod
    def add(self, version: RuleVersion) -> None:
        ...

    @abstractmethod
    def list_for_org(self, org_id: str) -> List[RuleVersion]:
        """Newest first"""

    def get_active(self, org_id: str) -> Optional[RuleVersion]:
        for version in self.list_for_org(org_id):
            if version.is_active:
                return version
        return None

    @abstractmethod
    def activate(self, version_id: str) -> RuleVersion:
        """Mark one version active and deactivate the rest of its organization"""


class FrameworkRepository(ABC):
    @abstractmethod
    def get_for_org(self, org_id: Optional[str]) -> FrameworkConfig:
        """The organization's framework, or the default one"""

    @abstractmethod
    def save(self, org_id: str, framework: FrameworkConfig) -> None:
        ...


class PivotRepository(ABC):
    @abstractmethod
    def list_for_step(self, step_key: str, org_id: Optional[str] = None) -> List[Pivot]:
        """Shared pivots plus the organization's own, oldest first"""

    @abstractmethod
    def add(self, pivot: Pivot) -> None:
        ...

    @abstractmethod
    def count(self) -> int:
        ...


class ScoreStore(ABC):
    calls: CallRepository
    history: HistoryRepository
    rule_versions: RuleVersionRepository
    frameworks: FrameworkRepository
    pivots: PivotRepository

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator["ScoreStore"]:
        """Apply every write in the block atomically; roll back on any error"""

    def close(self) -> None:
        pass


class InMemoryCallRepository(CallRepository):
    def __init__(self):
        self._calls: Dict[str, Call] = {}

    def get(self, call_id: str) -> Optional[Call]:
        return self._calls.get(call_id)

    def add(self, call: Call) -> None:
        self._calls[call.id] = call

    def replace_score(self, call_id, breakdown, rule_version_id, framework_version) -> Call:
        call = self._calls.get(call_id)
        if call is None:
            raise UnknownCallError(call_id)
        updated = call.model_copy(update={
            "breakdown": breakdown,
            "rule_version_id": rule_version_id,
            "framework_version": framework_version,
            "updated_at": utc_now(),
        })
        self._calls[call_id] = updated
        return updated

    def list(self, org_id=None) -> List[Call]:
        calls = [c for c in self._calls.values() if org_id is None or c.org_id == org_id]
        return sorted(calls, key=lambda c: c.created_at)

    def snapshot(self) -> Dict[str, Call]:
        return dict(self._calls)

    def restore(self, snapshot: Dict[str, Call]) -> None:
        self._calls = snapshot


class InMemoryHistoryRepository(HistoryRepository):
    def __init__(self):
        self._entries: List[HistoryEntry] = []

    def append(self, entry: HistoryEntry) -> None:
        # Stored and returned entries are deep copies so callers cannot edit the ledger
        self._entries.append(entry.model_copy(deep=True))

    def list_for(self, call_id: str) -> List[HistoryEntry]:
        entries = [e.model_copy(deep=True) for e in self._entries if e.call_id == call_id]
        return sorted(entries, key=lambda e: e.created_at)

    def snapshot(self) -> List[HistoryEntry]:
        return list(self._entries)

    def restore(self, snapshot: List[HistoryEntry]) -> None:
        self._entries = snapshot


class InMemoryRuleVersionRepository(RuleVersionRepository):
    def __init__(self):
        self._versions: Dict[str, RuleVersion] = {}

    def get(self, version_id: str) -> Optional[RuleVersion]:
        return self._versions.get(version_id)

    def add(self, version: RuleVersion) -> None:
        self._versions[version.id] = version

    def list_for_org(self, org_id: str) -> List[RuleVersion]:
        versions = [v for v in self._versions.values() if v.org_id == org_id]
        return sorted(versions, key=lambda v: v.created_at, reverse=True)

    def activate(self, version_id: str) -> RuleVersion:
        target = self._versions.get(version_id)
        if target is None:
            raise UnknownRuleVersionError(version_id)
        for version in self.list_for_org(target.org_id):
            self._versions[version.id] = version.model_copy(update={"is_active": version.id == version_id})
        return self._versions[version_id]


class InMemoryFrameworkRepository(FrameworkRepository):
    def __init__(self, default: Optional[FrameworkConfig] = None):
        self._default = default or default_framework()
        self._frameworks: Dict[str, FrameworkConfig] = {}

    def get_for_org(self, org_id: Optional[str]) -> FrameworkConfig:
        if org_id is not None and org_id in self._frameworks:
            return self._frameworks[org_id]
        return self._default

    def save(self, org_id: str, framework: FrameworkConfig) -> None:
        self._frameworks[org_id] = framework


class InMemoryPivotRepository(PivotRepository):
    def __init__(self):
        self._pivots: List[Pivot] = []

    def list_for_step(self, step_key: str, org_id: Optional[str] = None) -> List[Pivot]:
        pivots = [
            p for p in self._pivots
            if p.step_key == step_key and (p.org_id is None or p.org_id == org_id)
        ]
        return sorted(pivots, key=lambda p: p.created_at)

    def add(self, pivot: Pivot) -> None:
        self._pivots.append(pivot)

    def count(self) -> int:
        return len(self._pivots)


class InMemoryScoreStore(ScoreStore):
    """Process-local store; transactions hold a lock and restore a snapshot on failure"""

    def __init__(self, default_framework_config: Optional[FrameworkConfig] = None):
        self._lock = threading.RLock()
        self.calls = InMemoryCallRepository()
        self.history = InMemoryHistoryRepository()
        self.rule_versions = InMemoryRuleVersionRepository()
        self.frameworks = InMemoryFrameworkRepository(default_framework_config)
        self.pivots = InMemoryPivotRepository()

    @contextmanager
    def transaction(self) -> Iterator["InMemoryScoreStore"]:
        with self._lock:
            calls_snapshot = self.calls.snapshot()
            history_snapshot = self.history.snapshot()
            try:
                yield self
            except BaseException:
                self.calls.restore(calls_snapshot)
                self.history.restore(history_snapshot)
                raise
