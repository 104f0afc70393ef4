import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .config import Settings
from .errors import PartialWriteError, UnknownCallError, UnknownRuleVersionError
from .pivots import seed_pivots
from .repositories import (
    CallRepository, FrameworkRepository, HistoryRepository, PivotRepository, RuleVersionRepository, ScoreStore,
)
from .schemas import (
    Call, FrameworkConfig, HistoryEntry, Pivot, RuleVersion, ScoreBreakdown, default_framework, utc_now,
)

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS calls (
    id TEXT PRIMARY KEY,
    org_id TEXT,
    user_id TEXT,
    transcript TEXT NOT NULL,
    score_total INTEGER NOT NULL DEFAULT 0,
    score_breakdown TEXT,
    rule_version_id TEXT,
    framework_version TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_calls_org ON calls(org_id, created_at);

CREATE TABLE IF NOT EXISTS call_score_history (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    call_id TEXT NOT NULL REFERENCES calls(id),
    rule_version_id TEXT NOT NULL,
    framework_version TEXT NOT NULL DEFAULT '1.0',
    score_total INTEGER NOT NULL CHECK (score_total >= 0),
    score_breakdown TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_call_score_history_call_id ON call_score_history(call_id, created_at);

CREATE TABLE IF NOT EXISTS rule_versions (
    id TEXT PRIMARY KEY,
    org_id TEXT NOT NULL,
    name TEXT NOT NULL,
    version TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    rule_set TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rule_versions_org ON rule_versions(org_id, created_at);

CREATE TABLE IF NOT EXISTS frameworks (
    org_id TEXT PRIMARY KEY,
    framework TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pivots (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    step_key TEXT NOT NULL,
    prompt TEXT NOT NULL,
    org_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pivots_step_key ON pivots(step_key);
"""


def _load_json(value: Any) -> Any:
    if value is None or not isinstance(value, (str, bytes)):
        return value
    try:
        return json.loads(value)
    except ValueError:
        logger.warning("Unreadable JSON column value; treating it as empty")
        return None


class SqliteCallRepository(CallRepository):
    def __init__(self, store: "SqliteScoreStore"):
        self.store = store

    def get(self, call_id: str) -> Optional[Call]:
        row = self.store.fetchone("SELECT * FROM calls WHERE id = ?", (call_id,))
        return self._to_call(row) if row else None

    def add(self, call: Call) -> None:
        self.store.execute(
            """
            INSERT INTO calls
            (id, org_id, user_id, transcript, score_total, score_breakdown,
             rule_version_id, framework_version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                call.id,
                call.org_id,
                call.user_id,
                call.transcript,
                call.breakdown.total,
                json.dumps(call.breakdown.to_record()),
                call.rule_version_id,
                call.framework_version,
                call.created_at.isoformat(),
                call.updated_at.isoformat(),
            )
        )

    def replace_score(self, call_id: str, breakdown: ScoreBreakdown,
                      rule_version_id: Optional[str], framework_version: Optional[str]) -> Call:
        cursor = self.store.execute(
            """
            UPDATE calls
            SET score_total = ?, score_breakdown = ?, rule_version_id = ?, framework_version = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                breakdown.total,
                json.dumps(breakdown.to_record()),
                rule_version_id,
                framework_version,
                utc_now().isoformat(),
                call_id,
            )
        )
        if cursor.rowcount == 0:
            raise UnknownCallError(call_id)
        return self.get(call_id)

    def list(self, org_id: Optional[str] = None) -> List[Call]:
        if org_id is None:
            rows = self.store.fetchall("SELECT * FROM calls ORDER BY created_at, rowid")
        else:
            rows = self.store.fetchall(
                "SELECT * FROM calls WHERE org_id = ? ORDER BY created_at, rowid", (org_id,)
            )
        return [self._to_call(row) for row in rows]

    def _to_call(self, row: sqlite3.Row) -> Call:
        record: Dict[str, Any] = dict(row)
        record["score_breakdown"] = _load_json(record.get("score_breakdown"))
        return Call.from_record(record)


class SqliteHistoryRepository(HistoryRepository):
    def __init__(self, store: "SqliteScoreStore"):
        self.store = store

    def append(self, entry: HistoryEntry) -> None:
        self.store.execute(
            """
            INSERT INTO call_score_history
            (id, call_id, rule_version_id, framework_version, score_total, score_breakdown, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.call_id,
                entry.rule_version_id,
                entry.framework_version,
                entry.total,
                json.dumps(entry.breakdown.to_record()),
                entry.created_at.isoformat(),
            )
        )

    def list_for(self, call_id: str) -> List[HistoryEntry]:
        rows = self.store.fetchall(
            "SELECT * FROM call_score_history WHERE call_id = ? ORDER BY created_at, seq", (call_id,)
        )
        entries = []
        for row in rows:
            record = dict(row)
            record["score_breakdown"] = _load_json(record["score_breakdown"])
            entries.append(HistoryEntry.from_record(record))
        return entries


class SqliteRuleVersionRepository(RuleVersionRepository):
    def __init__(self, store: "SqliteScoreStore"):
        self.store = store

    def get(self, version_id: str) -> Optional[RuleVersion]:
        row = self.store.fetchone("SELECT * FROM rule_versions WHERE id = ?", (version_id,))
        return self._to_version(row) if row else None

    def add(self, version: RuleVersion) -> None:
        self.store.execute(
            """
            INSERT INTO rule_versions (id, org_id, name, version, is_active, rule_set, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                version.id,
                version.org_id,
                version.name,
                version.version,
                int(version.is_active),
                version.rule_set.model_dump_json(),
                version.created_at.isoformat(),
            )
        )

    def list_for_org(self, org_id: str) -> List[RuleVersion]:
        rows = self.store.fetchall(
            "SELECT * FROM rule_versions WHERE org_id = ? ORDER BY created_at DESC, rowid DESC", (org_id,)
        )
        return [self._to_version(row) for row in rows]

    def activate(self, version_id: str) -> RuleVersion:
        with self.store.transaction():
            target = self.get(version_id)
            if target is None:
                raise UnknownRuleVersionError(version_id)
            self.store.execute(
                "UPDATE rule_versions SET is_active = (id = ?) WHERE org_id = ?",
                (version_id, target.org_id),
            )
        return self.get(version_id)

    def _to_version(self, row: sqlite3.Row) -> RuleVersion:
        record = dict(row)
        record["is_active"] = bool(record["is_active"])
        record["rule_set"] = _load_json(record["rule_set"])
        return RuleVersion.model_validate(record)


class SqliteFrameworkRepository(FrameworkRepository):
    def __init__(self, store: "SqliteScoreStore", default: FrameworkConfig):
        self.store = store
        self.default = default

    def get_for_org(self, org_id: Optional[str]) -> FrameworkConfig:
        if org_id is None:
            return self.default
        row = self.store.fetchone("SELECT framework FROM frameworks WHERE org_id = ?", (org_id,))
        if row is None:
            return self.default
        return FrameworkConfig.model_validate_json(row["framework"])

    def save(self, org_id: str, framework: FrameworkConfig) -> None:
        self.store.execute(
            """
            INSERT INTO frameworks (org_id, framework, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(org_id) DO UPDATE SET framework = excluded.framework, updated_at = excluded.updated_at
            """,
            (org_id, framework.model_dump_json(), utc_now().isoformat())
        )


class SqlitePivotRepository(PivotRepository):
    def __init__(self, store: "SqliteScoreStore"):
        self.store = store

    def list_for_step(self, step_key: str, org_id: Optional[str] = None) -> List[Pivot]:
        rows = self.store.fetchall(
            """
            SELECT * FROM pivots
            WHERE step_key = ? AND (org_id IS NULL OR org_id = ?)
            ORDER BY created_at, seq
            """,
            (step_key, org_id)
        )
        return [Pivot.model_validate({k: row[k] for k in row.keys() if k != "seq"}) for row in rows]

    def add(self, pivot: Pivot) -> None:
        self.store.execute(
            "INSERT INTO pivots (id, step_key, prompt, org_id, created_at) VALUES (?, ?, ?, ?, ?)",
            (pivot.id, pivot.step_key, pivot.prompt, pivot.org_id, pivot.created_at.isoformat())
        )

    def count(self) -> int:
        return self.store.fetchone("SELECT COUNT(*) FROM pivots")[0]


class SqliteScoreStore(ScoreStore):
    """SQLite-backed store; transaction() wraps BEGIN IMMEDIATE / COMMIT / ROLLBACK"""

    def __init__(self, db_path: str = ":memory:", default_framework_config: Optional[FrameworkConfig] = None):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        # Autocommit outside explicit transactions; BEGIN/COMMIT are issued by transaction()
        self.conn = sqlite3.connect(db_path, timeout=30, isolation_level=None, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_db()

        self.calls = SqliteCallRepository(self)
        self.history = SqliteHistoryRepository(self)
        self.rule_versions = SqliteRuleVersionRepository(self)
        self.frameworks = SqliteFrameworkRepository(self, default_framework_config or default_framework())
        self.pivots = SqlitePivotRepository(self)

    def _init_db(self):
        with self._lock:
            self.conn.executescript(SCHEMA)
        logger.debug(f"Database initialised: {self.db_path}")

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params)

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        # Rows are read under the lock; the connection is shared between threads
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator["SqliteScoreStore"]:
        with self._lock:
            if self._depth:
                # Nested blocks join the outer transaction
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PartialWriteError(f"Could not start transaction: {e}") from e

            self._depth = 1
            try:
                yield self
            except sqlite3.Error as e:
                self._rollback()
                logger.warning(f"Transaction rolled back after database error: {e}")
                raise PartialWriteError(f"Write rolled back: {e}") from e
            except BaseException:
                self._rollback()
                raise
            else:
                try:
                    self.conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._rollback()
                    logger.warning(f"Commit failed, transaction rolled back: {e}")
                    raise PartialWriteError(f"Commit failed: {e}") from e
            finally:
                self._depth = 0

    def _rollback(self):
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            # Nothing to roll back if SQLite already aborted the transaction
            logger.debug(f"Rollback skipped: {e}")

    def close(self) -> None:
        with self._lock:
            self.conn.close()


def open_store(settings: Settings) -> SqliteScoreStore:
    """Open the configured database and seed the pivot library on first use"""
    store = SqliteScoreStore(settings.db_path, default_framework(settings.default_framework_version))
    pivots_path = Path(settings.pivots_path)
    if pivots_path.exists():
        added = seed_pivots(store.pivots, pivots_path)
        if added:
            logger.info(f"Seeded {added} pivots from {pivots_path}")
    else:
        logger.warning(f"Pivot library not found: {pivots_path}")
    return store
