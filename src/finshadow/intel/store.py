# FinShadow Intel - SQLite Storage
#
# Persistence collaborator for the pipeline.  One table per entity:
#   threat_intel      - ThreatRecord, UNIQUE content_hash
#   risk_scores       - RiskScore history (append only)
#   baseline_metrics  - BaselineMetric, UNIQUE metric
#   alerts            - Alert, UNIQUE trigger_key
#
# The generic interface (insert_returning_id / upsert_by_key /
# query_by_predicate) takes entity names and plain dicts.  Unique
# constraints are the final dedup authority: a violating insert raises
# DuplicateConflict, any other SQLite failure raises PersistenceError.

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from ..core.config import DEFAULT_DB_PATH
from ..core.db import connect as db_connect

logger = logging.getLogger(__name__)

# entity -> (table, columns).  Only these columns may appear in queries.
_ENTITIES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "threat_intel": (
        "threat_intel",
        (
            "id", "source", "source_id", "source_url", "title", "description",
            "type", "severity", "indicators", "tags", "content_hash",
            "first_seen", "last_seen", "discovered_at", "created_at",
        ),
    ),
    "risk_scores": (
        "risk_scores",
        (
            "id", "threat_intel_id", "score", "severity", "rules_fired",
            "reasoning", "engine_version", "computed_at", "expires_at",
        ),
    ),
    "baseline_metrics": (
        "baseline_metrics",
        (
            "id", "metric", "window_days", "baseline_value", "current_value",
            "spike_threshold", "calculated_at", "updated_at",
        ),
    ),
    "alerts": (
        "alerts",
        (
            "id", "type", "title", "message", "severity", "read",
            "trigger_key", "risk_score_id", "threat_intel_id", "created_at",
        ),
    ),
}

# Columns stored as JSON text
_JSON_COLUMNS = frozenset({"indicators", "tags", "rules_fired"})

_OPERATORS = frozenset({"=", "!=", "<", "<=", ">", ">=", "contains_any"})


@dataclass(frozen=True)
class Predicate:
    """A single WHERE condition.

    ``contains_any`` takes a sequence of substrings and matches rows where
    the column contains any of them, case-insensitively.
    """

    column: str
    op: str
    value: Any


class IntelStore:
    """SQLite-backed store for the four pipeline entities.

    Thread-safe via a reentrant lock around every statement.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self._lock = threading.RLock()
        try:
            self._conn = db_connect(db_path, check_same_thread=False, row_factory=True)
            self._create_tables()
        except (OSError, sqlite3.Error) as exc:
            raise PersistenceError(f"Cannot open intel store {db_path}: {exc}") from exc

    def _create_tables(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS threat_intel (
                    id            TEXT PRIMARY KEY,
                    source        TEXT NOT NULL,
                    source_id     TEXT,
                    source_url    TEXT,
                    title         TEXT NOT NULL,
                    description   TEXT NOT NULL DEFAULT '',
                    type          TEXT NOT NULL,
                    severity      TEXT NOT NULL,
                    indicators    TEXT NOT NULL DEFAULT '[]',
                    tags          TEXT NOT NULL DEFAULT '[]',
                    content_hash  TEXT NOT NULL UNIQUE,
                    first_seen    TEXT NOT NULL,
                    last_seen     TEXT NOT NULL,
                    discovered_at TEXT NOT NULL,
                    created_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                );

                CREATE INDEX IF NOT EXISTS idx_threat_discovered
                    ON threat_intel(discovered_at);
                CREATE INDEX IF NOT EXISTS idx_threat_severity
                    ON threat_intel(severity);

                CREATE TABLE IF NOT EXISTS risk_scores (
                    id              TEXT PRIMARY KEY,
                    threat_intel_id TEXT NOT NULL REFERENCES threat_intel(id),
                    score           INTEGER NOT NULL,
                    severity        TEXT NOT NULL,
                    rules_fired     TEXT NOT NULL DEFAULT '[]',
                    reasoning       TEXT NOT NULL,
                    engine_version  TEXT NOT NULL,
                    computed_at     TEXT NOT NULL,
                    expires_at      TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_scores_threat
                    ON risk_scores(threat_intel_id);

                CREATE TABLE IF NOT EXISTS baseline_metrics (
                    id              TEXT PRIMARY KEY,
                    metric          TEXT NOT NULL UNIQUE,
                    window_days     INTEGER NOT NULL,
                    baseline_value  REAL NOT NULL,
                    current_value   REAL NOT NULL,
                    spike_threshold REAL NOT NULL,
                    calculated_at   TEXT NOT NULL,
                    updated_at      TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS alerts (
                    id              TEXT PRIMARY KEY,
                    type            TEXT NOT NULL,
                    title           TEXT NOT NULL,
                    message         TEXT NOT NULL,
                    severity        TEXT NOT NULL,
                    read            INTEGER NOT NULL DEFAULT 0,
                    trigger_key     TEXT NOT NULL UNIQUE,
                    risk_score_id   TEXT REFERENCES risk_scores(id),
                    threat_intel_id TEXT REFERENCES threat_intel(id),
                    created_at      TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                );
                """
            )
            self._conn.execute("PRAGMA foreign_keys=ON")
            row = self._conn.execute(
                "SELECT version FROM schema_version LIMIT 1"
            ).fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _table(entity: str) -> Tuple[str, Tuple[str, ...]]:
        try:
            return _ENTITIES[entity]
        except KeyError:
            raise ValueError(f"Unknown entity: {entity!r}") from None

    @staticmethod
    def _check_columns(entity: str, columns: Sequence[str]) -> None:
        allowed = _ENTITIES[entity][1]
        for col in columns:
            if col not in allowed:
                raise ValueError(f"Unknown column {col!r} for {entity}")

    @staticmethod
    def _encode(values: Dict[str, Any]) -> Dict[str, Any]:
        return {
            k: (json.dumps(v) if k in _JSON_COLUMNS and not isinstance(v, str) else v)
            for k, v in values.items()
        }

    @staticmethod
    def _decode(row: sqlite3.Row) -> Dict[str, Any]:
        out = dict(row)
        for col in _JSON_COLUMNS:
            if col in out and isinstance(out[col], str):
                out[col] = json.loads(out[col])
        return out

    def _where(self, entity: str, predicates: Sequence[Predicate]) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for pred in predicates:
            self._check_columns(entity, [pred.column])
            if pred.op not in _OPERATORS:
                raise ValueError(f"Unsupported operator: {pred.op!r}")
            if pred.op == "contains_any":
                terms = list(pred.value)
                if not terms:
                    clauses.append("0")
                    continue
                clauses.append(
                    "(" + " OR ".join(f"LOWER({pred.column}) LIKE ?" for _ in terms) + ")"
                )
                params.extend(f"%{str(t).lower()}%" for t in terms)
            else:
                clauses.append(f"{pred.column} {pred.op} ?")
                params.append(pred.value)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return where, params

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def insert_returning_id(self, entity: str, values: Dict[str, Any]) -> str:
        """Insert one row and return its id.

        Raises:
            DuplicateConflict: A unique constraint rejected the row.
            PersistenceError: Any other storage failure.
        """
        table, _ = self._table(entity)
        row = self._encode(values)
        row.setdefault("id", str(uuid4()))
        self._check_columns(entity, list(row))
        cols = ", ".join(row)
        marks = ", ".join("?" for _ in row)

        with self._lock:
            try:
                self._conn.execute(
                    f"INSERT INTO {table} ({cols}) VALUES ({marks})",
                    tuple(row.values()),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                if "UNIQUE" in str(exc).upper():
                    raise DuplicateConflict(entity, str(exc)) from exc
                raise PersistenceError(f"Insert into {table} failed: {exc}") from exc
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(f"Insert into {table} failed: {exc}") from exc
        return row["id"]

    def upsert_by_key(self, entity: str, key: str, values: Dict[str, Any]) -> None:
        """Atomic insert-or-update on a unique ``key`` column."""
        table, _ = self._table(entity)
        row = self._encode(values)
        row.setdefault("id", str(uuid4()))
        self._check_columns(entity, list(row) + [key])
        cols = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        updates = ", ".join(
            f"{c} = excluded.{c}" for c in row if c not in ("id", key)
        )

        with self._lock:
            try:
                self._conn.execute(
                    f"INSERT INTO {table} ({cols}) VALUES ({marks}) "
                    f"ON CONFLICT({key}) DO UPDATE SET {updates}",
                    tuple(row.values()),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(f"Upsert into {table} failed: {exc}") from exc

    def touch_last_seen(self, content_hash: str, observed_at: str) -> bool:
        """Advance ``last_seen``; never moves it backwards.  True if the row exists."""
        with self._lock:
            try:
                cursor = self._conn.execute(
                    "UPDATE threat_intel SET last_seen = MAX(last_seen, ?) "
                    "WHERE content_hash = ?",
                    (observed_at, content_hash),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(f"Update of last_seen failed: {exc}") from exc
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def query_by_predicate(
        self,
        entity: str,
        predicates: Sequence[Predicate] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        table, _ = self._table(entity)
        where, params = self._where(entity, predicates)
        sql = f"SELECT * FROM {table}{where}"
        if order_by:
            col, _, direction = order_by.partition(" ")
            self._check_columns(entity, [col])
            direction = direction.strip().upper() or "ASC"
            if direction not in ("ASC", "DESC"):
                raise ValueError(f"Bad sort direction: {direction!r}")
            sql += f" ORDER BY {col} {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._lock:
            try:
                rows = self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(f"Query on {table} failed: {exc}") from exc
        return [self._decode(r) for r in rows]

    def count_by_predicate(self, entity: str, predicates: Sequence[Predicate] = ()) -> int:
        table, _ = self._table(entity)
        where, params = self._where(entity, predicates)
        with self._lock:
            try:
                row = self._conn.execute(
                    f"SELECT COUNT(*) FROM {table}{where}", params
                ).fetchone()
            except sqlite3.Error as exc:
                raise PersistenceError(f"Count on {table} failed: {exc}") from exc
        return int(row[0])

    def get_by_key(self, entity: str, key: str, value: Any) -> Optional[Dict[str, Any]]:
        rows = self.query_by_predicate(entity, [Predicate(key, "=", value)], limit=1)
        return rows[0] if rows else None

    def stats(self) -> Dict[str, Any]:
        """Row counts per entity plus threat counts by severity."""
        with self._lock:
            try:
                counts = {
                    entity: self._conn.execute(
                        f"SELECT COUNT(*) FROM {table}"
                    ).fetchone()[0]
                    for entity, (table, _) in _ENTITIES.items()
                }
                by_severity = {
                    r["severity"]: r["cnt"]
                    for r in self._conn.execute(
                        "SELECT severity, COUNT(*) AS cnt FROM threat_intel GROUP BY severity"
                    ).fetchall()
                }
                unread = self._conn.execute(
                    "SELECT COUNT(*) FROM alerts WHERE read = 0"
                ).fetchone()[0]
            except sqlite3.Error as exc:
                raise PersistenceError(f"Stats query failed: {exc}") from exc
        return {
            "counts": counts,
            "threats_by_severity": by_severity,
            "unread_alerts": unread,
        }

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class DuplicateConflict(Exception):
    """A unique constraint rejected an insert (a concurrent duplicate won)."""

    def __init__(self, entity: str, detail: str = ""):
        super().__init__(f"Duplicate {entity}: {detail}" if detail else f"Duplicate {entity}")
        self.entity = entity


class PersistenceError(Exception):
    """The store is unreachable or a statement failed."""
