"""
DuckDB Store: Persistent Backend for Observation Counts
=======================================================

DuckDB-backed storage for:
- counts   (handle key → relation, cnt)
- stats    (handle key, stat key → JSON float list)
- mentions (entity key, handle key, relation) - incoming-set index
- entities (entity key → name, kind)

Architecture:
┌─────────────────────────────────────────────────────────────────────────────┐
│                      DuckDBObservationStore                                 │
│                                                                             │
│  ┌───────────────────────────────────────────────────────────────────────┐  │
│  │                          counts table                                 │  │
│  │  handle → {relation, cnt}                                             │  │
│  │  increments are one INSERT ... ON CONFLICT DO UPDATE statement        │  │
│  └───────────────────────────────────────────────────────────────────────┘  │
│                                                                             │
│  ┌───────────────────────────────────────────────────────────────────────┐  │
│  │                         mentions table                                │  │
│  │  (entity, handle) - every entity a handle mentions, at any depth      │  │
│  └───────────────────────────────────────────────────────────────────────┘  │
└─────────────────────────────────────────────────────────────────────────────┘

Usage:
    store = DuckDBObservationStore("pairs.duckdb")
    h = store.create(word("the"), word("cat"), "ANY")
    store.increment_count(h, 1.0)
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Iterator, List, Optional, Set, Tuple
import json
import logging
import threading

try:
    import duckdb
except ImportError:
    raise ImportError("DuckDB is required. Install with: pip install duckdb")

from .atoms import Entity, Handle, encode_key, decode_key, encode_entity, decode_entity
from .errors import StoreUnavailableError
from .store import ObservationStore, Stat, _checked

logger = logging.getLogger(__name__)

# Connection-level failures; SQL constraint errors propagate unchanged
_UNAVAILABLE = (duckdb.ConnectionException, duckdb.IOException)


class DuckDBObservationStore(ObservationStore):
    """
    DuckDB-backed persistent observation store.

    Features:
    - Atomic increments (single upsert statement)
    - Incoming-set index for merge and cleanup scans
    - SQL transactions: a failed merge rolls back to the pre-merge state
    """

    def __init__(self, db_path: str = ":memory:"):
        """
        Args:
            db_path: Path to database file, or ":memory:" for in-memory
        """
        self.db_path = db_path
        try:
            self.conn = duckdb.connect(db_path)
        except _UNAVAILABLE as e:
            raise StoreUnavailableError(f"Cannot open {db_path}: {e}") from e
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        self._execute("""
            CREATE TABLE IF NOT EXISTS counts (
                handle VARCHAR PRIMARY KEY,
                relation VARCHAR,
                cnt DOUBLE
            )
        """)
        self._execute("""
            CREATE TABLE IF NOT EXISTS stats (
                handle VARCHAR,
                stat VARCHAR,
                vals VARCHAR,
                PRIMARY KEY (handle, stat)
            )
        """)
        self._execute("""
            CREATE TABLE IF NOT EXISTS mentions (
                entity VARCHAR,
                handle VARCHAR,
                relation VARCHAR,
                PRIMARY KEY (entity, handle)
            )
        """)
        self._execute("""
            CREATE TABLE IF NOT EXISTS entities (
                entity VARCHAR PRIMARY KEY,
                name VARCHAR,
                kind VARCHAR
            )
        """)
        self._execute("CREATE INDEX IF NOT EXISTS idx_mentions_entity ON mentions(entity)")

    def _execute(self, sql: str, params: Optional[list] = None):
        with self._lock:
            try:
                if params is None:
                    return self.conn.execute(sql)
                return self.conn.execute(sql, params)
            except _UNAVAILABLE as e:
                raise StoreUnavailableError(f"{self.db_path}: {e}") from e

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self):
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return
            self._execute("BEGIN TRANSACTION")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._depth = 0
                logger.warning("Rolling back transaction on %s", self.db_path)
                self._execute("ROLLBACK")
                raise
            self._depth = 0
            self._execute("COMMIT")

    # -------------------------------------------------------------------------
    # Rows
    # -------------------------------------------------------------------------

    def _register(self, handle: Handle, key: str):
        for entity in handle.mentions():
            ekey = encode_entity(entity)
            self._execute(
                "INSERT OR IGNORE INTO mentions (entity, handle, relation) VALUES (?, ?, ?)",
                [ekey, key, handle.relation],
            )
            self._execute(
                "INSERT OR IGNORE INTO entities (entity, name, kind) VALUES (?, ?, ?)",
                [ekey, entity.name, entity.kind],
            )

    def _exists(self, key: str) -> bool:
        row = self._execute("SELECT 1 FROM counts WHERE handle = ?", [key]).fetchone()
        return row is not None

    def lookup(self, left, right, relation: str) -> Optional[Handle]:
        handle = Handle(relation, left, right)
        return handle if self._exists(encode_key(handle)) else None

    def create(self, left, right, relation: str) -> Handle:
        handle = Handle(relation, left, right)
        key = encode_key(handle)
        with self._lock:
            if not self._exists(key):
                self._execute(
                    "INSERT OR IGNORE INTO counts (handle, relation, cnt) VALUES (?, ?, 0.0)",
                    [key, relation],
                )
                self._register(handle, key)
        return handle

    def get_count(self, handle: Handle) -> float:
        row = self._execute(
            "SELECT cnt FROM counts WHERE handle = ?", [encode_key(handle)]
        ).fetchone()
        return float(row[0]) if row else 0.0

    def set_count(self, handle: Handle, value: float) -> None:
        if value < 0.0:
            raise ValueError(f"Negative count for {handle}: {value}")
        key = encode_key(handle)
        with self._lock:
            self._execute(
                """
                INSERT INTO counts (handle, relation, cnt) VALUES (?, ?, ?)
                ON CONFLICT (handle) DO UPDATE SET cnt = excluded.cnt
                """,
                [key, handle.relation, float(value)],
            )
            self._register(handle, key)

    def increment_count(self, handle: Handle, delta: float) -> float:
        key = encode_key(handle)
        with self._lock:
            if delta < 0.0:
                # Decrements only happen inside merges, which hold the lease
                current = self.get_count(handle)
                new = _checked(current, delta, handle)
                self.set_count(handle, new)
                return new
            self._execute(
                """
                INSERT INTO counts (handle, relation, cnt) VALUES (?, ?, ?)
                ON CONFLICT (handle) DO UPDATE SET cnt = cnt + excluded.cnt
                """,
                [key, handle.relation, float(delta)],
            )
            self._register(handle, key)
            return self.get_count(handle)

    def fetch_incoming_set(self, entity: Entity,
                           relation: Optional[str] = None) -> Set[Handle]:
        ekey = encode_entity(entity)
        if relation is None:
            rows = self._execute(
                "SELECT handle FROM mentions WHERE entity = ?", [ekey]
            ).fetchall()
        else:
            rows = self._execute(
                "SELECT handle FROM mentions WHERE entity = ? AND relation = ?",
                [ekey, relation],
            ).fetchall()
        return {decode_key(r[0]) for r in rows}

    def iter_relation(self, relation: str,
                      batch_size: int = 10000) -> Iterator[List[Tuple[Handle, float]]]:
        with self._lock:
            rows = self._execute(
                "SELECT handle, cnt FROM counts WHERE relation = ? ORDER BY handle",
                [relation],
            ).fetchall()
        for i in range(0, len(rows), batch_size):
            yield [(decode_key(k), float(c)) for k, c in rows[i:i + batch_size]]

    def delete(self, handle: Handle) -> bool:
        key = encode_key(handle)
        with self.transaction():
            if not self._exists(key):
                return False
            self._execute("DELETE FROM counts WHERE handle = ?", [key])
            self._execute("DELETE FROM stats WHERE handle = ?", [key])
            self._execute("DELETE FROM mentions WHERE handle = ?", [key])
            return True

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stat(self, handle: Handle, key: str) -> Optional[Stat]:
        row = self._execute(
            "SELECT vals FROM stats WHERE handle = ? AND stat = ?",
            [encode_key(handle), key],
        ).fetchone()
        return tuple(json.loads(row[0])) if row else None

    def set_stat(self, handle: Handle, key: str, values: Stat) -> None:
        hkey = encode_key(handle)
        with self._lock:
            if not self._exists(hkey):
                raise KeyError(f"No such row: {handle}")
            self._execute(
                """
                INSERT INTO stats (handle, stat, vals) VALUES (?, ?, ?)
                ON CONFLICT (handle, stat) DO UPDATE SET vals = excluded.vals
                """,
                [hkey, key, json.dumps([float(v) for v in values])],
            )

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    def add_entity(self, entity: Entity) -> None:
        self._execute(
            "INSERT OR IGNORE INTO entities (entity, name, kind) VALUES (?, ?, ?)",
            [encode_entity(entity), entity.name, entity.kind],
        )

    def remove_entity(self, entity: Entity) -> bool:
        ekey = encode_entity(entity)
        with self._lock:
            row = self._execute(
                "SELECT 1 FROM entities WHERE entity = ?", [ekey]
            ).fetchone()
            if row is None:
                return False
            self._execute("DELETE FROM entities WHERE entity = ?", [ekey])
            return True

    def entities(self, kind: Optional[str] = None) -> Set[Entity]:
        if kind is None:
            rows = self._execute("SELECT entity FROM entities").fetchall()
        else:
            rows = self._execute(
                "SELECT entity FROM entities WHERE kind = ?", [kind]
            ).fetchall()
        return {decode_entity(r[0]) for r in rows}

    def has_entity(self, entity: Entity) -> bool:
        row = self._execute(
            "SELECT 1 FROM entities WHERE entity = ?", [encode_entity(entity)]
        ).fetchone()
        return row is not None

    def close(self):
        """Close database connection."""
        self.conn.close()
