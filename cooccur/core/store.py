"""
Observation Store: Counts, Statistics and Mentions
==================================================

Design Principles:
1. The store is the serialization point for concurrent observers
2. Increments are a single atomic add, never fetch/modify/store
3. Lookups return None for absent rows (no exception channel)
4. Deletion is explicit: ``delete`` removes one row, ``delete_recursive``
   also drops entities nothing mentions any more

Architecture:
┌─────────────────────────────────────────────────────────────────────────────┐
│                          ObservationStore                                   │
│                                                                             │
│  counts    : Handle → float            (one row per counted pair)           │
│  stats     : (Handle, key) → floats    (freq, logli, mi, ... beside count)  │
│  mentions  : Entity → {Handle}         (germ, pair side, connector, hole)   │
│  entities  : {Entity}                  (declared atomic / cluster symbols)  │
└─────────────────────────────────────────────────────────────────────────────┘

Backends:
- MemoryStore: in-process, lock-serialised, journaled transactions
- DuckDBObservationStore (duckdb_store.py): persistent, SQL transactions
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Set, Tuple
from collections import defaultdict
import logging
import threading

from .atoms import Entity, Handle
from .constants import ZERO_TOLERANCE

logger = logging.getLogger(__name__)

Stat = Tuple[float, ...]


# =============================================================================
# SECTION 1: Abstract Store Interface
# =============================================================================

class ObservationStore(ABC):
    """
    Abstract interface of the external observation store.

    Counts are non-negative reals. Reading the count of an absent handle
    yields 0.0; ``lookup`` distinguishes absent from zero.
    """

    @abstractmethod
    def lookup(self, left, right, relation: str) -> Optional[Handle]:
        """Handle of an existing row, or None."""
        pass

    @abstractmethod
    def create(self, left, right, relation: str) -> Handle:
        """Idempotent creation; a new row starts at count 0."""
        pass

    @abstractmethod
    def get_count(self, handle: Handle) -> float:
        pass

    @abstractmethod
    def set_count(self, handle: Handle, value: float) -> None:
        """Overwrite the count, creating the row if needed."""
        pass

    @abstractmethod
    def increment_count(self, handle: Handle, delta: float) -> float:
        """Atomic add; creates the row if needed and returns the new count."""
        pass

    @abstractmethod
    def fetch_incoming_set(self, entity: Entity,
                           relation: Optional[str] = None) -> Set[Handle]:
        """Every handle mentioning ``entity``, optionally of one relation."""
        pass

    @abstractmethod
    def iter_relation(self, relation: str,
                      batch_size: int = 10000) -> Iterator[List[Tuple[Handle, float]]]:
        """Bulk enumeration of (handle, count) rows in batches."""
        pass

    @abstractmethod
    def delete(self, handle: Handle) -> bool:
        """Remove one row with its statistics. False if it was absent."""
        pass

    @abstractmethod
    def get_stat(self, handle: Handle, key: str) -> Optional[Stat]:
        pass

    @abstractmethod
    def set_stat(self, handle: Handle, key: str, values: Stat) -> None:
        pass

    @abstractmethod
    def add_entity(self, entity: Entity) -> None:
        pass

    @abstractmethod
    def remove_entity(self, entity: Entity) -> bool:
        pass

    @abstractmethod
    def entities(self, kind: Optional[str] = None) -> Set[Entity]:
        pass

    @abstractmethod
    @contextmanager
    def transaction(self):
        """Exclusive lease; all writes inside commit or roll back together."""
        yield

    @abstractmethod
    def close(self):
        pass

    # -------------------------------------------------------------------------
    # Derived operations
    # -------------------------------------------------------------------------

    def handles(self, relation: str) -> List[Handle]:
        """All handles of one relation."""
        out = []
        for batch in self.iter_relation(relation):
            out.extend(h for h, _ in batch)
        return out

    def has_entity(self, entity: Entity) -> bool:
        return entity in self.entities()

    def delete_recursive(self, handle: Handle) -> bool:
        """
        Delete ``handle``, then every entity it mentioned that no other
        handle mentions any more.
        """
        with self.transaction():
            if not self.delete(handle):
                return False
            for entity in handle.mentions():
                if not self.fetch_incoming_set(entity):
                    self.remove_entity(entity)
                    logger.debug("Dropped unreferenced entity %s", entity)
            return True

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _checked(current: float, delta: float, handle: Handle) -> float:
    """New count after an increment; rounding below zero clamps to 0.0."""
    new = current + delta
    if new < 0.0:
        if new < -ZERO_TOLERANCE:
            raise ValueError(
                f"Count of {handle} would become negative: {current} + {delta}"
            )
        new = 0.0
    return new


# =============================================================================
# SECTION 2: Memory Store
# =============================================================================

_MISSING = object()


class MemoryStore(ObservationStore):
    """
    In-memory observation store.

    A re-entrant lock serialises every call, so increments are atomic and
    a reader never sees a half-deleted row. ``transaction()`` keeps an
    undo journal and restores it if the block raises.
    """

    def __init__(self):
        self._counts: Dict[Handle, float] = {}
        self._stats: Dict[Handle, Dict[str, Stat]] = {}
        self._mentions: Dict[Entity, Set[Handle]] = defaultdict(set)
        self._relations: Dict[str, Set[Handle]] = defaultdict(set)
        self._entities: Set[Entity] = set()
        self._lock = threading.RLock()
        self._journal: Optional[Dict[Handle, Tuple[object, Optional[Dict[str, Stat]]]]] = None
        self._journal_entities: Optional[Set[Entity]] = None

    # -------------------------------------------------------------------------
    # Journal
    # -------------------------------------------------------------------------

    def _remember(self, handle: Handle):
        if self._journal is not None and handle not in self._journal:
            stats = self._stats.get(handle)
            self._journal[handle] = (
                self._counts.get(handle, _MISSING),
                dict(stats) if stats is not None else None,
            )

    def _rollback(self):
        for handle, (count, stats) in self._journal.items():
            self._unindex(handle)
            if count is _MISSING:
                continue
            self._index(handle)
            self._counts[handle] = count
            if stats is not None:
                self._stats[handle] = stats
        self._entities = self._journal_entities

    @contextmanager
    def transaction(self):
        with self._lock:
            if self._journal is not None:
                yield self
                return
            self._journal = {}
            self._journal_entities = set(self._entities)
            try:
                yield self
            except BaseException:
                logger.warning("Rolling back %d rows", len(self._journal))
                self._rollback()
                raise
            finally:
                self._journal = None
                self._journal_entities = None

    # -------------------------------------------------------------------------
    # Indexing
    # -------------------------------------------------------------------------

    def _index(self, handle: Handle):
        self._counts.setdefault(handle, 0.0)
        self._relations[handle.relation].add(handle)
        for entity in handle.mentions():
            self._mentions[entity].add(handle)
            self._entities.add(entity)

    def _unindex(self, handle: Handle):
        self._counts.pop(handle, None)
        self._stats.pop(handle, None)
        self._relations[handle.relation].discard(handle)
        for entity in handle.mentions():
            rows = self._mentions.get(entity)
            if rows is not None:
                rows.discard(handle)
                if not rows:
                    del self._mentions[entity]

    # -------------------------------------------------------------------------
    # Counts
    # -------------------------------------------------------------------------

    def lookup(self, left, right, relation: str) -> Optional[Handle]:
        handle = Handle(relation, left, right)
        with self._lock:
            return handle if handle in self._counts else None

    def create(self, left, right, relation: str) -> Handle:
        handle = Handle(relation, left, right)
        with self._lock:
            if handle not in self._counts:
                self._remember(handle)
                self._index(handle)
        return handle

    def get_count(self, handle: Handle) -> float:
        with self._lock:
            return self._counts.get(handle, 0.0)

    def set_count(self, handle: Handle, value: float) -> None:
        if value < 0.0:
            raise ValueError(f"Negative count for {handle}: {value}")
        with self._lock:
            self._remember(handle)
            self._index(handle)
            self._counts[handle] = float(value)

    def increment_count(self, handle: Handle, delta: float) -> float:
        with self._lock:
            new = _checked(self._counts.get(handle, 0.0), delta, handle)
            self._remember(handle)
            self._index(handle)
            self._counts[handle] = new
            return new

    def fetch_incoming_set(self, entity: Entity,
                           relation: Optional[str] = None) -> Set[Handle]:
        with self._lock:
            rows = self._mentions.get(entity, set())
            if relation is None:
                return set(rows)
            return {h for h in rows if h.relation == relation}

    def iter_relation(self, relation: str,
                      batch_size: int = 10000) -> Iterator[List[Tuple[Handle, float]]]:
        with self._lock:
            rows = [(h, self._counts[h]) for h in self._relations.get(relation, ())]
        for i in range(0, len(rows), batch_size):
            yield rows[i:i + batch_size]

    def delete(self, handle: Handle) -> bool:
        with self._lock:
            if handle not in self._counts:
                return False
            self._remember(handle)
            self._unindex(handle)
            return True

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stat(self, handle: Handle, key: str) -> Optional[Stat]:
        with self._lock:
            return self._stats.get(handle, {}).get(key)

    def set_stat(self, handle: Handle, key: str, values: Stat) -> None:
        with self._lock:
            if handle not in self._counts:
                raise KeyError(f"No such row: {handle}")
            self._remember(handle)
            self._stats.setdefault(handle, {})[key] = tuple(float(v) for v in values)

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    def add_entity(self, entity: Entity) -> None:
        with self._lock:
            self._entities.add(entity)

    def remove_entity(self, entity: Entity) -> bool:
        with self._lock:
            if entity not in self._entities:
                return False
            self._entities.discard(entity)
            return True

    def entities(self, kind: Optional[str] = None) -> Set[Entity]:
        with self._lock:
            if kind is None:
                return set(self._entities)
            return {e for e in self._entities if e.kind == kind}

    def close(self):
        pass

    def __len__(self) -> int:
        return len(self._counts)


# =============================================================================
# SECTION 3: Factory
# =============================================================================

def open_store(url: str = "memory://") -> ObservationStore:
    """
    Open a store from a URL.

    - ``memory://``           in-process store
    - ``duckdb://<path>``     DuckDB file (``duckdb://:memory:`` for RAM)
    """
    if url.startswith("memory://"):
        return MemoryStore()
    if url.startswith("duckdb://"):
        from .duckdb_store import DuckDBObservationStore
        return DuckDBObservationStore(url[len("duckdb://"):] or ":memory:")
    raise ValueError(f"Unsupported store URL: {url}")
