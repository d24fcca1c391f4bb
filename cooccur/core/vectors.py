"""
Sparse Vector API
=================

One contract over several physical pair representations:

    ┌───────────────────────┬──────────────────┬─────────────────────────┐
    │ Variant               │ left             │ right                   │
    ├───────────────────────┼──────────────────┼─────────────────────────┤
    │ LinkPairVector        │ word / class     │ word / class            │
    │ CliquePairVector      │ word / class     │ word / class            │
    │ DistanceCliqueVector  │ word / class     │ word / class            │
    │ SectionVector         │ germ             │ connector sequence      │
    │ CrossSectionVector    │ hole entity      │ Shape                   │
    └───────────────────────┴──────────────────┴─────────────────────────┘

Each vector is a sparse matrix whose rows are ``left`` elements and whose
columns are ``right`` elements. Wildcards replace one side with ``ANY``.

``fetch_all`` is a blocking one-shot prefetch of every row of the relation.
Whether it completed is recorded in a ``LoadState`` owned by the driver,
so "has this been loaded" is explicit session state.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple
from collections import defaultdict
import logging
import threading
import time

from .atoms import (
    ANY,
    VARIABLE,
    Entity,
    Handle,
    Shape,
)
from .constants import (
    ANY_PAIR,
    CLIQUE_PAIR,
    CLIQUE_DIST_PAIR,
    DISTANCE_PREFIX,
    SECTION,
    CROSS_SECTION,
    CONCRETE_KINDS,
    LEFT,
    RIGHT,
    DEFAULT_FETCH_BATCH,
    DEFAULT_MAX_DISTANCE,
    ZERO_TOLERANCE,
)
from .errors import FetchCancelledError, MalformedObservationError
from .store import ObservationStore

logger = logging.getLogger(__name__)


# =============================================================================
# SECTION 1: Load State
# =============================================================================

@dataclass
class LoadState:
    """
    Which relations are fully loaded and have current marginals.

    Any count change on a relation invalidates both flags for it.
    """
    loaded: Set[str] = field(default_factory=set)
    marginals: Set[str] = field(default_factory=set)

    def mark_loaded(self, relation: str):
        self.loaded.add(relation)

    def mark_marginals(self, relation: str):
        self.marginals.add(relation)

    def is_loaded(self, relation: str) -> bool:
        return relation in self.loaded

    def has_marginals(self, relation: str) -> bool:
        return relation in self.marginals

    def invalidate(self, relation: str):
        self.loaded.discard(relation)
        self.marginals.discard(relation)


# =============================================================================
# SECTION 2: Abstract Vector
# =============================================================================

class SparseVector(ABC):
    """
    Uniform access to the pairs of one relation.

    Subclasses declare the relation and the accepted shapes of the left
    and right elements; everything else is shared.
    """

    relation: str = ""

    def __init__(self, store: ObservationStore, state: Optional[LoadState] = None):
        self.store = store
        self.state = state if state is not None else LoadState()
        self._pairs: Dict[Handle, float] = {}
        self._rows: Dict[object, List[Handle]] = defaultdict(list)
        self._cols: Dict[object, List[Handle]] = defaultdict(list)

    # -------------------------------------------------------------------------
    # Type declarations
    # -------------------------------------------------------------------------

    def left_type(self) -> str:
        return "entity"

    @abstractmethod
    def right_type(self) -> str:
        pass

    def pair_type(self) -> str:
        return self.relation

    def validate(self, left, right):
        """Raise MalformedObservationError unless (left, right) fits this vector."""
        _check_entity(left, "left", self.relation)
        self._check_right(right)

    @abstractmethod
    def _check_right(self, right):
        pass

    # -------------------------------------------------------------------------
    # Pair access
    # -------------------------------------------------------------------------

    def pair(self, left, right) -> Optional[Handle]:
        """Existing pair, or None. Never creates."""
        return self.store.lookup(left, right, self.relation)

    def make_pair(self, left, right) -> Handle:
        self.validate(left, right)
        return self.store.create(left, right, self.relation)

    def count(self, handle: Optional[Handle]) -> float:
        if handle is None:
            return 0.0
        return self.store.get_count(handle)

    def pair_count(self, left, right) -> float:
        return self.count(self.pair(left, right))

    def increment(self, left, right, delta: float = 1.0) -> float:
        """Atomic add on one pair; invalidates loaded and marginal state."""
        self.validate(left, right)
        new = self.store.increment_count(Handle(self.relation, left, right), delta)
        self.state.invalidate(self.relation)
        return new

    # -------------------------------------------------------------------------
    # Wildcards
    # -------------------------------------------------------------------------

    def left_wildcard(self, right) -> Handle:
        """N(*, right), created on first use."""
        return self.store.create(ANY, right, self.relation)

    def right_wildcard(self, left) -> Handle:
        """N(left, *), created on first use."""
        return self.store.create(left, ANY, self.relation)

    def both_wildcard(self) -> Handle:
        """N(*, *), created on first use."""
        return self.store.create(ANY, ANY, self.relation)

    def left_marginal(self, right) -> float:
        return self.count(self.store.lookup(ANY, right, self.relation))

    def right_marginal(self, left) -> float:
        return self.count(self.store.lookup(left, ANY, self.relation))

    def total(self) -> float:
        return self.count(self.store.lookup(ANY, ANY, self.relation))

    # -------------------------------------------------------------------------
    # Bulk prefetch
    # -------------------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self.state.is_loaded(self.relation)

    def fetch_all(self, cancel: Optional[threading.Event] = None,
                  batch_size: int = DEFAULT_FETCH_BATCH) -> int:
        """
        Load every concrete pair of this relation into working memory.

        Blocking; may take minutes on a large store. A set ``cancel`` event
        aborts the whole load: the working set is discarded and the vector
        stays not-loaded.

        Returns:
            Number of concrete pairs loaded
        """
        start = time.time()
        pairs: Dict[Handle, float] = {}
        for batch in self.store.iter_relation(self.relation, batch_size):
            if cancel is not None and cancel.is_set():
                self.state.invalidate(self.relation)
                raise FetchCancelledError(
                    f"Fetch of '{self.relation}' cancelled after {len(pairs)} pairs"
                )
            for handle, count in batch:
                if not handle.is_wildcard:
                    pairs[handle] = count

        self._pairs = pairs
        self._rows = defaultdict(list)
        self._cols = defaultdict(list)
        for handle in pairs:
            self._rows[handle.left].append(handle)
            self._cols[handle.right].append(handle)
        self.state.mark_loaded(self.relation)

        logger.info(
            "Fetched %d '%s' pairs in %.2f secs",
            len(pairs), self.relation, time.time() - start,
        )
        return len(pairs)

    def pairs(self) -> Dict[Handle, float]:
        """Prefetched working set: handle → count (wildcards excluded)."""
        return self._pairs

    def left_basis(self) -> List:
        return list(self._rows.keys())

    def right_basis(self) -> List:
        return list(self._cols.keys())

    def right_stars(self, left) -> List[Handle]:
        """Prefetched pairs (left, y) for every y."""
        return list(self._rows.get(left, ()))

    def left_stars(self, right) -> List[Handle]:
        """Prefetched pairs (x, right) for every x."""
        return list(self._cols.get(right, ()))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(relation={self.relation!r}, loaded={self.is_loaded})"


def _check_entity(obj, side: str, relation: str):
    if not isinstance(obj, Entity) or obj.kind not in CONCRETE_KINDS or not obj.name:
        raise MalformedObservationError(
            f"'{relation}' {side} element must be a word or class, got {obj!r}"
        )


def _check_connectors(seq, relation: str, allow_variable: bool = False) -> int:
    if not isinstance(seq, tuple) or not seq:
        raise MalformedObservationError(
            f"'{relation}' needs a non-empty connector sequence, got {seq!r}"
        )
    holes = 0
    for con in seq:
        if getattr(con, "direction", None) not in (LEFT, RIGHT):
            raise MalformedObservationError(f"Bad connector {con!r} in '{relation}'")
        if allow_variable and con.target == VARIABLE:
            holes += 1
            continue
        _check_entity(con.target, "connector", relation)
    return holes


# =============================================================================
# SECTION 3: Word-Pair Vectors
# =============================================================================

class _EntityPairVector(SparseVector):

    def right_type(self) -> str:
        return "entity"

    def _check_right(self, right):
        _check_entity(right, "right", self.relation)


class LinkPairVector(_EntityPairVector):
    """Pairs joined by a link of a random planar parse (relation ANY)."""
    relation = ANY_PAIR


class CliquePairVector(_EntityPairVector):
    """Every ordered word pair of a sentence, regardless of links."""
    relation = CLIQUE_PAIR


class DistanceCliqueVector(_EntityPairVector):
    """
    Clique pairs no farther apart than ``max_distance``.

    With ``keep_distances`` each pair also carries per-distance sub-counts
    under the relations ``dist:1`` .. ``dist:<max_distance>``. Those grow
    storage by up to ``max_distance`` rows per pair.
    """
    relation = CLIQUE_DIST_PAIR

    def __init__(self, store: ObservationStore, state: Optional[LoadState] = None,
                 max_distance: int = DEFAULT_MAX_DISTANCE, keep_distances: bool = True):
        super().__init__(store, state)
        if max_distance < 1:
            raise ValueError(f"max_distance must be >= 1, got {max_distance}")
        self.max_distance = max_distance
        self.keep_distances = keep_distances

    @staticmethod
    def distance_relation(distance: int) -> str:
        return f"{DISTANCE_PREFIX}{distance}"

    def increment_at(self, left, right, distance: int, delta: float = 1.0) -> bool:
        """Count a pair seen ``distance`` words apart; False when beyond the cap."""
        if distance < 1:
            raise MalformedObservationError(f"Pair distance must be >= 1, got {distance}")
        if distance > self.max_distance:
            return False
        self.increment(left, right, delta)
        if self.keep_distances:
            self.store.increment_count(
                Handle(self.distance_relation(distance), left, right), delta
            )
        return True

    def distance_counts(self, left, right) -> Dict[int, float]:
        """Per-distance sub-counts of one pair (absent distances omitted)."""
        out = {}
        for d in range(1, self.max_distance + 1):
            handle = self.store.lookup(left, right, self.distance_relation(d))
            if handle is not None:
                out[d] = self.store.get_count(handle)
        return out


def check_distance_consistency(
    clique: CliquePairVector,
    capped: DistanceCliqueVector,
    tolerance: float = ZERO_TOLERANCE,
) -> List[Tuple[Handle, float, float]]:
    """
    Pairs whose counts disagree across the two clique representations.

    For every pair the capped vector holds, its own count and the clique
    count must both equal the sum of its per-distance sub-counts. Pairs
    observed beyond the cap are only in the clique vector and are not
    compared.

    Returns:
        (handle, expected, actual) for each disagreement
    """
    if not capped.keep_distances:
        raise ValueError("Capped vector does not keep per-distance sub-counts")
    bad = []
    for batch in capped.store.iter_relation(capped.relation):
        for handle, count in batch:
            if handle.is_wildcard:
                continue
            sub = sum(capped.distance_counts(handle.left, handle.right).values())
            if abs(sub - count) > tolerance:
                bad.append((handle, sub, count))
            full = clique.pair_count(handle.left, handle.right)
            if abs(sub - full) > tolerance:
                bad.append((Handle(clique.relation, handle.left, handle.right), sub, full))
    return bad


# =============================================================================
# SECTION 4: Section and Cross-Section Vectors
# =============================================================================

class SectionVector(SparseVector):
    """Germ × connector-sequence counts (one row per germ)."""
    relation = SECTION

    def right_type(self) -> str:
        return "connector-sequence"

    def _check_right(self, right):
        _check_connectors(right, self.relation)


class CrossSectionVector(SparseVector):
    """Hole-entity × Shape counts: the dual index of SectionVector."""
    relation = CROSS_SECTION

    def right_type(self) -> str:
        return "shape"

    def _check_right(self, right):
        if not isinstance(right, Shape):
            raise MalformedObservationError(f"'{self.relation}' right must be a Shape")
        _check_entity(right.germ, "germ", self.relation)
        if _check_connectors(right.connectors, self.relation, allow_variable=True) != 1:
            raise MalformedObservationError(
                f"Shape must have exactly one variable slot: {right}"
            )
