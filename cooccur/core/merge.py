"""
Cluster/Merge Engine: Projective Merge with Detailed Balance
============================================================

Merges donor entities into a cluster entity by moving a fixed fraction of
every observation the donor takes part in, whether the donor sits at the
germ of a Section or inside one of its connectors.

Single linear rule, for donor W joining cluster G with members M:
    For a Section S with count c that mentions W:
        p      = 1      if S already mentions G, or c ≤ noise
               = frac   otherwise
        S'     = S with every occurrence of W and of M replaced by G
        S  -= p·c,  S' += p·c

Every occurrence of a member moves together, so a Section never ends up
half rewritten: the alternates of (A, [B+]) after merging A and B, namely
(G, [B+]) and (A, [G+]), are emptied into (G, [G+]) and collected. A
Section mentioning k members keeps (1 - frac)^k of its count whatever the
order the members joined in, which makes merges order-independent.

Phases of one merge step (one donor):

    Idle → DirectMerging → CrossPropagating → Reconstructing
         → Rebalancing → GC'd → Idle

- DirectMerging:    Sections with germ W and no W connector
- CrossPropagating: Cross-Sections whose hole is W, grouped per Section
- Reconstructing:   rewritten Sections synthesised from those groups
- Rebalancing:      Section deltas written, every Cross-Section of a
                    touched Section set equal to its Section, stored
                    wildcards shifted by the same deltas
- GC:               touched rows left at zero deleted

All reads happen before the first write, and the writes run inside one
store transaction: either the whole step lands or none of it does.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple
from collections import defaultdict
import logging
import math
import time

from .atoms import (
    ANY,
    Entity,
    Handle,
    cluster as cluster_entity,
    encode_key,
    explode,
    make_section,
    mentions_in,
    reconstruct,
    substitute,
)
from .constants import CROSS_SECTION, MEMBER, SECTION, ZERO_TOLERANCE
from .errors import InvariantViolationError, MergeError
from .store import ObservationStore
from .vectors import LoadState

logger = logging.getLogger(__name__)


class MergePhase(Enum):
    IDLE = "idle"
    DIRECT_MERGING = "direct-merging"
    CROSS_PROPAGATING = "cross-propagating"
    RECONSTRUCTING = "reconstructing"
    REBALANCING = "rebalancing"
    GC = "gc"


@dataclass
class MergeReport:
    """Outcome of merging one donor into a cluster."""
    cluster: Entity
    donor: Entity
    moved: float = 0.0
    retained: float = 0.0
    discarded: float = 0.0
    sections_written: int = 0
    collected: int = 0
    tie_breaks: int = 0
    noop: bool = False
    phases: List[MergePhase] = field(default_factory=list)
    elapsed: float = 0.0

    def __str__(self) -> str:
        if self.noop:
            return f"{self.donor} already in {self.cluster}"
        return (
            f"{self.donor} → {self.cluster}: moved {self.moved:g}, "
            f"retained {self.retained:g}, {self.sections_written} sections, "
            f"{self.collected} rows collected in {self.elapsed:.3f} secs"
        )


@dataclass
class _Plan:
    deltas: Dict[Handle, float] = field(default_factory=lambda: defaultdict(float))
    moved: float = 0.0
    retained: float = 0.0
    tie_breaks: int = 0


class MergeEngine:
    """
    Merges entities into cluster entities over the Section / Cross-Section
    rows of a store.

    Example:
        engine = MergeEngine(store)
        g = engine.merge(word("e"), word("j"), frac=0.6, noise=0.0)
    """

    def __init__(self, store: ObservationStore, state: Optional[LoadState] = None,
                 tolerance: float = ZERO_TOLERANCE):
        self.store = store
        self.state = state if state is not None else LoadState()
        self.tolerance = tolerance
        self.phase = MergePhase.IDLE

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def is_member(self, donor: Entity, cluster: Entity) -> bool:
        return self.store.lookup(donor, cluster, MEMBER) is not None

    def members(self, cluster: Entity) -> List[Entity]:
        rows = self.store.fetch_incoming_set(cluster, MEMBER)
        return sorted(h.left for h in rows if h.right == cluster)

    def clusters_of(self, donor: Entity) -> List[Entity]:
        rows = self.store.fetch_incoming_set(donor, MEMBER)
        return sorted(h.right for h in rows if h.left == donor)

    def make_cluster(self, a: Entity, b: Entity) -> Entity:
        """New cluster entity named after its two founding members."""
        names = sorted((a.name, b.name))
        entity = cluster_entity("{" + " ".join(names) + "}")
        self.store.add_entity(entity)
        return entity

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def merge(self, a: Entity, b: Entity, frac: float, noise: float,
              similarity: Optional[float] = None,
              min_similarity: Optional[float] = None) -> Entity:
        """
        Merge two entities and return the cluster holding them.

        If one side is a cluster the other is merged into it. Two words
        found a new cluster and are both merged at ``frac``; both steps
        commit together.

        Raises:
            MergeError: bad arguments (nothing is modified)
        """
        self._validate(a, b, frac, noise, similarity, min_similarity)
        if a.is_cluster and b.is_cluster:
            raise MergeError(f"Cannot merge two clusters: {a}, {b}")
        if a.is_cluster:
            self.merge_into(a, b, frac, noise)
            return a
        if b.is_cluster:
            self.merge_into(b, a, frac, noise)
            return b

        with self.store.transaction():
            gls = self.make_cluster(a, b)
            self.merge_into(gls, a, frac, noise)
            self.merge_into(gls, b, frac, noise)
        logger.info("Created cluster %s from %s and %s", gls, a, b)
        return gls

    def merge_into(self, cluster: Entity, donor: Entity, frac: float,
                   noise: float, similarity: Optional[float] = None) -> MergeReport:
        """
        One merge step: move ``frac`` of every donor observation into
        ``cluster``. Idempotent per (donor, cluster).

        Raises:
            MergeError: bad arguments (nothing is modified)
            InvariantViolationError: stored rows break detailed balance
                (nothing is modified)
        """
        self._validate(cluster, donor, frac, noise, similarity, None)
        if not cluster.is_cluster:
            raise MergeError(f"Merge target is not a cluster: {cluster}")
        if donor.is_cluster:
            raise MergeError(f"Cannot merge cluster {donor} into {cluster}")

        report = MergeReport(cluster=cluster, donor=donor)
        if self.is_member(donor, cluster):
            report.noop = True
            logger.info("Skipping merge: %s", report)
            return report

        start = time.time()
        try:
            with self.store.transaction():
                plan = self._plan(cluster, donor, frac, noise, report)
                self._enter(MergePhase.REBALANCING, report)
                written = self._rebalance(plan.deltas)
                member = self.store.create(donor, cluster, MEMBER)
                self.store.set_count(member, plan.moved)
                self._enter(MergePhase.GC, report)
                collected, discarded = self._collect(written, self.tolerance)
        finally:
            self.phase = MergePhase.IDLE

        self.state.invalidate(SECTION)
        self.state.invalidate(CROSS_SECTION)
        report.moved = plan.moved
        report.retained = plan.retained
        report.tie_breaks = plan.tie_breaks
        report.sections_written = len(written)
        report.collected = collected
        report.discarded = discarded
        report.elapsed = time.time() - start
        report.phases.append(MergePhase.IDLE)
        logger.info("Merged %s", report)
        return report

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate(a: Entity, b: Entity, frac: float, noise: float,
                  similarity: Optional[float], min_similarity: Optional[float]):
        if not (isinstance(frac, (int, float)) and 0.0 <= frac <= 1.0):
            raise MergeError(f"Fraction must lie in [0, 1], got {frac!r}")
        if not (isinstance(noise, (int, float)) and math.isfinite(noise) and noise >= 0.0):
            raise MergeError(f"Noise floor must be a finite value >= 0, got {noise!r}")
        if similarity is not None:
            if not math.isfinite(similarity):
                raise MergeError(f"Similarity must be finite, got {similarity!r}")
            if min_similarity is not None and similarity < min_similarity:
                raise MergeError(
                    f"Similarity {similarity:g} of {a}, {b} below threshold {min_similarity:g}"
                )
        for e in (a, b):
            if not isinstance(e, Entity) or e.is_marker:
                raise MergeError(f"Not a mergeable entity: {e!r}")
        if a == b:
            raise MergeError(f"Cannot merge {a} with itself")

    # -------------------------------------------------------------------------
    # Planning (reads only)
    # -------------------------------------------------------------------------

    def _enter(self, phase: MergePhase, report: MergeReport):
        self.phase = phase
        report.phases.append(phase)

    def _balanced_count(self, section: Handle) -> float:
        """Count of a Section after checking every Cross-Section agrees."""
        count = self.store.get_count(section)
        for cross in explode(section):
            other = self.store.get_count(cross)
            if abs(other - count) > self.tolerance:
                raise InvariantViolationError(
                    f"Detailed balance broken: {section}={count} but {cross}={other}"
                )
        return count

    def _move(self, plan: _Plan, section: Handle, target: Handle,
              count: float, frac: float, noise: float, whole: bool = False):
        p = 1.0 if whole or count <= noise else frac
        moved = p * count
        plan.moved += moved
        plan.retained += count - moved
        if moved > 0.0:
            plan.deltas[section] -= moved
            plan.deltas[target] += moved

    @staticmethod
    def _rewrite(section: Handle, gls: Entity, members: Set[Entity]) -> Tuple[Handle, int]:
        """Section with every member replaced by the cluster, and how many places changed."""
        germ, seq = section.left, section.right
        replaced = int(germ in members)
        if germ in members:
            germ = gls
        for m in sorted(members):
            replaced += mentions_in(seq, m)
            seq = substitute(seq, m, gls)
        return make_section(germ, seq), replaced

    def _schedule(self, plan: _Plan, section: Handle, count: float, gls: Entity,
                  members: Set[Entity], frac: float, noise: float):
        target, replaced = self._rewrite(section, gls, members)
        # Count already inside the cluster follows the donor in full
        joined = section.left == gls or mentions_in(section.right, gls) > 0
        if joined or replaced > 1:
            plan.tie_breaks += 1
            logger.debug("Tie-break: %s moves to the single section %s", section, target)
        self._move(plan, section, target, count, frac, noise, whole=joined)

    def _plan(self, gls: Entity, donor: Entity, frac: float, noise: float,
              report: MergeReport) -> _Plan:
        plan = _Plan()
        members = set(self.members(gls))
        members.add(donor)
        rows = [h for h in self.store.fetch_incoming_set(donor, SECTION) if not h.is_wildcard]

        # Direct merge: donor is the germ and appears in no connector
        self._enter(MergePhase.DIRECT_MERGING, report)
        nested: Set[Handle] = set()
        for section in sorted(rows, key=encode_key):
            if mentions_in(section.right, donor):
                nested.add(section)
                continue
            if section.left != donor:
                continue
            count = self._balanced_count(section)
            if count <= 0.0:
                continue
            self._schedule(plan, section, count, gls, members, frac, noise)

        # Cross propagation: Cross-Sections with the donor in the hole
        self._enter(MergePhase.CROSS_PROPAGATING, report)
        groups: Dict[Handle, List[Handle]] = defaultdict(list)
        for cross in self.store.fetch_incoming_set(donor, CROSS_SECTION):
            if cross.left == donor and not cross.is_wildcard:
                groups[reconstruct(cross)].append(cross)
        if set(groups) != nested:
            missing = sorted(str(s) for s in nested.symmetric_difference(groups))
            raise InvariantViolationError(
                f"Sections and Cross-Sections of {donor} disagree: {missing[:5]}"
            )

        # Reconstruction: one rewritten Section per group
        self._enter(MergePhase.RECONSTRUCTING, report)
        for section in sorted(groups, key=encode_key):
            count = self._balanced_count(section)
            if len(groups[section]) != mentions_in(section.right, donor):
                raise InvariantViolationError(
                    f"{section} has {len(groups[section])} donor Cross-Sections"
                )
            if count <= 0.0:
                continue
            self._schedule(plan, section, count, gls, members, frac, noise)

        return plan

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    def _shift_wildcards(self, handle: Handle, delta: float):
        """Move the marginals of ``handle`` by ``delta``."""
        for left, right in ((handle.left, ANY), (ANY, handle.right), (ANY, ANY)):
            wildcard = Handle(handle.relation, left, right)
            # Stale marginals can lag behind the pairs; clamp rather than fail
            self.store.set_count(wildcard, max(self.store.get_count(wildcard) + delta, 0.0))

    def _rebalance(self, deltas: Dict[Handle, float]) -> List[Handle]:
        """
        Apply Section deltas and restore detailed balance on each.

        Wildcards are only kept up to date for a relation whose marginals
        have been computed, i.e. whose (ANY, ANY) row exists.
        """
        tracked = {
            relation: self.store.lookup(ANY, ANY, relation) is not None
            for relation in (SECTION, CROSS_SECTION)
        }
        written = []
        for section in sorted(deltas, key=encode_key):
            new = self.store.increment_count(section, deltas[section])
            if tracked[SECTION]:
                self._shift_wildcards(section, deltas[section])
            for cross in explode(section):
                old = self.store.get_count(cross)
                self.store.set_count(cross, new)
                if tracked[CROSS_SECTION]:
                    self._shift_wildcards(cross, new - old)
            written.append(section)
        return written

    def _collect(self, sections: List[Handle], threshold: float):
        """
        Two-phase delete of touched rows at or below ``threshold``.

        Sections and Cross-Sections are judged on their own counts, from
        both directions: Section → its Cross-Sections, Cross → its Section.
        """
        garbage: Set[Handle] = set()
        for section in sections:
            if self.store.get_count(section) <= threshold:
                garbage.add(section)
            for cross in explode(section):
                if self.store.lookup(cross.left, cross.right, CROSS_SECTION) is None:
                    continue
                if self.store.get_count(cross) <= threshold:
                    garbage.add(cross)
                origin = reconstruct(cross)
                if self.store.lookup(origin.left, origin.right, SECTION) is not None \
                        and self.store.get_count(origin) <= threshold:
                    garbage.add(origin)

        discarded = 0.0
        for handle in sorted(garbage, key=encode_key):
            if handle.relation == SECTION:
                discarded += self.store.get_count(handle)
            self.store.delete_recursive(handle)
        if discarded > self.tolerance:
            logger.warning("Discarded %g of count during GC", discarded)
        return len(garbage), discarded
