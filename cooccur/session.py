"""
Session: Driver State and Public API
====================================

A Session owns:
- the observation store (memory or DuckDB, from ``StatsConfig.db_url``)
- the LoadState recording which relations are fully loaded and have
  current marginals
- one instance of every Sparse Vector variant
- the Observer and the MergeEngine

Architecture:
┌─────────────────────────────────────────────────────────────────────────┐
│                              Session                                    │
│   observe / observe_text        → Observer                              │
│   fetch_all                     → SparseVector (marks LoadState)        │
│   compute_all_marginals         → marginals.compute_wildcards           │
│   compute_all_mutual_information→ mutual_info                           │
│   merge                         → MergeEngine                           │
│   verify_consistency            → consistency                           │
├─────────────────────────────────────────────────────────────────────────┤
│                        ObservationStore                                 │
└─────────────────────────────────────────────────────────────────────────┘

Usage:
    with Session(StatsConfig(db_url="duckdb://pairs.duckdb")) as s:
        s.observe_text("the cat sat on the mat")
        s.fetch_all(s.links)
        s.compute_all_marginals(s.links)
        s.compute_all_mutual_information(s.links)
"""

from __future__ import annotations
from typing import Dict, Iterable, Optional, Union
import logging
import threading

from .config import StatsConfig
from .core.atoms import Entity
from .core.constants import ENTITY
from .core.consistency import ConsistencyReport, verify_consistency
from .core.marginals import MarginalReport, compute_wildcards
from .core.merge import MergeEngine, MergeReport
from .core.mutual_info import (
    LogLikelihoodReport,
    MIReport,
    compute_all_log_likelihoods,
    compute_all_mutual_information,
)
from .core.store import ObservationStore, open_store
from .core.vectors import LoadState, SparseVector, check_distance_consistency
from .observe import Observer, ParsedSentence

logger = logging.getLogger(__name__)

VectorRef = Union[str, SparseVector]


class Session:
    """
    One corpus-processing session against a (possibly shared) store.

    Several sessions may observe into the same store concurrently; marginal
    sweeps and merges need the rows they touch to themselves.
    """

    def __init__(self, config: Optional[StatsConfig] = None,
                 store: Optional[ObservationStore] = None):
        self.config = config or StatsConfig()
        self.store = store if store is not None else open_store(self.config.db_url)
        self.state = LoadState()
        self.observer = Observer(self.store, self.config, self.state)
        self.merger = MergeEngine(self.store, self.state, self.config.tolerance)
        logger.info("Opened session on %s", self.config.db_url)

    # -------------------------------------------------------------------------
    # Vectors
    # -------------------------------------------------------------------------

    @property
    def links(self):
        return self.observer.links

    @property
    def clique(self):
        return self.observer.clique

    @property
    def capped(self):
        return self.observer.capped

    @property
    def sections(self):
        return self.observer.sections

    @property
    def crosses(self):
        return self.observer.crosses

    def vectors(self) -> Dict[str, SparseVector]:
        return {
            v.relation: v
            for v in (self.links, self.clique, self.capped, self.sections, self.crosses)
        }

    def vector(self, ref: VectorRef) -> SparseVector:
        """Vector by relation name, or the vector itself."""
        if isinstance(ref, SparseVector):
            return ref
        try:
            return self.vectors()[ref]
        except KeyError:
            raise ValueError(f"Unknown relation: {ref!r}") from None

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def observe(self, sentence: ParsedSentence) -> int:
        return self.observer.observe(sentence)

    def observe_text(self, text: str) -> int:
        return self.observer.observe_text(text)

    def observe_many(self, sentences: Iterable) -> tuple:
        return self.observer.observe_many(sentences)

    # -------------------------------------------------------------------------
    # Batch statistics
    # -------------------------------------------------------------------------

    def fetch_all(self, ref: VectorRef, cancel: Optional[threading.Event] = None) -> int:
        return self.vector(ref).fetch_all(cancel, self.config.fetch_batch)

    def compute_all_marginals(self, ref: VectorRef, fetch: bool = False) -> MarginalReport:
        """
        Wildcards of a vector. With ``fetch`` the full load happens first;
        without it the vector must already be loaded.
        """
        vector = self.vector(ref)
        if fetch:
            self.fetch_all(vector)
        return compute_wildcards(vector)

    def compute_all_mutual_information(self, ref: VectorRef) -> MIReport:
        return compute_all_mutual_information(self.vector(ref))

    def batch_pair_statistics(self, ref: VectorRef) -> MIReport:
        """Full load, marginals and MI in one go; safe to repeat."""
        vector = self.vector(ref)
        self.compute_all_marginals(vector, fetch=True)
        return compute_all_mutual_information(vector)

    def compute_word_log_likelihoods(self) -> LogLikelihoodReport:
        """Log-likelihood of every observed entity over the entity total."""
        return compute_all_log_likelihoods(self.store, self.store.handles(ENTITY))

    # -------------------------------------------------------------------------
    # Clustering
    # -------------------------------------------------------------------------

    def merge(self, a: Entity, b: Entity, frac: Optional[float] = None,
              noise: Optional[float] = None, similarity: Optional[float] = None,
              min_similarity: Optional[float] = None) -> Entity:
        """Merge two entities; defaults come from the session config."""
        frac = self.config.merge_frac if frac is None else frac
        noise = self.config.merge_noise if noise is None else noise
        return self.merger.merge(a, b, frac, noise, similarity, min_similarity)

    def merge_into(self, cluster: Entity, donor: Entity, frac: Optional[float] = None,
                   noise: Optional[float] = None) -> MergeReport:
        frac = self.config.merge_frac if frac is None else frac
        noise = self.config.merge_noise if noise is None else noise
        return self.merger.merge_into(cluster, donor, frac, noise)

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify_consistency(self, ref: VectorRef, fetch: bool = True,
                           marginals: bool = True) -> ConsistencyReport:
        vector = self.vector(ref)
        if fetch:
            self.fetch_all(vector)
        return verify_consistency(vector, self.config.tolerance, marginals)

    def check_distance_consistency(self):
        return check_distance_consistency(self.clique, self.capped, self.config.tolerance)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self):
        self.store.close()
        logger.info("Closed session on %s", self.config.db_url)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def create_session(db_url: str = "memory://", **kwargs) -> Session:
    """Session on a store URL with config overrides."""
    return Session(StatsConfig(db_url=db_url, **kwargs))
