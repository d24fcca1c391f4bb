"""
Co-occurrence Core Module

This module provides the statistics engine of the cooccur system:
- atoms: Entity, Handle, Connector, Shape; Section ↔ Cross-Section duality
- store / duckdb_store: observation store contract and its backends
- vectors: Sparse Vector API over several pair representations
- marginals: wildcard sums N(x,*), N(*,y), N(*,*)
- mutual_info: log-likelihoods and pointwise mutual information
- merge: projective cluster merge with detailed balance
- consistency: marginal and detailed-balance verification

================================================================================
DATA FLOW
================================================================================

    observe → counts on pairs (vectors)
            → fetch_all → compute_wildcards
            → compute_all_mutual_information
    sections / cross-sections → MergeEngine → cluster entities
"""

from .atoms import (
    ANY,
    VARIABLE,
    Connector,
    Entity,
    Handle,
    Shape,
    cluster,
    connectors,
    decode_key,
    encode_key,
    explode,
    make_cross,
    make_section,
    reconstruct,
    word,
)
from .errors import (
    CooccurError,
    FetchCancelledError,
    IncompleteLoadError,
    InvariantViolationError,
    MalformedObservationError,
    MergeError,
    StoreUnavailableError,
    ZeroCountError,
)
from .store import MemoryStore, ObservationStore, open_store
from .vectors import (
    CliquePairVector,
    CrossSectionVector,
    DistanceCliqueVector,
    LinkPairVector,
    LoadState,
    SectionVector,
    SparseVector,
    check_distance_consistency,
)
from .marginals import MarginalReport, compute_wildcards
from .mutual_info import (
    MIReport,
    compute_all_log_likelihoods,
    compute_all_mutual_information,
    compute_log_likelihood,
    pointwise_mi,
)
from .merge import MergeEngine, MergePhase, MergeReport
from .consistency import ConsistencyReport, Violation, verify_consistency

__all__ = [
    # Atoms
    'ANY', 'VARIABLE', 'Connector', 'Entity', 'Handle', 'Shape',
    'cluster', 'connectors', 'decode_key', 'encode_key', 'explode',
    'make_cross', 'make_section', 'reconstruct', 'word',
    # Errors
    'CooccurError', 'FetchCancelledError', 'IncompleteLoadError',
    'InvariantViolationError', 'MalformedObservationError', 'MergeError',
    'StoreUnavailableError', 'ZeroCountError',
    # Store
    'MemoryStore', 'ObservationStore', 'open_store',
    # Vectors
    'CliquePairVector', 'CrossSectionVector', 'DistanceCliqueVector',
    'LinkPairVector', 'LoadState', 'SectionVector', 'SparseVector',
    'check_distance_consistency',
    # Engines
    'MarginalReport', 'compute_wildcards',
    'MIReport', 'compute_all_log_likelihoods', 'compute_all_mutual_information',
    'compute_log_likelihood', 'pointwise_mi',
    'MergeEngine', 'MergePhase', 'MergeReport',
    'ConsistencyReport', 'Violation', 'verify_consistency',
]
