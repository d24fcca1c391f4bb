"""
Similarity and greedy agglomeration.

Rows of a fully loaded Sparse Vector are compared by cosine similarity:

    cos(a, b) = <a, b> / (|a| |b|)

with all row dot products taken at once as M ⊕.⊗ Mᵀ in GraphBLAS.
Agglomeration repeatedly merges the most similar pair of candidates on
the Section vector until no pair reaches the threshold.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
import logging
import math
import time

from .core.atoms import Entity
from .core.graphblas_ops import pairs_to_graphblas, row_products
from .core.marginals import require_loaded
from .core.vectors import SparseVector
from .session import Session

logger = logging.getLogger(__name__)


def _cosines(products: Dict[Tuple, float]) -> Dict[Tuple, float]:
    norms = {x: math.sqrt(v) for (x, y), v in products.items() if x == y}
    out = {}
    for (x, y), v in products.items():
        if x == y:
            continue
        denom = norms.get(x, 0.0) * norms.get(y, 0.0)
        if denom > 0.0:
            out[(x, y)] = v / denom
    return out


def cosine_similarity(vector: SparseVector, a: Entity, b: Entity) -> float:
    """
    Cosine of the rows of ``a`` and ``b``; 0.0 when either row is empty.

    Raises:
        IncompleteLoadError: the vector is not fully loaded
    """
    require_loaded(vector)
    if a == b:
        return 1.0 if vector.right_stars(a) else 0.0
    rows = {h: vector.pairs()[h] for h in vector.right_stars(a) + vector.right_stars(b)}
    return _cosines(row_products(pairs_to_graphblas(rows))).get((a, b), 0.0)


def similarity_matrix(vector: SparseVector,
                      candidates: Optional[Iterable[Entity]] = None) -> Dict[Tuple, float]:
    """
    Cosine of every pair of rows sharing at least one column.

    Returns both orders (a, b) and (b, a).
    """
    require_loaded(vector)
    pairs = vector.pairs()
    if candidates is not None:
        keep = set(candidates)
        pairs = {h: c for h, c in pairs.items() if h.left in keep}
    return _cosines(row_products(pairs_to_graphblas(pairs)))


@dataclass
class AgglomerationReport:
    merges: List[Tuple[Entity, Entity, Entity, float]] = field(default_factory=list)
    clusters: List[Entity] = field(default_factory=list)
    elapsed: float = 0.0

    def __str__(self) -> str:
        return f"{len(self.merges)} merges into {len(self.clusters)} clusters in {self.elapsed:.2f}s"


def _best_pair(sims: Dict[Tuple, float], threshold: float):
    best = None
    for (a, b), s in sims.items():
        if s < threshold or (a.is_cluster and b.is_cluster) or a > b:
            continue
        # Highest cosine first, then name order for a stable choice
        key = (-s, a, b)
        if best is None or key < best[0]:
            best = (key, a, b, s)
    return None if best is None else best[1:]


def agglomerate(session: Session, words: Iterable[Entity], threshold: float,
                frac: Optional[float] = None, noise: Optional[float] = None,
                max_merges: int = 100) -> AgglomerationReport:
    """
    Greedy clustering of ``words`` by Section similarity.

    Each round reloads the Section vector, picks the most similar pair of
    candidates with cosine ≥ ``threshold`` and merges it. A word leaves the
    candidate pool once it joins a cluster; new clusters join the pool and
    may absorb further words, but two clusters are never merged.
    """
    start = time.time()
    report = AgglomerationReport()
    pool = set(words)
    sections = session.sections

    while len(report.merges) < max_merges:
        session.fetch_all(sections)
        sims = similarity_matrix(sections, pool)
        found = _best_pair(sims, threshold)
        if found is None:
            break
        a, b, s = found
        g = session.merge(a, b, frac, noise, similarity=s, min_similarity=threshold)
        report.merges.append((a, b, g, s))
        pool.difference_update(e for e in (a, b) if not e.is_cluster)
        pool.add(g)
        if g not in report.clusters:
            report.clusters.append(g)
        logger.info("Merged %s and %s into %s (cos=%.4f)", a, b, g, s)

    report.elapsed = time.time() - start
    logger.info("Agglomeration: %s", report)
    return report
