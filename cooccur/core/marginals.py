"""
Marginal Engine: Wildcard Sums over a Fully Loaded Vector

For a vector with counts N(x, y):

    N(x, *) = Σ_y N(x, y)        stored on (x, ANY)
    N(*, y) = Σ_x N(x, y)        stored on (ANY, y)
    N(*, *) = Σ_x,y N(x, y)      stored on (ANY, ANY)

Sums are only meaningful over the complete pair set: the vector must have
finished ``fetch_all`` since its last count change, otherwise
``IncompleteLoadError`` is raised instead of writing undercounts.

Recomputation replaces every wildcard of the relation: stale wildcards
(elements no longer present) are deleted, the rest are overwritten.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict
import logging
import time

from .atoms import ANY, Handle
from .constants import STAT_SUPPORT
from .errors import IncompleteLoadError
from .graphblas_ops import (
    pairs_to_graphblas,
    row_sums,
    col_sums,
    grand_total,
    row_support,
    col_support,
)
from .vectors import SparseVector

logger = logging.getLogger(__name__)


@dataclass
class MarginalReport:
    """Outcome of one wildcard sweep."""
    relation: str
    rows: int
    cols: int
    pairs: int
    total: float
    elapsed: float

    def __str__(self) -> str:
        return (
            f"'{self.relation}': {self.pairs} pairs, {self.rows} rows, "
            f"{self.cols} cols, total={self.total:g} in {self.elapsed:.2f} secs"
        )


def require_loaded(vector: SparseVector):
    if not vector.is_loaded:
        raise IncompleteLoadError(
            f"'{vector.relation}' is not fully loaded; call fetch_all() first"
        )


def compute_wildcards(vector: SparseVector) -> MarginalReport:
    """
    Compute and persist every wildcard of ``vector``.

    Elements whose partners all have count zero get marginal 0.0.

    Raises:
        IncompleteLoadError: vector not fully loaded
    """
    require_loaded(vector)
    start = time.time()
    store = vector.store
    relation = vector.relation
    pairs = vector.pairs()

    im = pairs_to_graphblas(pairs)
    right_marg = row_sums(im)
    left_marg = col_sums(im)
    right_supp = row_support(im)
    left_supp = col_support(im)
    total = grand_total(im)

    fresh: Dict[Handle, float] = {}
    support: Dict[Handle, float] = {}
    for x, n in right_marg.items():
        h = Handle(relation, x, ANY)
        fresh[h] = n
        support[h] = right_supp.get(x, 0.0)
    for y, n in left_marg.items():
        h = Handle(relation, ANY, y)
        fresh[h] = n
        support[h] = left_supp.get(y, 0.0)
    both = Handle(relation, ANY, ANY)
    fresh[both] = total
    support[both] = float(len(pairs))

    with store.transaction():
        stale = 0
        for batch in store.iter_relation(relation):
            for handle, _ in batch:
                if handle.is_wildcard and handle not in fresh:
                    store.delete(handle)
                    stale += 1
        for handle, n in fresh.items():
            store.set_count(handle, n)
            store.set_stat(handle, STAT_SUPPORT, (support[handle],))

    vector.state.mark_marginals(relation)
    report = MarginalReport(
        relation=relation,
        rows=len(right_marg),
        cols=len(left_marg),
        pairs=len(pairs),
        total=total,
        elapsed=time.time() - start,
    )
    if stale:
        logger.info("Deleted %d stale '%s' wildcards", stale, relation)
    logger.info("Computed marginals for %s", report)
    return report
