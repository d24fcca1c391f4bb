"""
Mutual Information and Log-Likelihood Engine

Probabilities are counts over the grand total T = N(*, *):

    P(x, y) = N(x, y) / T
    fmi(x, y) = log2( P(x, y) / (P(x, *) · P(*, y)) )
              = log2( N(x, y) · T / (N(x, *) · N(*, y)) )
    mi(x, y)  = P(x, y) · fmi(x, y)

    log2(v) = ln(v) / ln(2)

Statistic records live beside the raw count and never change it:

    pair       mi    = (fmi, mi)
    wildcard   freq  = (p, -log2 p)
    (*, *)     total-mi = (Σ mi,)
    any row    logli = (c / T, -log2(c / T))

Zero or negative inputs never reach the logarithm: single computations
raise ZeroCountError, batch computations log and skip the row.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List
import logging
import math
import time

import numpy as np

from .atoms import Handle
from .constants import LN2, STAT_FREQ, STAT_LOGLI, STAT_MI, STAT_TOTAL_MI
from .errors import IncompleteLoadError, ZeroCountError
from .marginals import require_loaded
from .store import ObservationStore
from .vectors import SparseVector

logger = logging.getLogger(__name__)


def log2(x):
    """Base-2 logarithm as ln(x) / ln(2); works on scalars and arrays."""
    return np.log(x) / LN2


# =============================================================================
# SECTION 1: Log-Likelihood
# =============================================================================

def compute_log_likelihood(store: ObservationStore, handle: Handle, total: float) -> float:
    """
    Store -log2(c / total) for one row and return it.

    Raises:
        ZeroCountError: c or total is not positive; nothing is written
    """
    count = store.get_count(handle)
    if not (count > 0.0 and total > 0.0):
        raise ZeroCountError(f"Cannot take log of {count}/{total} for {handle}")
    freq = count / total
    logli = -float(log2(freq))
    store.set_stat(handle, STAT_LOGLI, (freq, logli))
    return logli


@dataclass
class LogLikelihoodReport:
    total: float
    updated: int
    skipped: int
    elapsed: float


def compute_all_log_likelihoods(store: ObservationStore,
                                handles: Iterable[Handle]) -> LogLikelihoodReport:
    """
    Log-likelihood of every row in a population.

    The total is summed once over the whole population before any row is
    updated, so every value in the batch shares one denominator.
    """
    start = time.time()
    population: List[Handle] = list(handles)
    total = float(sum(store.get_count(h) for h in population))

    updated = skipped = 0
    with store.transaction():
        for handle in population:
            try:
                compute_log_likelihood(store, handle, total)
                updated += 1
            except ZeroCountError as e:
                logger.warning("Skipping log-likelihood: %s", e)
                skipped += 1

    report = LogLikelihoodReport(total, updated, skipped, time.time() - start)
    logger.info(
        "Log-likelihood of %d rows (skipped %d) over total %g in %.2f secs",
        updated, skipped, total, report.elapsed,
    )
    return report


# =============================================================================
# SECTION 2: Pair Mutual Information
# =============================================================================

def pointwise_mi(n_xy: float, n_x: float, n_y: float, total: float) -> float:
    """
    fmi(x, y) for one pair.

    Raises:
        ZeroCountError: any input is not positive
    """
    if not (n_xy > 0.0 and n_x > 0.0 and n_y > 0.0 and total > 0.0):
        raise ZeroCountError(
            f"Undefined MI for N(x,y)={n_xy}, N(x,*)={n_x}, N(*,y)={n_y}, T={total}"
        )
    return float(log2(n_xy * total / (n_x * n_y)))


@dataclass
class MIReport:
    """Outcome of one mutual-information sweep."""
    relation: str
    pairs: int
    skipped: int
    total_mi: float
    elapsed: float

    def __str__(self) -> str:
        return (
            f"'{self.relation}': MI of {self.pairs} pairs (skipped {self.skipped}), "
            f"total MI={self.total_mi:.6g} in {self.elapsed:.2f} secs"
        )


def compute_all_mutual_information(vector: SparseVector) -> MIReport:
    """
    Pair MI, wildcard frequencies and the total MI of a vector.

    Raises:
        IncompleteLoadError: not fully loaded, or marginals not computed
            since the last count change
    """
    require_loaded(vector)
    if not vector.state.has_marginals(vector.relation):
        raise IncompleteLoadError(
            f"'{vector.relation}' marginals are stale; run compute_wildcards() first"
        )
    start = time.time()
    store = vector.store
    total = vector.total()

    handles = list(vector.pairs().keys())
    n = np.array([vector.pairs()[h] for h in handles], dtype=np.float64)
    nl = np.array([vector.right_marginal(h.left) for h in handles], dtype=np.float64)
    nr = np.array([vector.left_marginal(h.right) for h in handles], dtype=np.float64)

    ok = (n > 0.0) & (nl > 0.0) & (nr > 0.0) & (total > 0.0)
    fmi = np.zeros_like(n)
    mi = np.zeros_like(n)
    if total > 0.0:
        fmi[ok] = log2(n[ok] * total / (nl[ok] * nr[ok]))
        mi[ok] = (n[ok] / total) * fmi[ok]

    skipped = int((~ok).sum())
    with store.transaction():
        for i, handle in enumerate(handles):
            if ok[i]:
                store.set_stat(handle, STAT_MI, (fmi[i], mi[i]))

        if total > 0.0:
            for batch in store.iter_relation(vector.relation):
                for handle, count in batch:
                    if not handle.is_wildcard or count <= 0.0:
                        continue
                    p = count / total
                    store.set_stat(handle, STAT_FREQ, (p, -float(log2(p))))
        total_mi = float(mi.sum())
        store.set_stat(vector.both_wildcard(), STAT_TOTAL_MI, (total_mi,))

    if skipped:
        logger.warning("Skipped %d '%s' pairs with zero counts", skipped, vector.relation)
    report = MIReport(
        relation=vector.relation,
        pairs=int(ok.sum()),
        skipped=skipped,
        total_mi=total_mi,
        elapsed=time.time() - start,
    )
    logger.info("Computed %s", report)
    return report


def pair_mi(vector: SparseVector, left, right) -> float:
    """Stored fmi of one pair, or NaN when it was never computed."""
    handle = vector.pair(left, right)
    if handle is None:
        return math.nan
    stat = vector.store.get_stat(handle, STAT_MI)
    return stat[0] if stat else math.nan
