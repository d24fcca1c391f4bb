"""
Consistency checks over live data.

- Non-negative counts on every row of the relation
- Marginals: stored N(x,*), N(*,y), N(*,*) equal the sums over the
  fully loaded pair set
- Detailed balance: every Section equals each of its Cross-Sections, and
  every Cross-Section has a Section of the same count

Violations are reported, never repaired.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional
import logging
import time

from .atoms import ANY, Handle, explode, reconstruct
from .constants import CROSS_SECTION, SECTION, ZERO_TOLERANCE
from .graphblas_ops import pairs_to_graphblas, row_sums, col_sums, grand_total
from .marginals import require_loaded
from .store import ObservationStore
from .vectors import SparseVector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Violation:
    kind: str           # negative | marginal | balance | orphan
    handle: Handle
    expected: Optional[float]
    actual: Optional[float]

    def __str__(self) -> str:
        return f"{self.kind}: {self.handle} expected={self.expected} actual={self.actual}"


@dataclass
class ConsistencyReport:
    relation: str
    checked: int = 0
    violations: List[Violation] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.violations

    def __str__(self) -> str:
        status = "pass" if self.ok else f"FAIL ({len(self.violations)} violations)"
        return f"'{self.relation}': {status}, {self.checked} rows checked"


def check_marginals(vector: SparseVector,
                    tolerance: float = ZERO_TOLERANCE) -> List[Violation]:
    """Stored wildcards against fresh sums of the loaded pair set."""
    require_loaded(vector)
    im = pairs_to_graphblas(vector.pairs())
    expected = {}
    for x, n in row_sums(im).items():
        expected[Handle(vector.relation, x, ANY)] = n
    for y, n in col_sums(im).items():
        expected[Handle(vector.relation, ANY, y)] = n
    expected[Handle(vector.relation, ANY, ANY)] = grand_total(im)

    bad = []
    for handle, n in expected.items():
        stored = vector.store.lookup(handle.left, handle.right, handle.relation)
        actual = vector.store.get_count(handle) if stored is not None else None
        if actual is None or abs(actual - n) > tolerance:
            bad.append(Violation("marginal", handle, n, actual))
    return bad


def check_balance(store: ObservationStore,
                  tolerance: float = ZERO_TOLERANCE) -> List[Violation]:
    """Detailed balance in both directions over every Section row."""
    bad = []
    for batch in store.iter_relation(SECTION):
        for section, count in batch:
            if section.is_wildcard:
                continue
            for cross in explode(section):
                if store.lookup(cross.left, cross.right, CROSS_SECTION) is None:
                    bad.append(Violation("balance", cross, count, None))
                    continue
                other = store.get_count(cross)
                if abs(other - count) > tolerance:
                    bad.append(Violation("balance", cross, count, other))

    for batch in store.iter_relation(CROSS_SECTION):
        for cross, count in batch:
            if cross.is_wildcard:
                continue
            section = reconstruct(cross)
            if store.lookup(section.left, section.right, SECTION) is None:
                bad.append(Violation("orphan", cross, None, count))
    return bad


def verify_consistency(vector: SparseVector,
                       tolerance: float = ZERO_TOLERANCE,
                       marginals: bool = True) -> ConsistencyReport:
    """
    Check a fully loaded vector for negative counts, marginal sums and,
    for Section / Cross-Section vectors, detailed balance.
    """
    require_loaded(vector)
    start = time.time()
    report = ConsistencyReport(relation=vector.relation)
    for handle, count in vector.pairs().items():
        report.checked += 1
        if count < 0.0:
            report.violations.append(Violation("negative", handle, 0.0, count))

    if marginals:
        report.violations.extend(check_marginals(vector, tolerance))
    if vector.relation in (SECTION, CROSS_SECTION):
        report.violations.extend(check_balance(vector.store, tolerance))

    report.elapsed = time.time() - start
    if report.ok:
        logger.info("Consistency %s", report)
    else:
        logger.warning("Consistency %s", report)
        for v in report.violations[:10]:
            logger.warning("  %s", v)
    return report
