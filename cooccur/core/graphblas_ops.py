"""
GraphBLAS Operations for Sparse Count Vectors

Bridges prefetched vector pairs (arbitrary hashable left/right keys) and
SuiteSparse:GraphBLAS matrices indexed by integer rows and columns.

Architecture:
============
    ┌──────────────────────────────┐      ┌──────────────────────────────┐
    │  SparseVector working set    │ ───▶ │  IndexedMatrix               │
    │  Handle → count              │      │  rows[i] ↔ left element      │
    │                              │ ◀─── │  cols[j] ↔ right element     │
    └──────────────────────────────┘      └──────────────────────────────┘

Reductions used by the marginal and similarity code:
    row_sums     N(x, *)   = reduce_rowwise(plus)
    col_sums     N(*, y)   = reduce_columnwise(plus)
    grand_total  N(*, *)   = reduce_scalar(plus)
    support      |{y : N(x, y) present}|
    row_products <x, x'>   = M ⊕.⊗ Mᵀ

Installation:
    pip install 'python-graphblas[default]'
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Tuple

try:
    import graphblas as gb
    from graphblas import Matrix, monoid, semiring, unary
except ImportError:
    raise ImportError(
        "python-graphblas is required for marginal computation.\n"
        "Install with: pip install 'python-graphblas[default]'"
    )

from .atoms import Handle


# =============================================================================
# SECTION 1: Converters
# =============================================================================

@dataclass
class IndexedMatrix:
    """GraphBLAS matrix plus the basis elements of its rows and columns."""
    matrix: Any
    rows: List[Hashable]
    cols: List[Hashable]


def pairs_to_graphblas(pairs: Dict[Handle, float]) -> IndexedMatrix:
    """
    Convert a handle → count map to a GraphBLAS FP64 matrix.

    Rows and columns are ordered by first appearance, so two conversions
    of the same working set give the same layout. An empty map yields a
    1x1 matrix with no values.
    """
    row_idx: Dict[Hashable, int] = {}
    col_idx: Dict[Hashable, int] = {}
    rs, cs, vs = [], [], []
    for handle, count in pairs.items():
        r = row_idx.setdefault(handle.left, len(row_idx))
        c = col_idx.setdefault(handle.right, len(col_idx))
        rs.append(r)
        cs.append(c)
        vs.append(float(count))

    nrows = max(len(row_idx), 1)
    ncols = max(len(col_idx), 1)
    if not rs:
        M = Matrix(gb.dtypes.FP64, nrows=nrows, ncols=ncols)
    else:
        M = Matrix.from_coo(rs, cs, vs, dtype=gb.dtypes.FP64, nrows=nrows, ncols=ncols)
    return IndexedMatrix(matrix=M, rows=list(row_idx), cols=list(col_idx))


def _vector_to_dict(v, basis: List[Hashable]) -> Dict[Hashable, float]:
    indices, values = v.to_coo()
    return {basis[int(i)]: float(x) for i, x in zip(indices, values)}


# =============================================================================
# SECTION 2: Reductions
# =============================================================================

def row_sums(im: IndexedMatrix) -> Dict[Hashable, float]:
    """N(x, *) for every row element x."""
    v = im.matrix.reduce_rowwise(monoid.plus).new()
    return _vector_to_dict(v, im.rows)


def col_sums(im: IndexedMatrix) -> Dict[Hashable, float]:
    """N(*, y) for every column element y."""
    v = im.matrix.reduce_columnwise(monoid.plus).new()
    return _vector_to_dict(v, im.cols)


def grand_total(im: IndexedMatrix) -> float:
    """N(*, *); 0.0 for an empty matrix."""
    if im.matrix.nvals == 0:
        return 0.0
    return float(im.matrix.reduce_scalar(monoid.plus).new().value)


def row_support(im: IndexedMatrix) -> Dict[Hashable, float]:
    """Number of stored partners of each row element."""
    ones = im.matrix.apply(unary.one).new()
    return _vector_to_dict(ones.reduce_rowwise(monoid.plus).new(), im.rows)


def col_support(im: IndexedMatrix) -> Dict[Hashable, float]:
    """Number of stored partners of each column element."""
    ones = im.matrix.apply(unary.one).new()
    return _vector_to_dict(ones.reduce_columnwise(monoid.plus).new(), im.cols)


def row_products(im: IndexedMatrix) -> Dict[Tuple[Hashable, Hashable], float]:
    """
    Dot products <x, x'> between every pair of rows with shared columns.

    Includes the diagonal <x, x>, which is the squared row norm.
    """
    if im.matrix.nvals == 0:
        return {}
    P = im.matrix.mxm(im.matrix.T, semiring.plus_times).new()
    rs, cs, vs = P.to_coo()
    return {
        (im.rows[int(r)], im.rows[int(c)]): float(v)
        for r, c, v in zip(rs, cs, vs)
    }

