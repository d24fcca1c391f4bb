# cooccur/core/constants.py
"""
Co-occurrence Statistics Constants

LAYER 1: Relation names (one per kind of counted pair)
- ANY_PAIR: word pairs joined by a link of a random planar parse
- CLIQUE_PAIR / CLIQUE_DIST_PAIR: every word pair in a sentence, uncapped
  and capped by distance
- DISTANCE_PREFIX: per-distance sub-counts of capped clique pairs
- SECTION / CROSS_SECTION: disjunct observations and their dual view
- MEMBER: donor → cluster membership
- ENTITY: single-entity observation counts

LAYER 2: Entity kinds
- WORD / CLASS: atomic and cluster entities
- ANY_KIND / VARIABLE_KIND: reserved markers (wildcard side, Shape hole)

LAYER 3: Numerics
- ZERO_TOLERANCE: counts at or below this are treated as true zero
- LN2: natural log of two, log2(x) = ln(x) / LN2
"""
import math


# =============================================================================
# LAYER 1: Relation names
# =============================================================================

ANY_PAIR = "ANY"
CLIQUE_PAIR = "clique"
CLIQUE_DIST_PAIR = "clique-dist"
DISTANCE_PREFIX = "dist:"
SECTION = "section"
CROSS_SECTION = "cross-section"
MEMBER = "member"
ENTITY = "entity"


# =============================================================================
# LAYER 2: Entity kinds
# =============================================================================

WORD = "word"
CLASS = "class"
ANY_KIND = "any"
VARIABLE_KIND = "variable"

CONCRETE_KINDS = (WORD, CLASS)

# Connector directions: target sits to the left (-) or right (+) of the germ
LEFT = "-"
RIGHT = "+"


# =============================================================================
# LAYER 3: Numerics and defaults
# =============================================================================

ZERO_TOLERANCE = 1e-9
LN2 = math.log(2.0)

DEFAULT_MAX_DISTANCE = 6
DEFAULT_MERGE_FRAC = 0.3
DEFAULT_MERGE_NOISE = 0.0
DEFAULT_FETCH_BATCH = 10000

# Statistic record keys (stored beside the raw count)
STAT_FREQ = "freq"
STAT_LOGLI = "logli"
STAT_MI = "mi"
STAT_SUPPORT = "support"
STAT_TOTAL_MI = "total-mi"

assert 0.0 <= DEFAULT_MERGE_FRAC <= 1.0, "merge fraction must lie in [0, 1]"
