"""
Error taxonomy for the statistics engine.

Malformed observations are skipped by batch drivers; everything else
aborts the current unit of work (one sweep, one merge) and leaves
previously completed units intact.
"""


class CooccurError(Exception):
    """Base class for all engine errors."""


class MalformedObservationError(CooccurError, ValueError):
    """An observation references an entity of the wrong declared type."""


class IncompleteLoadError(CooccurError, RuntimeError):
    """A computation needing the full pair set ran on a partial load."""


class FetchCancelledError(CooccurError, RuntimeError):
    """A bulk prefetch was cancelled before it completed."""


class ZeroCountError(CooccurError, ValueError):
    """A logarithm was requested for a zero or negative probability."""


class MergeError(CooccurError, ValueError):
    """Merge arguments were rejected before any state was touched."""


class InvariantViolationError(CooccurError, RuntimeError):
    """Stored rows break detailed balance or the marginal sums."""


class StoreUnavailableError(CooccurError, RuntimeError):
    """The observation store could not be reached."""
