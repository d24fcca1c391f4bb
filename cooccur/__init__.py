"""
Cooccur - Co-occurrence Statistics, Mutual Information and Clustering

Incrementally counts co-occurring symbols in parsed text, computes
marginals, log-likelihoods and mutual information over the counts, and
merges symbols into clusters while keeping Sections and Cross-Sections
in detailed balance.
"""

__version__ = "0.1.0"

from .config import StatsConfig
from .observe import Observer, ParsedSentence, random_planar_links
from .session import Session, create_session
from .similarity import AgglomerationReport, agglomerate, cosine_similarity
from .ingest import IngestReport, submit_corpus

__all__ = [
    "StatsConfig",
    "Observer",
    "ParsedSentence",
    "random_planar_links",
    "Session",
    "create_session",
    "AgglomerationReport",
    "agglomerate",
    "cosine_similarity",
    "IngestReport",
    "submit_corpus",
]
