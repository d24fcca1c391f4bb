"""
Observation: turning one parsed sentence into count updates.

For a sentence of words w0 .. wn-1 with links L ⊂ {(i, j) : i < j}:

- entity counts     N(w) += 1 for every word
- link pairs        ANY(wi, wj) += 1 for every (i, j) in L
- clique pairs      clique(wi, wj) += 1 for every i < j
- capped pairs      clique-dist(wi, wj) += 1 when j - i ≤ max_distance,
                    plus dist:<j-i>(wi, wj) += 1
- sections          one per linked word: germ wi with connectors to its
                    link partners ordered by position, plus the
                    Cross-Sections of that Section (detailed balance)

Every increment is a single atomic add on the store, so observers in
several threads or processes can share one store.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
from collections import defaultdict
import logging

import numpy as np

from .core.atoms import ANY, Connector, Handle, direction_of, explode, make_section, word
from .core.constants import ENTITY
from .core.errors import MalformedObservationError
from .core.store import ObservationStore
from .core.vectors import (
    CliquePairVector,
    CrossSectionVector,
    DistanceCliqueVector,
    LinkPairVector,
    LoadState,
    SectionVector,
)
from .config import StatsConfig

logger = logging.getLogger(__name__)

Link = Tuple[int, int]


@dataclass
class ParsedSentence:
    """Words of one sentence and the (left, right) index pairs linking them."""
    words: List[str]
    links: List[Link] = field(default_factory=list)

    def validate(self):
        """Raise MalformedObservationError for empty words or bad links."""
        for i, w in enumerate(self.words):
            if not isinstance(w, str) or not w.strip():
                raise MalformedObservationError(f"Empty word at position {i}")
        n = len(self.words)
        for i, j in self.links:
            if not (0 <= i < n and 0 <= j < n):
                raise MalformedObservationError(f"Link ({i}, {j}) outside sentence of {n} words")
            if i == j:
                raise MalformedObservationError(f"Self link at position {i}")

    def normalized_links(self) -> List[Link]:
        """Links as sorted (i < j) pairs, duplicates removed, in order."""
        return sorted({(min(i, j), max(i, j)) for i, j in self.links})


def random_planar_links(n: int, rng: np.random.Generator) -> List[Link]:
    """
    A random projective spanning tree over ``n`` positions.

    Every span picks a random head, links it to its parent and recurses
    left and right of the head, so no two links cross.
    """
    links: List[Link] = []

    def attach(lo: int, hi: int, parent: Optional[int]):
        if lo >= hi:
            return
        head = int(rng.integers(lo, hi))
        if parent is not None:
            links.append((min(head, parent), max(head, parent)))
        attach(lo, head, head)
        attach(head + 1, hi, head)

    attach(0, n, None)
    return sorted(links)


def build_sections(words: Sequence[str], links: Sequence[Link]) -> List[Handle]:
    """One Section per linked word, connectors ordered by partner position."""
    partners = defaultdict(set)
    for i, j in links:
        partners[i].add(j)
        partners[j].add(i)

    sections = []
    for i in sorted(partners):
        seq = tuple(
            Connector(word(words[j]), direction_of(j, i))
            for j in sorted(partners[i])
        )
        sections.append(make_section(word(words[i]), seq))
    return sections


class Observer:
    """
    Applies observations to every vector of a store.

    Example:
        obs = Observer(store, StatsConfig())
        obs.observe(ParsedSentence(["the", "cat"], [(0, 1)]))
    """

    def __init__(self, store: ObservationStore, config: Optional[StatsConfig] = None,
                 state: Optional[LoadState] = None):
        self.store = store
        self.config = config or StatsConfig()
        self.state = state if state is not None else LoadState()
        self.links = LinkPairVector(store, self.state)
        self.clique = CliquePairVector(store, self.state)
        self.capped = DistanceCliqueVector(
            store, self.state,
            max_distance=self.config.max_distance,
            keep_distances=self.config.keep_distances,
        )
        self.sections = SectionVector(store, self.state)
        self.crosses = CrossSectionVector(store, self.state)
        self.rng = np.random.default_rng(self.config.seed)

    def observe(self, sentence: ParsedSentence) -> int:
        """
        Count one sentence. Returns the number of count updates made.

        Raises:
            MalformedObservationError: nothing is counted
        """
        sentence.validate()
        words = [word(w) for w in sentence.words]
        links = sentence.normalized_links()
        updates = 0

        for w in words:
            self.store.increment_count(Handle(ENTITY, w, ANY), 1.0)
            updates += 1

        for i, j in links:
            self.links.increment(words[i], words[j])
            updates += 1

        for i in range(len(words)):
            for j in range(i + 1, len(words)):
                self.clique.increment(words[i], words[j])
                updates += 1
                if self.capped.increment_at(words[i], words[j], j - i):
                    updates += 1

        for section in build_sections(sentence.words, links):
            self.sections.increment(section.left, section.right)
            for cross in explode(section):
                self.crosses.increment(cross.left, cross.right)
            updates += 1

        return updates

    def observe_text(self, text: str) -> int:
        """Tokenise on whitespace and count with a random planar parse."""
        tokens = text.split()
        if not tokens:
            return 0
        links = random_planar_links(len(tokens), self.rng)
        return self.observe(ParsedSentence(tokens, links))

    def observe_many(self, sentences) -> Tuple[int, int]:
        """
        Count a batch of sentences, skipping malformed ones.

        Returns:
            (observed, skipped)
        """
        observed = skipped = 0
        for sentence in sentences:
            try:
                if isinstance(sentence, str):
                    self.observe_text(sentence)
                else:
                    self.observe(sentence)
                observed += 1
            except MalformedObservationError as e:
                logger.warning("Skipping observation: %s", e)
                skipped += 1
        return observed, skipped
