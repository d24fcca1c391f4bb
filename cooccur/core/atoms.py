"""
Atoms: Entities, Pair Handles, Connectors and Shapes
====================================================

Everything the store counts is addressed by a ``Handle``:

    Handle(relation, left, right)

- Word pairs:      Handle("ANY", Entity, Entity)
- Sections:        Handle("section", germ, (Connector, ...))
- Cross-Sections:  Handle("cross-section", hole, Shape)
- Wildcards:       either side replaced by the ``ANY`` marker

A Section and the Cross-Sections exploded from it are two views of one
observation:

    Section(e, [a-, b+])
        → CrossSection(a, Shape(e, [$-, b+]))
        → CrossSection(b, Shape(e, [a-, $+]))

``reconstruct`` is the inverse of ``explode`` for any single Cross-Section.

Handles are immutable NamedTuples so they hash and compare by value, and
``encode_key``/``decode_key`` give them a canonical string form for
persistent backends.
"""

from __future__ import annotations
from typing import Any, FrozenSet, Iterable, List, NamedTuple, Optional, Tuple
import json

from .constants import (
    WORD,
    CLASS,
    ANY_KIND,
    VARIABLE_KIND,
    LEFT,
    RIGHT,
    SECTION,
    CROSS_SECTION,
)


# =============================================================================
# SECTION 1: Entities
# =============================================================================

class Entity(NamedTuple):
    """
    Opaque symbol identified by a stable (name, kind) key.

    kind is ``word`` for atomic entities observed in text and ``class``
    for cluster entities synthesised by merging.
    """
    name: str
    kind: str = WORD

    @property
    def is_marker(self) -> bool:
        return self.kind in (ANY_KIND, VARIABLE_KIND)

    @property
    def is_cluster(self) -> bool:
        return self.kind == CLASS

    def __str__(self) -> str:
        return self.name


ANY = Entity("*", ANY_KIND)
VARIABLE = Entity("$", VARIABLE_KIND)


def word(name: str) -> Entity:
    """Atomic entity for an observed word."""
    return Entity(name, WORD)


def cluster(name: str) -> Entity:
    return Entity(name, CLASS)


# =============================================================================
# SECTION 2: Connectors and Shapes
# =============================================================================

class Connector(NamedTuple):
    """Directional reference to another entity (``-`` left, ``+`` right)."""
    target: Entity
    direction: str

    def __str__(self) -> str:
        return f"{self.target.name}{self.direction}"


ConnectorSeq = Tuple[Connector, ...]


class Shape(NamedTuple):
    """A Section with exactly one connector target replaced by VARIABLE."""
    germ: Entity
    connectors: ConnectorSeq

    @property
    def hole_index(self) -> int:
        for i, con in enumerate(self.connectors):
            if con.target == VARIABLE:
                return i
        raise ValueError(f"Shape without a variable slot: {self}")

    def __str__(self) -> str:
        return f"{self.germ.name}:[{' '.join(str(c) for c in self.connectors)}]"


def connectors(*specs: Tuple[str, str]) -> ConnectorSeq:
    """
    Build a connector sequence from (word, direction) pairs.

    >>> connectors(("a", "-"), ("b", "+"))
    """
    return tuple(Connector(word(name), direction) for name, direction in specs)


def substitute(seq: ConnectorSeq, old: Entity, new: Entity) -> ConnectorSeq:
    """Replace every connector target ``old`` with ``new``."""
    return tuple(
        Connector(new, c.direction) if c.target == old else c
        for c in seq
    )


def mentions_in(seq: ConnectorSeq, entity: Entity) -> int:
    """Number of connector positions whose target is ``entity``."""
    return sum(1 for c in seq if c.target == entity)


# =============================================================================
# SECTION 3: Handles
# =============================================================================

class Handle(NamedTuple):
    """Opaque handle of one counted (relation, left, right) pair."""
    relation: str
    left: Any
    right: Any

    @property
    def is_wildcard(self) -> bool:
        return self.left == ANY or self.right == ANY

    def mentions(self) -> FrozenSet[Entity]:
        """Non-marker entities appearing anywhere inside this handle."""
        return frozenset(e for e in _walk(self.left) if not e.is_marker) | \
            frozenset(e for e in _walk(self.right) if not e.is_marker)

    def __str__(self) -> str:
        return f"({self.relation} {_show(self.left)} {_show(self.right)})"


def _walk(obj: Any) -> Iterable[Entity]:
    if isinstance(obj, Entity):
        yield obj
    elif isinstance(obj, Shape):
        yield obj.germ
        for c in obj.connectors:
            yield c.target
    elif isinstance(obj, Connector):
        yield obj.target
    elif isinstance(obj, tuple):
        for item in obj:
            yield from _walk(item)


def _show(obj: Any) -> str:
    if isinstance(obj, tuple) and not isinstance(obj, (Entity, Shape)):
        return "[" + " ".join(str(c) for c in obj) + "]"
    return str(obj)


def make_section(germ: Entity, seq: ConnectorSeq) -> Handle:
    return Handle(SECTION, germ, tuple(seq))


def make_cross(hole: Entity, shape: Shape) -> Handle:
    return Handle(CROSS_SECTION, hole, shape)


def explode(section: Handle) -> List[Handle]:
    """
    Cross-Sections of a Section, one per connector position.

    Returns them in connector order. A Section whose connectors repeat a
    target yields several Cross-Sections with the same hole and different
    Shapes.
    """
    if section.relation != SECTION:
        raise ValueError(f"Not a section: {section}")
    germ, seq = section.left, section.right
    crosses = []
    for i, con in enumerate(seq):
        holed = seq[:i] + (Connector(VARIABLE, con.direction),) + seq[i + 1:]
        crosses.append(make_cross(con.target, Shape(germ, holed)))
    return crosses


def reconstruct(cross: Handle) -> Handle:
    """Section a Cross-Section was exploded from."""
    if cross.relation != CROSS_SECTION:
        raise ValueError(f"Not a cross-section: {cross}")
    shape: Shape = cross.right
    i = shape.hole_index
    seq = list(shape.connectors)
    seq[i] = Connector(cross.left, seq[i].direction)
    return make_section(shape.germ, tuple(seq))


# =============================================================================
# SECTION 4: Key Codec (canonical strings for persistent stores)
# =============================================================================

def _enc(obj: Any) -> Any:
    if isinstance(obj, Entity):
        return ["e", obj.name, obj.kind]
    if isinstance(obj, Shape):
        return ["s", _enc(obj.germ), _enc(obj.connectors)]
    if isinstance(obj, Connector):
        return ["c", _enc(obj.target), obj.direction]
    if isinstance(obj, tuple):
        return ["q", [_enc(c) for c in obj]]
    if obj is None:
        return None
    raise TypeError(f"Cannot encode {type(obj).__name__}: {obj!r}")


def _dec(obj: Any) -> Any:
    if obj is None:
        return None
    tag = obj[0]
    if tag == "e":
        return Entity(obj[1], obj[2])
    if tag == "s":
        return Shape(_dec(obj[1]), _dec(obj[2]))
    if tag == "c":
        return Connector(_dec(obj[1]), obj[2])
    if tag == "q":
        return tuple(_dec(c) for c in obj[1])
    raise ValueError(f"Unknown key tag: {tag!r}")


def encode_entity(entity: Entity) -> str:
    return json.dumps(_enc(entity), separators=(",", ":"))


def decode_entity(key: str) -> Entity:
    return _dec(json.loads(key))


def encode_key(handle: Handle) -> str:
    """Canonical JSON string for a handle."""
    return json.dumps(
        [handle.relation, _enc(handle.left), _enc(handle.right)],
        separators=(",", ":"),
    )


def decode_key(key: str) -> Handle:
    relation, left, right = json.loads(key)
    return Handle(relation, _dec(left), _dec(right))


def direction_of(position: int, germ_position: int) -> Optional[str]:
    """Connector direction for a word at ``position`` seen from the germ."""
    if position < germ_position:
        return LEFT
    if position > germ_position:
        return RIGHT
    return None
