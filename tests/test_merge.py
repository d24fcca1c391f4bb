"""
Tests for cluster merging with detailed balance
"""

import json

import pytest

from cooccur.core.atoms import (
    ANY, Connector, Handle, cluster, connectors, encode_key, explode, make_section, word,
)
from cooccur.core.consistency import check_balance, verify_consistency
from cooccur.core.constants import CROSS_SECTION, MEMBER, SECTION
from cooccur.core.duckdb_store import DuckDBObservationStore
from cooccur.core.errors import InvariantViolationError, MergeError
from cooccur.core.marginals import compute_wildcards
from cooccur.core.merge import MergeEngine, MergePhase
from cooccur.core.store import MemoryStore
from cooccur.core.vectors import CrossSectionVector, LoadState, SectionVector


ABC = connectors(("a", "-"), ("b", "+"), ("c", "+"))


def add_section(store, germ, seq, count):
    """Count a Section together with its Cross-Sections."""
    section = make_section(germ, seq)
    store.increment_count(section, count)
    for cross in explode(section):
        store.increment_count(cross, count)
    return section


def section_counts(store, canon=None):
    """Every Section and Cross-Section count, keyed by canonical string."""
    out = {}
    for relation in (SECTION, CROSS_SECTION):
        for batch in store.iter_relation(relation):
            for handle, count in batch:
                key = encode_key(handle)
                if canon is not None:
                    key = key.replace(json.dumps(canon.name), '"G"')
                out[key] = count
    return out


def mass(store, *entities):
    """Sum of Section counts whose germ is one of ``entities``."""
    total = 0.0
    for batch in store.iter_relation(SECTION):
        for handle, count in batch:
            if handle.left in entities:
                total += count
    return total


@pytest.fixture(params=["memory", "duckdb"])
def store(request):
    s = MemoryStore() if request.param == "memory" else DuckDBObservationStore(":memory:")
    yield s
    s.close()


class TestScenario:
    def test_two_donors_same_connectors(self, store):
        e, j = word("e"), word("j")
        add_section(store, e, ABC, 5.0)
        add_section(store, j, ABC, 3.0)
        engine = MergeEngine(store)

        g = engine.make_cluster(e, j)
        assert g == cluster("{e j}")
        re = engine.merge_into(g, e, frac=0.6, noise=0.0)
        rj = engine.merge_into(g, j, frac=0.6, noise=0.0)

        assert re.moved == pytest.approx(3.0)
        assert re.retained == pytest.approx(2.0)
        assert rj.moved == pytest.approx(1.8)
        assert rj.retained == pytest.approx(1.2)
        assert re.moved + re.retained == pytest.approx(5.0)
        assert rj.moved + rj.retained == pytest.approx(3.0)

        assert store.get_count(make_section(e, ABC)) == pytest.approx(2.0)
        assert store.get_count(make_section(j, ABC)) == pytest.approx(1.2)
        assert store.get_count(make_section(g, ABC)) == pytest.approx(4.8)
        assert store.get_count(store.lookup(e, g, MEMBER)) == pytest.approx(3.0)

    def test_merge_creates_cluster(self, store):
        e, j = word("e"), word("j")
        add_section(store, e, ABC, 5.0)
        add_section(store, j, ABC, 3.0)
        engine = MergeEngine(store)

        g = engine.merge(e, j, frac=0.6, noise=0.0)
        assert g.is_cluster
        assert engine.members(g) == [e, j]
        assert engine.clusters_of(e) == [g]
        assert store.has_entity(g)
        assert store.get_count(make_section(g, ABC)) == pytest.approx(4.8)


class TestInvariants:
    def _corpus(self, store):
        a, b, c, x = word("A"), word("B"), word("C"), word("x")
        add_section(store, a, connectors(("x", "-"), ("B", "+")), 4.0)
        add_section(store, b, connectors(("A", "-"), ("C", "+")), 6.0)
        add_section(store, c, connectors(("x", "-"),), 2.0)
        add_section(store, x, connectors(("A", "+"), ("C", "+")), 5.0)
        add_section(store, a, connectors(("A", "+"),), 3.0)
        return a, b, c, x

    def test_detailed_balance_after_merge(self, store):
        a, b, c, x = self._corpus(store)
        engine = MergeEngine(store)
        engine.merge(a, b, frac=0.4, noise=0.0)
        assert check_balance(store) == []

    def test_count_conservation(self, store):
        a, b, c, x = self._corpus(store)
        before = mass(store, a, b, c, x)
        engine = MergeEngine(store)
        g = engine.merge(a, b, frac=0.4, noise=0.0)
        assert mass(store, a, b, c, x, g) == pytest.approx(before)

    def test_repeat_merge_is_noop(self, store):
        a, b, c, x = self._corpus(store)
        engine = MergeEngine(store)
        g = engine.merge(a, b, frac=0.4, noise=0.0)
        snapshot = section_counts(store)

        report = engine.merge_into(g, a, frac=0.4, noise=0.0)
        assert report.noop
        assert engine.merge(g, b, frac=0.9, noise=0.0) == g
        assert section_counts(store) == snapshot

    def test_three_way_order_independence(self):
        first, second = MemoryStore(), MemoryStore()
        a, b, c, _ = self._corpus(first)
        self._corpus(second)

        e1 = MergeEngine(first)
        g1 = e1.merge(a, b, frac=0.5, noise=0.0)
        e1.merge(g1, c, frac=0.5, noise=0.0)

        e2 = MergeEngine(second)
        g2 = e2.merge(a, c, frac=0.5, noise=0.0)
        e2.merge(b, g2, frac=0.5, noise=0.0)

        one = section_counts(first, canon=g1)
        two = section_counts(second, canon=g2)
        assert one.keys() == two.keys()
        for key in one:
            assert one[key] == pytest.approx(two[key]), key

    def test_tie_break_single_rewrite(self, store):
        a = word("A")
        add_section(store, a, connectors(("A", "+"),), 3.0)
        engine = MergeEngine(store)
        g = engine.make_cluster(a, word("B"))

        report = engine.merge_into(g, a, frac=0.5, noise=0.0)
        assert report.tie_breaks == 1
        assert store.get_count(make_section(g, connectors(("A", "+"),))) == 0.0
        assert store.lookup(a, (Connector(g, "+"),), SECTION) is None
        assert store.get_count(make_section(g, (Connector(g, "+"),))) == pytest.approx(1.5)
        assert store.get_count(make_section(a, connectors(("A", "+"),))) == pytest.approx(1.5)

    def test_founding_pair_leaves_no_alternates(self, store):
        a, b = word("A"), word("B")
        ab = connectors(("B", "+"),)
        add_section(store, a, ab, 4.0)
        engine = MergeEngine(store)

        g = engine.merge(a, b, frac=0.5, noise=0.0)
        gg = (Connector(g, "+"),)
        assert store.get_count(make_section(g, gg)) == pytest.approx(3.0)
        assert store.get_count(make_section(a, ab)) == pytest.approx(1.0)
        assert store.lookup(g, ab, SECTION) is None
        assert store.lookup(a, gg, SECTION) is None
        assert check_balance(store) == []
        assert mass(store, a, g) == pytest.approx(4.0)

    def test_founding_pair_is_symmetric(self):
        first, second = MemoryStore(), MemoryStore()
        for s in (first, second):
            add_section(s, word("A"), connectors(("B", "+"),), 4.0)
            add_section(s, word("B"), connectors(("x", "-"), ("A", "+")), 2.0)

        g1 = MergeEngine(first).merge(word("A"), word("B"), 0.3, 0.0)
        g2 = MergeEngine(second).merge(word("B"), word("A"), 0.3, 0.0)
        assert section_counts(first, canon=g1).keys() == section_counts(second, canon=g2).keys()
        for key, count in section_counts(first, canon=g1).items():
            assert count == pytest.approx(section_counts(second, canon=g2)[key]), key

    def test_phases(self, store):
        e = word("e")
        add_section(store, e, ABC, 1.0)
        engine = MergeEngine(store)
        report = engine.merge_into(engine.make_cluster(e, word("j")), e, 0.5, 0.0)
        assert report.phases == [
            MergePhase.DIRECT_MERGING, MergePhase.CROSS_PROPAGATING,
            MergePhase.RECONSTRUCTING, MergePhase.REBALANCING,
            MergePhase.GC, MergePhase.IDLE,
        ]
        assert engine.phase == MergePhase.IDLE


class TestGarbageCollection:
    def test_full_move_deletes_donor_rows(self, store):
        e = word("e")
        add_section(store, e, ABC, 5.0)
        engine = MergeEngine(store)
        g = engine.make_cluster(e, word("j"))

        report = engine.merge_into(g, e, frac=1.0, noise=0.0)
        assert report.collected == 4
        assert store.lookup(e, ABC, SECTION) is None
        for cross in explode(make_section(e, ABC)):
            assert store.lookup(cross.left, cross.right, CROSS_SECTION) is None
        assert store.get_count(make_section(g, ABC)) == 5.0
        assert check_balance(store) == []

    def test_noise_floor_moves_small_counts_whole(self, store):
        e = word("e")
        small = add_section(store, e, connectors(("x", "-"),), 1.0)
        big = add_section(store, e, ABC, 10.0)
        engine = MergeEngine(store)
        g = engine.make_cluster(e, word("j"))

        report = engine.merge_into(g, e, frac=0.3, noise=2.0)
        assert store.lookup(small.left, small.right, SECTION) is None
        assert store.get_count(make_section(g, small.right)) == pytest.approx(1.0)
        assert store.get_count(big) == pytest.approx(7.0)
        assert report.moved == pytest.approx(4.0)
        assert report.discarded == 0.0

    def test_small_target_survives(self, store):
        e = word("e")
        add_section(store, e, connectors(("x", "-"),), 0.5)
        engine = MergeEngine(store)
        g = engine.make_cluster(e, word("j"))

        engine.merge_into(g, e, frac=0.5, noise=1.0)
        assert mass(store, e, g) == pytest.approx(0.5)
        for cross in explode(make_section(g, connectors(("x", "-"),))):
            assert store.get_count(cross) == pytest.approx(0.5)


class TestWildcards:
    def _marginals(self, store, state):
        vectors = [SectionVector(store, state), CrossSectionVector(store, state)]
        for v in vectors:
            v.fetch_all()
            compute_wildcards(v)
        return vectors

    def test_merge_after_marginals(self, store):
        e, j = word("e"), word("j")
        add_section(store, e, ABC, 5.0)
        add_section(store, j, ABC, 3.0)
        add_section(store, e, connectors(("j", "-"), ("e", "+")), 2.0)
        state = LoadState()
        vectors = self._marginals(store, state)

        g = MergeEngine(store, state).merge(e, j, frac=0.5, noise=0.0)
        for v in vectors:
            v.fetch_all()
            report = verify_consistency(v)
            assert report.ok, report.violations
        assert store.get_count(Handle(SECTION, ANY, ANY)) == pytest.approx(10.0)
        assert store.get_count(Handle(SECTION, g, ANY)) == pytest.approx(5.5)
        assert store.get_count(Handle(SECTION, e, ANY)) == pytest.approx(3.0)
        assert store.get_count(Handle(CROSS_SECTION, ANY, ANY)) == pytest.approx(28.0)

    def test_no_marginals_no_wildcards(self, store):
        e, j = word("e"), word("j")
        add_section(store, e, ABC, 5.0)
        MergeEngine(store).merge(e, j, frac=0.5, noise=0.0)
        for relation in (SECTION, CROSS_SECTION):
            for batch in store.iter_relation(relation):
                assert not any(h.is_wildcard for h, _ in batch)


class TestValidation:
    @pytest.mark.parametrize("frac,noise", [(1.5, 0.0), (-0.1, 0.0), (0.5, -1.0), (0.5, float("inf"))])
    def test_bad_parameters(self, store, frac, noise):
        add_section(store, word("e"), ABC, 5.0)
        snapshot = section_counts(store)
        with pytest.raises(MergeError):
            MergeEngine(store).merge(word("e"), word("j"), frac, noise)
        assert section_counts(store) == snapshot
        assert store.entities("class") == set()

    def test_bad_entities(self, store):
        engine = MergeEngine(store)
        with pytest.raises(MergeError):
            engine.merge(word("e"), word("e"), 0.5, 0.0)
        with pytest.raises(MergeError):
            engine.merge(ANY, word("e"), 0.5, 0.0)
        with pytest.raises(MergeError):
            engine.merge(cluster("{a b}"), cluster("{c d}"), 0.5, 0.0)
        with pytest.raises(MergeError):
            engine.merge_into(word("a"), word("b"), 0.5, 0.0)

    def test_similarity_threshold(self, store):
        engine = MergeEngine(store)
        with pytest.raises(MergeError):
            engine.merge(word("e"), word("j"), 0.5, 0.0, similarity=0.2, min_similarity=0.5)
        with pytest.raises(MergeError):
            engine.merge(word("e"), word("j"), 0.5, 0.0, similarity=float("nan"))

    def test_broken_balance_rejected(self, store):
        e = word("e")
        section = add_section(store, e, ABC, 5.0)
        store.set_count(explode(section)[1], 4.0)
        engine = MergeEngine(store)
        g = engine.make_cluster(e, word("j"))
        with pytest.raises(InvariantViolationError):
            engine.merge_into(g, e, 0.5, 0.0)
        assert store.get_count(section) == 5.0
        assert store.lookup(e, g, MEMBER) is None

    def test_failure_rolls_back(self, store, monkeypatch):
        e = word("e")
        add_section(store, e, ABC, 5.0)
        engine = MergeEngine(store)
        g = engine.make_cluster(e, word("j"))
        snapshot = section_counts(store)

        def boom(sections, threshold):
            raise RuntimeError("store lost")

        monkeypatch.setattr(engine, "_collect", boom)
        with pytest.raises(RuntimeError):
            engine.merge_into(g, e, 0.5, 0.0)
        assert section_counts(store) == snapshot
        assert not engine.is_member(e, g)
        assert engine.phase == MergePhase.IDLE


class TestLoadState:
    def test_merge_invalidates_section_vectors(self):
        store = MemoryStore()
        state = LoadState()
        state.mark_loaded(SECTION)
        state.mark_marginals(CROSS_SECTION)
        add_section(store, word("e"), ABC, 5.0)
        MergeEngine(store, state).merge(word("e"), word("j"), 0.5, 0.0)
        assert not state.is_loaded(SECTION)
        assert not state.has_marginals(CROSS_SECTION)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
