"""
Tests for marginal and detailed-balance verification
"""

import pytest

from cooccur.core.atoms import ANY, Handle, connectors, explode, make_section, word
from cooccur.core.consistency import check_balance, verify_consistency
from cooccur.core.errors import IncompleteLoadError
from cooccur.core.marginals import compute_wildcards
from cooccur.core.store import MemoryStore
from cooccur.core.vectors import LinkPairVector, LoadState, SectionVector


def add_section(store, germ, seq, count):
    section = make_section(germ, seq)
    store.increment_count(section, count)
    for cross in explode(section):
        store.increment_count(cross, count)
    return section


class TestMarginalChecks:
    def test_fresh_marginals_pass(self):
        v = LinkPairVector(MemoryStore())
        v.increment(word("a"), word("x"), 2.0)
        v.increment(word("b"), word("x"), 1.0)
        v.fetch_all()
        compute_wildcards(v)

        report = verify_consistency(v)
        assert report.ok
        assert report.checked == 2

    def test_missing_marginals_reported(self):
        v = LinkPairVector(MemoryStore())
        v.increment(word("a"), word("x"), 2.0)
        v.fetch_all()
        report = verify_consistency(v)
        assert not report.ok
        assert {x.kind for x in report.violations} == {"marginal"}
        assert len(report.violations) == 3

    def test_tampered_wildcard_reported(self):
        v = LinkPairVector(MemoryStore())
        v.increment(word("a"), word("x"), 2.0)
        v.fetch_all()
        compute_wildcards(v)
        v.store.set_count(Handle(v.relation, word("a"), ANY), 7.0)

        report = verify_consistency(v)
        assert [(x.handle.left, x.expected, x.actual) for x in report.violations] == [
            (word("a"), 2.0, 7.0)
        ]

    def test_requires_full_load(self):
        v = LinkPairVector(MemoryStore())
        with pytest.raises(IncompleteLoadError):
            verify_consistency(v)


class TestBalanceChecks:
    def test_balanced_store(self):
        store = MemoryStore()
        add_section(store, word("e"), connectors(("a", "-"), ("b", "+")), 3.0)
        assert check_balance(store) == []

    def test_unequal_cross(self):
        store = MemoryStore()
        s = add_section(store, word("e"), connectors(("a", "-"), ("b", "+")), 3.0)
        store.set_count(explode(s)[0], 2.0)
        bad = check_balance(store)
        assert len(bad) == 1
        assert bad[0].kind == "balance"
        assert (bad[0].expected, bad[0].actual) == (3.0, 2.0)

    def test_missing_cross_and_orphan(self):
        store = MemoryStore()
        s = add_section(store, word("e"), connectors(("a", "-"),), 3.0)
        store.delete(explode(s)[0])
        orphan = explode(make_section(word("f"), connectors(("a", "-"),)))[0]
        store.increment_count(orphan, 1.0)

        kinds = sorted(x.kind for x in check_balance(store))
        assert kinds == ["balance", "orphan"]

    def test_section_vector_runs_balance(self):
        store = MemoryStore()
        s = add_section(store, word("e"), connectors(("a", "-"),), 3.0)
        store.set_count(explode(s)[0], 1.0)
        v = SectionVector(store, LoadState())
        v.fetch_all()
        report = verify_consistency(v, marginals=False)
        assert [x.kind for x in report.violations] == ["balance"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
