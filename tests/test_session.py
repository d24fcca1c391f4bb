"""
Tests for the Session driver API
"""

import math

import pytest

from cooccur import Session, StatsConfig, create_session
from cooccur.core.atoms import ANY, Connector, Handle, connectors, explode, make_section, word
from cooccur.core.constants import ANY_PAIR, CROSS_SECTION, ENTITY, SECTION, STAT_LOGLI, STAT_MI
from cooccur.core.errors import IncompleteLoadError
from cooccur.observe import ParsedSentence


SENTENCES = [
    ParsedSentence(["the", "cat", "sat"], [(0, 1), (1, 2)]),
    ParsedSentence(["the", "dog", "sat"], [(0, 1), (1, 2)]),
    ParsedSentence(["a", "cat", "ran"], [(0, 1), (1, 2)]),
]


@pytest.fixture(params=["memory://", "duckdb://:memory:"])
def session(request):
    s = Session(StatsConfig(db_url=request.param, seed=0))
    s.observe_many(SENTENCES)
    yield s
    s.close()


class TestVectors:
    def test_lookup_by_relation(self, session):
        assert session.vector(ANY_PAIR) is session.links
        assert session.vector(session.sections) is session.sections
        with pytest.raises(ValueError):
            session.vector("nope")

    def test_state_is_shared(self, session):
        session.fetch_all(ANY_PAIR)
        assert session.state.is_loaded(ANY_PAIR)
        session.observe_text("the cat")
        assert not session.state.is_loaded(ANY_PAIR)


class TestStatistics:
    def test_marginals_require_load(self, session):
        with pytest.raises(IncompleteLoadError):
            session.compute_all_marginals(ANY_PAIR)
        report = session.compute_all_marginals(ANY_PAIR, fetch=True)
        assert report.total == 6.0

    def test_batch_pair_statistics(self, session):
        report = session.batch_pair_statistics(session.links)
        assert report.pairs == 6
        h = session.links.pair(word("the"), word("cat"))
        fmi, _ = session.store.get_stat(h, STAT_MI)
        # N(the,cat)=1, N(the,*)=2, N(*,cat)=2, T=6
        assert fmi == pytest.approx(math.log2(1.0 * 6.0 / (2.0 * 2.0)))

        again = session.batch_pair_statistics(session.links)
        assert again.total_mi == pytest.approx(report.total_mi)

    def test_consistency(self, session):
        session.compute_all_marginals(ANY_PAIR, fetch=True)
        assert session.verify_consistency(ANY_PAIR).ok
        assert session.verify_consistency(SECTION, marginals=False).ok

    def test_word_log_likelihoods(self, session):
        report = session.compute_word_log_likelihoods()
        assert report.total == 9.0
        assert report.updated == 6
        stat = session.store.get_stat(Handle(ENTITY, word("the"), ANY), STAT_LOGLI)
        assert stat[1] == pytest.approx(-math.log2(2.0 / 9.0))

    def test_distance_consistency(self, session):
        assert session.check_distance_consistency() == []


class TestMerge:
    def test_config_defaults(self):
        with Session(StatsConfig(merge_frac=0.5)) as s:
            e, j = word("e"), word("j")
            seq = connectors(("a", "-"))
            for germ, n in ((e, 4.0), (j, 2.0)):
                section = make_section(germ, seq)
                s.sections.increment(germ, seq, n)
                for cross in explode(section):
                    s.crosses.increment(cross.left, cross.right, n)

            g = s.merge(e, j)
            assert s.store.get_count(make_section(g, seq)) == pytest.approx(3.0)
            assert s.merge_into(g, e).noop
            assert s.verify_consistency(SECTION, marginals=False).ok

    def test_merge_after_marginals(self, session):
        session.observe(ParsedSentence(["the", "cat", "saw", "the", "dog"],
                                       [(0, 1), (1, 2), (2, 4), (3, 4)]))
        session.compute_all_marginals(session.sections, fetch=True)
        session.compute_all_marginals(session.crosses, fetch=True)
        assert session.sections.total() == 14.0
        assert session.crosses.total() == 20.0

        g = session.merge(word("cat"), word("dog"), frac=0.5, noise=0.0)
        for ref in (SECTION, CROSS_SECTION):
            report = session.verify_consistency(ref)
            assert report.ok, report.violations
        assert session.sections.total() == pytest.approx(14.0)
        assert session.crosses.total() == pytest.approx(20.0)
        # saw links cat and dog: one section with both rewritten
        both = make_section(word("saw"), (Connector(g, "-"), Connector(g, "+")))
        assert session.store.get_count(both) == pytest.approx(0.75)
        assert session.store.get_count(Handle(SECTION, g, ANY)) > 0.0


class TestFactory:
    def test_create_session(self):
        with create_session("duckdb://:memory:", max_distance=2) as s:
            assert s.config.max_distance == 2
            assert s.capped.max_distance == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
