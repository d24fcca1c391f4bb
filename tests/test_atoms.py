"""
Tests for entities, handles and the Section / Cross-Section duality
"""

import pytest

from cooccur.core.atoms import (
    ANY,
    VARIABLE,
    Connector,
    Entity,
    Handle,
    Shape,
    cluster,
    connectors,
    decode_key,
    direction_of,
    encode_key,
    explode,
    make_section,
    mentions_in,
    reconstruct,
    substitute,
    word,
)
from cooccur.core.constants import CROSS_SECTION


class TestEntity:
    def test_word_and_cluster_kinds(self):
        assert not word("cat").is_cluster
        assert cluster("{cat dog}").is_cluster
        assert word("cat") != cluster("cat")

    def test_markers(self):
        assert ANY.is_marker
        assert VARIABLE.is_marker
        assert not word("*").is_marker


class TestExplode:
    def test_one_cross_per_connector(self):
        s = make_section(word("e"), connectors(("a", "-"), ("b", "+")))
        crosses = explode(s)

        assert len(crosses) == 2
        assert all(c.relation == CROSS_SECTION for c in crosses)
        assert crosses[0].left == word("a")
        assert crosses[0].right == Shape(word("e"), (Connector(VARIABLE, "-"), Connector(word("b"), "+")))
        assert crosses[1].left == word("b")
        assert crosses[1].right.hole_index == 1

    def test_reconstruct_is_inverse(self):
        s = make_section(word("e"), connectors(("a", "-"), ("b", "+"), ("c", "+")))
        for cross in explode(s):
            assert reconstruct(cross) == s

    def test_repeated_target_gives_distinct_shapes(self):
        s = make_section(word("e"), connectors(("a", "-"), ("a", "+")))
        crosses = explode(s)
        assert [c.left for c in crosses] == [word("a"), word("a")]
        assert crosses[0] != crosses[1]

    def test_wrong_relation_rejected(self):
        with pytest.raises(ValueError):
            explode(Handle("ANY", word("a"), word("b")))
        with pytest.raises(ValueError):
            reconstruct(make_section(word("e"), connectors(("a", "+"))))


class TestHandle:
    def test_mentions_skip_markers(self):
        cross = explode(make_section(word("e"), connectors(("a", "-"), ("b", "+"))))[0]
        assert cross.mentions() == {word("a"), word("b"), word("e")}
        assert Handle("ANY", word("x"), ANY).mentions() == {word("x")}

    def test_wildcard(self):
        assert Handle("ANY", ANY, word("y")).is_wildcard
        assert not Handle("ANY", word("x"), word("y")).is_wildcard

    def test_key_codec(self):
        handles = [
            Handle("ANY", word("the"), word("cat")),
            Handle("ANY", ANY, ANY),
            make_section(cluster("{a b}"), connectors(("x", "-"))),
            explode(make_section(word("e"), connectors(("a", "-"), ("b", "+"))))[1],
        ]
        for h in handles:
            assert decode_key(encode_key(h)) == h

    def test_key_codec_rejects_unknown_types(self):
        with pytest.raises(TypeError):
            encode_key(Handle("ANY", 3.5, word("x")))


class TestConnectorHelpers:
    def test_substitute_every_occurrence(self):
        seq = connectors(("w", "-"), ("x", "+"), ("w", "+"))
        out = substitute(seq, word("w"), cluster("g"))
        assert mentions_in(out, cluster("g")) == 2
        assert mentions_in(out, word("w")) == 0
        assert out[1] == seq[1]

    def test_direction_of(self):
        assert direction_of(0, 2) == "-"
        assert direction_of(3, 2) == "+"
        assert direction_of(2, 2) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
