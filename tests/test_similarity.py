"""Tests for similarity providers."""
import time

import numpy as np
import pytest
from swarm_guard.similarity import (
    EmbeddingSimilarity,
    HashingEmbedder,
    JaccardSimilarity,
    cosine_similarity,
)


def test_jaccard_identical_and_disjoint():
    sim = JaccardSimilarity()
    assert sim.similarity("list open tasks", "List Open Tasks") == 1.0
    assert sim.similarity("alpha beta", "gamma delta") == 0.0


def test_jaccard_partial_overlap():
    sim = JaccardSimilarity()
    # {a, b, c} vs {b, c, d}: 2 shared of 4
    assert sim.similarity("a b c", "b c d") == pytest.approx(0.5)


@pytest.mark.parametrize(
    "text1,text2",
    [("", ""), ("", "words"), ("   ", "x"), (None, "x"), ("x", None)],
)
def test_jaccard_empty_inputs_score_zero(text1, text2):
    assert JaccardSimilarity().similarity(text1, text2) == 0.0


def test_cosine_similarity_edge_cases():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0
    assert cosine_similarity([1, 2, 3], [1, 2]) == 0.0


def test_hashing_embedder_is_deterministic_and_normalised():
    embed = HashingEmbedder(dim=64)
    v1 = embed("fetch the weather report")
    v2 = embed("fetch the weather report")
    assert v1.shape == (64,)
    assert np.array_equal(v1, v2)
    assert np.linalg.norm(v1) == pytest.approx(1.0)
    assert not np.any(embed(""))


def test_hashing_embedder_rejects_bad_dim():
    with pytest.raises(ValueError):
        HashingEmbedder(dim=0)


def test_embedding_similarity_scores_identical_texts_high():
    sim = EmbeddingSimilarity()
    try:
        assert sim.similarity("summarise the design doc", "summarise the design doc") == pytest.approx(1.0)
        assert sim.degraded_calls == 0
    finally:
        sim.close()


def test_embedding_similarity_falls_back_when_embedder_raises():
    def broken(text):
        raise RuntimeError("model not loaded")

    sim = EmbeddingSimilarity(embed_fn=broken)
    try:
        score = sim.similarity("a b c", "b c d")
    finally:
        sim.close()
    assert score == pytest.approx(0.5)
    assert sim.degraded_calls == 1


def test_embedding_similarity_falls_back_on_timeout():
    def slow(text):
        time.sleep(0.5)
        return [1.0, 0.0]

    sim = EmbeddingSimilarity(embed_fn=slow, timeout=0.05)
    try:
        score = sim.similarity("same words", "same words")
    finally:
        sim.close()
    assert score == 1.0
    assert sim.degraded_calls == 1


def test_embedding_similarity_falls_back_on_unusable_vectors():
    sim = EmbeddingSimilarity(embed_fn=lambda text: [0.0, 0.0, 0.0])
    try:
        score = sim.similarity("x y", "y z")
    finally:
        sim.close()
    assert score == pytest.approx(1 / 3)
    assert sim.degraded_calls == 1


def test_embedding_similarity_never_negative():
    vectors = {"up": [1.0, 0.0], "down": [-1.0, 0.0]}
    sim = EmbeddingSimilarity(embed_fn=lambda text: vectors[text])
    try:
        assert sim.similarity("up", "down") == 0.0
    finally:
        sim.close()


@pytest.mark.parametrize(
    "vector",
    ["not a vector", [[1.0], [1.0, 2.0]], {"x": 1.0}, [[1.0, 0.0]]],
)
def test_embedding_similarity_falls_back_on_non_vectors(vector):
    sim = EmbeddingSimilarity(embed_fn=lambda text: vector)
    try:
        score = sim.similarity("a b", "a b")
    finally:
        sim.close()
    assert score == 1.0
    assert sim.degraded_calls == 1


def test_embedding_similarity_context_manager_stops_worker():
    with EmbeddingSimilarity() as sim:
        assert sim.similarity("x y", "x y") == pytest.approx(1.0)
        assert sim.degraded_calls == 0

    assert sim.similarity("a b c", "b c d") == pytest.approx(0.5)
    assert sim.degraded_calls == 1
