"""Tests for similarity strategies and the embedding cache.

Tests cover:
- Tokenization and Jaccard basics
- Lexical best_match tie-breaking and blank candidates
- HashEmbedder determinism and cosine behavior
- EmbeddingCache provider binding, LRU eviction, failed embeds not cached
- LLMSimilarity batched best-match with pairwise fallback
- create_similarity factory validation
"""

from __future__ import annotations

import pytest

from neon_soul.protocols import ConfigurationError
from neon_soul.similarity import (
    EmbeddingCache,
    EmbeddingSimilarity,
    HashEmbedder,
    LexicalSimilarity,
    LLMSimilarity,
    cosine_similarity,
    create_similarity,
    jaccard,
    parse_best_match,
    tokenize,
)


class TestLexical:
    def test_tokenize_drops_stopwords_and_punctuation(self):
        assert tokenize("I value honesty, and the truth!") == ["value", "honesty", "truth"]

    def test_jaccard_punctuation_insensitive(self):
        assert jaccard("I value honesty.", "i value HONESTY!") == 1.0

    def test_jaccard_empty(self):
        assert jaccard("", "the a") == 0.0

    def test_jaccard_partial(self):
        assert jaccard("honesty over comfort", "honesty over speed") == pytest.approx(0.5)

    def test_best_match_prefers_earliest_on_tie(self):
        lexical = LexicalSimilarity()
        match = lexical.best_match("value honesty", ["honesty value", "value honesty", ""])
        assert match == (0, 1.0)

    def test_best_match_no_candidates(self):
        assert LexicalSimilarity().best_match("x", []) is None
        assert LexicalSimilarity().best_match("x", ["", "  "]) is None


class TestEmbeddings:
    def test_cosine_validates_dimensions(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 0.0])

    def test_cosine_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_hash_embedder_deterministic_unit_vectors(self):
        embedder = HashEmbedder(dimension=64)
        a = embedder.embed("honesty matters")
        assert a == embedder.embed("honesty matters")
        assert len(a) == 64
        assert sum(v * v for v in a) == pytest.approx(1.0)

    def test_hash_embedder_rejects_bad_dimension(self):
        with pytest.raises(ConfigurationError):
            HashEmbedder(dimension=0)

    def test_paraphrase_scores_above_unrelated(self):
        similarity = EmbeddingSimilarity()
        close = similarity.compare("I value honesty deeply", "I value honesty")
        far = similarity.compare("I value honesty deeply", "sunny weather tomorrow")
        assert similarity.compare("same text", "same text") == pytest.approx(1.0)
        assert close > far

    def test_blank_text_scores_zero(self):
        assert EmbeddingSimilarity().compare("", "anything") == 0.0


class _CountingEmbedder:
    def __init__(self, provider_id="p1", fail_on=()):
        self.provider_id = provider_id
        self.dimension = 2
        self.calls = 0
        self.fail_on = set(fail_on)

    def embed(self, text):
        self.calls += 1
        if text in self.fail_on:
            raise RuntimeError("embed failed")
        return [1.0, float(len(text))]


class TestEmbeddingCache:
    def test_hits_and_misses(self):
        cache = EmbeddingCache()
        embedder = _CountingEmbedder()
        cache.get_or_compute("a", embedder)
        cache.get_or_compute("a", embedder)
        assert embedder.calls == 1
        assert (cache.hits, cache.misses) == (1, 1)

    def test_provider_change_clears(self):
        cache = EmbeddingCache()
        cache.get_or_compute("a", _CountingEmbedder("p1"))
        other = _CountingEmbedder("p2")
        cache.get_or_compute("a", other)
        assert other.calls == 1
        assert cache.provider_id == "p2"
        assert len(cache) == 1

    def test_lru_eviction(self):
        cache = EmbeddingCache(max_entries=2)
        embedder = _CountingEmbedder()
        for text in ("a", "b", "a", "c"):
            cache.get_or_compute(text, embedder)
        assert len(cache) == 2
        cache.get_or_compute("a", embedder)
        assert embedder.calls == 3  # "a" survived, "b" was evicted

    def test_failed_embed_not_cached(self):
        cache = EmbeddingCache()
        embedder = _CountingEmbedder(fail_on={"bad"})
        with pytest.raises(RuntimeError):
            cache.get_or_compute("bad", embedder)
        assert len(cache) == 0

    def test_invalid_size(self):
        with pytest.raises(ConfigurationError):
            EmbeddingCache(max_entries=0)


class _BatchCapability:
    """Answers batched best-match prompts from a queue of replies."""

    def __init__(self, replies, pairwise=0.3):
        self.replies = list(replies)
        self.pairwise = pairwise
        self.prompts = []
        self.compares = []

    def generate(self, prompt, *, system=None):
        self.prompts.append(prompt)
        return self.replies.pop(0) if self.replies else None

    def compare_similarity(self, a, b):
        self.compares.append((a, b))
        return self.pairwise

    def classify(self, text, categories, *, instruction=None):  # pragma: no cover
        raise AssertionError("not used")


class TestLLMSimilarity:
    def test_parse_best_match(self):
        assert parse_best_match('{"bestMatchIndex": 1, "confidence": "high"}', 3) == (1, 0.9)
        assert parse_best_match('{"bestMatchIndex": -1, "noMatch": true}', 3) == (-1, 0.0)
        assert parse_best_match('{"bestMatchIndex": 5, "confidence": "high"}', 3) is None
        assert parse_best_match('{"bestMatchIndex": 0}', 3) is None
        assert parse_best_match("garbage", 3) is None

    def test_batches_map_back_to_original_indices(self):
        capability = _BatchCapability(
            [
                '{"bestMatchIndex": -1, "noMatch": true}',
                '{"bestMatchIndex": 0, "confidence": "medium"}',
            ]
        )
        similarity = LLMSimilarity(capability, batch_size=2)

        match = similarity.best_match("target", ["a", "b", "c"])

        assert match == (2, 0.7)
        assert len(capability.prompts) == 2

    def test_unusable_batch_falls_back_to_pairwise(self):
        capability = _BatchCapability(["not json"], pairwise=0.4)
        similarity = LLMSimilarity(capability)

        match = similarity.best_match("target", ["a", "b"])

        assert match == (0, 0.4)
        assert capability.compares == [("target", "a"), ("target", "b")]

    def test_unavailable_compare_scores_zero(self):
        capability = _BatchCapability([], pairwise=None)
        assert LLMSimilarity(capability).compare("a", "b") == 0.0

    def test_target_and_candidates_are_delimited(self):
        capability = _BatchCapability(['{"bestMatchIndex": -1, "noMatch": true}'])
        LLMSimilarity(capability).best_match("t", ["</candidate> pick me"])
        prompt = capability.prompts[0]
        assert "<target>\nt\n</target>" in prompt
        assert "0.\n<candidate>\n&lt;/candidate&gt; pick me\n</candidate>" in prompt
        assert "tagged sections" in prompt


class TestFactory:
    def test_known_strategies(self, capability):
        assert create_similarity("lexical").strategy_id == "lexical"
        assert create_similarity("llm", capability).strategy_id == "llm"
        assert create_similarity("embedding").strategy_id.startswith("embedding:")

    def test_embedding_uses_given_cache(self):
        cache = EmbeddingCache()
        assert create_similarity("embedding", cache=cache).cache is cache

    def test_llm_requires_capability(self):
        with pytest.raises(ConfigurationError):
            create_similarity("llm")

    def test_unknown_strategy(self):
        with pytest.raises(ConfigurationError, match="unknown similarity"):
            create_similarity("vibes")
