"""Tests for the batching Embedder."""

import pytest

from repolens.llm.exceptions import (
    EmbeddingAuthenticationError,
    EmbeddingRateLimitError,
    EmbeddingServiceError,
)
from repolens.observability.metrics import EMBEDDING_BATCHES, EMBEDDING_TOKENS, RETRIES
from repolens.retry import RetryExhaustedError, RetryPolicy
from repolens.vector import Embedder, estimate_tokens

from conftest import FakeEmbeddingProvider, StallingEmbeddingProvider, text_vector

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0.0)


def make_embedder(provider, metrics, **kwargs):
    kwargs.setdefault("retry_policy", NO_WAIT)
    return Embedder(provider, metrics=metrics, **kwargs)


class TestBatchPlanning:
    """Test cases for batch planning."""

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_batches_by_count(self, provider, metrics):
        embedder = make_embedder(provider, metrics, max_batch_size=2)
        assert embedder.plan_batches(["a", "b", "c", "d", "e"]) == [["a", "b"], ["c", "d"], ["e"]]

    def test_batches_by_tokens(self, provider, metrics):
        embedder = make_embedder(provider, metrics, max_batch_tokens=10)
        small = "x" * 20
        large = "y" * 100

        batches = embedder.plan_batches([small, small, small, large, small])

        assert batches == [[small, small], [small], [large], [small]]

    def test_invalid_limits(self, provider, metrics):
        with pytest.raises(ValueError):
            make_embedder(provider, metrics, max_batch_size=0)


class TestEmbedder:
    """Test cases for Embedder."""

    @pytest.mark.asyncio
    async def test_embed_preserves_order(self, provider, metrics):
        embedder = make_embedder(provider, metrics, max_batch_size=2)
        texts = ["def main", "class App", "return value", "import os", "print"]

        vectors = await embedder.embed(texts)

        assert vectors == [text_vector(t) for t in texts]
        assert len(provider.calls) == 3
        assert metrics.get_counter(EMBEDDING_BATCHES) == 3
        assert metrics.get_counter(EMBEDDING_TOKENS) == embedder.total_tokens

    @pytest.mark.asyncio
    async def test_rejected_batch_is_split(self, metrics):
        provider = FakeEmbeddingProvider(max_batch=2)
        embedder = make_embedder(provider, metrics, max_batch_size=8)
        texts = [f"text {i}" for i in range(5)]

        vectors = await embedder.embed(texts)

        assert vectors == [text_vector(t) for t in texts]
        assert [len(call) for call in provider.calls] == [5, 2, 3, 1, 2]

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, metrics):
        provider = FakeEmbeddingProvider(failures=[EmbeddingRateLimitError("slow down")])
        embedder = make_embedder(provider, metrics)

        vectors = await embedder.embed(["hello world"])

        assert vectors == [text_vector("hello world")]
        assert len(provider.calls) == 2
        assert metrics.get_counter(RETRIES, labels={"operation": "embed"}) == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, metrics):
        provider = FakeEmbeddingProvider(failures=[EmbeddingServiceError("boom")] * 3)
        embedder = make_embedder(provider, metrics)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await embedder.embed(["hello"])

        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_authentication_failure_not_retried(self, metrics):
        provider = FakeEmbeddingProvider(failures=[EmbeddingAuthenticationError("denied")])
        embedder = make_embedder(provider, metrics)

        with pytest.raises(EmbeddingAuthenticationError):
            await embedder.embed(["hello"])

        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_batch_cancels_concurrent_batches(self, metrics):
        provider = StallingEmbeddingProvider("alpha", EmbeddingAuthenticationError("denied"))
        usages = []
        embedder = make_embedder(provider, metrics, max_batch_size=2, max_concurrency=2, usage_sink=usages.append)

        with pytest.raises(EmbeddingAuthenticationError):
            await embedder.embed(["alpha", "beta", "gamma", "delta"])

        assert len(provider.calls) == 2
        assert provider.cancelled == 1
        assert usages == []
        assert metrics.get_counter(EMBEDDING_BATCHES) == 0

    @pytest.mark.asyncio
    async def test_long_text_truncated_for_provider(self, provider, metrics):
        embedder = make_embedder(provider, metrics, max_input_chars=10)

        await embedder.embed(["a" * 50])

        assert provider.calls == [["a" * 10]]

    @pytest.mark.asyncio
    async def test_usage_sink(self, provider, metrics):
        usages = []
        embedder = make_embedder(provider, metrics, usage_sink=usages.append)

        await embedder.embed(["one two", "three"])
        await embedder.embed_query("four")

        assert [u.operation for u in usages] == ["index", "query"]
        assert usages[0].model == "fake-embed"
        assert usages[0].texts == 2
        assert usages[0].tokens == 3

    @pytest.mark.asyncio
    async def test_failing_usage_sink_is_ignored(self, provider, metrics):
        def broken_sink(usage):
            raise RuntimeError("billing down")

        embedder = make_embedder(provider, metrics, usage_sink=broken_sink)

        assert len(await embedder.embed(["text"])) == 1

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, provider, metrics):
        embedder = make_embedder(provider, metrics)

        with pytest.raises(ValueError):
            await embedder.embed_query("   ")
