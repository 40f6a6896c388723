"""Batching, retrying and usage accounting around an embedding provider."""

import asyncio
import logging
import math
from typing import Awaitable, Callable, List, Optional, Sequence

from repolens.exceptions import TransientError
from repolens.llm.exceptions import EmbeddingError, EmbeddingValidationError
from repolens.llm.provider import EmbeddingProvider, TokenUsage
from repolens.observability.metrics import (
    EMBEDDING_BATCHES,
    EMBEDDING_TOKENS,
    RETRIES,
    MetricsCollector,
    get_metrics_collector,
)
from repolens.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

UsageSink = Callable[[TokenUsage], None]


def estimate_tokens(text: str) -> int:
    """Cheap token estimate used for batch sizing."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class Embedder:
    """Turn texts into vectors while respecting provider limits.

    Batches are bounded by item count and estimated tokens. A batch the
    provider rejects as invalid is halved and retried, so no text is ever
    dropped. Outstanding provider calls are bounded by a semaphore.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        max_batch_size: int = 128,
        max_batch_tokens: int = 100_000,
        max_input_chars: Optional[int] = 50_000,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrency: int = 1,
        batch_delay: float = 0.0,
        usage_sink: Optional[UsageSink] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Initialize embedder.

        Args:
            provider: Embedding service client
            max_batch_size: Maximum texts per provider call
            max_batch_tokens: Maximum estimated tokens per provider call
            max_input_chars: Texts are cut to this length before embedding
            retry_policy: Backoff for transient provider errors
            max_concurrency: Maximum provider calls in flight
            batch_delay: Pause after each batch, to stay under provider rate limits
            usage_sink: Receives one ``TokenUsage`` per successful call
            metrics: Metrics collector; the process-wide one by default
        """
        if max_batch_size <= 0 or max_batch_tokens <= 0 or max_concurrency <= 0:
            raise ValueError("Batch limits and concurrency must be positive")

        self.provider = provider
        self.max_batch_size = max_batch_size
        self.max_batch_tokens = max_batch_tokens
        self.max_input_chars = max_input_chars
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=5, base_delay=2.0)
        self.max_concurrency = max_concurrency
        self.batch_delay = batch_delay
        self.usage_sink = usage_sink
        self.metrics = metrics or get_metrics_collector()
        self.total_tokens = 0
        self._semaphore = asyncio.Semaphore(max_concurrency)

    def plan_batches(self, texts: Sequence[str]) -> List[List[str]]:
        """Split ``texts`` into provider-sized batches, preserving order.

        A single text above the token limit becomes a batch of its own.
        """
        batches: List[List[str]] = []
        current: List[str] = []
        current_tokens = 0

        for text in texts:
            tokens = estimate_tokens(self._prepare(text))
            if current and (
                len(current) >= self.max_batch_size
                or current_tokens + tokens > self.max_batch_tokens
            ):
                batches.append(current)
                current, current_tokens = [], 0
            current.append(text)
            current_tokens += tokens

        if current:
            batches.append(current)
        return batches

    def _prepare(self, text: str) -> str:
        if self.max_input_chars and len(text) > self.max_input_chars:
            return text[:self.max_input_chars]
        return text

    async def embed_batch(
        self,
        texts: List[str],
        input_type: str = "document",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> List[List[float]]:
        """Embed one planned batch, retrying transient failures.

        Args:
            texts: Batch from ``plan_batches``
            input_type: ``document`` for indexed chunks, ``query`` for searches
            sleep: Awaitable used for backoff waits

        Raises:
            RetryExhaustedError: Transient failures outlasted the retry budget
            EmbeddingError: Non-retryable provider failure
        """
        if not texts:
            return []

        prepared = [self._prepare(text) for text in texts]

        try:
            async with self._semaphore:
                result = await retry_async(
                    lambda: self.provider.embed(prepared, input_type=input_type),
                    self.retry_policy,
                    description=f"Embedding batch of {len(prepared)}",
                    retry_on=(TransientError,),
                    sleep=sleep,
                    on_retry=lambda attempt, error, delay: self.metrics.increment_counter(
                        RETRIES, labels={"operation": "embed"}
                    ),
                )
        except EmbeddingValidationError:
            if len(texts) == 1:
                raise
            middle = len(texts) // 2
            logger.info(f"Provider rejected batch of {len(texts)}, splitting in two")
            first = await self.embed_batch(texts[:middle], input_type, sleep)
            second = await self.embed_batch(texts[middle:], input_type, sleep)
            return first + second

        if len(result.vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(result.vectors)} vectors for {len(texts)} texts"
            )

        tokens = result.total_tokens or sum(estimate_tokens(t) for t in prepared)
        self._record_usage(input_type, tokens, len(texts))

        if self.batch_delay:
            await sleep(self.batch_delay)

        return result.vectors

    async def embed_batches(
        self,
        batches: Sequence[List[str]],
        input_type: str = "document",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> List[List[List[float]]]:
        """Embed batches concurrently; the first failure cancels the others.

        Returns:
            One list of vectors per batch, in batch order
        """
        tasks = [asyncio.ensure_future(self.embed_batch(batch, input_type, sleep)) for batch in batches]
        try:
            return list(await asyncio.gather(*tasks))
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.info(f"Cancelled {len(pending)} outstanding embedding batches")

    async def embed(self, texts: Sequence[str], input_type: str = "document") -> List[List[float]]:
        """Embed any number of texts, returning vectors in input order."""
        results = await self.embed_batches(self.plan_batches(texts), input_type)
        return [vector for batch_vectors in results for vector in batch_vectors]

    async def embed_query(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Query text cannot be empty")
        vectors = await self.embed_batch([text], input_type="query")
        return vectors[0]

    def _record_usage(self, input_type: str, tokens: int, count: int) -> None:
        self.total_tokens += tokens
        self.metrics.increment_counter(EMBEDDING_BATCHES)
        self.metrics.increment_counter(EMBEDDING_TOKENS, tokens)

        if self.usage_sink is None:
            return

        usage = TokenUsage(
            operation="index" if input_type == "document" else input_type,
            model=getattr(self.provider, "model_id", "unknown"),
            tokens=tokens,
            texts=count,
        )
        try:
            self.usage_sink(usage)
        except Exception as e:
            # Usage reporting never fails the embedding call
            logger.warning(f"Token usage sink failed: {e}")
