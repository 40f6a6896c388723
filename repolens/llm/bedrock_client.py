"""AWS Bedrock embedding and reranking providers."""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    NoCredentialsError,
    ReadTimeoutError,
)

from repolens.config import get_settings
from repolens.llm.exceptions import (
    EmbeddingAuthenticationError,
    EmbeddingError,
    EmbeddingRateLimitError,
    EmbeddingServiceError,
    EmbeddingTimeoutError,
    EmbeddingValidationError,
)
from repolens.llm.provider import EmbeddingResult, RerankResult

logger = logging.getLogger(__name__)

THROTTLING_CODES = {"ThrottlingException", "TooManyRequestsException", "ServiceQuotaExceededException"}
AUTH_CODES = {"AccessDeniedException", "UnrecognizedClientException", "ExpiredTokenException"}


def map_client_error(error: ClientError) -> EmbeddingError:
    """Translate a Bedrock ``ClientError`` into the provider error family."""
    error_code = error.response.get('Error', {}).get('Code', 'Unknown')
    error_message = error.response.get('Error', {}).get('Message', str(error))

    if error_code in THROTTLING_CODES:
        return EmbeddingRateLimitError(f"Rate limit exceeded: {error_message}")
    if error_code in AUTH_CODES:
        return EmbeddingAuthenticationError(f"Bedrock access denied ({error_code}): {error_message}")
    if error_code == 'ValidationException':
        return EmbeddingValidationError(f"Bedrock rejected input: {error_message}")
    if error_code == 'ModelTimeoutException':
        return EmbeddingTimeoutError(f"Bedrock model timed out: {error_message}")
    return EmbeddingServiceError(f"Bedrock service error ({error_code}): {error_message}")


async def _call_bedrock(operation: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    """Run a blocking boto3 call in the default executor, mapping its errors."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, operation)
    except ClientError as e:
        raise map_client_error(e) from e
    except (ReadTimeoutError, ConnectTimeoutError) as e:
        raise EmbeddingTimeoutError(f"Bedrock request timed out: {e}") from e
    except NoCredentialsError as e:
        raise EmbeddingAuthenticationError(f"No AWS credentials available: {e}") from e
    except BotoCoreError as e:
        raise EmbeddingServiceError(f"Boto3 error: {e}") from e


def _client_config(region: str, timeout: int, max_retries: int) -> Config:
    return Config(
        region_name=region,
        retries={'max_attempts': max_retries, 'mode': 'standard'},
        read_timeout=timeout,
        connect_timeout=10,
    )


class BedrockEmbeddingProvider:
    """Titan text embeddings through ``bedrock-runtime``.

    Titan embeds one text per request, so a batch is a sequence of
    ``invoke_model`` calls run in the default executor.
    """

    def __init__(
        self,
        region: Optional[str] = None,
        model_id: Optional[str] = None,
        dimension: Optional[int] = None,
        timeout: Optional[int] = None,
        max_retries: int = 2,
        client: Any = None,
    ):
        """Initialize Bedrock embedding provider.

        Args:
            region: AWS region for Bedrock
            model_id: Embedding model ID
            dimension: Output vector size (Titan v2 accepts 256, 512 or 1024)
            timeout: Read timeout in seconds
            max_retries: botocore-level retries before errors reach the Embedder
            client: Pre-built ``bedrock-runtime`` client, mainly for tests
        """
        settings = get_settings()

        self.region = region or settings.bedrock_region
        self.model_id = model_id or settings.bedrock_embed_model_id
        self.dimension = dimension or settings.embedding_dimensions
        self.timeout = timeout or settings.bedrock_timeout_seconds

        if client is not None:
            self.bedrock_runtime = client
            return

        config = _client_config(self.region, self.timeout, max_retries)

        try:
            self.bedrock_runtime = boto3.client('bedrock-runtime', config=config)
            logger.info(f"Initialized Bedrock embedding client for region {self.region}")
        except BotoCoreError as e:
            raise EmbeddingError(f"Failed to initialize Bedrock client: {e}") from e

    def _request_body(self, text: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {"inputText": text}
        if "titan-embed-text-v2" in self.model_id:
            body["dimensions"] = self.dimension
            body["normalize"] = True
        return body

    async def embed(self, texts: List[str], input_type: str = "document") -> EmbeddingResult:
        """Embed ``texts`` in order.

        Raises:
            EmbeddingRateLimitError: Bedrock throttled the request
            EmbeddingAuthenticationError: Credentials rejected
            EmbeddingValidationError: Input rejected (too long, empty)
            EmbeddingTimeoutError: Request timed out
            EmbeddingServiceError: Any other Bedrock failure
        """
        start_time = time.time()
        vectors: List[List[float]] = []
        total_tokens = 0

        for text in texts:
            body = json.dumps(self._request_body(text))
            response = await _call_bedrock(
                lambda: self.bedrock_runtime.invoke_model(
                    modelId=self.model_id,
                    body=body,
                    contentType='application/json',
                    accept='application/json'
                )
            )

            response_body = json.loads(response['body'].read())
            vectors.append(response_body.get('embedding', []))
            total_tokens += response_body.get('inputTextTokenCount', 0)

        logger.debug(f"Embedded {len(texts)} texts in {time.time() - start_time:.2f}s")
        return EmbeddingResult(vectors=vectors, total_tokens=total_tokens)


class BedrockRerankProvider:
    """Document reranking through the ``bedrock-agent-runtime`` Rerank API."""

    def __init__(
        self,
        region: Optional[str] = None,
        model_id: Optional[str] = None,
        timeout: Optional[int] = None,
        max_retries: int = 2,
        client: Any = None,
    ):
        """Initialize Bedrock rerank provider.

        Args:
            region: AWS region for Bedrock
            model_id: Reranking model ID, e.g. ``amazon.rerank-v1:0``
            timeout: Read timeout in seconds
            max_retries: botocore-level retries
            client: Pre-built ``bedrock-agent-runtime`` client, mainly for tests
        """
        settings = get_settings()

        self.region = region or settings.bedrock_region
        self.model_id = model_id or settings.bedrock_rerank_model_id
        self.timeout = timeout or settings.bedrock_timeout_seconds

        if client is not None:
            self.agent_runtime = client
            return

        try:
            self.agent_runtime = boto3.client(
                'bedrock-agent-runtime', config=_client_config(self.region, self.timeout, max_retries)
            )
            logger.info(f"Initialized Bedrock rerank client for region {self.region}")
        except BotoCoreError as e:
            raise EmbeddingError(f"Failed to initialize Bedrock client: {e}") from e

    @property
    def model_arn(self) -> str:
        return f"arn:aws:bedrock:{self.region}::foundation-model/{self.model_id}"

    async def rerank(self, query: str, documents: List[str], top_k: int) -> List[RerankResult]:
        """Relevance of each document to ``query``, best first, at most ``top_k``."""
        if not documents:
            return []

        request = {
            'queries': [{'type': 'TEXT', 'textQuery': {'text': query}}],
            'sources': [
                {
                    'type': 'INLINE',
                    'inlineDocumentSource': {'type': 'TEXT', 'textDocument': {'text': document}},
                }
                for document in documents
            ],
            'rerankingConfiguration': {
                'type': 'BEDROCK_RERANKING_MODEL',
                'bedrockRerankingConfiguration': {
                    'numberOfResults': min(top_k, len(documents)),
                    'modelConfiguration': {'modelArn': self.model_arn},
                },
            },
        }
        response = await _call_bedrock(lambda: self.agent_runtime.rerank(**request))

        results = [
            RerankResult(index=item['index'], relevance_score=float(item['relevanceScore']))
            for item in response.get('results', [])
        ]
        results.sort(key=lambda r: -r.relevance_score)
        logger.debug(f"Reranked {len(documents)} documents with {self.model_id}")
        return results
