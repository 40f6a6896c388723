"""Tests for the Bedrock embedding and rerank providers."""

import io
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, NoCredentialsError, ReadTimeoutError

from repolens.exceptions import TransientError
from repolens.llm import (
    BedrockEmbeddingProvider,
    BedrockRerankProvider,
    EmbeddingAuthenticationError,
    EmbeddingRateLimitError,
    EmbeddingServiceError,
    EmbeddingTimeoutError,
    EmbeddingValidationError,
)


def client_error(code: str, message: str = "error") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "InvokeModel")


@pytest.fixture
def bedrock_runtime():
    """Mock bedrock-runtime client answering with fixed embeddings."""
    client = MagicMock()

    def invoke_model(**kwargs):
        text = json.loads(kwargs["body"])["inputText"]
        payload = {"embedding": [float(len(text)), 1.0], "inputTextTokenCount": len(text.split())}
        return {"body": io.BytesIO(json.dumps(payload).encode())}

    client.invoke_model.side_effect = invoke_model
    return client


@pytest.fixture
def provider(bedrock_runtime):
    return BedrockEmbeddingProvider(
        region="us-east-1",
        model_id="amazon.titan-embed-text-v2:0",
        dimension=256,
        timeout=30,
        client=bedrock_runtime,
    )


class TestBedrockEmbeddingProvider:
    """Test cases for BedrockEmbeddingProvider."""

    @pytest.mark.asyncio
    async def test_embed(self, provider, bedrock_runtime):
        result = await provider.embed(["hello world", "hi"])

        assert result.vectors == [[11.0, 1.0], [2.0, 1.0]]
        assert result.total_tokens == 3
        assert bedrock_runtime.invoke_model.call_count == 2

        call = bedrock_runtime.invoke_model.call_args_list[0].kwargs
        assert call["modelId"] == "amazon.titan-embed-text-v2:0"
        assert json.loads(call["body"]) == {"inputText": "hello world", "dimensions": 256, "normalize": True}

    @pytest.mark.asyncio
    async def test_v1_body_has_no_dimensions(self, bedrock_runtime):
        provider = BedrockEmbeddingProvider(model_id="amazon.titan-embed-text-v1", client=bedrock_runtime)

        await provider.embed(["hello"])

        body = json.loads(bedrock_runtime.invoke_model.call_args.kwargs["body"])
        assert body == {"inputText": "hello"}

    @pytest.mark.asyncio
    async def test_client_error_mapping(self, provider, bedrock_runtime):
        test_cases = [
            ("ThrottlingException", EmbeddingRateLimitError),
            ("AccessDeniedException", EmbeddingAuthenticationError),
            ("ValidationException", EmbeddingValidationError),
            ("ModelTimeoutException", EmbeddingTimeoutError),
            ("InternalServerException", EmbeddingServiceError),
        ]

        for code, expected in test_cases:
            bedrock_runtime.invoke_model.side_effect = client_error(code)
            with pytest.raises(expected):
                await provider.embed(["text"])

    @pytest.mark.asyncio
    async def test_transport_error_mapping(self, provider, bedrock_runtime):
        bedrock_runtime.invoke_model.side_effect = ReadTimeoutError(endpoint_url="https://bedrock")
        with pytest.raises(EmbeddingTimeoutError):
            await provider.embed(["text"])

        bedrock_runtime.invoke_model.side_effect = NoCredentialsError()
        with pytest.raises(EmbeddingAuthenticationError):
            await provider.embed(["text"])

    def test_retryable_classification(self):
        assert issubclass(EmbeddingRateLimitError, TransientError)
        assert issubclass(EmbeddingTimeoutError, TransientError)
        assert issubclass(EmbeddingServiceError, TransientError)
        assert not issubclass(EmbeddingAuthenticationError, TransientError)
        assert not issubclass(EmbeddingValidationError, TransientError)


class TestBedrockRerankProvider:
    """Test cases for BedrockRerankProvider."""

    @pytest.fixture
    def agent_runtime(self):
        client = MagicMock()
        client.rerank.return_value = {
            "results": [
                {"index": 0, "relevanceScore": 0.25},
                {"index": 2, "relevanceScore": 0.875},
            ]
        }
        return client

    @pytest.fixture
    def reranker(self, agent_runtime):
        return BedrockRerankProvider(
            region="eu-west-1",
            model_id="amazon.rerank-v1:0",
            timeout=30,
            client=agent_runtime,
        )

    @pytest.mark.asyncio
    async def test_rerank_request(self, reranker, agent_runtime):
        results = await reranker.rerank("where is login?", ["a", "b", "c"], top_k=5)

        assert [(r.index, r.relevance_score) for r in results] == [(2, 0.875), (0, 0.25)]

        request = agent_runtime.rerank.call_args.kwargs
        assert request["queries"] == [{"type": "TEXT", "textQuery": {"text": "where is login?"}}]
        assert [s["inlineDocumentSource"]["textDocument"]["text"] for s in request["sources"]] == ["a", "b", "c"]
        config = request["rerankingConfiguration"]["bedrockRerankingConfiguration"]
        assert config["numberOfResults"] == 3
        assert config["modelConfiguration"]["modelArn"] == (
            "arn:aws:bedrock:eu-west-1::foundation-model/amazon.rerank-v1:0"
        )

    @pytest.mark.asyncio
    async def test_no_documents(self, reranker, agent_runtime):
        assert await reranker.rerank("query", [], top_k=5) == []
        agent_runtime.rerank.assert_not_called()

    @pytest.mark.asyncio
    async def test_errors_are_mapped(self, reranker, agent_runtime):
        agent_runtime.rerank.side_effect = client_error("ThrottlingException")

        with pytest.raises(EmbeddingRateLimitError):
            await reranker.rerank("query", ["a"], top_k=1)
