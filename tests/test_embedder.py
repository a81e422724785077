from types import SimpleNamespace

import pytest
from openai import AsyncAzureOpenAI, AsyncOpenAI

from docchat.core.config import Settings
from docchat.rag.completion import OpenAICompletion
from docchat.rag.embedder import Embedder, create_openai_client


class FakeEmbeddingsAPI:
    def __init__(self):
        self.requests = []

    async def create(self, input, model):
        self.requests.append(input)
        texts = input if isinstance(input, list) else [input]
        return SimpleNamespace(
            data=[SimpleNamespace(embedding=[float(len(t)), 1.0]) for t in texts]
        )


class FakeChatAPI:
    def __init__(self):
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="an answer"))],
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=2),
        )


@pytest.fixture
def fake_client():
    return SimpleNamespace(
        embeddings=FakeEmbeddingsAPI(),
        chat=SimpleNamespace(completions=FakeChatAPI()),
    )


async def test_embed_documents_batches_and_keeps_order(fake_client):
    embedder = Embedder(fake_client, dimensions=2, batch_size=2)

    vectors = await embedder.embed_documents(["a", "bb", "ccc"])

    assert vectors == [[1.0, 1.0], [2.0, 1.0], [3.0, 1.0]]
    assert fake_client.embeddings.requests == [["a", "bb"], ["ccc"]]


async def test_empty_texts_get_zero_vectors_without_api_calls(fake_client):
    embedder = Embedder(fake_client, dimensions=2)

    vectors = await embedder.embed_documents(["", "  ", "abc"])

    assert vectors == [[0.0, 0.0], [0.0, 0.0], [3.0, 1.0]]
    assert fake_client.embeddings.requests == [["abc"]]
    assert await embedder.embed_documents([]) == []


async def test_embed_query(fake_client):
    embedder = Embedder(fake_client, dimensions=2)

    assert await embedder.embed_query("  four ") == [4.0, 1.0]
    with pytest.raises(ValueError):
        await embedder.embed_query("   ")


async def test_completion(fake_client):
    completion = OpenAICompletion(fake_client, model="gpt-4o-mini", temperature=0.0, max_tokens=64)

    assert await completion.complete("prompt text") == "an answer"
    request = fake_client.chat.completions.requests[0]
    assert request["messages"] == [{"role": "user", "content": "prompt text"}]
    assert request["max_tokens"] == 64


def test_client_selection():
    openai_client = create_openai_client(Settings(_env_file=None, openai_api_key="sk-test"))
    azure_client = create_openai_client(
        Settings(
            _env_file=None,
            azure_openai_endpoint="https://example.openai.azure.com",
            azure_openai_api_key="key",
        )
    )

    assert isinstance(openai_client, AsyncOpenAI)
    assert not isinstance(openai_client, AsyncAzureOpenAI)
    assert isinstance(azure_client, AsyncAzureOpenAI)
