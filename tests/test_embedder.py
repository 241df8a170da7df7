"""
Tests for the OpenAI-backed embedder and completion stream, with the client mocked.
"""

import json
import unittest.mock
from contextlib import asynccontextmanager
from types import SimpleNamespace

import httpx
import openai
import pytest

from book2ai.embedder import QueryEmbedder
from book2ai.errors import UpstreamError
from book2ai.llm import SYSTEM_PROMPT, ChatCompleter, upstream_error

from conftest import run

EMBED_URL = "https://api.openai.com/v1/embeddings"
CHAT_URL = "https://api.openai.com/v1/chat/completions"


def status_error(status: int, body: str, url: str = EMBED_URL) -> openai.APIStatusError:
    response = httpx.Response(status, text=body, request=httpx.Request("POST", url))
    return openai.APIStatusError(f"Error code: {status}", response=response, body=None)


def embedding_client(dim: int = 3):
    """Mock client whose embeddings.create returns one vector per input, tagged by position."""
    client = unittest.mock.MagicMock()

    async def create(model, input, **kwargs):
        return SimpleNamespace(data=[SimpleNamespace(embedding=[float(len(text))] * dim) for text in input])

    client.embeddings.create = unittest.mock.AsyncMock(side_effect=create)
    return client


class TestQueryEmbedder:
    """Test cases for QueryEmbedder."""

    def test_one_vector_per_input_in_order(self):
        client = embedding_client()
        embedder = QueryEmbedder(client=client, model="text-embedding-3-small")

        vectors = run(embedder.embed(["a", "bbb", "cc"]))

        assert vectors == [[1.0] * 3, [3.0] * 3, [2.0] * 3]
        client.embeddings.create.assert_awaited_once_with(model="text-embedding-3-small", input=["a", "bbb", "cc"])

    def test_batches_of_64(self):
        client = embedding_client()
        embedder = QueryEmbedder(client=client)
        texts = [f"question {i}" for i in range(150)]

        vectors = run(embedder.embed(texts))

        assert len(vectors) == 150
        batch_sizes = [len(call.kwargs["input"]) for call in client.embeddings.create.await_args_list]
        assert batch_sizes == [64, 64, 22]

    def test_empty_input_makes_no_call(self):
        client = embedding_client()
        assert run(QueryEmbedder(client=client).embed([])) == []
        client.embeddings.create.assert_not_awaited()

    def test_embed_query(self):
        assert run(QueryEmbedder(client=embedding_client(2)).embed_query("four")) == [4.0, 4.0]

    def test_model_override(self):
        client = embedding_client()
        embedder = QueryEmbedder(client=client, model="text-embedding-3-small")

        run(embedder.embed_query("q", model="text-embedding-3-large"))
        run(embedder.embed(["q"]))

        models = [call.kwargs["model"] for call in client.embeddings.create.await_args_list]
        assert models == ["text-embedding-3-large", "text-embedding-3-small"]

    def test_status_error_becomes_upstream_error(self):
        client = unittest.mock.MagicMock()
        client.embeddings.create = unittest.mock.AsyncMock(side_effect=status_error(429, "rate limited"))

        with pytest.raises(UpstreamError) as excinfo:
            run(QueryEmbedder(client=client).embed(["q"]))

        assert excinfo.value.status == 429
        assert excinfo.value.body == "rate limited"
        assert excinfo.value.status_code == 502

    def test_connection_error_becomes_upstream_error(self):
        client = unittest.mock.MagicMock()
        client.embeddings.create = unittest.mock.AsyncMock(
            side_effect=openai.APIConnectionError(request=httpx.Request("POST", EMBED_URL))
        )

        with pytest.raises(UpstreamError) as excinfo:
            run(QueryEmbedder(client=client).embed_query("q"))

        assert excinfo.value.status is None


class FakeRawResponse:
    """Stand-in for the streamed HTTP response: replays SSE lines, tracks reads and closing."""

    def __init__(self, lines, fail_after=None):
        self.lines = lines
        self.fail_after = fail_after
        self.reads = 0
        self.closed = False

    async def iter_lines(self):
        for i, line in enumerate(self.lines):
            if self.fail_after is not None and i == self.fail_after:
                raise httpx.ReadError("connection reset")
            self.reads += 1
            yield line


def completion_client(raw=None, open_error=None):
    client = unittest.mock.MagicMock()

    @asynccontextmanager
    async def create(**kwargs):
        if open_error is not None:
            raise open_error
        try:
            yield raw
        finally:
            raw.closed = True

    client.chat.completions.with_streaming_response.create = unittest.mock.MagicMock(side_effect=create)
    return client


def sse(content):
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]})


class TestChatCompleter:
    """Test cases for ChatCompleter.stream."""

    def test_relays_deltas_and_closes(self):
        raw = FakeRawResponse([sse("Test "), "", sse("early [#1]."), "data: [DONE]"])
        client = completion_client(raw)
        completer = ChatCompleter(client=client, model="gpt-4o-mini", temperature=0.2)

        async def go():
            async with completer.stream("PROMPT") as deltas:
                return [d async for d in deltas]

        assert run(go()) == ["Test ", "early [#1]."]
        assert raw.closed

        kwargs = client.chat.completions.with_streaming_response.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"] == [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "PROMPT"},
        ]

    def test_error_on_open(self):
        client = completion_client(open_error=status_error(500, "overloaded", CHAT_URL))

        async def go():
            async with ChatCompleter(client=client).stream("PROMPT"):
                pass

        with pytest.raises(UpstreamError) as excinfo:
            run(go())
        assert excinfo.value.status == 500
        assert "overloaded" in str(excinfo.value)

    def test_error_mid_stream(self):
        raw = FakeRawResponse([sse("one"), sse("two"), sse("three")], fail_after=2)
        client = completion_client(raw)
        received = []

        async def go():
            async with ChatCompleter(client=client).stream("PROMPT") as deltas:
                async for delta in deltas:
                    received.append(delta)

        with pytest.raises(UpstreamError):
            run(go())
        assert received == ["one", "two"]
        assert raw.closed

    def test_leaving_early_stops_reading(self):
        raw = FakeRawResponse([sse(f"t{i} ") for i in range(100)])
        client = completion_client(raw)

        async def go():
            async with ChatCompleter(client=client).stream("PROMPT") as deltas:
                async for delta in deltas:
                    if delta == "t1 ":
                        break

        run(go())
        assert raw.reads == 2
        assert raw.closed


def test_upstream_error_message():
    err = upstream_error("Embeddings", status_error(401, '{"error": "bad key"}'))
    assert err.status == 401
    assert err.message == 'Embeddings failed: 401 {"error": "bad key"}'
