"""Shared fixtures for the Book2AI test suite."""

import asyncio
import json
import math
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from book2ai.pack_store import PackStore


def unit_vector(cos: float) -> list:
    """A 3-d unit vector whose cosine with [1, 0, 0] is ``cos``."""
    return [cos, math.sqrt(max(0.0, 1.0 - cos * cos)), 0.0]


QUERY_VECTOR = [1.0, 0.0, 0.0]

# Stored out of score order on purpose: c1 0.91, c2 0.85, c3 0.80, c4 0.10
SAMPLE_CHUNKS = [
    {"id": "c3", "text": "Test campaigns on a small scale before spending big.", "page": 31},
    {"id": "c1", "text": "Hopkins insists every advertisement be tested with keyed coupons.", "page": 12},
    {"id": "c4", "text": "A note on typography in newspaper columns.", "page": 40},
    {"id": "c2", "text": "Testing settles in a few weeks what arguments cannot settle in years.", "page": 18},
]
SAMPLE_EMBEDDINGS = {
    "model": "fake-embed",
    "dim": 3,
    "ids": ["c3", "c1", "c4", "c2"],
    "vectors": [unit_vector(0.80), unit_vector(0.91), unit_vector(0.10), unit_vector(0.85)],
}
SAMPLE_QA = [
    {"id": "qa1", "q": "Why should I test ads?", "a": "Because testing replaces guesswork with facts.", "source_chunk": "c2"},
]


def write_pack(root: Path, pack_id: str, chunks=None, embeddings=None, qa=None, manifest=None) -> Path:
    """Write pack files under ``root/pack_id``; None means the file is left out."""
    base = root / pack_id
    base.mkdir(parents=True, exist_ok=True)
    if chunks is not None:
        (base / "chunks.jsonl").write_text("\n".join(json.dumps(c) for c in chunks) + "\n", encoding="utf-8")
    if embeddings is not None:
        (base / "embeddings.json").write_text(json.dumps(embeddings), encoding="utf-8")
    if qa is not None:
        (base / "qa.jsonl").write_text("\n".join(json.dumps(p) for p in qa) + "\n", encoding="utf-8")
    if manifest is not None:
        (base / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
    return base


_loop = None


@pytest.fixture(autouse=True)
def _event_loop():
    """One event loop per test, so async generators survive between ``run`` calls."""
    global _loop
    _loop = asyncio.new_event_loop()
    yield _loop
    try:
        _loop.run_until_complete(_loop.shutdown_asyncgens())
    finally:
        _loop.close()
        _loop = None


def run(coro):
    """Drive a coroutine to completion from a synchronous test."""
    if _loop is None:
        return asyncio.run(coro)
    return _loop.run_until_complete(coro)


async def collect_events(stream):
    return [event async for event in stream.events()]


class FakeEmbedder:
    """Embedder returning canned vectors: exact text matches, else ``default``."""

    def __init__(self, vectors=None, default=None, model="fake-embed"):
        self.vectors = dict(vectors or {})
        self.default = default if default is not None else QUERY_VECTOR
        self.model = model
        self.calls = []
        self.models = []

    async def embed(self, texts, model=None):
        self.calls.append(list(texts))
        self.models.append(model or self.model)
        return [self.vectors.get(text, self.default) for text in texts]

    async def embed_query(self, text, model=None):
        return (await self.embed([text], model=model))[0]


class FakeCompleter:
    """
    Completer replaying canned deltas.

    ``fail_on_open`` raises when the stream is opened; ``fail_after`` raises
    after that many deltas. ``reads`` counts deltas pulled from upstream and
    ``closed`` records whether the stream was released.
    """

    def __init__(self, deltas=("Testing ", "beats ", "guessing [#1]."), fail_on_open=None,
                 fail_after=None, fail_with=None):
        self.deltas = list(deltas)
        self.fail_on_open = fail_on_open
        self.fail_after = fail_after
        self.fail_with = fail_with
        self.prompts = []
        self.reads = 0
        self.closed = False

    @asynccontextmanager
    async def stream(self, prompt):
        self.prompts.append(prompt)
        if self.fail_on_open is not None:
            raise self.fail_on_open
        try:
            yield self._deltas()
        finally:
            self.closed = True

    async def _deltas(self):
        for i, delta in enumerate(self.deltas):
            if self.fail_after is not None and i == self.fail_after:
                raise self.fail_with
            self.reads += 1
            yield delta
            await asyncio.sleep(0)


@pytest.fixture
def packs_root(tmp_path):
    root = tmp_path / "packs"
    root.mkdir()
    return root


@pytest.fixture
def sample_pack(packs_root):
    """A four-chunk pack with one curated Q&A pair, id ``hopkins``."""
    write_pack(
        packs_root,
        "hopkins",
        chunks=SAMPLE_CHUNKS,
        embeddings=SAMPLE_EMBEDDINGS,
        qa=SAMPLE_QA,
        manifest={"id": "hopkins", "title": "Scientific Advertising"},
    )
    return "hopkins"


@pytest.fixture
def store(packs_root, tmp_path):
    """An isolated pack store; the legacy directory does not exist."""
    return PackStore(packs_root=packs_root, legacy_dir=tmp_path / "no-legacy-pack")


@pytest.fixture
def far_qa_embedder():
    """Embedder that places the curated question far from every query."""
    return FakeEmbedder(vectors={SAMPLE_QA[0]["q"]: [0.0, 0.0, 1.0]})
