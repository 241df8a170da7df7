"""
Question-answering module that combines retrieval with LLM generation.

A request moves through validation, pack loading, query embedding, the
curated Q&A check, chunk retrieval and prompt assembly in
``AnswerOrchestrator.start``. Every failure up to that point is raised
before a single byte has been sent. The returned ``AnswerStream`` then
relays the answer as events and always ends with exactly one ``done`` or
``error`` event.
"""

import logging
import re
from contextlib import AsyncExitStack
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple

from . import settings
from .errors import Book2AIError, EmbeddingMismatchError, PackEmptyError, ValidationError
from .models import AnswerResponse, Chunk, ChunkEvent, DoneEvent, ErrorEvent, MetaEvent, QAPair, Source
from .pack_store import Pack, PackStore
from .ranker import QaMatch, ScoredChunk, best_match, top_k
from .streaming import stream_windows, window_words

logger = logging.getLogger(__name__)

NO_SOURCES_ANSWER = "I couldn't find any relevant information in this pack to answer your question."

PROMPT_TEMPLATE = """You are a careful assistant. Answer the user's question using ONLY the sources below. Quote or paraphrase and cite by [#n id=...] when relevant.

Question:
{question}

Sources:
{sources}

Answer (with brief citations like [#1], [#2] where used):"""

_BLANK_RUNS = re.compile(r"\n{3,}")


def clamp_k(k: Optional[int]) -> int:
    """Clamp the requested result count to [K_MIN, K_MAX]."""
    if k is None:
        k = settings.DEFAULT_K
    return max(settings.K_MIN, min(settings.K_MAX, int(k)))


def prepare_source_text(text: str, limit: int = None) -> str:
    """Collapse runs of blank lines and cut the text to ``limit`` characters."""
    limit = settings.SOURCE_CHAR_LIMIT if limit is None else limit
    return _BLANK_RUNS.sub("\n\n", text)[:limit]


def build_prompt(question: str, chunks: List[Chunk]) -> str:
    """
    Build the grounded prompt.

    Sources are labelled ``[#n id=<chunk id>]`` with n starting at 1; the UI
    renders ``[#n]`` tokens in the answer as citations, so this label format
    must not change.
    """
    blocks = [
        f"[#{i} id={chunk.id}]\n{prepare_source_text(chunk.text)}"
        for i, chunk in enumerate(chunks, 1)
    ]
    return PROMPT_TEMPLATE.format(question=question, sources="\n\n".join(blocks))


def make_source(chunk: Optional[Chunk], chunk_id: str, score: Optional[float]) -> Source:
    text = None
    page = None
    if chunk is not None:
        page = chunk.page
        text = chunk.text[:settings.SNIPPET_CHARS] + "..." if len(chunk.text) > settings.SNIPPET_CHARS else chunk.text
    return Source(id=chunk_id, page=page, score=score, text=text)


def resolve_hits(pack: Pack, hits: List[ScoredChunk]) -> Tuple[List[Chunk], List[Source]]:
    """Look up the chunks behind retrieval hits, dropping ids missing from the corpus."""
    chunks = []
    sources = []
    for hit in hits:
        chunk = pack.get_chunk(hit.id)
        if chunk is None:
            logger.warning(f"Pack {pack.id}: embedding row {hit.index} points at unknown chunk {hit.id}")
            continue
        chunks.append(chunk)
        sources.append(make_source(chunk, chunk.id, hit.score))
    return chunks, sources


def curated_answer_text(match: QaMatch, qa: QAPair) -> str:
    return f"Matched author Q&A (score {match.score:.2f}). {qa.answer}"


class StreamState(Enum):
    """Lifecycle of an ``AnswerStream``."""
    READY = "ready"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AnswerStream:
    """
    One request's answer, ready to be relayed.

    ``events`` yields ``meta``, zero or more ``chunk`` events and then exactly
    one ``done`` or ``error`` event. Closing the generator early (the client
    went away) closes the upstream connection without draining it.
    """

    def __init__(self, question: str, sources: List[Source], deltas: AsyncIterator[str],
                 closer: Callable[[], Awaitable[None]], curated: bool = False):
        self.question = question
        self.sources = sources
        self.curated = curated
        self.state = StreamState.READY
        self.error: Optional[Book2AIError] = None
        self._deltas = deltas
        self._closer = closer
        self._closed = False

    async def events(self) -> AsyncIterator:
        if self.state is not StreamState.READY:
            raise RuntimeError(f"Answer stream already consumed (state: {self.state.value})")
        self.state = StreamState.STREAMING
        try:
            yield MetaEvent(q=self.question)
            try:
                async for delta in self._deltas:
                    yield ChunkEvent(delta=delta)
            except Book2AIError as e:
                logger.error(f"Answer stream failed mid-way: {e}")
                self.error = e
            except Exception as e:
                logger.exception("Unexpected failure while relaying the answer")
                self.error = Book2AIError(f"internal error: {e}")

            if self.error is not None:
                self.state = StreamState.FAILED
                yield ErrorEvent(message=self.error.message)
            else:
                self.state = StreamState.DONE
                yield DoneEvent(sources=self.sources)
        finally:
            if self.state is StreamState.STREAMING:
                self.state = StreamState.CANCELLED
                logger.info(f"Answer stream cancelled for '{self.question[:50]}'")
            await self.aclose()

    async def aclose(self) -> None:
        """Release the upstream connection; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._closer()

    async def collect(self) -> AnswerResponse:
        """
        Drain the stream into a non-streaming answer.

        Raises:
            Book2AIError: If the stream ended with an error event
        """
        parts = []
        events = self.events()
        try:
            async for event in events:
                if isinstance(event, ChunkEvent):
                    parts.append(event.delta)
                elif isinstance(event, ErrorEvent):
                    raise self.error
        finally:
            await events.aclose()
        return AnswerResponse(answer="".join(parts), sources=self.sources)


class AnswerOrchestrator:
    """Ties the pack store, embedder, ranker and completion stream into one request lifecycle."""

    def __init__(self, store: PackStore, embedder, completer, qa_threshold: float = None,
                 window_size: int = None, interval: float = None):
        self.store = store
        self.embedder = embedder
        self.completer = completer
        self.qa_threshold = settings.QA_MATCH_THRESHOLD if qa_threshold is None else qa_threshold
        self.window_size = window_size or settings.STREAM_WINDOW_WORDS
        self.interval = settings.STREAM_INTERVAL if interval is None else interval

    def load_pack(self, pack_id: Optional[str]) -> Pack:
        pack_id = (pack_id or settings.DEFAULT_PACK_ID).strip()
        pack = self.store.get_or_load(pack_id)
        if not pack.has_embeddings:
            raise PackEmptyError(pack_id)
        return pack

    async def ensure_qa_embeddings(self, pack: Pack) -> None:
        """Embed the pack's curated questions once; later calls reuse the cached vectors."""
        model = pack.embedding_model
        if pack.qa_embeddings is not None and pack.qa_embed_model == model:
            return
        questions = [pair.question for pair in pack.qa]
        vectors = await self.embedder.embed(questions, model=model) if questions else []
        pack.qa_embeddings = vectors
        pack.qa_embed_model = model
        logger.info(f"Embedded {len(vectors)} curated questions for pack {pack.id}")

    async def match_qa(self, pack: Pack, query_vector: List[float]) -> Optional[QaMatch]:
        """
        Best curated Q&A match for the query, or None.

        A failure to embed the curated questions only disables the shortcut
        for this request; the generated answer path still runs.
        """
        if not pack.qa:
            return None
        try:
            await self.ensure_qa_embeddings(pack)
        except Book2AIError as e:
            logger.warning(f"Skipping author Q&A check for pack {pack.id}: {e}")
            return None
        return best_match(query_vector, pack.qa_embeddings)

    def check_query_width(self, pack: Pack, query_vector: List[float]) -> None:
        """Refuse to rank a query vector whose width differs from the pack's embeddings."""
        expected = pack.vectors.shape[1]
        if len(query_vector) != expected:
            raise EmbeddingMismatchError(pack.id, pack.embedding_model, expected, len(query_vector))

    def is_confident(self, match: Optional[QaMatch]) -> bool:
        return match is not None and match.score >= self.qa_threshold

    def retrieve(self, pack: Pack, query_vector: List[float], k: Optional[int]) -> List[ScoredChunk]:
        hits = top_k(query_vector, pack.ids, pack.vectors, clamp_k(k))
        logger.info(f"Retrieved {[(h.id, round(h.score, 3)) for h in hits]} from pack {pack.id}")
        return hits

    def _local_stream(self, question: str, text: str, sources: List[Source], curated: bool) -> AnswerStream:
        deltas = stream_windows(window_words(text, self.window_size), self.interval)
        return AnswerStream(question, sources, deltas, deltas.aclose, curated=curated)

    async def start(self, question: str, pack_id: Optional[str] = None, k: Optional[int] = None) -> AnswerStream:
        """
        Run everything up to the first byte of the answer.

        Args:
            question: The user's question
            pack_id: Pack to answer from (defaults to ``settings.DEFAULT_PACK_ID``)
            k: Number of chunks to retrieve, clamped to [3, 8]

        Returns:
            An ``AnswerStream`` holding the open upstream connection

        Raises:
            ValidationError: If the question is empty
            PackNotFoundError: If the pack does not exist
            PackEmptyError: If the pack has no embeddings
            EmbeddingMismatchError: If the query vector and pack embeddings differ in width
            UpstreamError: If the query embedding or completion request fails
        """
        question = (question or "").strip()
        if not question:
            raise ValidationError("Missing q")

        pack = self.load_pack(pack_id)
        query_vector = await self.embedder.embed_query(question, model=pack.embedding_model)
        self.check_query_width(pack, query_vector)

        match = await self.match_qa(pack, query_vector)
        if self.is_confident(match):
            qa = pack.qa[match.index]
            logger.info(f"Author Q&A {qa.id} matched with score {match.score:.3f}")
            source = make_source(pack.get_chunk(qa.cited_id), qa.cited_id, match.score)
            return self._local_stream(question, curated_answer_text(match, qa), [source], curated=True)

        chunks, sources = resolve_hits(pack, self.retrieve(pack, query_vector, k))
        if not chunks:
            return self._local_stream(question, NO_SOURCES_ANSWER, [], curated=False)

        prompt = build_prompt(question, chunks)
        stack = AsyncExitStack()
        deltas = await stack.enter_async_context(self.completer.stream(prompt))
        return AnswerStream(question, sources, deltas, stack.aclose)

    async def answer(self, question: str, pack_id: Optional[str] = None, k: Optional[int] = None) -> AnswerResponse:
        """Answer without streaming: ``{"answer": ..., "sources": [...]}``."""
        stream = await self.start(question, pack_id, k)
        return await stream.collect()
