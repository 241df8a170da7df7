"""
Normalization boundary for loosely-shaped JSON.

Pack files and answer payloads have been written by several generations of
tooling, so field names vary (``q``/``question``, ``top``/``sources``,
``page_start``/``page``...). Everything is mapped onto the canonical models
here; code past this module only sees ``Chunk``, ``QAPair``, ``Source`` and
``AnswerResponse``.
"""

import logging
from typing import Any, Dict, List, Optional

from .models import AnswerResponse, Chunk, QAPair, Source

logger = logging.getLogger(__name__)

SOURCE_LIST_KEYS = ("sources", "top")


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _as_page(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_score(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def normalize_chunk(raw: Dict[str, Any]) -> Optional[Chunk]:
    """Map one chunks.jsonl record onto ``Chunk``; records without an id are dropped."""
    if not isinstance(raw, dict):
        return None
    chunk_id = _as_text(_first(raw, "id", "chunk_id"))
    if not chunk_id:
        return None
    return Chunk(
        id=chunk_id,
        text=_as_text(_first(raw, "text", "content")) or "",
        page=_as_page(_first(raw, "page", "page_start")),
        type=_as_text(raw.get("type")),
        q=_as_text(_first(raw, "q", "question")),
        a=_as_text(_first(raw, "a", "answer")),
    )


def normalize_qa(raw: Dict[str, Any]) -> Optional[QAPair]:
    """Map one qa.jsonl record onto ``QAPair``; incomplete pairs are dropped."""
    if not isinstance(raw, dict):
        return None
    qa_id = _as_text(raw.get("id"))
    question = _as_text(_first(raw, "q", "question"))
    answer = _as_text(_first(raw, "a", "answer"))
    if not qa_id or not question or not answer:
        return None
    return QAPair(
        id=qa_id,
        question=question,
        answer=answer,
        source_chunk=_as_text(_first(raw, "source_chunk", "sourceChunk", "chunk_id")),
    )


def normalize_source(raw: Any) -> Optional[Source]:
    """Map one cited-source record onto ``Source``."""
    if isinstance(raw, str):
        return Source(id=raw)
    if not isinstance(raw, dict):
        return None
    source_id = _as_text(_first(raw, "id", "chunk_id", "source_id"))
    if not source_id:
        return None
    return Source(
        id=source_id,
        page=_as_page(_first(raw, "page", "page_start")),
        score=_as_score(_first(raw, "score", "similarity")),
        text=_as_text(_first(raw, "text", "snippet")),
    )


def normalize_sources(items: Any) -> List[Source]:
    if not isinstance(items, list):
        return []
    sources = []
    for item in items:
        source = normalize_source(item)
        if source is None:
            logger.debug(f"Dropping unrecognised source entry: {item!r}")
            continue
        sources.append(source)
    return sources


def normalize_answer_payload(data: Any) -> AnswerResponse:
    """
    Map a non-streaming answer payload onto ``AnswerResponse``.

    Accepts ``sources`` or its older alias ``top``; a missing answer becomes
    the empty string.
    """
    root = data if isinstance(data, dict) else {}
    answer = _as_text(root.get("answer")) or ""
    items = next((root[key] for key in SOURCE_LIST_KEYS if isinstance(root.get(key), list)), [])
    return AnswerResponse(answer=answer, sources=normalize_sources(items))
