"""
Pack store: loads a pack's chunks, embeddings and curated Q&A from static
files and keeps them in memory for the life of the process.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
from pydantic import ValidationError as SchemaError

from . import settings
from .errors import PackNotFoundError
from .models import Chunk, EmbeddingsFile, PackInfo, QAPair
from .normalize import normalize_chunk, normalize_qa

logger = logging.getLogger(__name__)

CHUNKS_FILE = "chunks.jsonl"
EMBEDDINGS_FILE = "embeddings.json"
QA_FILE = "qa.jsonl"
MANIFEST_FILE = "manifest.json"

_PACK_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def read_jsonl(path: Path) -> List[Dict[str, Any]]:
    """Read a JSON-lines file; a missing file reads as empty."""
    if not path.exists():
        return []
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping bad line {line_no} in {path}: {e}")
    return records


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON file, or None if it does not exist."""
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _stack_vectors(pack_id: str, vectors: List[List[float]]) -> np.ndarray:
    """Stack rows into a matrix, keeping the leading rows that share the first row's width."""
    if not vectors:
        return np.zeros((0, 0), dtype=np.float32)
    width = len(vectors[0])
    rows = []
    for row in vectors:
        if len(row) != width:
            logger.warning(f"Pack {pack_id}: vector {len(rows)} has width {len(row)}, expected {width}; truncating")
            break
        rows.append(row)
    return np.asarray(rows, dtype=np.float32)


class Pack:
    """
    An immutable bundle of chunks, their embeddings and curated Q&A pairs.

    ``qa_embeddings`` is the only field written after construction: it is
    filled once, on first use, by whoever needs it. Concurrent fillers write
    equivalent values, so the last write wins harmlessly.
    """

    def __init__(self, pack_id: str, chunks: List[Chunk], embeddings: EmbeddingsFile, qa: List[QAPair]):
        self.id = pack_id
        self.chunks = chunks
        self.embedding_model = embeddings.model
        self.ids: List[str] = list(embeddings.ids)
        self.vectors = _stack_vectors(pack_id, embeddings.vectors)
        self.qa = qa
        self.qa_embeddings: Optional[List[List[float]]] = None
        self.qa_embed_model: Optional[str] = None
        self._by_id = {chunk.id: chunk for chunk in chunks}

    @property
    def has_embeddings(self) -> bool:
        return len(self.ids) > 0 and len(self.vectors) > 0

    def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        return self._by_id.get(chunk_id)

    def __repr__(self) -> str:
        return f"Pack(id={self.id!r}, chunks={len(self.chunks)}, vectors={len(self.ids)}, qa={len(self.qa)})"


class PackStore:
    """
    Process-wide cache of loaded packs with get-or-load semantics.

    Packs are few and small, so nothing is ever evicted; a redeploy picks up
    updated pack files.
    """

    def __init__(self, packs_root: Path = None, legacy_dir: Path = None):
        self.packs_root = Path(packs_root) if packs_root is not None else settings.PACKS_ROOT
        self.legacy_dir = Path(legacy_dir) if legacy_dir is not None else settings.LEGACY_PACK_DIR
        self._packs: Dict[str, Pack] = {}

    def __contains__(self, pack_id: str) -> bool:
        return pack_id in self._packs

    def clear(self) -> None:
        self._packs.clear()

    def get_or_load(self, pack_id: str) -> Pack:
        """
        Return the cached pack, loading it from disk on first use.

        Raises:
            PackNotFoundError: If no pack directory exists for ``pack_id``
        """
        hit = self._packs.get(pack_id)
        if hit is not None:
            return hit
        pack = self.load(pack_id)
        self._packs[pack_id] = pack
        return pack

    def resolve_dir(self, pack_id: str) -> Path:
        """Map a pack id to its directory, refusing anything that is not a plain name."""
        if not pack_id or not _PACK_ID_RE.match(pack_id):
            raise PackNotFoundError(pack_id)
        candidate = self.packs_root / pack_id
        if candidate.is_dir():
            return candidate
        legacy = self._legacy_info()
        if legacy is not None and legacy.id == pack_id:
            return self.legacy_dir
        raise PackNotFoundError(pack_id)

    @staticmethod
    def _read_embeddings(pack_id: str, path: Path) -> EmbeddingsFile:
        """Read embeddings.json; a missing, truncated or malformed file gives an empty set."""
        try:
            raw = read_json(path)
            if raw:
                return EmbeddingsFile.model_validate(raw)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, SchemaError) as e:
            logger.warning(f"Pack {pack_id}: unreadable {EMBEDDINGS_FILE} ({e}); retrieval will return nothing")
            return EmbeddingsFile()
        logger.warning(f"Pack {pack_id} has no {EMBEDDINGS_FILE}; retrieval will return nothing")
        return EmbeddingsFile()

    def load(self, pack_id: str) -> Pack:
        """Read a pack from disk, bypassing the cache."""
        base = self.resolve_dir(pack_id)

        chunks = [c for c in (normalize_chunk(r) for r in read_jsonl(base / CHUNKS_FILE)) if c is not None]

        embeddings = self._read_embeddings(pack_id, base / EMBEDDINGS_FILE)
        if len(embeddings.ids) != len(embeddings.vectors):
            logger.warning(
                f"Pack {pack_id}: {len(embeddings.ids)} ids but {len(embeddings.vectors)} vectors; "
                f"only the overlapping rows will be ranked"
            )

        # Q&A: prefer the dedicated file, else the qa-typed chunks
        qa = [p for p in (normalize_qa(r) for r in read_jsonl(base / QA_FILE)) if p is not None]
        if not qa:
            qa = [
                QAPair(id=c.id, question=c.q, answer=c.a, source_chunk=c.id)
                for c in chunks
                if c.type == "qa" and c.q and c.a
            ]

        pack = Pack(pack_id, chunks, embeddings, qa)
        logger.info(f"Loaded {pack!r} from {base}")
        return pack

    def _legacy_info(self) -> Optional[PackInfo]:
        manifest_path = self.legacy_dir / MANIFEST_FILE
        if not manifest_path.exists():
            return None
        try:
            raw = read_json(manifest_path) or {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable legacy manifest {manifest_path}: {e}")
            return None
        return PackInfo(
            id=raw.get("id") or settings.DEFAULT_PACK_ID,
            title=raw.get("title") or "Scientific Advertising",
            legacy=True,
        )

    def list_packs(self) -> List[PackInfo]:
        """List installed packs: the legacy pack first, then each directory with a manifest."""
        packs = []
        legacy = self._legacy_info()
        if legacy is not None:
            packs.append(legacy)

        if self.packs_root.is_dir():
            for child in sorted(self.packs_root.iterdir()):
                manifest_path = child / MANIFEST_FILE
                if not manifest_path.is_file():
                    continue
                try:
                    raw = read_json(manifest_path) or {}
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning(f"Skipping pack {child.name}: unreadable manifest ({e})")
                    continue
                packs.append(PackInfo(id=raw.get("id") or child.name, title=raw.get("title") or child.name))
        return packs


_default_store: Optional[PackStore] = None


def get_pack_store() -> PackStore:
    """Return the process-wide pack store, creating it on first use."""
    global _default_store
    if _default_store is None:
        _default_store = PackStore()
    return _default_store
