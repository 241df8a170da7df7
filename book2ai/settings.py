"""
Global settings and configuration for the Book2AI application.
"""

import os
from pathlib import Path

# OpenAI Configuration
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

EMBED_MODEL = os.getenv("EMBED_MODEL", "text-embedding-3-small")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.2"))

# Directory Paths
PROJECT_ROOT = Path(__file__).parent.parent

# Multi-pack layout: public/packs/<id>/{manifest.json,chunks.jsonl,embeddings.json,qa.jsonl}
PACKS_ROOT = Path(os.getenv("PACKS_ROOT", PROJECT_ROOT / "public" / "packs"))
# Single-pack layout from the first release, still served under its manifest id
LEGACY_PACK_DIR = Path(os.getenv("LEGACY_PACK_DIR", PROJECT_ROOT / "public" / "pack"))
DEFAULT_PACK_ID = os.getenv("DEFAULT_PACK_ID", "hopkins-scientific-advertising")

# Retrieval Configuration
QA_MATCH_THRESHOLD = float(os.getenv("QA_MATCH_THRESHOLD", "0.88"))
K_MIN = 3
K_MAX = 8
DEFAULT_K = 5
SOURCE_CHAR_LIMIT = 2000  # characters of each chunk placed in the prompt
SNIPPET_CHARS = 200  # characters of each chunk returned with the sources

# Batch processing
EMBED_BATCH_SIZE = 64  # For OpenAI embedding calls

# Streaming Configuration
STREAM_WINDOW_WORDS = 7  # words per chunk frame for locally sliced answers
STREAM_INTERVAL = float(os.getenv("STREAM_INTERVAL", "0.0"))  # seconds between sliced frames

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
