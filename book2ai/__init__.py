"""
Book2AI: ask questions of a book pack and get answers with page citations.

This package loads pre-embedded book packs into memory, ranks chunks against
a question by cosine similarity, prefers the author's curated answers when a
question matches one closely, and streams generated answers to the client
frame by frame.
"""

from .qa import AnswerOrchestrator, AnswerStream
from .pack_store import PackStore, get_pack_store
from .embedder import QueryEmbedder
from .llm import ChatCompleter
from .ranker import top_k, cosine_similarity

__version__ = "0.1.0"
