"""
Pydantic models for the Book2AI application.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class Chunk(BaseModel):
    """A unit of pack text with a stable id."""

    id: str = Field(description="Unique chunk id within the pack")
    text: str = Field(default="", description="Chunk text")
    page: Optional[int] = Field(default=None, description="Page reference in the printed book")
    type: Optional[str] = Field(default=None, description="text, qa or expectations")
    q: Optional[str] = Field(default=None, description="Question, for qa-typed chunks")
    a: Optional[str] = Field(default=None, description="Answer, for qa-typed chunks")


class QAPair(BaseModel):
    """A curated question/answer pair written by the author."""

    id: str
    question: str
    answer: str
    source_chunk: Optional[str] = Field(default=None, description="Chunk id the answer is drawn from")

    @property
    def cited_id(self) -> str:
        return self.source_chunk or self.id


class EmbeddingsFile(BaseModel):
    """Contents of a pack's embeddings.json, rows aligned with ``ids``."""

    model: str = "text-embedding-3-small"
    dim: int = 1536
    ids: List[str] = Field(default_factory=list)
    vectors: List[List[float]] = Field(default_factory=list)


class PackInfo(BaseModel):
    """A pack as listed for selection."""

    id: str
    title: str
    legacy: bool = False


class AskRequest(BaseModel):
    """Request model for asking questions (JSON body or query parameters)."""

    question: str = Field(default="", validation_alias=AliasChoices("q", "question"))
    pack: Optional[str] = None
    k: Optional[int] = Field(default=None, validation_alias=AliasChoices("k", "resultCount"))

    model_config = ConfigDict(populate_by_name=True)


class Source(BaseModel):
    """A cited chunk returned alongside an answer."""

    id: str
    page: Optional[int] = None
    score: Optional[float] = None
    text: Optional[str] = None


class AnswerResponse(BaseModel):
    """Non-streaming answer shape."""

    answer: str
    sources: List[Source] = Field(default_factory=list)


class MetaEvent(BaseModel):
    type: Literal["meta"] = "meta"
    q: str


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    delta: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    sources: List[Source] = Field(default_factory=list)


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


StreamEvent = Annotated[
    Union[MetaEvent, ChunkEvent, DoneEvent, ErrorEvent],
    Field(discriminator="type"),
]

stream_event_adapter = TypeAdapter(StreamEvent)

TERMINAL_TYPES = ("done", "error")
