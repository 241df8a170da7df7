"""
Error taxonomy for the answer pipeline.

Every error is scoped to a single request. ``status_code`` is the HTTP status
used when the error is reported before a stream has been opened.
"""

from typing import Optional


class Book2AIError(Exception):
    """Base class for errors surfaced by the answer pipeline."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(Book2AIError):
    """The user's question is missing or empty."""

    status_code = 400


class PackNotFoundError(Book2AIError):
    """No pack is installed under the requested id."""

    status_code = 404

    def __init__(self, pack_id: str):
        super().__init__(f"Pack not found: {pack_id}")
        self.pack_id = pack_id


class PackEmptyError(Book2AIError):
    """The pack exists but has no embeddings to retrieve against."""

    status_code = 500

    def __init__(self, pack_id: str):
        super().__init__(f"Pack has no embeddings.json: {pack_id}")
        self.pack_id = pack_id


class UpstreamError(Book2AIError):
    """An embedding or completion call failed (network error or non-2xx)."""

    status_code = 502

    def __init__(self, what: str, status: Optional[int] = None, body: str = ""):
        detail = f"{what} failed: {status if status is not None else 'network error'}"
        if body:
            detail += f" {body}"
        super().__init__(detail)
        self.status = status
        self.body = body


class StreamFrameError(Book2AIError):
    """A single upstream frame could not be parsed."""

    def __init__(self, frame: str, reason: str):
        super().__init__(f"Malformed stream frame ({reason}): {frame[:80]}")
        self.frame = frame


class EmbeddingMismatchError(Book2AIError):
    """The query vector does not have the width of the pack's embeddings."""

    status_code = 500

    def __init__(self, pack_id: str, model: str, expected: int, actual: int):
        super().__init__(
            f"Pack {pack_id} was embedded with {model} ({expected} dims) but the query has {actual} dims"
        )
        self.pack_id = pack_id
        self.expected = expected
        self.actual = actual
