"""
OpenAI client access and the streamed chat-completion call.
"""

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

import httpx
import openai

from . import settings
from .errors import UpstreamError
from .streaming import relay_openai_deltas

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You answer strictly from provided sources and cite."

# Lazily initialised so that a missing key does not stop the API from starting
_client: Optional[openai.AsyncOpenAI] = None


def get_client() -> openai.AsyncOpenAI:
    """Return a singleton async OpenAI client, initialising it on first use."""
    global _client
    if _client is None:
        if not settings.OPENAI_API_KEY:
            raise RuntimeError("Environment variable 'OPENAI_API_KEY' is required but not set")
        # No retries: a failed call surfaces to the caller as a request failure
        _client = openai.AsyncOpenAI(api_key=settings.OPENAI_API_KEY, max_retries=0)
    return _client


def upstream_error(what: str, exc: Exception) -> UpstreamError:
    """Translate an OpenAI/httpx exception into an ``UpstreamError``."""
    if isinstance(exc, openai.APIStatusError):
        try:
            body = exc.response.text
        except httpx.ResponseNotRead:
            body = exc.message
        return UpstreamError(what, exc.status_code, body)
    return UpstreamError(what, None, str(exc))


UPSTREAM_EXCEPTIONS = (openai.APIError, httpx.HTTPError)


class ChatCompleter:
    """Streams chat completions, yielding text deltas as they arrive."""

    def __init__(self, client: Optional[openai.AsyncOpenAI] = None, model: str = None, temperature: float = None):
        self._client = client
        self.model = model or settings.LLM_MODEL
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature

    @property
    def client(self) -> openai.AsyncOpenAI:
        return self._client or get_client()

    @staticmethod
    def build_messages(prompt: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

    @asynccontextmanager
    async def stream(self, prompt: str) -> AsyncIterator[AsyncIterator[str]]:
        """
        Open a streamed completion for ``prompt``.

        The request is sent on entry, so a non-2xx response raises
        ``UpstreamError`` before any delta is produced. Leaving the context
        closes the HTTP response without reading the rest of it.

        Yields:
            An async iterator of text deltas
        """
        async with AsyncExitStack() as stack:
            try:
                response = await stack.enter_async_context(
                    self.client.chat.completions.with_streaming_response.create(
                        model=self.model,
                        messages=self.build_messages(prompt),
                        temperature=self.temperature,
                        stream=True,
                    )
                )
            except UPSTREAM_EXCEPTIONS as e:
                logger.error(f"Completion request failed: {e}")
                raise upstream_error("Completion", e) from e

            deltas = self._deltas(response)
            stack.push_async_callback(deltas.aclose)
            yield deltas

    async def _deltas(self, response) -> AsyncIterator[str]:
        try:
            async for delta in relay_openai_deltas(response.iter_lines()):
                yield delta
        except UPSTREAM_EXCEPTIONS as e:
            logger.error(f"Completion stream broke off: {e}")
            raise upstream_error("Completion stream", e) from e
