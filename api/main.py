"""
FastAPI backend for the Book2AI application.
"""

import json
import logging
from typing import Any, Dict

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from book2ai import settings
from book2ai.embedder import QueryEmbedder
from book2ai.errors import Book2AIError, ValidationError
from book2ai.llm import ChatCompleter
from book2ai.models import AskRequest
from book2ai.pack_store import get_pack_store
from book2ai.qa import AnswerOrchestrator
from book2ai.streaming import encode_frame

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Book2AI API", description="Ask questions of a book pack, answered with page citations")

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify actual origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    # keep proxies from buffering the frames
    "X-Accel-Buffering": "no",
}


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str


def get_orchestrator() -> AnswerOrchestrator:
    """Build the request's orchestrator around the shared pack store."""
    return AnswerOrchestrator(get_pack_store(), QueryEmbedder(), ChatCompleter())


@app.exception_handler(Book2AIError)
async def book2ai_error_handler(request: Request, exc: Book2AIError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def read_ask_request(request: Request) -> AskRequest:
    """
    Read q/pack/k from query parameters and, for POST, a JSON body.

    Body fields win over query parameters; GET and POST are otherwise
    handled identically. A missing or unparseable body counts as empty.
    """
    fields: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        raw = await request.body()
        if raw:
            try:
                body = json.loads(raw)
            except json.JSONDecodeError:
                body = None
            if isinstance(body, dict):
                fields.update({key: value for key, value in body.items() if value is not None})
    try:
        return AskRequest.model_validate(fields)
    except SchemaError as e:
        raise ValidationError(f"Invalid request: {e.errors()[0]['msg']}") from e


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok")


@app.get("/")
@app.head("/")
async def root():
    """Root endpoint for platform health checks."""
    return {"message": "Book2AI API is running", "status": "ok"}


@app.get("/packs")
async def list_packs():
    """List the installed packs for the pack picker."""
    packs = get_pack_store().list_packs()
    return {"packs": [{"id": p.id, "title": p.title} for p in packs]}


@app.api_route("/ask", methods=["GET", "POST"])
async def ask_question(
    ask: AskRequest = Depends(read_ask_request),
    orchestrator: AnswerOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Answer a question without streaming.

    Returns:
        Dictionary containing the answer and sources
    """
    result = await orchestrator.answer(ask.question, ask.pack, ask.k)
    return result.model_dump(exclude_none=True)


@app.api_route("/ask/stream", methods=["GET", "POST"])
async def ask_question_stream(
    ask: AskRequest = Depends(read_ask_request),
    orchestrator: AnswerOrchestrator = Depends(get_orchestrator),
):
    """
    Answer a question with a streaming response.

    Validation, pack and upstream failures that happen before the answer
    starts are returned as a plain JSON error; anything later arrives as a
    terminal ``error`` frame.

    Returns:
        Server-sent events stream of meta, chunk and done/error frames
    """
    stream = await orchestrator.start(ask.question, ask.pack, ask.k)

    async def generate_stream():
        events = stream.events()
        try:
            async for event in events:
                yield encode_frame(event)
        finally:
            # also runs when the client disconnects mid-answer
            await events.aclose()

    # releases the upstream response even if the body is never iterated
    cleanup = BackgroundTasks()
    cleanup.add_task(stream.aclose)

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
        background=cleanup,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
