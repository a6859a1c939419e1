"""
DocAssist - Web API Server
---------------------------
FastAPI server that wraps the RAGPipeline.

Endpoints:
  GET    /api/health       -> pipeline status, models, vector count
  POST   /api/upload       -> chunk, embed and index one document
  POST   /api/chat         -> answer as text/plain with trailer segments
  POST   /api/chat/events  -> the same answer as Server-Sent Events
  GET    /api/session      -> documents indexed under a session
  DELETE /api/session      -> delete every vector of a session

Run from the project root:
    uvicorn app.server:app --reload --port 8000

Conversation state stays with the client: every chat request carries the
full message list plus the summary/msgCount the client persisted from the
previous answer.
"""
from __future__ import annotations

from contextlib import aclosing, asynccontextmanager
from typing import AsyncIterator, Optional

import orjson
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from docassist.exceptions import CollaboratorError, DocAssistError, InputValidationError
from docassist.generation.trailer import render_text_stream
from docassist.schemas import (
    AnswerEvent,
    AnswerEventType,
    ConversationTurn,
    MemoryState,
    QueryRequest,
    Role,
)
from docassist.serving.pipeline import RAGPipeline

# ---------------------------------------------------------------------------
# Pipeline singleton
# ---------------------------------------------------------------------------

_pipeline: Optional[RAGPipeline] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the RAG pipeline once at startup; drop it on shutdown."""
    global _pipeline
    from docassist.config import load_settings
    from docassist.utils.logger import setup_logger

    settings = load_settings()
    setup_logger(log_level=settings.logging.level, log_file=settings.logging.file)
    logger.info("[Server] Loading RAG pipeline...")
    _pipeline = RAGPipeline.from_settings(settings)
    yield
    _pipeline = None
    logger.info("[Server] Pipeline unloaded.")


def get_pipeline() -> RAGPipeline:
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    return _pipeline


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DocAssist API",
    description="Conversational question answering over uploaded documents",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InputValidationError)
async def _input_error(request: Request, exc: InputValidationError) -> JSONResponse:
    logger.warning(f"[API] {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(CollaboratorError)
async def _collaborator_error(request: Request, exc: CollaboratorError) -> JSONResponse:
    logger.error(f"[API] {request.url.path} failed: {exc}")
    return JSONResponse(status_code=502, content={"error": str(exc)})


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class MessageModel(BaseModel):
    role: Role
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[MessageModel] = Field(default_factory=list)
    session_id: str = Field(default="", alias="sessionId")
    selected_documents: Optional[list[str]] = Field(default=None, alias="selectedDocuments")
    summary: str = ""
    summary_msg_count: int = Field(default=0, ge=0, alias="summaryMsgCount")
    conversation_id: str = Field(default="default", alias="conversationId")

    def to_query(self) -> QueryRequest:
        return QueryRequest(
            namespace=self.session_id,
            turns=[ConversationTurn(role=m.role, content=m.content) for m in self.messages],
            memory=MemoryState(
                summary=self.summary, summarized_through=self.summary_msg_count
            ),
            sources=self.selected_documents or None,
            conversation_id=self.conversation_id,
        )


class SessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(default="", alias="sessionId")


# ---------------------------------------------------------------------------
# Streaming helpers
# ---------------------------------------------------------------------------

async def _start(events: AsyncIterator[AnswerEvent]) -> Optional[AnswerEvent]:
    """
    Pull the first event so that validation, retrieval and pre-token
    generation errors surface as JSON errors instead of a broken stream.
    """
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None


async def _resume(
    first: Optional[AnswerEvent], events: AsyncIterator[AnswerEvent]
) -> AsyncIterator[AnswerEvent]:
    async with aclosing(events) as rest:
        if first is not None:
            yield first
        async for event in rest:
            yield event


async def _text_body(
    first: Optional[AnswerEvent], events: AsyncIterator[AnswerEvent]
) -> AsyncIterator[str]:
    try:
        async for piece in render_text_stream(_resume(first, events)):
            yield piece
    except DocAssistError as exc:
        # Headers are already sent: abort the chunked body so the client sees a transport error
        logger.error(f"[API] Chat stream aborted: {exc}")
        raise


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {orjson.dumps(data).decode('utf-8')}\n\n"


def _sse_payload(event: AnswerEvent) -> dict:
    if event.type == AnswerEventType.TOKEN:
        return {"text": event.text}
    if event.type == AnswerEventType.USAGE and event.usage is not None:
        return {
            "prompt": event.usage.prompt_tokens,
            "completion": event.usage.completion_tokens,
            "total": event.usage.total_tokens,
        }
    if event.type == AnswerEventType.MEMORY and event.memory is not None:
        return {"text": event.memory.summary, "msgCount": event.memory.summarized_through}
    return {}


async def _sse_body(
    first: Optional[AnswerEvent], events: AsyncIterator[AnswerEvent]
) -> AsyncIterator[str]:
    try:
        async for event in _resume(first, events):
            yield _sse(event.type.value, _sse_payload(event))
    except DocAssistError as exc:
        logger.error(f"[API] Event stream aborted: {exc}")
        yield _sse(
            "error",
            {
                "code": type(exc).__name__,
                "message": str(exc),
                "partial": bool(getattr(exc, "partial_output", "")),
            },
        )


_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health(pipeline: RAGPipeline = Depends(get_pipeline)):
    """Return pipeline status, model names and index size."""
    return {"status": "ok", **pipeline.describe()}


@app.post("/api/upload")
async def upload(
    file: Optional[UploadFile] = File(None),
    session_id: str = Form("", alias="sessionId"),
    pipeline: RAGPipeline = Depends(get_pipeline),
):
    """Parse, chunk, embed and index one document into the session namespace."""
    if file is None:
        raise InputValidationError("No file provided")
    if not session_id:
        raise InputValidationError("No sessionId provided")

    data = await file.read()
    result = await pipeline.ingest(data, file.filename or "", session_id)
    logger.info(
        f"[API] Upload | {result.source_name} | {result.parent_count} parents, "
        f"{result.child_count} children"
    )
    return {
        "id": result.document_id,
        "fileName": result.source_name,
        "chunkCount": result.child_count,
        "parentCount": result.parent_count,
        "fileSize": result.file_size,
    }


@app.post("/api/chat")
async def chat(request: ChatRequest, pipeline: RAGPipeline = Depends(get_pipeline)):
    """
    Stream the answer as plain text.

    The body is the answer text followed by a USAGE trailer and, when the
    summary changed, a SUMMARY trailer (see docassist.generation.trailer).
    """
    logger.info(
        f"[API] Chat | session={request.session_id} | "
        f"{len(request.messages)} messages | docs={request.selected_documents}"
    )
    events = pipeline.stream_query(request.to_query())
    first = await _start(events)
    return StreamingResponse(
        _text_body(first, events),
        media_type="text/plain; charset=utf-8",
        headers=_STREAM_HEADERS,
    )


@app.post("/api/chat/events")
async def chat_events(request: ChatRequest, pipeline: RAGPipeline = Depends(get_pipeline)):
    """
    Stream the answer as Server-Sent Events.

    SSE Format:
        event: token   data: {"text": "..."}
        event: usage   data: {"prompt": P, "completion": C, "total": T}
        event: memory  data: {"text": "...", "msgCount": N}
        event: error   data: {"code": "...", "message": "...", "partial": bool}
    """
    events = pipeline.stream_query(request.to_query())
    first = await _start(events)
    return StreamingResponse(
        _sse_body(first, events),
        media_type="text/event-stream",
        headers=_STREAM_HEADERS,
    )


@app.delete("/api/session")
async def end_session(request: SessionRequest, pipeline: RAGPipeline = Depends(get_pipeline)):
    """Delete every vector of the session. Safe to call repeatedly."""
    await pipeline.end_session(request.session_id)
    return {"success": True}


@app.get("/api/session")
async def session_documents(
    session_id: str = Query("", alias="sessionId"),
    pipeline: RAGPipeline = Depends(get_pipeline),
):
    """List the documents indexed under a session."""
    if not session_id:
        raise InputValidationError("Missing sessionId")
    info = pipeline.session_info(session_id)
    return {"sessionId": session_id, "documents": info["documents"], "chunkCount": info["vectors"]}
