"""FastAPI server for the chat backend."""

from __future__ import annotations

import base64
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from polychat.chat.orchestrator import ChatOrchestrator
from polychat.config import AppConfig, config_to_dict, load_config, resolve_storage_url
from polychat.conversations.store import (
    MAX_ATTACHMENT_BYTES,
    Attachment,
    ConversationStore,
    InMemoryConversationStore,
)
from polychat.errors import ChatError, ErrorKind
from polychat.llm.backend import AdapterRegistry, CompletionOptions, create_registry
from polychat.llm.models import list_models

logger = logging.getLogger(__name__)

ALLOWED_UPLOAD_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
})

_HTTP_ERROR_NAMES = {
    400: ErrorKind.INVALID_INPUT.value,
    404: ErrorKind.NOT_FOUND.value,
    405: "MethodNotAllowed",
    413: "PayloadTooLarge",
}

# ── Request models ───────────────────────────────────────────────────


class AttachmentIn(BaseModel):
    id: str | None = None
    filename: str = Field(min_length=1, max_length=255)
    mimeType: str = "application/octet-stream"
    size: int = Field(ge=0)
    data: str
    uploadedAt: str | None = None


class ChatRequest(BaseModel):
    message: str = Field(default="", max_length=100_000)
    conversationId: str | None = None
    userId: str | None = None
    attachments: list[AttachmentIn] = Field(default_factory=list)
    model: str | None = None


class ConversationCreate(BaseModel):
    title: str | None = Field(default=None, max_length=200)
    userId: str | None = None


class ConversationUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=200)


# ── App factory ──────────────────────────────────────────────────────


def create_store(config: AppConfig) -> ConversationStore:
    """Build the store selected by ``storage.backend``."""
    if config.storage.backend == "sql":
        from polychat.db.repository import SqlConversationStore

        return SqlConversationStore(resolve_storage_url(config))
    return InMemoryConversationStore()


def create_app(
    config: AppConfig | None = None,
    store: ConversationStore | None = None,
    registry: AdapterRegistry | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Optional AppConfig (loaded from config.yaml if None).
        store: Conversation store; built from ``config.storage`` if None.
        registry: Provider adapters; built from ``config`` if None, which
            fails fast when the primary provider has no API key.

    Returns:
        Configured FastAPI app.
    """
    if config is None:
        config = load_config()
    if registry is None:
        registry = create_registry(config)
    if store is None:
        store = create_store(config)

    orchestrator = ChatOrchestrator(
        store=store,
        registry=registry,
        options=CompletionOptions(
            max_tokens=config.llm.max_tokens,
            temperature=config.llm.temperature,
        ),
        fallback_enabled=config.llm.fallback_enabled,
    )

    # ── Lifespan ─────────────────────────────────────────────────────

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        await store.init()
        logger.info("Primary model: %s", registry.primary_model_id)

        yield

        await registry.close()
        await store.close()

    # ── Build FastAPI app ────────────────────────────────────────────

    app = FastAPI(
        title="Polychat",
        description="Multi-provider LLM chat backend (Gemini, Claude, GLM)",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store
    app.state.registry = registry
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    # ── Error handlers: every error body is JSON ─────────────────────

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError,
    ) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        detail = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content={
                "error": ErrorKind.INVALID_INPUT.value,
                "message": f"{loc}: {detail}" if loc else detail,
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request, exc: StarletteHTTPException,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": _HTTP_ERROR_NAMES.get(exc.status_code, "HttpError"),
                "message": str(exc.detail),
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "InternalError", "message": "An internal error occurred."},
        )

    # ── Routes ───────────────────────────────────────────────────────

    @app.get("/api/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "components": {
                "store": {"ok": True, "backend": type(store).__name__},
                "providers": registry.providers(),
            },
        }

    @app.get("/api/models")
    async def models() -> dict:
        return {"models": list_models(registry)}

    @app.get("/api/config")
    async def get_config() -> dict:
        """Return the effective configuration with secrets redacted."""
        return config_to_dict(app.state.config)

    @app.post("/api/chat")
    async def chat(req: ChatRequest) -> dict:
        """Run one chat turn and return both persisted messages."""
        attachments = [Attachment.from_dict(a.model_dump()) for a in req.attachments]
        result = await orchestrator.send_message(
            conversation_id=req.conversationId,
            user_text=req.message,
            attachments=attachments,
            model_id=req.model,
            user_id=req.userId,
        )
        return result.to_dict()

    @app.post("/api/upload")
    async def upload(file: UploadFile = File(...)) -> dict:
        """Accept one file and return it as a base64 attachment."""
        mime_type = file.content_type or "application/octet-stream"
        if mime_type not in ALLOWED_UPLOAD_TYPES:
            raise HTTPException(status_code=400, detail="File type not supported")

        data = await file.read(MAX_ATTACHMENT_BYTES + 1)
        if len(data) > MAX_ATTACHMENT_BYTES:
            raise HTTPException(status_code=413, detail="File exceeds the 10 MB limit")

        attachment = Attachment(
            filename=file.filename or "upload",
            mime_type=mime_type,
            size=len(data),
            data=base64.b64encode(data).decode("ascii"),
        )
        return {"attachment": attachment.to_dict()}

    # ── Conversation endpoints ────────────────────────────────────────

    @app.get("/api/conversations")
    async def list_conversations(userId: str | None = None) -> dict:
        convs = await store.get_conversations(userId or None)
        return {"conversations": [c.to_dict() for c in convs]}

    @app.post("/api/conversations")
    async def create_conversation(body: ConversationCreate) -> dict:
        conv = await store.create_conversation(
            title=body.title or "New Conversation", user_id=body.userId,
        )
        return {"conversation": conv.to_dict()}

    @app.patch("/api/conversations/{conversation_id}")
    async def rename_conversation(conversation_id: str, body: ConversationUpdate) -> dict:
        conv = await store.update_conversation(conversation_id, title=body.title)
        if conv is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"conversation": conv.to_dict()}

    @app.get("/api/conversations/{conversation_id}/messages")
    async def get_messages(conversation_id: str) -> dict:
        msgs = await store.get_messages(conversation_id)
        return {"messages": [m.to_dict() for m in msgs]}

    @app.delete("/api/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str) -> dict:
        ok = await store.delete_conversation(conversation_id)
        if not ok:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"message": "Conversation deleted successfully"}

    @app.delete("/api/conversations/{conversation_id}/messages")
    async def clear_messages(conversation_id: str) -> dict:
        ok = await store.delete_messages(conversation_id)
        if not ok:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"message": "Conversation cleared successfully"}

    return app
