"""FastAPI application serving the BitBraniac tutor chat API."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from .config import load_config
from .errors import GenerationError
from .generator import ResponseGenerator, create_generator
from .memory import MAX_TITLE_CHARS, ChatStore, make_title
from .profiles import ProfileStore
from .provider import ChatProvider, create_provider

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatCreate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=MAX_TITLE_CHARS)


class ChatRename(BaseModel):
    title: str = Field(..., min_length=1, max_length=MAX_TITLE_CHARS)


class MessageIn(BaseModel):
    content: str = Field(default="", description="User message text.")


class MessageOut(BaseModel):
    id: str
    role: str
    content: str
    timestamp: str


class ChatSummary(BaseModel):
    id: str
    title: str
    created_at: str
    updated_at: str
    message_count: int = 0


class ChatDetail(BaseModel):
    id: str
    title: str
    created_at: str
    updated_at: str
    messages: List[MessageOut] = Field(default_factory=list)


class MessageExchange(BaseModel):
    user_message: MessageOut
    bot_message: MessageOut
    chat_title: str


class InterestsIn(BaseModel):
    interests: List[str]


class PersonaIn(BaseModel):
    persona: str


class ProfileOut(BaseModel):
    interests: List[str]
    persona: str


class PublicStats(BaseModel):
    total_users: int
    total_chats: int
    total_messages: int


# -----------------------------
# Utilities
# -----------------------------
def _identity(x_identity: str = Header(default="default", alias="X-Identity")) -> str:
    """Caller namespace. No authentication is performed."""
    ident = (x_identity or "").strip()
    return ident or "default"


def _data_dir(cfg: Dict[str, Any]) -> str:
    return str((cfg.get("storage", {}) or {}).get("data_dir") or "data")


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Chat not found")


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    provider: Optional[ChatProvider] = None,
    store: Optional[ChatStore] = None,
    profiles: Optional[ProfileStore] = None,
    generator: Optional[ResponseGenerator] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    # CORS
    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    # Services (the provider is built here so missing credentials fail at startup)
    if generator is None:
        provider = provider or create_provider(cfg)
        generator = create_generator(cfg, provider)
    store = store or ChatStore(_data_dir(cfg))
    profiles = profiles or ProfileStore(_data_dir(cfg))
    logger.info("Chat storage at %s; models %s", store.root, ", ".join(generator.models))

    app = FastAPI(title="BitBraniac Tutor Server", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GenerationError)
    async def generation_error(request: Request, exc: GenerationError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.http_status,
            content={"detail": exc.message, "error": exc.code},
        )

    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "message": "BitBraniac API is running!"}

    # ---------------- Chats ----------------
    @app.get("/api/chat", response_model=List[ChatSummary])
    def list_chats(identity: str = Depends(_identity)):
        return store.list_chats(identity)

    @app.post("/api/chat", response_model=ChatDetail, status_code=201)
    def create_chat(req: Optional[ChatCreate] = None, identity: str = Depends(_identity)):
        return store.create_chat(identity, req.title if req else None)

    @app.get("/api/chat/{chat_id}", response_model=ChatDetail)
    def get_chat(chat_id: str, identity: str = Depends(_identity)):
        chat = store.get_chat(identity, chat_id)
        if chat is None:
            raise _not_found()
        return chat

    @app.put("/api/chat/{chat_id}", response_model=ChatDetail)
    def rename_chat(chat_id: str, req: ChatRename, identity: str = Depends(_identity)):
        chat = store.rename_chat(identity, chat_id, req.title)
        if chat is None:
            raise _not_found()
        return chat

    @app.delete("/api/chat/{chat_id}")
    def delete_chat(chat_id: str, identity: str = Depends(_identity)) -> Dict[str, str]:
        if not store.delete_chat(identity, chat_id):
            raise _not_found()
        return {"message": "Chat deleted"}

    @app.post("/api/chat/{chat_id}/message", response_model=MessageExchange)
    async def send_message(chat_id: str, req: MessageIn, identity: str = Depends(_identity)):
        content = req.content or ""
        if not content.strip():
            raise HTTPException(status_code=400, detail="Message content is required")

        # store and profile calls do blocking disk I/O; keep them off the event loop
        history = await run_in_threadpool(store.load_messages, identity, chat_id)
        if history is None:
            raise _not_found()

        profile = await run_in_threadpool(profiles.get, identity)
        reply = await generator.generate(
            history + [{"role": "user", "content": content}],
            None if profile.is_empty() else profile,
        )

        # Persist only after a successful generation
        try:
            user_message = await run_in_threadpool(store.append_message, identity, chat_id, "user", content)
            bot_message = await run_in_threadpool(store.append_message, identity, chat_id, "assistant", reply)
        except KeyError:
            raise _not_found()

        if not history:
            chat = await run_in_threadpool(store.rename_chat, identity, chat_id, make_title(content))
        else:
            chat = await run_in_threadpool(store.get_chat, identity, chat_id)
        if chat is None:
            raise _not_found()

        return MessageExchange(
            user_message=MessageOut(**user_message),
            bot_message=MessageOut(**bot_message),
            chat_title=chat["title"],
        )

    # ---------------- Profile ----------------
    @app.get("/api/profile", response_model=ProfileOut)
    def get_profile(identity: str = Depends(_identity)):
        p = profiles.get(identity)
        return ProfileOut(interests=p.interests, persona=p.persona)

    @app.put("/api/profile/interests", response_model=ProfileOut)
    def update_interests(req: InterestsIn, identity: str = Depends(_identity)):
        try:
            p = profiles.set_interests(identity, req.interests)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return ProfileOut(interests=p.interests, persona=p.persona)

    @app.put("/api/profile/persona", response_model=ProfileOut)
    def update_persona(req: PersonaIn, identity: str = Depends(_identity)):
        try:
            p = profiles.set_persona(identity, req.persona)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return ProfileOut(interests=p.interests, persona=p.persona)

    # ---------------- Stats ----------------
    @app.get("/api/stats/public", response_model=PublicStats)
    def public_stats():
        return store.stats()

    return app
