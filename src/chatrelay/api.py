"""FastAPI application for streamed chat."""

import logging

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from chatrelay import __version__
from chatrelay.config import configure_logging, settings
from chatrelay.db import ConversationStore, create_conversation_store
from chatrelay.errors import ChatRelayError
from chatrelay.models import (
    ChatRequest,
    ConversationListResponse,
    ConversationSummary,
    CreateConversationRequest,
)
from chatrelay.services.chat_stream import ChatPipeline
from chatrelay.services.context_window import ContextWindowManager
from chatrelay.services.llm import CompletionClient, get_completion_client
from chatrelay.services.response_cache import ResponseCache
from chatrelay.services.summarizer import Summarizer
from chatrelay.sse import create_sse_response
from models import Conversation

logger = logging.getLogger(__name__)

router = APIRouter()

LOCAL_DEV_USER = "local-dev-user"


def get_user_id(user_id: str | None = Header(alias="X-User-ID", default=None)) -> str:
    """Resolve the owner identity supplied by the upstream gateway."""
    return user_id or LOCAL_DEV_USER


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_pipeline(request: Request) -> ChatPipeline:
    return request.app.state.pipeline


def _http_error(e: ChatRelayError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e) or type(e).__name__)


# ============= Health & Info =============


@router.get("/")
async def root():
    """Root endpoint."""
    return {"message": "chatrelay API", "version": __version__}


@router.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# ============= Conversation Endpoints =============


@router.post("/conversations", response_model=Conversation, status_code=201)
async def create_conversation(
    body: CreateConversationRequest | None = None,
    user_id: str = Depends(get_user_id),
    store: ConversationStore = Depends(get_store),
):
    """Create a conversation seeded with the system prompt."""
    try:
        return await store.create(user_id, title=body.title if body else None)
    except ChatRelayError as e:
        raise _http_error(e)


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    user_id: str = Depends(get_user_id),
    store: ConversationStore = Depends(get_store),
):
    """List the caller's conversations, most recently updated first."""
    try:
        conversations = await store.list_for_owner(user_id)
    except ChatRelayError as e:
        raise _http_error(e)
    return ConversationListResponse(
        conversations=[ConversationSummary.from_conversation(c) for c in conversations],
        total=len(conversations),
    )


@router.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: str,
    user_id: str = Depends(get_user_id),
    store: ConversationStore = Depends(get_store),
):
    """Get a conversation with its messages."""
    try:
        return await store.load(conversation_id, user_id)
    except ChatRelayError as e:
        raise _http_error(e)


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(get_user_id),
    store: ConversationStore = Depends(get_store),
):
    """Delete a conversation."""
    try:
        await store.delete(conversation_id, user_id)
    except ChatRelayError as e:
        raise _http_error(e)
    return {"message": "Deleted"}


# ============= Chat Endpoints =============


@router.post("/chat-stream")
async def chat_stream(
    body: ChatRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """Send a message and stream the reply as Server-Sent Events."""
    try:
        turn = await pipeline.begin_turn(
            owner_id=user_id,
            conversation_id=body.conversation_id or "",
            message=body.message or "",
            image_url=body.image_url,
            is_disconnected=request.is_disconnected,
        )
    except ChatRelayError as e:
        raise _http_error(e)

    return create_sse_response(turn.stream())


# ============= App =============


def create_app(
    store: ConversationStore | None = None,
    client: CompletionClient | None = None,
    cache: ResponseCache | None = None,
    sweep_cache: bool = True,
) -> FastAPI:
    """Build the application and wire its services."""
    app = FastAPI(
        title="chatrelay API",
        description="Streaming chat backend with context-window management",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if store is None:
        store = create_conversation_store()
    if client is None:
        client = get_completion_client()
    if cache is None:
        cache = ResponseCache(ttl_seconds=settings.cache_ttl_seconds)
    summarizer = Summarizer(
        client,
        model=settings.claude_summary_model,
        max_messages=settings.summary_max_messages,
    )
    context_manager = ContextWindowManager(
        summarizer,
        token_budget=settings.context_token_budget,
        tail_size=settings.context_tail_size,
    )

    app.state.store = store
    app.state.cache = cache
    app.state.pipeline = ChatPipeline(store, cache, context_manager, client)

    @app.on_event("startup")
    async def startup_event():
        """Connect storage and start the cache sweeper."""
        configure_logging()
        await store.connect()
        await store.ensure_tables_exist()
        if sweep_cache:
            cache.start_sweeper(settings.cache_sweep_interval_seconds)
        logger.info("chatrelay started")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Clean up on shutdown."""
        await cache.stop_sweeper()
        await store.disconnect()

    app.include_router(router)
    return app


app = create_app()


# ============= Run =============


def run():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "chatrelay.api:app",
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    run()
