"""FastAPI application: conversation CRUD and the streamed chat endpoint."""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from models import ChatStreamRequest

from chatrelay import __version__
from chatrelay.auth import require_shared_secret
from chatrelay.config import Settings, settings
from chatrelay.db import ConversationStore, create_store
from chatrelay.errors import ChatRelayError, ConversationNotFoundError
from chatrelay.locks import conversation_locks
from chatrelay.models import (
    ConversationCreatedResponse,
    ConversationListResponse,
    ConversationResponse,
    OkResponse,
)
from chatrelay.services.anthropic import AnthropicClient
from chatrelay.services.chat_handler import ChatHandler
from chatrelay.sse import create_sse_response, encode_events

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", dependencies=[Depends(require_shared_secret)])


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_chat_handler(request: Request) -> ChatHandler:
    return request.app.state.chat_handler


# ============= Conversation Endpoints =============


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(store: ConversationStore = Depends(get_store)):
    """List conversations, most recently updated first."""
    conversations = await store.list_conversations()
    return ConversationListResponse(conversations=conversations)


@router.post("/conversations", response_model=ConversationCreatedResponse)
async def create_conversation(store: ConversationStore = Depends(get_store)):
    """Create an empty conversation."""
    conversation = await store.create_conversation()
    logger.info(f"Created conversation {conversation.id}")
    return ConversationCreatedResponse(id=conversation.id)


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str, store: ConversationStore = Depends(get_store)
):
    """Get a conversation with its messages."""
    conversation = await store.get_conversation(conversation_id)
    if not conversation:
        raise ConversationNotFoundError(conversation_id)

    messages = await store.get_messages(conversation_id)
    return ConversationResponse(**conversation.model_dump(), messages=messages)


@router.delete("/conversations/{conversation_id}", response_model=OkResponse)
async def delete_conversation(
    conversation_id: str, store: ConversationStore = Depends(get_store)
):
    """Delete a conversation and its messages."""
    async with conversation_locks.hold(conversation_id):
        deleted = await store.delete_conversation(conversation_id)
    if not deleted:
        raise ConversationNotFoundError(conversation_id)
    logger.info(f"Deleted conversation {conversation_id}")
    return OkResponse()


# ============= Chat Endpoints =============


@router.post("/chat/stream")
async def chat_stream(
    body: ChatStreamRequest,
    request: Request,
    handler: ChatHandler = Depends(get_chat_handler),
):
    """Send a user turn and stream the reply as Server-Sent Events.

    Configuration, validation and lookup failures are answered with a JSON
    error before the stream starts; provider failures arrive as an ``error``
    event inside the stream.
    """
    turn = await handler.prepare_turn(body)
    events = handler.stream_reply(turn, is_disconnected=request.is_disconnected)
    return create_sse_response(encode_events(events))


# ============= App factory =============


async def chatrelay_error_handler(request: Request, exc: ChatRelayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} {exc.details or ''}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def create_app(
    config: Settings | None = None,
    store: ConversationStore | None = None,
    client: AnthropicClient | None = None,
) -> FastAPI:
    """Build the application; collaborators default to ones built from settings."""
    config = config or settings
    store = store or create_store(config)
    client = client or AnthropicClient.from_settings(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.connect()
        if not client.configured:
            logger.warning("ANTHROPIC_API_KEY is not set; chat requests will fail")
        yield
        await store.disconnect()

    app = FastAPI(
        title="Chat Relay API",
        description="Chat relay with rolling conversation summaries",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.store = store
    app.state.client = client
    app.state.chat_handler = ChatHandler(store, client, config=config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatRelayError, chatrelay_error_handler)  # type: ignore[arg-type]

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "anthropic": client.configured}

    app.include_router(router)

    # Frontend, mounted last so it never shadows the API
    if config.static_dir.is_dir():
        app.mount("/", StaticFiles(directory=config.static_dir, html=True), name="static")

    return app


app = create_app()
