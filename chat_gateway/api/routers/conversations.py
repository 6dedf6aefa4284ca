import logging
from typing import Optional

from fastapi import APIRouter, Depends, Path
from fastapi.responses import Response

from chat_gateway.api.deps import get_app_settings, get_chat_service, get_request_id, get_store
from chat_gateway.api.routers.chat import build_send_params, require_user_id
from chat_gateway.config import Settings
from chat_gateway.models.domain import ConversationMessageRequest, NewConversationRequest, SendMessageRequest
from chat_gateway.services.chat import ChatError, ChatService
from chat_gateway.services.storage import ConversationStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def _not_found() -> ChatError:
    return ChatError("CONVERSATION_NOT_FOUND", "Conversation not found", 404)


@router.get("")
async def list_conversations(
    user_id: Optional[str] = None,
    store: ConversationStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
    request_id: str = Depends(get_request_id),
):
    """Conversations the user started within the listing window, most recently active first."""
    user_id = require_user_id(user_id)
    conversations = await store.list_for_user(user_id, days=settings.conversation_list_days)
    return {
        "success": True,
        "conversations": [c.model_dump(mode="json") for c in conversations],
        "request_id": request_id,
    }


@router.post("")
async def create_conversation(
    body: NewConversationRequest,
    chat: ChatService = Depends(get_chat_service),
    request_id: str = Depends(get_request_id),
):
    user_id = require_user_id(body.user_id)
    session_id = await chat.create_session(user_id, request_id)
    return {"success": True, "session_id": session_id, "request_id": request_id}


@router.get("/{session_id}")
async def get_conversation(
    session_id: str = Path(..., title="Conversation session id"),
    user_id: Optional[str] = None,
    store: ConversationStore = Depends(get_store),
    request_id: str = Depends(get_request_id),
):
    user_id = require_user_id(user_id)
    conversation = await store.get(user_id, session_id)
    if conversation is None:
        raise _not_found()
    return {"success": True, "conversation": conversation.model_dump(mode="json"), "request_id": request_id}


@router.post("/{session_id}/messages")
async def post_message(
    body: ConversationMessageRequest,
    session_id: str = Path(..., title="Conversation session id"),
    chat: ChatService = Depends(get_chat_service),
    settings: Settings = Depends(get_app_settings),
    request_id: str = Depends(get_request_id),
):
    """Synchronous send addressed by path instead of body."""
    send = SendMessageRequest(session_id=session_id, user_id=body.user_id, message=body.text, images=body.images)
    params = build_send_params(send, request_id, settings.max_images_per_message)
    reply = await chat.send_message(params)
    return {
        "success": True,
        "content": reply.content,
        "usage": reply.usage.model_dump() if reply.usage else None,
        "request_id": request_id,
    }


@router.get("/{session_id}/download")
async def download_conversation(
    session_id: str = Path(..., title="Conversation session id"),
    user_id: Optional[str] = None,
    store: ConversationStore = Depends(get_store),
):
    user_id = require_user_id(user_id)
    markdown = await store.export_to_text(user_id, session_id)
    if markdown is None:
        raise _not_found()

    logger.info("Conversation exported user=%s session=%s (%d chars)", user_id, session_id, len(markdown))
    return Response(
        content=markdown,
        media_type="text/markdown; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="conversation_{session_id}.md"'},
    )
