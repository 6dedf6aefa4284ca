import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from chat_gateway.api.deps import get_app_settings, get_chat_service, get_request_id
from chat_gateway.api.sse import SSE_HEADERS, EventRelay
from chat_gateway.config import Settings
from chat_gateway.models.domain import IdentityInitRequest, NewConversationRequest, SendMessageRequest
from chat_gateway.services.chat import ChatError, ChatService, SendMessageParams
from chat_gateway.services.storage import check_identifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


def require_user_id(user_id: Optional[str]) -> str:
    if not user_id:
        raise ChatError("MISSING_USER_ID", "user_id is required", 400)
    return check_identifier("user_id", user_id)


def build_send_params(body: SendMessageRequest, request_id: str, max_images: int) -> SendMessageParams:
    """Validate a send request before any billing or storage call is made."""
    if not body.session_id:
        raise ChatError("MISSING_SESSION_ID", "session_id is required", 400)
    user_id = require_user_id(body.user_id)
    check_identifier("session_id", body.session_id)
    message = (body.message or "").strip()
    if not message:
        raise ChatError("EMPTY_MESSAGE", "Message must not be empty", 400)
    if body.images and len(body.images) > max_images:
        raise ChatError("TOO_MANY_IMAGES", f"At most {max_images} images per message", 400)

    return SendMessageParams(
        session_id=body.session_id,
        user_id=user_id,
        message=message,
        request_id=request_id,
        images=body.images or None,
        shell_id=body.shell_id,
        origin_url=body.origin_url,
        context=body.context,
    )


@router.post("/stream")
async def stream_message(
    body: SendMessageRequest,
    chat: ChatService = Depends(get_chat_service),
    settings: Settings = Depends(get_app_settings),
    request_id: str = Depends(get_request_id),
):
    """Answer a message as a server-sent-event stream."""
    params = build_send_params(body, request_id, settings.max_images_per_message)
    relay = EventRelay(chat.send_message_stream(params), request_id).start()
    return StreamingResponse(relay.stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/send")
async def send_message(
    body: SendMessageRequest,
    chat: ChatService = Depends(get_chat_service),
    settings: Settings = Depends(get_app_settings),
    request_id: str = Depends(get_request_id),
):
    params = build_send_params(body, request_id, settings.max_images_per_message)
    reply = await chat.send_message(params)
    return {
        "success": True,
        "content": reply.content,
        "usage": reply.usage.model_dump() if reply.usage else None,
        "request_id": request_id,
    }


@router.post("/new")
async def new_session(
    body: NewConversationRequest,
    chat: ChatService = Depends(get_chat_service),
    request_id: str = Depends(get_request_id),
):
    user_id = require_user_id(body.user_id)
    session_id = await chat.create_session(user_id, request_id)
    return {"success": True, "session_id": session_id, "request_id": request_id}


@router.post("/identity/init")
async def init_identity(
    body: IdentityInitRequest,
    chat: ChatService = Depends(get_chat_service),
    request_id: str = Depends(get_request_id),
):
    if not body.provider:
        raise ChatError("MISSING_PROVIDER", "provider is required", 400)
    if not body.tenant:
        raise ChatError("MISSING_TENANT", "tenant is required", 400)
    if not body.external_user_id:
        raise ChatError("MISSING_EXTERNAL_USER_ID", "external_user_id is required", 400)

    user_id, is_new = await chat.resolve_identity(body.provider, body.tenant, body.external_user_id, request_id)
    return {"success": True, "user_id": user_id, "is_new": is_new, "request_id": request_id}


@router.get("/balance")
async def get_balance(
    user_id: Optional[str] = None,
    shell_id: Optional[str] = None,
    origin_url: Optional[str] = None,
    chat: ChatService = Depends(get_chat_service),
    request_id: str = Depends(get_request_id),
):
    if not user_id:
        raise ChatError("MISSING_USER_ID", "user_id is required", 400)
    wallet = await chat.get_balance(user_id, request_id, shell_id, origin_url)
    return {
        "success": True,
        "balance": wallet.balance,
        "currency_name": wallet.currency_name,
        "topup_url": wallet.topup_url,
        "request_id": request_id,
    }
