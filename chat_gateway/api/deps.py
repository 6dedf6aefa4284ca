from fastapi import Request

from chat_gateway.config import Settings
from chat_gateway.services.chat import ChatService
from chat_gateway.services.storage import ConversationStore

# Services are built once by `create_app` and kept on `app.state`


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_request_id(request: Request) -> str:
    """Request id assigned by the request middleware."""
    return request.state.request_id
