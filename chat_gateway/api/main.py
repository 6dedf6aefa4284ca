import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chat_gateway.api.errors import register_error_handlers
from chat_gateway.api.middleware import register_request_logging
from chat_gateway.api.routers import chat, client_log, conversations, health
from chat_gateway.config import Settings, get_settings
from chat_gateway.services.billing import BillingClient
from chat_gateway.services.chat import ChatService
from chat_gateway.services.llm_service import LLMService
from chat_gateway.services.notifier import AdminNotifier
from chat_gateway.services.scheduler import run_daily
from chat_gateway.services.storage import ConversationStore

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ConversationStore] = None,
    billing: Optional[BillingClient] = None,
    llm: Optional[LLMService] = None,
    notifier: Optional[AdminNotifier] = None,
) -> FastAPI:
    """Build the application. Collaborators not passed in are built from `settings`."""
    settings = settings or get_settings()
    store = store or ConversationStore(
        settings.data_path,
        max_title_length=settings.max_title_length,
        ttl_days=settings.conversation_ttl_days,
        assistant_name=settings.assistant_name,
    )
    billing = billing or BillingClient(
        base_url=settings.billing_api_url,
        api_key=settings.billing_api_key,
        module_id=settings.module_id,
        default_model=settings.openai_model,
        timeout=settings.billing_timeout_seconds,
        max_retries=1 if settings.is_development else 3,
        retry_base_delay=settings.billing_retry_base_delay,
    )
    llm = llm or LLMService(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        instructions=settings.system_instructions,
        prompt_id=settings.openai_prompt_id,
        timeout=settings.upstream_timeout_seconds,
        max_retries=settings.upstream_max_retries,
        retry_base_delay=settings.upstream_retry_base_delay,
    )
    notifier = notifier or AdminNotifier(settings.admin_bot_token, settings.admin_chat_id)

    async def retention_job() -> None:
        deleted = await store.sweep(settings.conversation_ttl_days)
        if deleted:
            await notifier.notify_retention(settings.module_name, deleted, settings.conversation_ttl_days)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        background = []
        if settings.retention_enabled:
            background.append(
                asyncio.create_task(run_daily(settings.retention_sweep_hour, retention_job, "retention sweep"))
            )
        if notifier.is_configured():
            background.append(
                asyncio.create_task(notifier.notify_started(settings.module_name, settings.environment, settings.port))
            )
        logger.info("%s v%s started (env=%s)", settings.module_name, settings.version, settings.environment)
        try:
            yield
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await billing.aclose()
            await llm.aclose()
            await notifier.aclose()
            logger.info("%s stopped", settings.module_name)

    app = FastAPI(
        title=settings.module_name,
        description="Chat gateway: streams model answers, keeps conversation history and bills per request.",
        version=settings.version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.chat_service = ChatService(store, billing, llm, dev_mode=settings.is_development)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_request_logging(app)
    register_error_handlers(app)

    app.include_router(health.router)
    app.include_router(chat.router)
    app.include_router(conversations.router)
    app.include_router(client_log.router)
    return app
