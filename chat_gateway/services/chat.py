"""Chat service - drives one message through billing, history, the model and storage.

`send_message_stream` is the single source of truth for a chat turn:

1. pre-authorize billing for the user,
2. load history and persist the user turn,
3. stream the model's answer (resuming server-side context when possible),
4. persist the assistant turn,
5. settle billing exactly once: commit when usage came back, rollback otherwise.

Collaborator failures are turned into `ErrorEvent`s; nothing but the events
themselves leaves the generator.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from typing import AsyncIterator, Dict, List, Optional, Sequence

from pydantic import BaseModel

from chat_gateway.models.domain import Attachment, ImageInput, Message, Usage, WalletBalance
from chat_gateway.models.events import DoneEvent, ErrorEvent, StatusEvent, StreamEvent
from chat_gateway.services.billing import BillingClient, BillingError
from chat_gateway.services.llm_service import LLMService
from chat_gateway.services.storage import ConversationStore

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE_REASONS = frozenset({"balance_non_positive", "balance_below_threshold"})

# HTTP status used when an error event is turned into a synchronous failure
ERROR_HTTP_STATUS: Dict[str, int] = {
    "INSUFFICIENT_BALANCE": 402,
    "BILLING_DENIED": 403,
    "BILLING_ERROR": 502,
    "AI_ERROR": 502,
    "STORAGE_ERROR": 500,
}


class ChatError(Exception):
    """Operational error with a stable code, safe to show to the caller."""

    def __init__(self, code: str, message: str, http_status: int = 500):
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status


class SendMessageParams(BaseModel):
    session_id: str
    user_id: str
    message: str
    request_id: str
    images: Optional[List[ImageInput]] = None
    shell_id: Optional[str] = None
    origin_url: Optional[str] = None
    context: Optional[Dict[str, str]] = None


class ChatReply(BaseModel):
    content: str
    usage: Optional[Usage] = None
    model: Optional[str] = None
    response_id: Optional[str] = None


def inject_context(message: str, context: Dict[str, str]) -> str:
    lines = "\n".join(f"{key}: {value}" for key, value in context.items())
    return f"{message}\n\nUser context:\n{lines}"


def latest_response_id(messages: Sequence[Message]) -> Optional[str]:
    """Response id of the most recent assistant turn, if it carries one."""
    for msg in reversed(messages):
        if msg.role == "assistant":
            return msg.response_id
    return None


def _attachments(images: Optional[Sequence[ImageInput]]) -> Optional[List[Attachment]]:
    if not images:
        return None
    return [
        Attachment(type=img.mime_type or "image/jpeg", filename=img.filename, data_url=img.data_url)
        for img in images
    ]


class _Settlement:
    """The one settlement owed for a pre-authorized request."""

    def __init__(self, billing: BillingClient, params: SendMessageParams):
        self.billing = billing
        self.params = params
        self.authorized = False
        self.settled = False

    @property
    def pending(self) -> bool:
        return self.authorized and not self.settled

    async def commit(self, usage: Usage, model: Optional[str]) -> None:
        if not self.pending:
            return
        self.settled = True
        try:
            await self.billing.settle(
                self.params.user_id,
                self.params.request_id,
                "commit",
                usage=usage,
                model=model,
                shell_id=self.params.shell_id,
                origin_url=self.params.origin_url,
            )
        except Exception as exc:
            # The user already has the answer; billing faults are not surfaced
            logger.error(
                "Billing commit failed user=%s usage=%s: %s",
                self.params.user_id,
                usage.model_dump(),
                exc,
            )

    async def rollback(self) -> None:
        if not self.pending:
            return
        self.settled = True
        try:
            await self.billing.settle(self.params.user_id, self.params.request_id, "rollback")
        except Exception as exc:
            logger.error("Billing rollback failed user=%s: %s", self.params.user_id, exc)


class ChatService:
    """Handles chat turns, sessions, identity and balance lookups."""

    def __init__(
        self,
        store: ConversationStore,
        billing: BillingClient,
        llm: LLMService,
        dev_mode: bool = False,
    ):
        self.store = store
        self.billing = billing
        self.llm = llm
        # Development mode tolerates an unreachable billing service
        self.dev_mode = dev_mode

    # ─────────────────────────── Streaming turn ───────────────────────────
    async def send_message_stream(self, params: SendMessageParams) -> AsyncIterator[StreamEvent]:
        started = time.monotonic()
        settlement = _Settlement(self.billing, params)
        logger.info(
            "Chat turn start session=%s user=%s length=%d images=%d context=%s",
            params.session_id,
            params.user_id,
            len(params.message),
            len(params.images or []),
            bool(params.context),
        )

        try:
            yield StatusEvent(status="Checking balance...", progress=5)

            # 1) Billing pre-authorization
            try:
                outcome = await self.billing.pre_authorize(params.user_id, params.request_id)
            except Exception as exc:
                logger.error("Billing pre-authorization failed user=%s: %s", params.user_id, exc)
                if not self.dev_mode:
                    yield ErrorEvent(
                        code="BILLING_ERROR",
                        message="Could not check your balance. Please try again later.",
                    )
                    return
                logger.warning("Development mode: continuing without billing")
            else:
                if not outcome.allowed:
                    logger.warning(
                        "Billing denied user=%s reason=%s balance=%s",
                        params.user_id,
                        outcome.reason,
                        outcome.balance,
                    )
                    if outcome.reason in INSUFFICIENT_BALANCE_REASONS:
                        yield ErrorEvent(
                            code="INSUFFICIENT_BALANCE",
                            message="Insufficient balance. Please top up to continue.",
                        )
                    else:
                        yield ErrorEvent(
                            code="BILLING_DENIED",
                            message=f"Request denied: {outcome.reason or 'unknown reason'}",
                        )
                    return
                settlement.authorized = True

            yield StatusEvent(status="Loading conversation history...", progress=10)

            # 2) History + user turn
            try:
                existing = await self.store.get(params.user_id, params.session_id)
                text = params.message
                if params.context and not (existing and existing.messages):
                    text = inject_context(text, params.context)
                conversation = await self.store.append_message(
                    params.user_id,
                    params.session_id,
                    Message(role="user", content=text, attachments=_attachments(params.images)),
                )
            except (OSError, ValueError) as exc:
                logger.error("Failed to persist user message session=%s: %s", params.session_id, exc, exc_info=True)
                await settlement.rollback()
                yield ErrorEvent(code="STORAGE_ERROR", message="Could not save your message. Please try again later.")
                return

            resume_id = latest_response_id(conversation.messages[:-1])
            if resume_id:
                model_input = [{"role": "user", "content": text}]
            else:
                model_input = [{"role": m.role, "content": m.content} for m in conversation.messages]

            # 3) Model stream
            final: Optional[DoneEvent] = None
            try:
                async for event in self.llm.stream_completion(
                    model_input,
                    previous_response_id=resume_id,
                    images=params.images,
                    request_id=params.request_id,
                ):
                    if isinstance(event, DoneEvent):
                        final = event
                    elif isinstance(event, ErrorEvent):
                        await settlement.rollback()
                        yield event
                        return
                    else:
                        yield event
            except Exception as exc:
                logger.error("Model streaming failed session=%s: %s", params.session_id, exc, exc_info=True)
                await settlement.rollback()
                yield ErrorEvent(code="AI_ERROR", message="Failed to generate a response. Please try again later.")
                return

            if final is None:
                logger.error("Model stream ended without a result session=%s", params.session_id)
                await settlement.rollback()
                yield ErrorEvent(code="AI_ERROR", message="Failed to generate a response. Please try again later.")
                return

            # 4) Assistant turn
            if final.content:
                try:
                    await self.store.append_message(
                        params.user_id,
                        params.session_id,
                        Message(role="assistant", content=final.content, response_id=final.response_id),
                    )
                except (OSError, ValueError) as exc:
                    logger.error(
                        "Failed to persist assistant message session=%s: %s", params.session_id, exc, exc_info=True
                    )

            # 5) Settlement
            if final.usage is not None:
                await settlement.commit(final.usage, final.model)
            elif settlement.pending:
                logger.warning("Model returned no usage counters, rolling back billing")
                await settlement.rollback()

            logger.info(
                "Chat turn completed session=%s user=%s model=%s input_tokens=%s output_tokens=%s duration_ms=%d",
                params.session_id,
                params.user_id,
                final.model,
                final.usage.input_tokens if final.usage else None,
                final.usage.output_tokens if final.usage else None,
                int((time.monotonic() - started) * 1000),
            )
            yield DoneEvent(
                content=final.content,
                usage=final.usage,
                model=final.model,
                response_id=final.response_id,
            )
        finally:
            if settlement.pending:
                logger.warning("Chat turn abandoned before settlement session=%s, rolling back", params.session_id)
                await settlement.rollback()

    # ─────────────────────────── Synchronous turn ───────────────────────────
    async def send_message(self, params: SendMessageParams) -> ChatReply:
        """Drain `send_message_stream` and return the final answer or raise `ChatError`."""
        reply: Optional[ChatReply] = None
        error: Optional[ErrorEvent] = None

        async for event in self.send_message_stream(params):
            if isinstance(event, DoneEvent):
                reply = ChatReply(
                    content=event.content,
                    usage=event.usage,
                    model=event.model,
                    response_id=event.response_id,
                )
            elif isinstance(event, ErrorEvent):
                error = event

        if error is not None:
            raise ChatError(error.code, error.message, ERROR_HTTP_STATUS.get(error.code, 502))
        if reply is None:
            raise ChatError("AI_ERROR", "Failed to generate a response. Please try again later.", 502)
        return reply

    # ─────────────────────────── Session helpers ───────────────────────────
    async def create_session(self, user_id: str, request_id: str) -> str:
        """Allocate a session with the billing service and create its conversation file."""
        try:
            allocation = await self.billing.create_session(user_id, str(uuid.uuid4()), request_id)
            session_id = allocation.session_id
        except BillingError as exc:
            logger.error("Session allocation failed user=%s: %s", user_id, exc)
            if not self.dev_mode:
                raise ChatError("SESSION_CREATE_FAILED", "Could not create a new conversation.", 502) from exc
            session_id = f"local_{int(time.time() * 1000)}_{secrets.token_hex(3)}"
            logger.warning("Development mode: using local session id %s", session_id)

        await self.store.create(user_id, session_id)
        logger.info("Session created user=%s session=%s", user_id, session_id)
        return session_id

    async def resolve_identity(
        self, provider: str, tenant: str, external_user_id: str, request_id: str
    ) -> tuple[str, bool]:
        try:
            result = await self.billing.resolve_identity(provider, tenant, external_user_id, request_id)
        except BillingError as exc:
            logger.error("Identity resolution failed provider=%s tenant=%s: %s", provider, tenant, exc)
            raise ChatError("IDENTITY_ERROR", "Could not identify the user.", 502) from exc
        return result.user_id, result.is_new

    async def get_balance(
        self,
        user_id: str,
        request_id: str,
        shell_id: Optional[str] = None,
        origin_url: Optional[str] = None,
    ) -> WalletBalance:
        try:
            return await self.billing.fetch_balance(user_id, request_id, shell_id, origin_url)
        except BillingError as exc:
            logger.error("Balance lookup failed user=%s: %s", user_id, exc)
            raise ChatError("BALANCE_ERROR", "Could not fetch the balance.", 502) from exc
