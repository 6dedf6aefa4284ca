"""
Shared pytest fixtures for the chat gateway tests.

Provides:
- Settings isolated from the environment and any .env file
- A conversation store rooted in a temporary directory
- In-memory billing and model fakes that record every call
"""

from typing import Any, Dict, List, Optional

import pytest

from chat_gateway.config import Settings
from chat_gateway.models.domain import (
    BillingOutcome,
    IdentityResolution,
    SessionAllocation,
    SettlementResult,
    Usage,
    WalletBalance,
)
from chat_gateway.models.events import DoneEvent, StatusEvent, TextDeltaEvent
from chat_gateway.services.billing import BillingError
from chat_gateway.services.storage import ConversationStore


class FakeBilling:
    """Records billing calls; outcomes are set per test."""

    def __init__(self) -> None:
        self.outcome = BillingOutcome(allowed=True, balance=100)
        self.pre_authorize_error: Optional[Exception] = None
        self.session_error: Optional[Exception] = None
        self.settle_error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []

    def settlements(self, action: Optional[str] = None) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["op"] == "settle" and (action is None or c["action"] == action)]

    async def pre_authorize(self, user_id: str, request_id: str) -> BillingOutcome:
        self.calls.append({"op": "pre_authorize", "user_id": user_id, "request_id": request_id})
        if self.pre_authorize_error:
            raise self.pre_authorize_error
        return self.outcome

    async def settle(self, user_id, request_id, action, usage=None, model=None, shell_id=None, origin_url=None):
        self.calls.append(
            {
                "op": "settle",
                "user_id": user_id,
                "action": action,
                "usage": usage,
                "model": model,
                "shell_id": shell_id,
                "origin_url": origin_url,
            }
        )
        if self.settle_error:
            raise self.settle_error
        return SettlementResult(action=action, credits_spent=1 if action == "commit" else 0)

    async def create_session(self, user_id: str, idempotency_key: str, request_id: str) -> SessionAllocation:
        self.calls.append({"op": "create_session", "user_id": user_id})
        if self.session_error:
            raise self.session_error
        return SessionAllocation(session_id="sess-remote-1")

    async def resolve_identity(self, provider, tenant, external_user_id, request_id) -> IdentityResolution:
        self.calls.append({"op": "resolve_identity", "provider": provider, "tenant": tenant})
        if external_user_id == "broken":
            raise BillingError("IDENTITY_FAILED", "nope", 500)
        return IdentityResolution(user_id=f"u-{external_user_id}", is_new=True)

    async def fetch_balance(self, user_id, request_id, shell_id=None, origin_url=None) -> WalletBalance:
        self.calls.append({"op": "fetch_balance", "user_id": user_id, "shell_id": shell_id})
        return WalletBalance(user_id=user_id, balance=42.5, currency_name="credits", topup_url="https://pay/x")

    async def aclose(self) -> None:
        pass


def default_script(text: str = "Hello there", response_id: Optional[str] = "resp_1", with_usage: bool = True):
    half = len(text) // 2
    return [
        StatusEvent(status="Connecting to the model...", progress=10),
        TextDeltaEvent(delta=text[:half]),
        TextDeltaEvent(delta=text[half:]),
        DoneEvent(
            content=text,
            usage=Usage(input_tokens=12, output_tokens=5) if with_usage else None,
            model="gpt-4o",
            response_id=response_id,
        ),
    ]


class FakeLLM:
    """Replays a scripted event list; `error` is raised after the script if set."""

    def __init__(self) -> None:
        self.script = default_script()
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []

    async def stream_completion(self, messages, previous_response_id=None, images=None, request_id=None):
        self.calls.append(
            {
                "messages": list(messages),
                "previous_response_id": previous_response_id,
                "images": images,
                "request_id": request_id,
            }
        )
        for event in self.script:
            yield event
        if self.error:
            raise self.error

    async def aclose(self) -> None:
        pass


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        APP_ENV="test",
        DATA_PATH=str(tmp_path / "data"),
        RETENTION_ENABLED=False,
        OPENAI_API_KEY="sk-test",
    )


@pytest.fixture
def store(settings) -> ConversationStore:
    return ConversationStore(settings.data_path, max_title_length=80, ttl_days=7)


@pytest.fixture
def billing() -> FakeBilling:
    return FakeBilling()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()
