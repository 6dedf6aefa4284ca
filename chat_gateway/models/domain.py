import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# --- Conversation storage models ---
class Attachment(BaseModel):
    type: str
    filename: str
    data_url: Optional[str] = None


class Message(BaseModel):
    role: Role
    content: str
    timestamp: datetime.datetime = Field(default_factory=utcnow)
    attachments: Optional[List[Attachment]] = None
    # Upstream response id; lets the next turn resume server-side context
    response_id: Optional[str] = None


class Conversation(BaseModel):
    session_id: str
    user_id: str
    title: str
    messages: List[Message] = []
    created_at: datetime.datetime = Field(default_factory=utcnow)
    updated_at: datetime.datetime = Field(default_factory=utcnow)
    metadata: Optional[Dict[str, Any]] = None


class ConversationSummary(BaseModel):
    session_id: str
    title: str
    message_count: int
    created_at: datetime.datetime
    updated_at: datetime.datetime


# --- Token usage reported by the model provider ---
class InputTokensDetails(BaseModel):
    cached_tokens: int = 0


class OutputTokensDetails(BaseModel):
    reasoning_tokens: int = 0


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    input_tokens_details: Optional[InputTokensDetails] = None
    output_tokens_details: Optional[OutputTokensDetails] = None


# --- Billing service models ---
class BillingOutcome(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    balance: float = 0
    min_balance_required: Optional[float] = None
    request_id: Optional[str] = None


class SettlementResult(BaseModel):
    success: bool = True
    action: Literal["commit", "rollback"]
    credits_spent: float = 0
    balance_after: Optional[float] = None
    request_id: Optional[str] = None


class WalletBalance(BaseModel):
    user_id: str
    balance: float
    currency_name: str = ""
    topup_url: Optional[str] = None


class IdentityResolution(BaseModel):
    user_id: str
    is_new: bool = False
    status: Optional[str] = None


class SessionAllocation(BaseModel):
    session_id: str
    allocated: bool = True


# --- API request models ---
class ImageInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str
    filename: str = "image"
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    size_bytes: Optional[int] = Field(default=None, alias="sizeBytes")

    @property
    def data_url(self) -> str:
        if self.data.startswith("data:"):
            return self.data
        return f"data:{self.mime_type or 'image/jpeg'};base64,{self.data}"


class SendMessageRequest(BaseModel):
    # Required fields are checked by hand so each gets its own error code
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    message: Optional[str] = None
    images: Optional[List[ImageInput]] = None
    shell_id: Optional[str] = None
    origin_url: Optional[str] = None
    context: Optional[Dict[str, str]] = None


class ConversationMessageRequest(BaseModel):
    user_id: Optional[str] = None
    text: Optional[str] = None
    images: Optional[List[ImageInput]] = None


class NewConversationRequest(BaseModel):
    user_id: Optional[str] = None


class IdentityInitRequest(BaseModel):
    provider: Optional[str] = None
    tenant: Optional[str] = None
    external_user_id: Optional[str] = None


class FrontendLogEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    level: str = "info"
    event: str = ""
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    url: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, alias="userAgent")


class ClientLogBatch(BaseModel):
    entries: Optional[List[FrontendLogEntry]] = None
