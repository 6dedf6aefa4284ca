"""Events produced while answering one chat message.

Each event is consumed once by the transport layer and never persisted.
"""

from typing import Literal, Optional, Union

from pydantic import BaseModel

from .domain import Usage


class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    status: str
    progress: int = 0


class TextDeltaEvent(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    delta: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    content: str = ""
    usage: Optional[Usage] = None
    model: Optional[str] = None
    response_id: Optional[str] = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str


StreamEvent = Union[StatusEvent, TextDeltaEvent, DoneEvent, ErrorEvent]
