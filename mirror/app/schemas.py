from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


class GarmentResponse(BaseModel):
    ok: bool = True
    cache_key: str
    degraded: bool
    cached: bool
    state: str


class FrameResponse(BaseModel):
    ok: bool = True
    visible: bool
    skipped: bool
    state: str
    countdown: Optional[int] = None


class SessionResponse(BaseModel):
    state: str
    countdown: Optional[int] = None
    garment_loaded: bool
    tracking: bool
    has_captured: bool
    pending: bool
    message: Optional[str] = None
    snapshot_url: Optional[str] = None


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: Union[str, List[Dict[str, Any]]]


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(min_length=1)
    context: Optional[List[Dict[str, Any]]] = None

    @field_validator("messages")
    @classmethod
    def strip_system_messages(cls, value: List[ChatMessage]) -> List[ChatMessage]:
        # The stylist persona is always supplied server-side.
        kept = [message for message in value if message.role != "system"]
        if not kept:
            raise ValueError("At least one user or assistant message is required.")
        return kept


class ChatResponse(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str
