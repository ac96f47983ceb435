from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ContentPart(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    text: str | None = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "tool", "developer"] | str
    content: str | list[ContentPart] | None = None


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[ChatMessage] = Field(min_length=1)
    stream: bool = False


class ContentItem(BaseModel):
    id: str
    text: str


class MaskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str | None = None
    ttl_seconds: int | None = Field(default=None, ge=1)
    items: list[ContentItem] = Field(min_length=1)


class ProtectionSummaryModel(BaseModel):
    pii_count: int
    secret_count: int
    pii_types: list[str]
    secret_types: list[str]


class MaskResponse(BaseModel):
    session_id: str
    ttl_seconds: int
    expires_at: str
    placeholders_count: int
    summary: ProtectionSummaryModel
    items: list[ContentItem]


class UnmaskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    items: list[ContentItem] = Field(min_length=1)
    delete_context: bool = False
    allow_missing_context: bool | None = None


class UnmaskedItem(BaseModel):
    id: str
    text: str
    replacements: int


class UnmaskResponse(BaseModel):
    session_id: str
    context_found: bool
    replacements: int
    context_deleted: bool
    items: list[UnmaskedItem]


class UnmaskStreamRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    stream_id: str = "default"
    chunk: str
    final: bool = False
    delete_context: bool = False
    allow_missing_context: bool | None = None


class UnmaskStreamResponse(BaseModel):
    session_id: str
    stream_id: str
    context_found: bool
    output: str
    replacements: int
    buffered_chars: int
    final: bool
    context_deleted: bool


class SessionFinalizeResponse(BaseModel):
    session_id: str
    finalized: bool


class InfoResponse(BaseModel):
    service: str
    placeholder_style: str
    pii_detection: dict[str, Any]
    secrets_detection: dict[str, Any]
