"""Chat models — request/response types for the streaming chat endpoints."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str

    @field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


class DocumentInput(BaseModel):
    """Document excerpt supplied by the upstream retrieval step."""
    content: str
    relevance: float = Field(default=1.0, ge=0.0, le=1.0)
    metadata: dict = Field(default_factory=dict)


class ChatRequest(BaseModel):
    """Body of POST /chat/stream.

    `messages` is the conversation as the client sees it; the last entry is
    the new user turn. Turns already stored for the thread are not re-added.
    """
    messages: list[ChatMessage] = Field(min_length=1)
    model: str | None = None
    thread_id: str | None = None
    client_key: str | None = None
    documents: list[DocumentInput] = Field(default_factory=list)
    context_budget: int | None = Field(default=None, gt=0)
    max_output_tokens: int | None = Field(default=None, gt=0)
    task_class: str | None = None               # "auto" or one of TaskClass values

    @model_validator(mode="after")
    def _last_is_user(self) -> "ChatRequest":
        if self.messages[-1].role != "user":
            raise ValueError("last message must have role 'user'")
        return self


class ContinueRequest(BaseModel):
    """Body of POST /chat/{thread_id}/continue."""
    max_output_tokens: int | None = Field(default=None, gt=0)
    client_key: str | None = None


class CompressRequest(BaseModel):
    text: str
    reduction: float = Field(default=0.3, ge=0.0, le=1.0)
    optimize: bool = False


class EstimateRequest(BaseModel):
    text: str
    model: str | None = None


class StreamEvent(BaseModel):
    """One event of the outgoing stream."""
    type: str               # "delta" | "done" | "error" | "rate_limited"
    text: str = ""
    message: str = ""
    metadata: dict = Field(default_factory=dict)
    # metadata examples:
    #   type=done:  {"state": "truncated", "continuation_eligible": true, "usage": {...}, ...}
    #   type=error: {"state": "failed"}

    def payload(self) -> dict:
        """Wire shape: {type, text} | {type, message} | {type, **metadata}."""
        data: dict = {"type": self.type}
        if self.type == "delta":
            data["text"] = self.text
        elif self.type in ("error", "rate_limited"):
            data["message"] = self.message
            data.update(self.metadata)
        else:
            data.update(self.metadata)
        return data
