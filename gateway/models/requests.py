"""Client request bodies.

Aliased fields (``message``/``prompt``, ``text``/``input``) are the only
transformation the gateway applies to client payloads.
"""

from typing import Any

from pydantic import BaseModel, Field, model_validator


class ChatRequest(BaseModel):
    message: str | None = None
    prompt: str | None = None
    model: str | None = None
    options: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _require_text(self) -> "ChatRequest":
        if not (self.message or self.prompt):
            raise ValueError("Message required")
        return self

    @property
    def text(self) -> str:
        return self.message or self.prompt or ""


class EmbeddingsRequest(BaseModel):
    text: str | None = None
    input: str | None = None
    model: str | None = None

    @model_validator(mode="after")
    def _require_text(self) -> "EmbeddingsRequest":
        if not (self.text or self.input):
            raise ValueError("Text required")
        return self

    @property
    def content(self) -> str:
        return self.text or self.input or ""


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    count: int | None = Field(default=None, ge=1, le=50)


class KeyCreateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=128)


class EmailRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
