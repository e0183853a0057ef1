"""Token balance and content schemas."""

from datetime import datetime

from pydantic import Field, StrictStr, field_validator

from .base import CamelModel


class BalanceOut(CamelModel):
    token_count: int


class ProvisionOut(CamelModel):
    token_count: int
    created: bool


class ContentCreate(CamelModel):
    content: StrictStr

    @field_validator("content")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Content is required and must be a non-empty string")
        return v


class ContentOut(CamelModel):
    id: int
    user_id: str
    content: str
    created_by: str
    is_public: bool
    created_at: datetime
    updated_at: datetime


class ContentCreated(CamelModel):
    content: ContentOut
    remaining_tokens: int


class ContentList(CamelModel):
    content: list[ContentOut] = Field(default_factory=list)


class ContentDeleted(CamelModel):
    deleted_content: ContentOut
