from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "tool"]
    content: str | None = None


class AICompletionRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    model: str | None = None
    operation_type: str = Field(default="chat", min_length=1, max_length=64)
    max_completion_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, ge=0, le=2)
    response_format: dict[str, Any] | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    entity_type: str | None = Field(default=None, max_length=64)
    entity_id: str | None = Field(default=None, max_length=128)
    stream: bool = False


class AICompletionResponse(BaseModel):
    id: str
    model: str
    content: str
    tool_calls: list[dict[str, Any]]
    cost: int
    tokens_prompt: int
    tokens_completion: int
    estimated: bool
    usage_record_id: UUID


class CreditStatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    balance: int
    credit_limit: int
    monthly_allocation: int
    overage_allowed: bool
    credit_floor: int
    plan_type: str
    subscription_status: str | None
    billing_exempt: bool


class UsageRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID | None
    operation_type: str
    model_used: str
    tokens_prompt: int
    tokens_completion: int
    cost: int
    entity_type: str | None
    entity_id: str | None
    usage_metadata: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("usage_metadata", "metadata"),
        serialization_alias="metadata",
    )
    success: bool
    error_message: str | None
    created_at: datetime


class WebhookAck(BaseModel):
    received: bool = True
    outcome: Literal["processed", "duplicate", "ignored"]
