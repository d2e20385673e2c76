"""Pydantic schemas for the messaging HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class EnqueueTaskRequest(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    next_attempt_at: datetime | None = None
    schedule: bool = False


class EnqueueTaskResponse(BaseModel):
    task_id: UUID


class OutboundMessageRequest(BaseModel):
    contact_id: UUID
    channel: str
    body: str
    to_address: str | None = None
    subject: str | None = None
    media_urls: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: str | None = None
    next_attempt_at: datetime | None = None


class OutboundMessageResponse(BaseModel):
    message_id: UUID | None = None


class InboundMessageRequest(BaseModel):
    channel: str
    body: str = ""
    from_address: str = ""
    to_address: str | None = None
    subject: str | None = None
    provider: str | None = None
    provider_message_id: str | None = None
    media_urls: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime | None = None
    sender_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None


class InboundMessageResponse(BaseModel):
    duplicate: bool
    message_id: UUID
    thread_id: UUID
    contact_id: UUID | None = None
    lead_id: UUID | None = None


class DeliveryStatusRequest(BaseModel):
    provider: str = Field(min_length=1)
    provider_message_id: str = Field(min_length=1)
    status: str
    detail: str | None = None
    occurred_at: datetime | None = None


class DeliveryStatusResponse(BaseModel):
    applied: bool
    reason: str
    status: str | None = None
    message_id: UUID | None = None


class ProviderHealth(BaseModel):
    provider: str
    status: str
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_failure_detail: str | None = None


class ProviderHealthList(BaseModel):
    items: list[ProviderHealth]


class ConversationMessage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    thread_id: UUID
    participant_id: UUID | None = None
    direction: str
    channel: str
    subject: str | None = None
    body: str
    media_urls: list[str] = Field(default_factory=list)
    to_address: str | None = None
    from_address: str | None = None
    provider: str | None = None
    provider_message_id: str | None = None
    delivery_status: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    created_at: datetime
    sent_at: datetime | None = None
    received_at: datetime | None = None


class ConversationMessageList(BaseModel):
    items: list[ConversationMessage]
    total: int
