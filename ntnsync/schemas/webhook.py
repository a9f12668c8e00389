"""Webhook event payload sent by Notion."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class EventEntity(BaseModel):
    id: str = ""
    type: str = ""


class EventParent(BaseModel):
    id: str = ""
    type: str = ""


class EventAuthor(BaseModel):
    id: str = ""
    type: str = ""


class EventData(BaseModel):
    parent: EventParent | None = None
    updated_blocks: list[EventEntity] = Field(default_factory=list)


class Event(BaseModel):
    """A webhook delivery; URL verification requests carry only ``verification_token``."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    type: str = ""
    timestamp: str = ""
    workspace_id: str = ""
    workspace_name: str = ""
    subscription_id: str = ""
    integration_id: str = ""
    attempt_number: int = 0
    api_version: str = ""
    authors: list[EventAuthor] = Field(default_factory=list)
    entity: EventEntity | None = None
    data: EventData = Field(default_factory=EventData)
    verification_token: str = ""

    @property
    def entity_id(self) -> str:
        return self.entity.id if self.entity else ""

    @property
    def entity_type(self) -> str:
        return self.entity.type if self.entity else ""
