"""Contract shared with the AI assistant backend. The assistant itself runs
elsewhere; this service only assembles the context it is given."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime | None = None


class ChatContext(BaseModel):
    ad_accounts: list[dict[str, Any]] = Field(default_factory=list)
    campaigns: list[dict[str, Any]] = Field(default_factory=list)
    adsets: list[dict[str, Any]] = Field(default_factory=list)
    ads: list[dict[str, Any]] = Field(default_factory=list)
    # campaign id -> 30-day summary
    metrics: dict[str, Any] = Field(default_factory=dict)
    selected_items: list[dict[str, Any]] = Field(default_factory=list)
    current_view: str | None = None
    date_range: dict[str, str] | None = None


class TaggedItem(BaseModel):
    id: str
    name: str
    type: Literal["file", "folder", "campaign", "adset", "ad"]
    path: str | None = None
    content: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    tags: list[str] = Field(default_factory=list)


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    thread_id: str | None = None
    context: ChatContext | None = None
    tagged_files: list[TaggedItem] = Field(default_factory=list)
    use_frontend_data: bool = False


class SuggestedAction(BaseModel):
    label: str
    action: str
    params: dict[str, Any] = Field(default_factory=dict)


class ChatResponse(BaseModel):
    response: str
    thread_id: str
    sources: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    suggested_actions: list[SuggestedAction] = Field(default_factory=list)
