from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ProjectCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    root_path: str = Field(min_length=1)


class ProjectResponse(BaseModel):
    id: str
    name: str
    root_path: str
    created_at: str


class ChatCreateRequest(BaseModel):
    org_id: str = Field(min_length=1)
    workspace_id: str = Field(min_length=1)
    title: str = "New Chat"


class ChatResponse(BaseModel):
    id: int
    project_id: str
    org_id: str
    workspace_id: str
    title: str
    created_at: str


class ConsentEntry(BaseModel):
    action: str
    default: Literal["never", "ask", "always"]
    override: Literal["never", "ask", "always"] | None = None
    effective: Literal["never", "ask", "always"]


class ConsentsResponse(BaseModel):
    actions: list[ConsentEntry]
    consent_path: str


class ConsentUpdateRequest(BaseModel):
    action: str = Field(min_length=1)
    decision: Literal["never", "ask", "always"]


class StreamRequest(BaseModel):
    prompt: str = Field(min_length=1)
    request_id: str | None = None
    user_id: str | None = None
    apply_mode: Literal["auto", "manual"] | None = None


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool


class ApplyRequest(BaseModel):
    payload: str = Field(min_length=1)
    org_id: str = Field(min_length=1)
    workspace_id: str = Field(min_length=1)
    user_id: str | None = None


class ApplyResponse(BaseModel):
    updatedFiles: bool
    error: str | None = None
    extraFiles: list[str] = Field(default_factory=list)
    extraFilesError: str | None = None
    applied: list[str] = Field(default_factory=list)
    commitHash: str | None = None
    selfHealing: dict[str, Any]


class _InboundMessage(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StartChatStreamMessage(_InboundMessage):
    type: Literal["start_chat_stream"]
    request_id: str = Field(alias="requestId", min_length=1)
    org_id: str = Field(alias="orgId", min_length=1)
    workspace_id: str = Field(alias="workspaceId", min_length=1)
    chat_id: int = Field(alias="chatId")
    prompt: str = Field(min_length=1)
    user_id: str | None = Field(default=None, alias="userId")
    apply_mode: Literal["auto", "manual"] | None = Field(default=None, alias="applyMode")


class CancelChatStreamMessage(_InboundMessage):
    type: Literal["cancel_chat_stream"]
    request_id: str = Field(alias="requestId", min_length=1)


class ConsentReplyMessage(_InboundMessage):
    type: Literal["consent_response"]
    request_id: str = Field(alias="requestId", min_length=1)
    action: str
    decision: Literal["accept-once", "accept-always", "decline"]


InboundMessage = Annotated[
    Union[StartChatStreamMessage, CancelChatStreamMessage, ConsentReplyMessage],
    Field(discriminator="type"),
]
inbound_message_adapter: TypeAdapter[Any] = TypeAdapter(InboundMessage)
