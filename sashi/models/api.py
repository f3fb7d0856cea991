"""Request and response models for the HTTP API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sashi.models.llm import LLMUsage
from sashi.models.messages import ConversationMessage, ToolCall
from sashi.models.workflow import Visualization, WorkflowEntry


class ChatRequest(BaseModel):
    """Either a new inquiry or tool calls resubmitted after confirmation."""

    inquiry: str | None = None
    tools: list[ToolCall] | None = None
    previous: list[ConversationMessage] = Field(default_factory=list)


class ChatResponse(BaseModel):
    output: ConversationMessage
    tool_calls: list[ToolCall] | None = None
    visualization: Visualization | None = None
    history: list[ConversationMessage]
    state: str
    iterations: int
    usage: LLMUsage | None = None


class WorkflowRequest(BaseModel):
    """Body of the workflow endpoints. The workflow itself is validated by the service layer."""

    model_config = ConfigDict(populate_by_name=True)

    workflow: Any = None


class WorkflowExecuteRequest(WorkflowRequest):
    user_inputs: dict[str, Any] | None = Field(default=None, alias="userInputs")
    debug: bool = False


class VerificationResponse(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class EntryResponse(BaseModel):
    entry: WorkflowEntry


class FunctionInfo(BaseModel):
    """Listing entry for a registered function."""

    name: str
    description: str
    need_confirmation: bool = Field(alias="needConfirmation")
    active: bool


class FunctionToggleResponse(BaseModel):
    name: str
    active: bool


class ErrorHandlingTestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    test_type: str = Field(alias="testType")
    required_field: Any = Field(default=None, alias="requiredField")


class ErrorResponse(BaseModel):
    error: str
    details: str | None = None


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
