"""Workflow definition, execution result and recovery models."""

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

UIType = Literal["table", "badge", "card"]
RecoveryStrategy = Literal["alternative_function", "parameter_fix", "data_transform", "workflow_adaptation"]
EntryType = Literal["form", "button", "auto_update"]


class ParameterMetadata(BaseModel):
    """Schema hints for a single action parameter, copied from the tool schema."""

    model_config = ConfigDict(extra="allow")

    type: str | None = None
    description: str | None = None
    enum: list[Any] | None = None
    required: bool = False


class WorkflowAction(BaseModel):
    """One step of a workflow: a named function call with parameters."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    tool: str = Field(validation_alias=AliasChoices("tool", "toolName", "tool_name"))
    description: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    parameter_metadata: dict[str, ParameterMetadata] | None = Field(default=None, alias="parameterMetadata")
    map: bool = False

    @property
    def tool_name(self) -> str:
        return self.tool.removeprefix("functions.")


class WorkflowDefinition(BaseModel):
    """An ordered list of actions. Immutable once submitted."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: Literal["workflow"] = "workflow"
    description: str = ""
    actions: list[WorkflowAction]

    @model_validator(mode="after")
    def validate_action_ids(self) -> "WorkflowDefinition":
        seen: set[str] = set()
        for action in self.actions:
            if not action.id.strip():
                raise ValueError("Each action must have a non-empty id")
            if action.id in seen:
                raise ValueError(f"Duplicate action id: {action.id}")
            seen.add(action.id)
        return self


class UIContent(BaseModel):
    """Rendering payload for a single result."""

    type: UIType
    title: str
    content: str
    timestamp: str


class UIElement(BaseModel):
    """Presentation hint attached to an action result."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["result"] = "result"
    action_id: str = Field(alias="actionId")
    tool: str
    content: UIContent


class ActionResult(BaseModel):
    """Successful output of one action. Never mutated after creation."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action_id: str = Field(alias="actionId")
    result: Any
    ui_element: UIElement = Field(alias="uiElement")
    recovered: bool = False


class StepError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_id: str = Field(alias="actionId")
    error: str


class WorkflowExecutionSuccess(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: Literal[True] = True
    execution_id: str = Field(alias="executionId")
    results: list[ActionResult]
    visualization: UIType | None = None
    step_errors: list[StepError] | None = Field(default=None, alias="stepErrors")


class WorkflowExecutionFailure(BaseModel):
    """Failure response. `results` holds the actions that completed before the failure."""

    model_config = ConfigDict(populate_by_name=True)

    success: Literal[False] = False
    execution_id: str = Field(alias="executionId")
    error: str
    details: str
    results: list[ActionResult] = Field(default_factory=list)
    step_errors: list[StepError] = Field(default_factory=list, alias="stepErrors")
    status_code: int = Field(default=500, exclude=True)


WorkflowExecutionResponse = WorkflowExecutionSuccess | WorkflowExecutionFailure


class RecoveryCandidate(BaseModel):
    """A proposed alternative function or parameter set for a failed action."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    new_function: str | None = Field(default=None, alias="newFunction")
    new_parameters: dict[str, Any] | None = Field(default=None, alias="newParameters")
    reasoning: str = ""
    confidence: float = 0.0

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        """Coerce the model's confidence into [0, 1]."""
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        return min(max(value, 0.0), 1.0)


class ErrorRecoverySuggestion(BaseModel):
    """Diagnosis of a failed step. Transient, never persisted."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    strategy: RecoveryStrategy = "parameter_fix"
    candidates: list[RecoveryCandidate] = Field(
        default_factory=list,
        validation_alias=AliasChoices("candidates", "suggestions"),
    )
    can_continue: bool = Field(default=True, alias="canContinue")


class EntryField(BaseModel):
    """A form field the user has to fill in before running a workflow."""

    model_config = ConfigDict(populate_by_name=True)

    key: str
    label: str | None = None
    type: Literal["string", "number", "boolean", "date", "enum"] = "string"
    required: bool = True
    enum_values: list[Any] | None = Field(default=None, alias="enumValues")


class WorkflowEntry(BaseModel):
    """How a user should trigger a workflow from the UI."""

    model_config = ConfigDict(populate_by_name=True)

    entry_type: EntryType = Field(alias="entryType")
    description: str | None = None
    update_interval: str | None = Field(default=None, alias="updateInterval")
    entry_fields: list[EntryField] | None = Field(default=None, alias="fields")


class Visualization(BaseModel):
    """Rendering hint for the last tool output of a chat turn."""

    type: UIType
    tool: str
    data: Any
