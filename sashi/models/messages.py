"""Conversation message and tool call models."""

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class FunctionCall(BaseModel):
    """Function name and JSON-encoded arguments of a tool call."""

    name: str
    arguments: str = "{}"


class ToolCall(BaseModel):
    """A request from the model to invoke a registered function.

    `confirmed` is tri-state: None means no human decision yet, True means
    approved, False means declined.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall
    confirmed: bool | None = None
    needs_confirm: bool | None = Field(default=None, alias="needsConfirm")

    @property
    def function_name(self) -> str:
        """Target function name with any `functions.` prefix removed."""
        return self.function.name.removeprefix("functions.")

    @property
    def arguments_json(self) -> str:
        return self.function.arguments

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the argument payload.

        Raises:
            ValueError: If the payload is not a JSON object
        """
        raw = self.function.arguments or "{}"
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid arguments for {self.function_name}: {e.msg}") from e
        if not isinstance(decoded, dict):
            raise ValueError(f"Arguments for {self.function_name} must be a JSON object")
        return decoded


class ConversationMessage(BaseModel):
    """A message in a conversation, ordered chronologically."""

    model_config = ConfigDict(extra="ignore")

    role: Literal["system", "user", "assistant", "tool"]
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None


def trim_history(messages: list[ConversationMessage], limit: int = 20) -> list[ConversationMessage]:
    """Keep roughly the most recent `limit` messages.

    The kept window always starts at a user message so tool calls and their
    outputs stay together. When no user message falls inside the last `limit`
    messages, the window is extended back to the latest one: the message that
    started the current turn is never dropped.
    """
    if len(messages) <= limit:
        start = 0
    else:
        cutoff = len(messages) - limit
        user_indexes = [index for index, message in enumerate(messages) if message.role == "user"]
        start = next((index for index in user_indexes if index >= cutoff), None)
        if start is None:
            start = max((index for index in user_indexes if index < cutoff), default=cutoff)

    while start < len(messages) and messages[start].role == "tool":
        start += 1
    return list(messages[start:])
