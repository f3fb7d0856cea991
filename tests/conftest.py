"""Shared fixtures: an in-memory function registry and a scripted completion client."""

import itertools
from collections import Counter

import pytest
from pydantic import BaseModel

from sashi.models.llm import Completion
from sashi.models.messages import FunctionCall, ToolCall
from sashi.tools.base import FunctionDefinition
from sashi.tools.registry import FunctionRegistry

_call_ids = itertools.count(1)


class FakeCompletionClient:
    """Returns scripted completions in order and records every request."""

    def __init__(
        self,
        completions: list[Completion] | None = None,
        error: Exception | None = None,
        max_message_chars: int | None = None,
    ):
        self.completions = list(completions or [])
        self.error = error
        self.max_message_chars = max_message_chars
        self.default: Completion | None = None
        self.calls: list[dict] = []

    async def create_completion(self, messages, *, tools=None, model=None, temperature=None, max_tokens=None):
        self.calls.append({"messages": list(messages), "tools": tools, "temperature": temperature})
        if self.error is not None:
            raise self.error
        if self.completions:
            return self.completions.pop(0)
        if self.default is not None:
            return self.default
        raise AssertionError("No scripted completion left")

    def validate_message_tokens(self, message: str) -> None:
        if self.max_message_chars is not None and len(message) > self.max_message_chars:
            raise ValueError(f"Message exceeds token limit: {len(message)} > {self.max_message_chars}")


def text_completion(content: str) -> Completion:
    return Completion(content=content, stop_reason="end_turn")


def tool_call(name: str, arguments: str = "{}", **kwargs) -> ToolCall:
    return ToolCall(id=f"call_{next(_call_ids)}", function=FunctionCall(name=name, arguments=arguments), **kwargs)


def tool_completion(*calls: ToolCall, content: str | None = None) -> Completion:
    return Completion(content=content, tool_calls=list(calls), stop_reason="tool_use")


class GetUserInput(BaseModel):
    userId: int


class NotifyInput(BaseModel):
    msg: str


class NoInput(BaseModel):
    pass


class LookupInput(BaseModel):
    field: str


@pytest.fixture
def invocations() -> Counter:
    """Number of invocations per function name."""
    return Counter()


@pytest.fixture
def registry(invocations) -> FunctionRegistry:
    """Registry with a handful of user-management functions."""

    async def get_user(params: GetUserInput) -> dict:
        invocations["get_user"] += 1
        return {"name": "Alice", "id": params.userId}

    async def notify(params: NotifyInput) -> dict:
        invocations["notify"] += 1
        return {"sent": True, "message": params.msg}

    async def list_users(params: NoInput) -> list[dict]:
        invocations["list_users"] += 1
        return [{"id": 1, "name": "Alice"}, {"id": 2, "name": "Bob"}]

    async def delete_user(params: GetUserInput) -> dict:
        invocations["delete_user"] += 1
        return {"deleted": params.userId}

    async def lookup(params: LookupInput) -> dict:
        invocations["lookup"] += 1
        if params.field != params.field.lower():
            raise ValueError(f"Field '{params.field}' not found")
        return {"field": params.field, "value": 42}

    async def explode(params: NoInput) -> dict:
        invocations["explode"] += 1
        raise RuntimeError("boom")

    return FunctionRegistry(
        [
            FunctionDefinition("get_user", "Fetch a user by id", GetUserInput, get_user),
            FunctionDefinition("notify", "Send a notification", NotifyInput, notify),
            FunctionDefinition("list_users", "List all users", NoInput, list_users),
            FunctionDefinition("delete_user", "Delete a user", GetUserInput, delete_user, needs_confirm=True),
            FunctionDefinition("lookup", "Look up a field", LookupInput, lookup),
            FunctionDefinition("explode", "Always fails", NoInput, explode),
        ]
    )
