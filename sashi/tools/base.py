"""Base types and definitions for registered functions."""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from sashi.models.llm import FunctionSpec

FunctionHandler = Callable[[BaseModel], Awaitable[Any] | Any]


@dataclass
class FunctionDefinition:
    """A named server-side function the model and workflows may call."""

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: FunctionHandler
    needs_confirm: bool = False
    active: bool = True
    hidden: bool = False

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this function's input."""
        return self.input_schema_class.model_json_schema()

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Parse and validate function input."""
        return self.input_schema_class.model_validate(raw_input)

    async def invoke(self, args: dict[str, Any]) -> Any:
        """Validate `args` and run the handler.

        Pydantic results are dumped to plain data so they can be stored,
        referenced by later actions and serialised.
        """
        parsed = self.parse_input(args)
        result = self.handler(parsed)
        if inspect.isawaitable(result):
            result = await result

        if isinstance(result, BaseModel):
            return result.model_dump(mode="json")
        if isinstance(result, list):
            return [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in result]
        return result

    def to_spec(self) -> FunctionSpec:
        return FunctionSpec(name=self.name, description=self.description, input_schema=self.get_json_schema())

    def describe(self) -> dict[str, Any]:
        """Metadata shown in function listings."""
        return {
            "name": self.name,
            "description": self.description,
            "needConfirmation": self.needs_confirm,
            "active": self.active,
        }


def ai_function(
    name: str,
    description: str,
    args_schema: type[BaseModel],
    needs_confirm: bool = False,
    hidden: bool = False,
) -> Callable[[FunctionHandler], FunctionDefinition]:
    """Decorator turning a handler into a FunctionDefinition.

    Example:
        @ai_function("get_user", "Fetch a user by id", GetUserInput)
        async def get_user(params: GetUserInput) -> dict: ...
    """

    def decorator(handler: FunctionHandler) -> FunctionDefinition:
        return FunctionDefinition(
            name=name,
            description=description,
            input_schema_class=args_schema,
            handler=handler,
            needs_confirm=needs_confirm,
            hidden=hidden,
        )

    return decorator
