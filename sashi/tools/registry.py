"""Registry of functions exposed to the model and to workflows."""

from sashi.models.llm import FunctionSpec
from sashi.tools.base import FunctionDefinition
from sashi.utils.logging import get_logger

logger = get_logger(__name__)


class FunctionRegistry:
    """Name -> FunctionDefinition map shared by the orchestrator and executor.

    Reads always see live state: the active flag is checked on every lookup and
    every prompt build, so a toggle may be observed mid-conversation.
    """

    def __init__(self, functions: list[FunctionDefinition] | None = None):
        self._functions: dict[str, FunctionDefinition] = {}
        for function in functions or []:
            self.register(function)

    def register(self, function: FunctionDefinition) -> None:
        """Register a function, replacing any previous one with the same name."""
        if function.name in self._functions:
            logger.warning(f"Replacing registered function {function.name}")
        self._functions[function.name] = function

    def get(self, name: str) -> FunctionDefinition | None:
        """Look up a function by name, ignoring a leading `functions.` prefix."""
        return self._functions.get(name.removeprefix("functions."))

    def list_all(self) -> list[FunctionDefinition]:
        return list(self._functions.values())

    def list_active(self) -> list[FunctionDefinition]:
        return [function for function in self._functions.values() if function.active]

    def tool_specs(self) -> list[FunctionSpec]:
        """Specs of the active functions, in registration order."""
        return [function.to_spec() for function in self.list_active()]

    def toggle_active(self, name: str) -> bool:
        """Flip the active flag and return the new value.

        Raises:
            KeyError: If the function is not registered
        """
        function = self.get(name)
        if function is None:
            raise KeyError(name)
        function.active = not function.active
        logger.info(f"Function {function.name} is now {'active' if function.active else 'inactive'}")
        return function.active

    def __len__(self) -> int:
        return len(self._functions)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None
