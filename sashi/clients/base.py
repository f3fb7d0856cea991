"""Interface of the language-model completion service."""

from typing import Protocol

from sashi.models.llm import Completion, FunctionSpec
from sashi.models.messages import ConversationMessage


class CompletionError(Exception):
    """The completion service failed to produce a reply."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class CompletionClient(Protocol):
    """Anything that can turn a message history into a completion."""

    async def create_completion(
        self,
        messages: list[ConversationMessage],
        *,
        tools: list[FunctionSpec] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion: ...

    def validate_message_tokens(self, message: str) -> None:
        """Reject a single user message that is too large to send.

        Raises:
            ValueError: If the message exceeds the per-message token limit
        """
        ...
