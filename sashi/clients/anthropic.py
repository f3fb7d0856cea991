"""Anthropic API client with rate limiting and error handling."""

import asyncio
import json
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import tiktoken
from anthropic import APIError, AsyncAnthropic
from anthropic.types import ContentBlock as AnthropicContentBlock
from anthropic.types import Message
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from pydantic import BaseModel

from sashi.clients.base import CompletionError
from sashi.models.llm import Completion, ContentBlock, FunctionSpec, LLMUsage, TextBlock, ToolResultBlock, ToolUseBlock
from sashi.models.messages import ConversationMessage, FunctionCall, ToolCall
from sashi.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class AnthropicMessage(BaseModel):
    """Message format for Anthropic API."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    model: str = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")
    max_tokens: int = 2048
    temperature: float = 0.3
    max_retries: int = 3
    retry_delay: float = 1.0

    # Token limits for validation and truncation
    max_message_tokens: int = 8000  # Maximum tokens per individual message
    max_conversation_tokens: int = 200000
    token_headroom: int = 4000  # Reserve tokens for response


class AnthropicRateLimiter:
    """Moving-window request and token limiter shared by all client instances."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within both limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_reset(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=estimated_tokens):
            await self._wait_for_reset(self.token_limit, token_identifier, "Token")

    async def _wait_for_reset(self, limit: Any, identifier: str, kind: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{kind} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


def to_anthropic_tools(specs: list[FunctionSpec] | None) -> list[AnthropicTool]:
    return [AnthropicTool(name=s.name, description=s.description, input_schema=s.input_schema) for s in specs or []]


def to_anthropic_messages(messages: list[ConversationMessage]) -> tuple[str, list[AnthropicMessage]]:
    """Convert a chat history into Anthropic's system prompt and message list.

    System messages become the system prompt. Assistant tool calls become
    tool_use blocks and consecutive tool messages are merged into a single user
    message of tool_result blocks. Tool results without a matching call, tool
    calls without a result and leading assistant messages are dropped, since
    the API rejects all three.
    """
    system_parts: list[str] = []
    converted: list[AnthropicMessage] = []
    open_call_ids: set[str] = set()

    for message in messages:
        if message.role == "system":
            if message.content:
                system_parts.append(message.content)
            continue

        if message.role == "tool":
            if message.tool_call_id not in open_call_ids:
                logger.debug(f"Dropping tool result without a matching call: {message.tool_call_id}")
                continue
            open_call_ids.discard(message.tool_call_id)
            block = ToolResultBlock(tool_use_id=message.tool_call_id, content=message.content or "")
            previous = converted[-1]
            if previous.role == "user" and isinstance(previous.content, list):
                previous.content.append(block)
            else:
                converted.append(AnthropicMessage(role="user", content=[block]))
            continue

        if message.role == "assistant":
            blocks: list[ContentBlock] = []
            if message.content:
                blocks.append(TextBlock(text=message.content))
            for call in message.tool_calls or []:
                try:
                    arguments = call.parsed_arguments()
                except ValueError:
                    arguments = {}
                blocks.append(ToolUseBlock(id=call.id, name=call.function_name, input=arguments))
            open_call_ids = {call.id for call in message.tool_calls or []}
            if blocks:
                converted.append(AnthropicMessage(role="assistant", content=blocks))
            continue

        open_call_ids = set()
        converted.append(AnthropicMessage(role="user", content=message.content or ""))

    converted = _drop_unanswered_tool_uses(converted)
    while converted and converted[0].role != "user":
        converted.pop(0)

    return "\n\n".join(system_parts), converted


def _drop_unanswered_tool_uses(messages: list[AnthropicMessage]) -> list[AnthropicMessage]:
    cleaned: list[AnthropicMessage] = []
    for index, message in enumerate(messages):
        if message.role != "assistant" or isinstance(message.content, str):
            cleaned.append(message)
            continue

        following = messages[index + 1] if index + 1 < len(messages) else None
        answered: set[str] = set()
        if following is not None and following.role == "user" and isinstance(following.content, list):
            answered = {block.tool_use_id for block in following.content if isinstance(block, ToolResultBlock)}

        blocks = [block for block in message.content if not isinstance(block, ToolUseBlock) or block.id in answered]
        if blocks:
            cleaned.append(AnthropicMessage(role="assistant", content=blocks))
    return cleaned


class AnthropicClient:
    """Anthropic implementation of the completion client."""

    tokenizer: tiktoken.Encoding | None = None
    api_key: str
    client: AsyncAnthropic
    config: AnthropicConfig
    rate_limiter: AnthropicRateLimiter = AnthropicRateLimiter()

    def __init__(self, api_key: str | None = None, config: AnthropicConfig | None = None):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
        """
        anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")

        self.api_key = anthropic_api_key

        self.client = AsyncAnthropic(api_key=self.api_key)
        self.config = config or AnthropicConfig()

        # Initialize tokenizer for token estimation
        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception:
            self.tokenizer = None

    async def create_completion(
        self,
        messages: list[ConversationMessage],
        *,
        tools: list[FunctionSpec] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion:
        """Request a completion for `messages`.

        Raises:
            CompletionError: If the API call fails after retries
        """
        system_prompt, anthropic_messages = to_anthropic_messages(messages)
        anthropic_tools = to_anthropic_tools(tools)
        truncated_messages = self.truncate_conversation(anthropic_messages, system_prompt, anthropic_tools)
        if not truncated_messages:
            raise CompletionError("Conversation has no user message to respond to")

        estimated_tokens = self._estimate_tokens(truncated_messages, system_prompt)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        request_params: dict[str, Any] = {
            "model": model or self.config.model,
            "max_tokens": max_tokens or self.config.max_tokens,
            "temperature": self.config.temperature if temperature is None else temperature,
            "messages": [msg.model_dump() for msg in truncated_messages],
        }
        if system_prompt:
            request_params["system"] = system_prompt
        if anthropic_tools:
            request_params["tools"] = [tool.model_dump() for tool in anthropic_tools]

        logger.debug(
            f"Making Anthropic API call with model: {request_params['model']}, "
            f"{len(truncated_messages)} messages, {len(anthropic_tools)} tools"
        )
        try:
            response: Message = await self._request_with_retries(
                lambda: self.client.messages.create(**request_params)
            )
        except APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise CompletionError(str(e)) from e

        logger.debug(
            f"Response received - Stop reason: {response.stop_reason}, Content blocks: {len(response.content)}"
        )
        return self._to_completion(response)

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Execute Anthropic API request with retry logic."""
        for attempt in range(self.config.max_retries):
            try:
                return await call()

            except APIError as e:
                status_code = getattr(e, "status_code", None)
                if status_code == 429:  # Rate limit exceeded
                    retry_after = 60
                    response = getattr(e, "response", None)
                    if response is not None and hasattr(response, "headers"):
                        retry_after = int(response.headers.get("retry-after", 60))

                    if retry_after < 120 and attempt < self.config.max_retries - 1:
                        logger.warning(f"Rate limited by Anthropic, retrying in {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue

                elif status_code is not None and status_code >= 500 and attempt < self.config.max_retries - 1:
                    # Server error, retry with exponential backoff
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                # Re-raise if not retryable or max retries reached
                raise

            except Exception as e:
                if attempt < self.config.max_retries - 1:
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue
                raise CompletionError(f"Anthropic request failed: {e}") from e

        raise CompletionError(f"Failed to complete request after {self.config.max_retries} attempts")

    def _to_completion(self, response: Message) -> Completion:
        blocks = self._convert_content_blocks(response.content)
        texts = [block.text for block in blocks if isinstance(block, TextBlock)]
        tool_calls = [
            ToolCall(id=block.id, function=FunctionCall(name=block.name, arguments=json.dumps(block.input)))
            for block in blocks
            if isinstance(block, ToolUseBlock)
        ]

        usage = LLMUsage()
        if response.usage:
            usage = LLMUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
                cache_creation_input_tokens=response.usage.cache_creation_input_tokens or 0,
                cache_read_input_tokens=response.usage.cache_read_input_tokens or 0,
            )

        return Completion(
            content="".join(texts) if texts else None,
            tool_calls=tool_calls,
            stop_reason=response.stop_reason,
            usage=usage,
            model=response.model,
        )

    def _convert_content_blocks(self, anthropic_content: list[AnthropicContentBlock]) -> list[ContentBlock]:
        """Convert Anthropic content blocks to our ContentBlock types."""
        converted_blocks: list[ContentBlock] = []
        for block in anthropic_content:
            try:
                block_dict = block.model_dump() if hasattr(block, "model_dump") else dict(block)

                if block_dict.get("type") == "text":
                    converted_blocks.append(TextBlock.model_validate(block_dict))
                elif block_dict.get("type") == "tool_use":
                    converted_blocks.append(ToolUseBlock.model_validate(block_dict))
                else:
                    logger.warning(f"Unknown content block type: {block_dict.get('type')}")

            except Exception as e:
                logger.error(f"Failed to convert content block: {e}, block: {block}")
                continue

        return converted_blocks

    @staticmethod
    def _message_text(message: AnthropicMessage) -> str:
        if isinstance(message.content, str):
            return message.content
        parts: list[str] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolResultBlock):
                parts.append(block.content)
            elif isinstance(block, ToolUseBlock):
                parts.append(json.dumps(block.input))
        return "".join(parts)

    def _estimate_tokens(self, messages: list[AnthropicMessage], system_prompt: str) -> int:
        """Estimate token count for rate limiting."""
        text_content = system_prompt + "".join(self._message_text(message) for message in messages)
        return self.estimate_message_tokens(text_content)

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single message.

        Args:
            message: Message content

        Returns:
            Estimated token count
        """
        try:
            return len(self.tokenizer.encode(message)) if self.tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4

    def validate_message_tokens(self, message: str) -> None:
        """Validate that a message doesn't exceed token limits.

        Raises:
            ValueError: If message exceeds token limit
        """
        token_count = self.estimate_message_tokens(message)
        if token_count > self.config.max_message_tokens:
            raise ValueError(
                f"Message exceeds token limit: {token_count} tokens > {self.config.max_message_tokens} limit"
            )

    def truncate_conversation(
        self, messages: list[AnthropicMessage], system_prompt: str, tools: list[AnthropicTool] | None = None
    ) -> list[AnthropicMessage]:
        """Truncate conversation from the beginning to fit within token limits.

        The kept window always starts with a plain user message so that no
        tool result is separated from the call that produced it.
        """
        if not messages:
            return messages

        available_tokens = self.config.max_conversation_tokens - self.config.token_headroom
        available_tokens -= self.estimate_message_tokens(system_prompt)
        if tools:
            tool_content = "".join(tool.name + tool.description + str(tool.input_schema) for tool in tools)
            available_tokens -= self.estimate_message_tokens(tool_content)

        current_tokens = 0
        start = len(messages)
        while start > 0:
            message_tokens = self.estimate_message_tokens(self._message_text(messages[start - 1]))
            if current_tokens + message_tokens > available_tokens:
                break
            start -= 1
            current_tokens += message_tokens

        turn_starts = [index for index, message in enumerate(messages) if self._starts_turn(message)]
        kept_start = next((index for index in turn_starts if index >= start), None)
        if kept_start is None:
            # Keep the turn's own user message even if it overshoots the budget
            kept_start = max((index for index in turn_starts if index < start), default=len(messages))
        truncated_messages = messages[kept_start:]

        if len(truncated_messages) < len(messages):
            logger.warning(
                f"Truncated conversation from {len(messages)} to {len(truncated_messages)} messages "
                f"to fit within {available_tokens} token limit"
            )

        return truncated_messages

    @staticmethod
    def _starts_turn(message: AnthropicMessage) -> bool:
        if message.role != "user":
            return False
        if isinstance(message.content, str):
            return True
        return not any(isinstance(block, ToolResultBlock) for block in message.content)


_anthropic_client: AnthropicClient | None = None


def get_anthropic_client() -> AnthropicClient:
    """Get or create Anthropic client instance."""
    global _anthropic_client
    if _anthropic_client is None:
        _anthropic_client = AnthropicClient()
    return _anthropic_client
