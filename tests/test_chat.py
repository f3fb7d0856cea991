"""Tests for the chat orchestrator loop."""

import itertools
import json
from datetime import datetime
from unittest.mock import AsyncMock, Mock, patch

import pytest
from anthropic.types import TextBlock as AnthropicTextBlock
from anthropic.types import ToolUseBlock as AnthropicToolUseBlock
from conftest import FakeCompletionClient, text_completion, tool_call, tool_completion

from sashi.clients.anthropic import AnthropicClient, AnthropicConfig, AnthropicRateLimiter
from sashi.clients.base import CompletionError
from sashi.models.llm import Completion, LLMUsage
from sashi.models.messages import ConversationMessage
from sashi.services.chat import ChatOrchestrator, ChatState, StepBudget


def tool_messages(history: list[ConversationMessage]) -> list[ConversationMessage]:
    return [message for message in history if message.role == "tool"]


class TestStepBudget:
    """Tests for the exhaustible step budget."""

    def test_consume_until_exhausted(self):
        budget = StepBudget(2)
        assert budget.consume() is True
        assert budget.consume() is True
        assert budget.exhausted is True
        assert budget.consume() is False
        assert budget.used == 2
        assert budget.remaining == 0


class TestSystemPrompt:
    """Tests for per-completion prompt construction."""

    def test_lists_active_functions_and_date(self, registry):
        orchestrator = ChatOrchestrator(registry, FakeCompletionClient())
        registry.get("explode").active = False

        prompt = orchestrator.build_system_prompt(now=datetime(2026, 10, 17))

        assert "- get_user: Fetch a user by id" in prompt
        assert "- delete_user: Delete a user (requires confirmation)" in prompt
        assert "explode" not in prompt
        assert "October 17, 2026" in prompt

    @pytest.mark.asyncio
    async def test_prompt_reflects_toggles_between_completions(self, registry):
        """Test that a function toggled off mid-turn disappears from the next completion."""
        client = FakeCompletionClient([tool_completion(tool_call("list_users")), text_completion("done")])
        orchestrator = ChatOrchestrator(registry, client)

        async def list_and_toggle(params):
            registry.toggle_active("notify")
            return []

        registry.get("list_users").handler = list_and_toggle
        await orchestrator.run_turn(inquiry="who is there?")

        first, second = client.calls
        assert "notify" in [spec.name for spec in first["tools"]]
        assert "notify" not in [spec.name for spec in second["tools"]]
        assert "- notify:" not in second["messages"][0].content


class TestChatOrchestrator:
    """Tests for the completion / tool-call loop."""

    @pytest.mark.asyncio
    async def test_plain_reply(self, registry):
        client = FakeCompletionClient([text_completion("Hello there")])
        orchestrator = ChatOrchestrator(registry, client)

        result = await orchestrator.run_turn(inquiry="hi")

        assert result.state is ChatState.PLAIN_REPLY
        assert result.output.content == "Hello there"
        assert result.iterations == 1
        assert result.tool_calls is None
        assert [message.role for message in result.history] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_tool_call_then_reply(self, registry, invocations):
        client = FakeCompletionClient(
            [tool_completion(tool_call("get_user", '{"userId": 1}')), text_completion("The user is Alice")]
        )
        orchestrator = ChatOrchestrator(registry, client)

        result = await orchestrator.run_turn(inquiry="who is user 1?")

        assert result.state is ChatState.PLAIN_REPLY
        assert result.output.content == "The user is Alice"
        assert result.iterations == 2
        assert invocations["get_user"] == 1
        [output] = tool_messages(result.history)
        assert json.loads(output.content) == {"name": "Alice", "id": 1}
        assert result.visualization.type == "badge"
        assert result.visualization.tool == "get_user"
        assert tool_messages(client.calls[1]["messages"])[0].content == output.content

    @pytest.mark.asyncio
    async def test_confirmation_gate_blocks_invocation(self, registry, invocations):
        client = FakeCompletionClient([tool_completion(tool_call("delete_user", '{"userId": 3}'))])
        orchestrator = ChatOrchestrator(registry, client)

        result = await orchestrator.run_turn(inquiry="delete user 3")

        assert result.state is ChatState.AWAITING_CONFIRMATION
        assert result.tool_calls[0].needs_confirm is True
        assert result.tool_calls[0].model_dump(by_alias=True)["needsConfirm"] is True
        assert invocations["delete_user"] == 0
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_gated_batch_runs_nothing(self, registry, invocations):
        """Test that an ungated call in the same batch waits for the confirmation too."""
        batch = tool_completion(tool_call("get_user", '{"userId": 3}'), tool_call("delete_user", '{"userId": 3}'))
        orchestrator = ChatOrchestrator(registry, FakeCompletionClient([batch]))

        result = await orchestrator.run_turn(inquiry="look up and delete user 3")

        assert result.state is ChatState.AWAITING_CONFIRMATION
        assert [call.needs_confirm for call in result.tool_calls] == [False, True]
        assert sum(invocations.values()) == 0

    @pytest.mark.asyncio
    async def test_confirmed_resubmission_invokes(self, registry, invocations):
        client = FakeCompletionClient(
            [tool_completion(tool_call("delete_user", '{"userId": 3}')), text_completion("User 3 deleted")]
        )
        orchestrator = ChatOrchestrator(registry, client)
        pending = await orchestrator.run_turn(inquiry="delete user 3")

        confirmed = [call.model_copy(update={"confirmed": True}) for call in pending.tool_calls]
        result = await orchestrator.run_turn(tools=confirmed, previous=pending.history)

        assert result.state is ChatState.PLAIN_REPLY
        assert result.output.content == "User 3 deleted"
        assert invocations["delete_user"] == 1
        assert result.iterations == 1
        assert [message.role for message in result.history] == ["user", "assistant", "tool", "assistant"]

    @pytest.mark.asyncio
    async def test_resubmission_without_history_adds_call_message(self, registry):
        client = FakeCompletionClient([text_completion("ok")])
        orchestrator = ChatOrchestrator(registry, client)

        result = await orchestrator.run_turn(tools=[tool_call("list_users", confirmed=True)])

        assert [message.role for message in result.history] == ["assistant", "tool", "assistant"]
        assert result.history[1].tool_call_id == result.history[0].tool_calls[0].id

    @pytest.mark.asyncio
    async def test_declined_call_is_not_invoked(self, registry, invocations):
        client = FakeCompletionClient([text_completion("Okay, I won't delete it")])
        orchestrator = ChatOrchestrator(registry, client)

        result = await orchestrator.run_turn(tools=[tool_call("delete_user", '{"userId": 3}', confirmed=False)])

        assert invocations["delete_user"] == 0
        assert tool_messages(result.history)[0].content == "The user declined to run delete_user"
        assert result.state is ChatState.PLAIN_REPLY

    @pytest.mark.asyncio
    async def test_iteration_cap(self, registry, invocations):
        """Test that 11 tool-call rounds stop after the 10th completion."""
        rounds = [
            tool_completion(tool_call("get_user", '{"userId": 1}'), content=f"round {i}") for i in range(1, 12)
        ]
        client = FakeCompletionClient(rounds)
        orchestrator = ChatOrchestrator(registry, client, max_iterations=10)

        result = await orchestrator.run_turn(inquiry="keep going")

        assert len(client.calls) == 10
        assert len(client.completions) == 1
        assert result.state is ChatState.BUDGET_EXHAUSTED
        assert result.iterations == 10
        assert result.output.content == "round 10"
        assert result.tool_calls[0].function_name == "get_user"
        assert invocations["get_user"] == 9

    @pytest.mark.asyncio
    async def test_configured_budget(self, registry):
        client = FakeCompletionClient()
        client.default = tool_completion(tool_call("list_users"))
        orchestrator = ChatOrchestrator(registry, client, max_iterations=3)

        result = await orchestrator.run_turn(inquiry="loop")

        assert len(client.calls) == 3
        assert result.state is ChatState.BUDGET_EXHAUSTED

    @pytest.mark.asyncio
    async def test_unknown_and_inactive_functions(self, registry, invocations):
        registry.get("list_users").active = False
        client = FakeCompletionClient(
            [tool_completion(tool_call("nope"), tool_call("list_users")), text_completion("Sorry")]
        )
        orchestrator = ChatOrchestrator(registry, client)

        result = await orchestrator.run_turn(inquiry="do things")

        assert [message.content for message in tool_messages(result.history)] == [
            "Function nope is not available",
            "Function list_users is not available",
        ]
        assert invocations["list_users"] == 0
        assert result.visualization is None

    @pytest.mark.asyncio
    async def test_invocation_error_is_returned_to_model(self, registry):
        client = FakeCompletionClient([tool_completion(tool_call("explode")), text_completion("That failed")])
        orchestrator = ChatOrchestrator(registry, client)

        result = await orchestrator.run_turn(inquiry="explode")

        assert tool_messages(result.history)[0].content == "Error: boom"
        assert result.output.content == "That failed"

    @pytest.mark.asyncio
    async def test_invalid_arguments_are_returned_to_model(self, registry, invocations):
        client = FakeCompletionClient([tool_completion(tool_call("get_user", "{not json")), text_completion("Oops")])
        orchestrator = ChatOrchestrator(registry, client)

        result = await orchestrator.run_turn(inquiry="who?")

        assert tool_messages(result.history)[0].content.startswith("Error: Invalid arguments for get_user")
        assert invocations["get_user"] == 0

    @pytest.mark.asyncio
    async def test_functions_prefix_is_stripped(self, registry, invocations):
        client = FakeCompletionClient([tool_completion(tool_call("functions.list_users")), text_completion("ok")])
        orchestrator = ChatOrchestrator(registry, client)

        result = await orchestrator.run_turn(inquiry="list")

        assert invocations["list_users"] == 1
        assert result.visualization.type == "table"

    @pytest.mark.asyncio
    async def test_history_is_trimmed(self, registry):
        previous = [
            ConversationMessage(role="user" if i % 2 == 0 else "assistant", content=f"message {i}") for i in range(25)
        ]
        client = FakeCompletionClient([text_completion("ok")])
        orchestrator = ChatOrchestrator(registry, client, history_limit=20)

        await orchestrator.run_turn(inquiry="latest", previous=previous)

        sent = client.calls[0]["messages"]
        assert sent[0].role == "system"
        assert len(sent) <= 21
        assert sent[-1].content == "latest"

    @pytest.mark.asyncio
    async def test_requires_inquiry_or_tools(self, registry):
        orchestrator = ChatOrchestrator(registry, FakeCompletionClient())
        with pytest.raises(ValueError):
            await orchestrator.run_turn()

    @pytest.mark.asyncio
    async def test_completion_error_propagates(self, registry):
        orchestrator = ChatOrchestrator(registry, FakeCompletionClient(error=CompletionError("down")))
        with pytest.raises(CompletionError):
            await orchestrator.run_turn(inquiry="hi")

    def test_rejects_empty_budget(self, registry):
        with pytest.raises(ValueError):
            ChatOrchestrator(registry, FakeCompletionClient(), max_iterations=0)

    @pytest.mark.asyncio
    async def test_long_inquiry_is_rejected_before_any_completion(self, registry):
        client = FakeCompletionClient([text_completion("never sent")], max_message_chars=10)
        orchestrator = ChatOrchestrator(registry, client)

        with pytest.raises(ValueError, match="exceeds token limit"):
            await orchestrator.run_turn(inquiry="a" * 11)
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_usage_is_summed_over_the_turn(self, registry):
        usage = LLMUsage(input_tokens=10, output_tokens=5, total_tokens=15)
        client = FakeCompletionClient(
            [
                Completion(content=None, tool_calls=[tool_call("list_users")], usage=usage),
                Completion(content="Two users", usage=usage),
            ]
        )
        orchestrator = ChatOrchestrator(registry, client)

        result = await orchestrator.run_turn(inquiry="list users")

        assert result.usage.total_tokens == 30
        assert result.usage.input_tokens == 20


class TestLongTurnWithAnthropicClient:
    """Tests for long tool-calling turns through the Anthropic message conversion."""

    @pytest.fixture
    def anthropic_client(self):
        config = AnthropicConfig(model="test-model", max_retries=1, retry_delay=0)
        with patch.dict("os.environ", {"ANTHROPIC_API_KEY": "test-key"}):
            client = AnthropicClient(config=config)
        client.tokenizer = None
        client.rate_limiter = AnthropicRateLimiter(requests_per_minute=1000, tokens_per_minute=1_000_000)
        client.client = Mock()
        return client

    @staticmethod
    def response(content):
        response = Mock()
        response.content = content
        response.stop_reason = "tool_use"
        response.model = "test-model"
        response.usage = Mock(
            input_tokens=1, output_tokens=1, cache_creation_input_tokens=None, cache_read_input_tokens=None
        )
        return response

    @pytest.mark.asyncio
    async def test_inquiry_survives_history_trimming(self, registry, anthropic_client, invocations):
        """Test that rounds of several calls each never trim away the user message that started the turn."""
        ids = itertools.count(1)
        tool_rounds = 8

        def reply(**kwargs):
            if anthropic_client.client.messages.create.await_count > tool_rounds:
                return self.response([AnthropicTextBlock(type="text", text="Two users")])
            return self.response(
                [
                    AnthropicToolUseBlock(type="tool_use", id=f"toolu_{next(ids)}", name="list_users", input={})
                    for _ in range(3)
                ]
            )

        anthropic_client.client.messages.create = AsyncMock(side_effect=reply)
        orchestrator = ChatOrchestrator(registry, anthropic_client, max_iterations=10, history_limit=20)

        result = await orchestrator.run_turn(inquiry="list the users")

        assert result.state == ChatState.PLAIN_REPLY
        assert result.output.content == "Two users"
        assert invocations["list_users"] == 3 * tool_rounds
        for request in anthropic_client.client.messages.create.call_args_list:
            assert request.kwargs["messages"][0] == {"role": "user", "content": "list the users"}
