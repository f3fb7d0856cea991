"""Turn-based chat loop that lets the model call registered functions."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sashi.clients.base import CompletionClient
from sashi.models.llm import Completion, LLMUsage
from sashi.models.messages import ConversationMessage, ToolCall, trim_history
from sashi.models.workflow import Visualization
from sashi.services.presentation import guess_ui_type, to_display_text
from sashi.tools.registry import FunctionRegistry
from sashi.utils.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT_TEMPLATE = """You are an assistant for the administrators of a backend application.
You answer questions conversationally and call the application's functions when the user asks you to
look something up or perform an operation.

Rules:
- Only call functions from the list below. Never invent functions or parameters.
- Some functions change data and require the user's confirmation; the user will be asked before they run.
- If a function returns an error, explain it to the user and suggest what to do next.
- When a task needs several steps, call the functions one after another using earlier results.

Available functions:
{functions}

Today is {today}."""

_NO_RESULT = object()


class ChatState(StrEnum):
    AWAITING_USER_INPUT = "awaiting_user_input"
    REQUESTING_COMPLETION = "requesting_completion"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    PLAIN_REPLY = "plain_reply"
    BUDGET_EXHAUSTED = "budget_exhausted"


@dataclass
class StepBudget:
    """Number of completion requests a single turn may issue."""

    limit: int
    used: int = 0

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def consume(self) -> bool:
        """Take one step. Returns False if none was left."""
        if self.exhausted:
            return False
        self.used += 1
        return True


@dataclass
class ChatTurnResult:
    """Outcome of one chat turn."""

    state: ChatState
    output: ConversationMessage
    history: list[ConversationMessage]
    iterations: int
    tool_calls: list[ToolCall] | None = None
    visualization: Visualization | None = None
    usage: LLMUsage = field(default_factory=LLMUsage)


class ChatOrchestrator:
    """Runs the completion / tool-call loop for one user turn.

    A turn starts either from a new user inquiry or from tool calls resubmitted
    by the caller (typically after the user confirmed them). It ends with a plain
    reply, a batch waiting for confirmation, or when the step budget runs out.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        client: CompletionClient,
        max_iterations: int = 10,
        history_limit: int = 20,
        temperature: float = 0.3,
        max_tokens: int | None = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.registry = registry
        self.client = client
        self.max_iterations = max_iterations
        self.history_limit = history_limit
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_system_prompt(self, now: datetime | None = None) -> str:
        """Describe the currently active functions. Rebuilt for every completion."""
        lines = []
        for function in self.registry.list_active():
            suffix = " (requires confirmation)" if function.needs_confirm else ""
            lines.append(f"- {function.name}: {function.description}{suffix}")
        today = (now or datetime.now(UTC)).strftime("%A, %B %d, %Y")
        return SYSTEM_PROMPT_TEMPLATE.format(functions="\n".join(lines) or "(none)", today=today)

    async def run_turn(
        self,
        inquiry: str | None = None,
        tools: list[ToolCall] | None = None,
        previous: list[ConversationMessage] | None = None,
    ) -> ChatTurnResult:
        """Run one turn.

        Args:
            inquiry: New user message
            tools: Tool calls resubmitted by the caller, with `confirmed` set
            previous: Conversation so far

        Raises:
            ValueError: If neither an inquiry nor tool calls are given, or the inquiry is too long
            CompletionError: If the completion service fails
        """
        if inquiry is None and not tools:
            raise ValueError("Either an inquiry or tool calls are required")
        if inquiry is not None:
            self.client.validate_message_tokens(inquiry)

        history = trim_history(list(previous or []), self.history_limit)
        budget = StepBudget(self.max_iterations)
        usage = LLMUsage()
        visualization: Visualization | None = None
        completion: Completion | None = None
        pending: list[ToolCall] = []

        if inquiry is not None:
            history.append(ConversationMessage(role="user", content=inquiry))
            state = ChatState.REQUESTING_COMPLETION
        else:
            pending = list(tools)
            self._ensure_call_message(history, pending)
            state = ChatState.TOOL_CALLS_PENDING

        while True:
            if state is ChatState.REQUESTING_COMPLETION:
                budget.consume()
                logger.debug(f"Requesting completion {budget.used}/{budget.limit}")
                completion = await self._request_completion(history)
                usage.add(completion.usage)
                history.append(completion.as_message())

                if not completion.has_tool_calls:
                    state = ChatState.PLAIN_REPLY
                elif budget.exhausted:
                    state = ChatState.BUDGET_EXHAUSTED
                else:
                    pending = list(completion.tool_calls)
                    state = ChatState.TOOL_CALLS_PENDING

            elif state is ChatState.TOOL_CALLS_PENDING:
                logger.info(f"Model requested {len(pending)} tool calls: {[c.function_name for c in pending]}")
                if any(self._requires_confirmation(call) for call in pending):
                    state = ChatState.AWAITING_CONFIRMATION
                    continue

                for call in pending:
                    output, result = await self._execute_tool_call(call)
                    history.append(
                        ConversationMessage(role="tool", tool_call_id=call.id, name=call.function_name, content=output)
                    )
                    if result is not _NO_RESULT:
                        visualization = Visualization(type=guess_ui_type(result), tool=call.function_name, data=result)
                pending = []
                state = ChatState.REQUESTING_COMPLETION

            elif state is ChatState.AWAITING_CONFIRMATION:
                logger.info("Tool calls need confirmation, returning to caller")
                return self._result(state, completion, history, budget, usage, visualization, self._mark(pending))

            elif state is ChatState.BUDGET_EXHAUSTED:
                logger.warning(f"Chat turn reached max iterations ({budget.limit})")
                return self._result(state, completion, history, budget, usage, visualization, completion.tool_calls)

            else:
                logger.info(f"Chat turn completed in {budget.used} iterations")
                return self._result(state, completion, history, budget, usage, visualization)

    async def _request_completion(self, history: list[ConversationMessage]) -> Completion:
        messages = [ConversationMessage(role="system", content=self.build_system_prompt())]
        messages.extend(trim_history(history, self.history_limit))
        return await self.client.create_completion(
            messages,
            tools=self.registry.tool_specs(),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

    def _requires_confirmation(self, call: ToolCall) -> bool:
        function = self.registry.get(call.function_name)
        return function is not None and function.needs_confirm and call.confirmed is None

    async def _execute_tool_call(self, call: ToolCall) -> tuple[str, Any]:
        """Run one call and return (tool output text, result or _NO_RESULT). Never raises."""
        name = call.function_name
        function = self.registry.get(name)
        if function is None or not function.active:
            logger.warning(f"Model requested unavailable function {name}")
            return f"Function {name} is not available", _NO_RESULT

        if call.confirmed is False:
            logger.info(f"User declined {name}")
            return f"The user declined to run {name}", _NO_RESULT

        try:
            result = await function.invoke(call.parsed_arguments())
        except Exception as e:
            logger.error(f"Function {name} failed: {e}")
            return f"Error: {e}", _NO_RESULT

        logger.debug(f"Function {name} succeeded: {str(result)[:100]}")
        return to_display_text(result), result

    def _mark(self, calls: list[ToolCall]) -> list[ToolCall]:
        marked = []
        for call in calls:
            function = self.registry.get(call.function_name)
            needs_confirm = function is not None and function.needs_confirm
            marked.append(call.model_copy(update={"needs_confirm": needs_confirm}))
        return marked

    @staticmethod
    def _ensure_call_message(history: list[ConversationMessage], calls: list[ToolCall]) -> None:
        """Make sure the resubmitted calls follow the assistant message that requested them."""
        ids = {call.id for call in calls}
        last = history[-1] if history else None
        if last is not None and last.role == "assistant" and ids <= {c.id for c in last.tool_calls or []}:
            return
        history.append(ConversationMessage(role="assistant", content=None, tool_calls=calls))

    @staticmethod
    def _result(
        state: ChatState,
        completion: Completion | None,
        history: list[ConversationMessage],
        budget: StepBudget,
        usage: LLMUsage,
        visualization: Visualization | None,
        tool_calls: list[ToolCall] | None = None,
    ) -> ChatTurnResult:
        content = completion.content if completion is not None else None
        return ChatTurnResult(
            state=state,
            output=ConversationMessage(role="assistant", content=content),
            history=history,
            iterations=budget.used,
            tool_calls=tool_calls or None,
            visualization=visualization,
            usage=usage,
        )
