"""Language-model assisted recovery for failed workflow steps."""

import json
from collections.abc import Mapping
from typing import Any

from sashi.clients.base import CompletionClient
from sashi.models.messages import ConversationMessage
from sashi.models.workflow import ErrorRecoverySuggestion, RecoveryCandidate, WorkflowAction
from sashi.services.exceptions import RecoveryFailedError
from sashi.services.resolver import resolve_parameters
from sashi.tools.data_functions import DATA_PARSING_TOOL, REPORT_TOOL
from sashi.tools.registry import FunctionRegistry
from sashi.utils.logging import get_logger
from sashi.utils.parsing import extract_json_payload

logger = get_logger(__name__)

RECOVERY_SYSTEM_PROMPT = (
    "You are a workflow error recovery specialist. Analyze errors and suggest intelligent solutions."
)

RECOVERY_PROMPT_TEMPLATE = """WORKFLOW ERROR RECOVERY ANALYSIS

Original goal: "{goal}"

Failed action: "{tool}" ({description})
Error message: "{error}"
Parameters used: {parameters}

Available data context:
{results}

Available functions:
{functions}

RECOVERY TASK:
Analyze this error and suggest recovery strategies. Consider:
1. Function alternatives: which other functions could accomplish the same goal?
2. Parameter fixes: how should the parameters change given the error?
3. Data issues: is the data format causing problems?
4. Workflow adaptation: how can the approach change while keeping the goal?

Common error patterns:
- "Field not found" -> try different field names or data structure
- "Invalid format" -> transform the data first
- "Empty data" -> check previous step outputs or use a different data source
- "Type mismatch" -> add a conversion step

Respond with JSON only:
{{
    "strategy": "alternative_function|parameter_fix|data_transform|workflow_adaptation",
    "candidates": [
        {{
            "newFunction": "function_name",
            "newParameters": {{}},
            "reasoning": "Why this approach should work",
            "confidence": 0.9
        }}
    ],
    "canContinue": true
}}"""

def parse_suggestion(content: str | None) -> ErrorRecoverySuggestion:
    """Parse the model's verdict, unwrapping a fenced JSON block if present.

    Raises:
        ValueError: If the content is empty or not a valid suggestion
    """
    return ErrorRecoverySuggestion.model_validate_json(extract_json_payload(content))


class ErrorRecoveryAdvisor:
    """Diagnoses a failed action and retries it with alternative functions or parameters."""

    def __init__(
        self,
        client: CompletionClient,
        registry: FunctionRegistry,
        min_confidence: float = 0.5,
        temperature: float = 0.3,
    ):
        self.client = client
        self.registry = registry
        self.min_confidence = min_confidence
        self.temperature = temperature

    async def analyze_and_recover(
        self,
        error: BaseException,
        failed_action: WorkflowAction,
        results_so_far: Mapping[str, Any],
        workflow_goal: str,
    ) -> ErrorRecoverySuggestion:
        """Ask the model for recovery candidates, falling back to local heuristics.

        Never raises: any failure of the advisory call or of its output yields
        the heuristic suggestion instead.
        """
        try:
            prompt = self._build_prompt(error, failed_action, results_so_far, workflow_goal)
            completion = await self.client.create_completion(
                [
                    ConversationMessage(role="system", content=RECOVERY_SYSTEM_PROMPT),
                    ConversationMessage(role="user", content=prompt),
                ],
                temperature=self.temperature,
            )
            suggestion = parse_suggestion(completion.content)
        except Exception as e:
            logger.error(f"Recovery analysis failed for action {failed_action.id}, using heuristics: {e}")
            return self.fallback_recovery(error, failed_action)

        logger.info(
            f"Recovery analysis for action {failed_action.id}: strategy={suggestion.strategy}, "
            f"{len(suggestion.candidates)} candidates"
        )
        return suggestion

    def fallback_recovery(self, error: BaseException, failed_action: WorkflowAction) -> ErrorRecoverySuggestion:
        """Heuristic suggestions used when the model cannot be consulted."""
        message = str(error).lower()
        candidates: list[RecoveryCandidate] = []

        if "field" in message:
            candidates.append(
                RecoveryCandidate(
                    new_function=failed_action.tool_name,
                    new_parameters=self._suggest_field_name_fixes(failed_action.parameters),
                    reasoning="Trying common field name variations",
                    confidence=0.7,
                )
            )

        if failed_action.tool_name == DATA_PARSING_TOOL and "format" in message:
            candidates.append(
                RecoveryCandidate(
                    new_function=REPORT_TOOL,
                    new_parameters={
                        "data": "Raw data could not be parsed. Please check CSV format.",
                        "title": "Data Format Issue",
                    },
                    reasoning="Providing user feedback about data format",
                    confidence=0.8,
                )
            )

        return ErrorRecoverySuggestion(strategy="parameter_fix", candidates=candidates, can_continue=True)

    async def execute_recovery(
        self,
        suggestion: ErrorRecoverySuggestion,
        original_action: WorkflowAction,
        results_so_far: Mapping[str, Any],
        user_inputs: Mapping[str, Any] | None = None,
    ) -> Any:
        """Try candidates in order and return the first successful result.

        Raises:
            RecoveryFailedError: If every candidate was skipped or failed
        """
        attempts: list[str] = []

        for candidate in suggestion.candidates:
            name = candidate.new_function or original_action.tool_name
            if candidate.confidence < self.min_confidence:
                logger.debug(f"Skipping recovery via {name}: confidence {candidate.confidence:.2f}")
                attempts.append(f"{name}: confidence {candidate.confidence:.2f} below threshold")
                continue

            function = self.registry.get(name)
            if function is None:
                logger.warning(f"Recovery function {name} not available")
                attempts.append(f"{name}: not registered")
                continue

            parameters = candidate.new_parameters
            if parameters is None:
                parameters = original_action.parameters
            resolved = resolve_parameters(parameters, results_so_far, user_inputs)

            logger.info(f"Trying recovery for action {original_action.id} via {name}: {candidate.reasoning}")
            try:
                result = await function.invoke(resolved)
            except Exception as e:
                logger.warning(f"Recovery attempt via {name} failed: {e}")
                attempts.append(f"{name}: {e}")
                continue

            logger.info(f"Recovery for action {original_action.id} succeeded via {name}")
            return result

        raise RecoveryFailedError(attempts)

    def _build_prompt(
        self,
        error: BaseException,
        failed_action: WorkflowAction,
        results_so_far: Mapping[str, Any],
        workflow_goal: str,
    ) -> str:
        function = self.registry.get(failed_action.tool_name)
        description = failed_action.description or (function.description if function else "no description")
        return RECOVERY_PROMPT_TEMPLATE.format(
            goal=workflow_goal,
            tool=failed_action.tool_name,
            description=description,
            error=error,
            parameters=json.dumps(failed_action.parameters, indent=2, default=str),
            results=json.dumps(dict(results_so_far), indent=2, default=str),
            functions=", ".join(function.name for function in self.registry.list_active()),
        )

    @staticmethod
    def _suggest_field_name_fixes(parameters: Mapping[str, Any]) -> dict[str, Any]:
        fixed = dict(parameters)
        for key, value in fixed.items():
            if key.lower().endswith("field") and isinstance(value, str):
                fixed[key] = value.lower()
        return fixed
