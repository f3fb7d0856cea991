"""Sequential execution of workflow definitions against the function registry."""

from collections.abc import Mapping
from typing import Any

from cuid2 import cuid_wrapper
from pydantic import ValidationError

from sashi.models.workflow import (
    ActionResult,
    StepError,
    WorkflowAction,
    WorkflowDefinition,
    WorkflowExecutionFailure,
    WorkflowExecutionResponse,
    WorkflowExecutionSuccess,
)
from sashi.services.exceptions import FunctionInvocationError, RecoveryFailedError, WorkflowValidationError
from sashi.services.presentation import build_ui_element, guess_ui_type
from sashi.services.recovery import ErrorRecoveryAdvisor
from sashi.services.resolver import compile_parameters, resolve_parameters
from sashi.tools.base import FunctionDefinition
from sashi.tools.registry import FunctionRegistry
from sashi.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


def parse_workflow(raw: Any) -> WorkflowDefinition:
    """Validate a submitted workflow payload.

    Raises:
        WorkflowValidationError: If the payload is not a well-formed workflow
    """
    if not isinstance(raw, Mapping) or not isinstance(raw.get("actions"), list):
        raise WorkflowValidationError(["Invalid workflow format: 'actions' must be an array"])
    try:
        return WorkflowDefinition.model_validate(raw)
    except ValidationError as e:
        raise WorkflowValidationError([_format_validation_error(error) for error in e.errors()]) from e


def verify_workflow(raw: Any, registry: FunctionRegistry) -> list[str]:
    """Statically check a workflow without running it. Returns a list of problems."""
    if not isinstance(raw, Mapping) or not isinstance(raw.get("actions"), list) or not raw["actions"]:
        return ["Workflow must contain a non-empty actions array"]

    try:
        definition = parse_workflow(raw)
    except WorkflowValidationError as e:
        return e.errors

    errors: list[str] = []
    try:
        compile_parameters(definition.actions)
    except WorkflowValidationError as e:
        errors.extend(e.errors)

    for index, action in enumerate(definition.actions):
        prefix = f"Action #{index + 1} ({action.id})"
        function = registry.get(action.tool_name)
        if function is None:
            errors.append(f'{prefix}: Unknown tool "{action.tool_name}"')
            continue
        for name in function.get_json_schema().get("required", []):
            if name not in action.parameters:
                errors.append(f'{prefix}: Missing required parameter "{name}" for tool "{action.tool_name}"')

    return errors


class WorkflowExecutor:
    """Runs workflow actions one at a time in declaration order.

    Completed actions are never rolled back: when a later action fails the
    response carries the results that were already produced.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        advisor: ErrorRecoveryAdvisor | None = None,
        recovery_enabled: bool = True,
    ):
        self.registry = registry
        self.advisor = advisor
        self.recovery_enabled = recovery_enabled

    async def execute(
        self,
        definition: WorkflowDefinition,
        user_inputs: Mapping[str, Any] | None = None,
        recover: bool | None = None,
    ) -> WorkflowExecutionResponse:
        """Execute every action of `definition`.

        Args:
            definition: Validated workflow
            user_inputs: Values for `userInput.<key>` parameters
            recover: Override the executor's recovery setting for this run

        Returns:
            WorkflowExecutionSuccess, or WorkflowExecutionFailure with partial results

        Raises:
            WorkflowValidationError: If an action references itself or a later action
        """
        execution_id = cuid()
        compiled = compile_parameters(definition.actions)
        use_recovery = (self.recovery_enabled if recover is None else recover) and self.advisor is not None

        results: list[ActionResult] = []
        step_errors: list[StepError] = []
        prior: dict[str, Any] = {}
        total = len(definition.actions)

        logger.info(f"[{execution_id}] Executing workflow with {total} actions: {definition.description!r}")

        for index, (action, parameters) in enumerate(zip(definition.actions, compiled, strict=True)):
            logger.info(f"[{execution_id}] Action {index + 1}/{total}: {action.id} -> {action.tool_name}")
            resolved = resolve_parameters(parameters, prior, user_inputs)

            function = self.registry.get(action.tool_name)
            if function is None:
                logger.error(f"[{execution_id}] Function {action.tool_name} not found in registry")
                return WorkflowExecutionFailure(
                    execution_id=execution_id,
                    error=f"Function {action.tool_name} not found in registry",
                    details=f"Action {action.id} references a function that is not registered",
                    results=results,
                    step_errors=step_errors,
                    status_code=404,
                )

            recovered = False
            try:
                result = await self._invoke(function, action, resolved)
            except FunctionInvocationError as e:
                logger.error(f"[{execution_id}] Action {action.id} failed: {e}")
                step_errors.append(StepError(action_id=action.id, error=str(e)))
                if not use_recovery:
                    return self._failure(execution_id, action, str(e), results, step_errors)

                try:
                    result = await self._recover(e.cause, action, prior, definition, user_inputs)
                except RecoveryFailedError as recovery_error:
                    logger.error(f"[{execution_id}] Recovery for action {action.id} failed: {recovery_error.attempts}")
                    return self._failure(execution_id, action, f"{e}; {recovery_error}", results, step_errors)
                recovered = True

            title = action.description or action.tool_name
            results.append(
                ActionResult(
                    action_id=action.id,
                    result=result,
                    ui_element=build_ui_element(action.id, action.tool_name, title, result),
                    recovered=recovered,
                )
            )
            prior[action.id] = result

        visualization = guess_ui_type(results[-1].result) if results else None
        logger.info(f"[{execution_id}] Workflow completed with {len(results)} results")
        return WorkflowExecutionSuccess(
            execution_id=execution_id,
            results=results,
            visualization=visualization,
            step_errors=step_errors or None,
        )

    async def _invoke(self, function: FunctionDefinition, action: WorkflowAction, resolved: dict[str, Any]) -> Any:
        """Invoke the function once, or once per item of the first list parameter for mapped actions.

        Raises:
            FunctionInvocationError: Wrapping whatever the function raised
        """
        try:
            if not action.map:
                return await function.invoke(resolved)

            mapped = next(((name, value) for name, value in resolved.items() if isinstance(value, list)), None)
            if mapped is None:
                raise ValueError(f"Action {action.id} is mapped but has no array parameter")
            name, items = mapped
            return [await function.invoke({**resolved, name: item}) for item in items]
        except Exception as e:
            raise FunctionInvocationError(function.name, e) from e

    async def _recover(
        self,
        error: BaseException,
        action: WorkflowAction,
        prior: dict[str, Any],
        definition: WorkflowDefinition,
        user_inputs: Mapping[str, Any] | None,
    ) -> Any:
        suggestion = await self.advisor.analyze_and_recover(error, action, prior, definition.description)
        if not suggestion.can_continue:
            raise RecoveryFailedError(["advisor reported the workflow cannot continue"])
        return await self.advisor.execute_recovery(suggestion, action, prior, user_inputs)

    @staticmethod
    def _failure(
        execution_id: str,
        action: WorkflowAction,
        details: str,
        results: list[ActionResult],
        step_errors: list[StepError],
    ) -> WorkflowExecutionFailure:
        return WorkflowExecutionFailure(
            execution_id=execution_id,
            error="Failed to execute workflow",
            details=f"Action {action.id} ({action.tool_name}) failed: {details}",
            results=results,
            step_errors=step_errors,
            status_code=500,
        )


def _format_validation_error(error: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error['msg']}" if location else str(error["msg"])
