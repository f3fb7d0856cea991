"""Parameter resolution for workflow actions.

A parameter value is one of three things:

- a literal, passed to the function unchanged;
- a reference to an earlier action's result, written `"<actionId>.<field>"`.
  The head may carry an array selector: `a[*].id` maps over a list result,
  `a[2].id`, `a[first].id` and `a[last].id` pick one item. Field paths may be
  nested (`a.profile.email`) and use digits to index lists;
- a user-supplied value, written `"userInput.<key>"`.

Workflows are tagged once when submitted (`compile_parameters`) so a literal that
merely contains a dot is never mistaken for a reference, and references to
actions that have not run yet are rejected up front. Resolution itself never
raises: anything it cannot resolve is passed through as the original string so
the invoked function fails loudly instead of silently losing a parameter.
"""

import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from typing import Any

from sashi.models.workflow import WorkflowAction
from sashi.services.exceptions import WorkflowValidationError

USER_INPUT_PREFIX = "userInput"

_REFERENCE_HEAD = re.compile(r"^(?P<action_id>[^\[\]\s]+?)(?:\[(?P<selector>\*|\d+|first|last)\])?$")
_MISSING = object()


@dataclass(frozen=True)
class LiteralParam:
    value: Any


@dataclass(frozen=True)
class ReferenceParam:
    action_id: str
    path: tuple[str, ...]
    selector: str | None
    raw: str


@dataclass(frozen=True)
class UserInputParam:
    key: str
    raw: str


ParameterValue = LiteralParam | ReferenceParam | UserInputParam


def split_reference(value: Any) -> tuple[str, str | None, str] | None:
    """Split `"head.path"` into (action id, selector, path), or None if it has no reference shape."""
    if not isinstance(value, str) or "." not in value:
        return None

    head, path = value.split(".", 1)
    match = _REFERENCE_HEAD.match(head)
    if match is None or not path:
        return None
    return match["action_id"], match["selector"], path


def parse_parameter(value: Any, known_action_ids: Collection[str]) -> ParameterValue:
    """Classify a raw parameter value against the ids of actions that already ran."""
    parts = split_reference(value)
    if parts is None:
        return LiteralParam(value)

    action_id, selector, path = parts
    if action_id == USER_INPUT_PREFIX and selector is None:
        return UserInputParam(key=path, raw=value)
    if action_id in known_action_ids:
        return ReferenceParam(action_id=action_id, path=tuple(path.split(".")), selector=selector, raw=value)
    return LiteralParam(value)


def compile_parameters(actions: list[WorkflowAction]) -> list[dict[str, ParameterValue]]:
    """Tag the parameters of every action in declaration order.

    Raises:
        WorkflowValidationError: If a parameter references its own action or one declared later
    """
    all_ids = {action.id for action in actions}
    completed: list[str] = []
    compiled: list[dict[str, ParameterValue]] = []
    errors: list[str] = []

    for index, action in enumerate(actions):
        tagged: dict[str, ParameterValue] = {}
        for name, value in action.parameters.items():
            parts = split_reference(value)
            if parts and parts[0] in all_ids and parts[0] not in completed:
                kind = "itself" if parts[0] == action.id else f"later action '{parts[0]}'"
                errors.append(f"Action #{index + 1} ({action.id}): parameter '{name}' references {kind}")
            tagged[name] = parse_parameter(value, completed)
        compiled.append(tagged)
        completed.append(action.id)

    if errors:
        raise WorkflowValidationError(errors)
    return compiled


def resolve_parameters(
    parameters: Mapping[str, Any],
    prior_results: Mapping[str, Any],
    user_inputs: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Substitute references and user inputs in `parameters`.

    Args:
        parameters: Raw values or already-tagged ParameterValue instances
        prior_results: Results of completed actions keyed by action id
        user_inputs: Values for `userInput.<key>` placeholders

    Returns:
        A new dict with every parameter resolved or passed through unchanged
    """
    resolved: dict[str, Any] = {}
    for name, value in (parameters or {}).items():
        if not isinstance(value, LiteralParam | ReferenceParam | UserInputParam):
            value = parse_parameter(value, prior_results.keys())
        resolved[name] = resolve_value(value, prior_results, user_inputs or {})
    return resolved


def resolve_value(param: ParameterValue, prior_results: Mapping[str, Any], user_inputs: Mapping[str, Any]) -> Any:
    if isinstance(param, LiteralParam):
        return param.value

    if isinstance(param, UserInputParam):
        return user_inputs.get(param.key, param.raw)

    if param.action_id not in prior_results:
        return param.raw

    result = prior_results[param.action_id]
    if param.selector is not None:
        if not isinstance(result, list):
            return param.raw
        if param.selector == "*":
            values = [_lookup(item, param.path) for item in result]
            return param.raw if any(value is _MISSING for value in values) else values

        index = {"first": 0, "last": -1}.get(param.selector)
        if index is None:
            index = int(param.selector)
        if not result or index >= len(result):
            return param.raw
        result = result[index]

    value = _lookup(result, param.path)
    return param.raw if value is _MISSING else value


def _lookup(value: Any, path: tuple[str, ...]) -> Any:
    current = value
    for part in path:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current
