"""Presentation hints for function results."""

import json
from datetime import UTC, datetime
from typing import Any

from sashi.models.workflow import UIContent, UIElement, UIType

BADGE_MAX_KEYS = 3


def guess_ui_type(result: Any) -> UIType:
    """Pick a rendering hint from the shape of a result.

    A list whose items are all objects is a table, a flat object with at most
    three keys is a badge, anything else is a card.
    """
    if isinstance(result, list) and result and all(isinstance(item, dict) for item in result):
        return "table"
    if isinstance(result, dict) and len(result) <= BADGE_MAX_KEYS:
        if not any(isinstance(value, dict | list) for value in result.values()):
            return "badge"
    return "card"


def to_display_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, default=str)


def build_ui_element(action_id: str, tool: str, title: str, result: Any) -> UIElement:
    return UIElement(
        action_id=action_id,
        tool=tool,
        content=UIContent(
            type=guess_ui_type(result),
            title=title,
            content=to_display_text(result),
            timestamp=datetime.now(UTC).isoformat(),
        ),
    )
