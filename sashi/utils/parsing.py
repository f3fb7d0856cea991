"""Helpers for reading structured answers out of model replies."""

import re

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


def extract_json_payload(content: str | None) -> str:
    """Return the JSON text of a reply, unwrapping a fenced code block if present.

    Raises:
        ValueError: If the reply is empty
    """
    if not content or not content.strip():
        raise ValueError("Empty model reply")

    match = _FENCED_BLOCK.search(content)
    payload = match.group(1) if match else content
    return payload.strip()
