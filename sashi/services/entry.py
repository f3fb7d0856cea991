"""Classification of how a workflow should be started from the UI."""

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from sashi.clients.base import CompletionClient
from sashi.models.messages import ConversationMessage
from sashi.models.workflow import EntryField, ParameterMetadata, WorkflowDefinition, WorkflowEntry
from sashi.services.resolver import USER_INPUT_PREFIX
from sashi.utils.logging import get_logger
from sashi.utils.parsing import extract_json_payload

logger = get_logger(__name__)

ENTRY_PROMPT_TEMPLATE = """Classify how the following backend workflow should be presented to a user.
The workflow needs no user input. Choose one entry type:
- "button": it is triggered once by the user
- "auto_update": it fetches data that should be refreshed periodically without user action

Respond with strictly valid JSON:
{{
    "entryType": "button" | "auto_update",
    "description": "<short summary>",
    "updateInterval": "<only for auto_update, like '30s'>"
}}

Workflow:
```
{workflow}
```"""

_FIELD_TYPES = {
    "string": "string",
    "number": "number",
    "integer": "number",
    "boolean": "boolean",
    "date": "date",
    "enum": "enum",
}


class _EntryVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    entry_type: Literal["button", "auto_update"] = Field(alias="entryType")
    description: str | None = None
    update_interval: str | None = Field(default=None, alias="updateInterval")


def collect_entry_fields(definition: WorkflowDefinition) -> list[EntryField]:
    """Form fields for every `userInput.<key>` parameter, in order of first use."""
    fields: dict[str, EntryField] = {}
    prefix = f"{USER_INPUT_PREFIX}."
    for action in definition.actions:
        for name, value in action.parameters.items():
            if not isinstance(value, str) or not value.startswith(prefix):
                continue
            key = value.removeprefix(prefix)
            if not key or key in fields:
                continue
            metadata = (action.parameter_metadata or {}).get(name)
            fields[key] = _entry_field(key, metadata)
    return list(fields.values())


def _entry_field(key: str, metadata: ParameterMetadata | None) -> EntryField:
    if metadata is None:
        return EntryField(key=key, label=key)

    field_type = _FIELD_TYPES.get((metadata.type or "string").lower(), "string")
    if metadata.enum:
        field_type = "enum"
    return EntryField(
        key=key,
        label=metadata.description or key,
        type=field_type,
        required=metadata.required,
        enum_values=metadata.enum if field_type == "enum" else None,
    )


class WorkflowEntryClassifier:
    """Decides whether a workflow is a form, a button or an auto-updating view."""

    def __init__(self, client: CompletionClient, temperature: float = 0.3):
        self.client = client
        self.temperature = temperature

    async def classify(self, definition: WorkflowDefinition) -> WorkflowEntry:
        fields = collect_entry_fields(definition)
        if fields:
            return WorkflowEntry(entry_type="form", description=definition.description or None, entry_fields=fields)

        try:
            verdict = await self._ask_model(definition)
        except Exception as e:
            logger.warning(f"Entry classification failed, defaulting to button: {e}")
            return WorkflowEntry(entry_type="button", description=definition.description or None)

        return WorkflowEntry(
            entry_type=verdict.entry_type,
            description=verdict.description or definition.description or None,
            update_interval=verdict.update_interval if verdict.entry_type == "auto_update" else None,
        )

    async def _ask_model(self, definition: WorkflowDefinition) -> _EntryVerdict:
        workflow: dict[str, Any] = definition.model_dump(mode="json", by_alias=True, exclude_none=True)
        completion = await self.client.create_completion(
            [
                ConversationMessage(role="system", content="You are a helpful assistant."),
                ConversationMessage(role="user", content=ENTRY_PROMPT_TEMPLATE.format(workflow=json.dumps(workflow))),
            ],
            temperature=self.temperature,
        )
        return _EntryVerdict.model_validate_json(extract_json_payload(completion.content))
