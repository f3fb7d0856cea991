"""Tests for workflow UI-entry classification."""

import pytest
from conftest import FakeCompletionClient, text_completion

from sashi.clients.base import CompletionError
from sashi.models.workflow import WorkflowDefinition
from sashi.services.entry import WorkflowEntryClassifier, collect_entry_fields

FORM_WORKFLOW = {
    "description": "Change user type",
    "actions": [
        {
            "id": "change",
            "tool": "change_user_type",
            "parameters": {"userId": "userInput.userId", "type": "userInput.type", "note": "literal"},
            "parameterMetadata": {
                "userId": {"type": "number", "required": True},
                "type": {"type": "string", "enum": ["ADMIN", "MEMBER"], "required": True},
            },
        },
        {"id": "notify", "tool": "notify", "parameters": {"msg": "userInput.userId"}},
    ],
}

BUTTON_WORKFLOW = {"description": "List users", "actions": [{"id": "a", "tool": "list_users"}]}


class TestCollectEntryFields:
    """Tests for deriving form fields from user-input parameters."""

    def test_fields_from_user_inputs(self):
        fields = collect_entry_fields(WorkflowDefinition.model_validate(FORM_WORKFLOW))

        assert [field.key for field in fields] == ["userId", "type"]
        assert fields[0].type == "number"
        assert fields[1].type == "enum"
        assert fields[1].enum_values == ["ADMIN", "MEMBER"]

    def test_field_without_metadata_defaults_to_string(self):
        definition = WorkflowDefinition.model_validate(
            {"actions": [{"id": "a", "tool": "t", "parameters": {"q": "userInput.query"}}]}
        )
        [field] = collect_entry_fields(definition)
        assert field.type == "string"
        assert field.required is True

    def test_no_user_inputs(self):
        assert collect_entry_fields(WorkflowDefinition.model_validate(BUTTON_WORKFLOW)) == []


class TestWorkflowEntryClassifier:
    """Tests for the entry classifier."""

    @pytest.mark.asyncio
    async def test_user_inputs_make_a_form_without_asking_the_model(self):
        client = FakeCompletionClient()
        classifier = WorkflowEntryClassifier(client)

        entry = await classifier.classify(WorkflowDefinition.model_validate(FORM_WORKFLOW))

        assert entry.entry_type == "form"
        assert len(entry.entry_fields) == 2
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_model_chooses_auto_update(self):
        reply = '```json\n{"entryType": "auto_update", "description": "Live users", "updateInterval": "30s"}\n```'
        classifier = WorkflowEntryClassifier(FakeCompletionClient([text_completion(reply)]))

        entry = await classifier.classify(WorkflowDefinition.model_validate(BUTTON_WORKFLOW))

        assert entry.entry_type == "auto_update"
        assert entry.update_interval == "30s"
        assert entry.description == "Live users"

    @pytest.mark.asyncio
    async def test_button_drops_update_interval(self):
        reply = '{"entryType": "button", "updateInterval": "5s"}'
        classifier = WorkflowEntryClassifier(FakeCompletionClient([text_completion(reply)]))

        entry = await classifier.classify(WorkflowDefinition.model_validate(BUTTON_WORKFLOW))

        assert entry.entry_type == "button"
        assert entry.update_interval is None
        assert entry.description == "List users"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "client",
        [
            FakeCompletionClient(error=CompletionError("down")),
            FakeCompletionClient([text_completion("no idea")]),
            FakeCompletionClient([text_completion('{"entryType": "label"}')]),
        ],
    )
    async def test_falls_back_to_button(self, client):
        entry = await WorkflowEntryClassifier(client).classify(WorkflowDefinition.model_validate(BUTTON_WORKFLOW))
        assert entry.entry_type == "button"
