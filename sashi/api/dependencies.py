"""
Dependency wiring for the API layer.

Collaborators are created once by `create_app` and stored on `app.state`.
Route handlers receive them through these functions, so tests can build an
app around an in-memory registry and a fake completion client.
"""

from fastapi import Depends, Request

from sashi.clients.anthropic import get_anthropic_client
from sashi.clients.base import CompletionClient
from sashi.config import Settings
from sashi.services.chat import ChatOrchestrator
from sashi.services.entry import WorkflowEntryClassifier
from sashi.services.recovery import ErrorRecoveryAdvisor
from sashi.services.workflow import WorkflowExecutor
from sashi.tools.registry import FunctionRegistry


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> FunctionRegistry:
    return request.app.state.registry


def get_llm_client(request: Request) -> CompletionClient:
    """The configured completion client, created on first use when none was injected."""
    if request.app.state.llm_client is None:
        request.app.state.llm_client = get_anthropic_client()
    return request.app.state.llm_client


def get_chat_orchestrator(
    registry: FunctionRegistry = Depends(get_registry),
    client: CompletionClient = Depends(get_llm_client),
    settings: Settings = Depends(get_settings),
) -> ChatOrchestrator:
    return ChatOrchestrator(
        registry=registry,
        client=client,
        max_iterations=settings.max_iterations,
        history_limit=settings.history_limit,
        temperature=settings.chat_temperature,
        max_tokens=settings.chat_max_tokens,
    )


def get_workflow_executor(
    request: Request,
    registry: FunctionRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
) -> WorkflowExecutor:
    advisor = None
    if settings.recovery_enabled:
        advisor = ErrorRecoveryAdvisor(
            client=get_llm_client(request),
            registry=registry,
            min_confidence=settings.min_recovery_confidence,
            temperature=settings.recovery_temperature,
        )
    return WorkflowExecutor(registry=registry, advisor=advisor, recovery_enabled=settings.recovery_enabled)


def get_entry_classifier(client: CompletionClient = Depends(get_llm_client)) -> WorkflowEntryClassifier:
    return WorkflowEntryClassifier(client=client)
