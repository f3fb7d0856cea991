"""API endpoints for the function-calling orchestration service."""

import asyncio
import json
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from sashi import __version__
from sashi.api.dependencies import (
    get_chat_orchestrator,
    get_entry_classifier,
    get_registry,
    get_settings,
    get_workflow_executor,
)
from sashi.clients.base import CompletionError
from sashi.config import Settings
from sashi.models.api import (
    ChatRequest,
    ChatResponse,
    EntryResponse,
    ErrorHandlingTestRequest,
    ErrorResponse,
    FunctionInfo,
    FunctionToggleResponse,
    HealthResponse,
    VerificationResponse,
    WorkflowExecuteRequest,
    WorkflowRequest,
)
from sashi.models.workflow import WorkflowExecutionFailure
from sashi.services.chat import ChatOrchestrator
from sashi.services.entry import WorkflowEntryClassifier
from sashi.services.exceptions import FunctionNotFoundError, WorkflowValidationError
from sashi.services.workflow import WorkflowExecutor, parse_workflow, verify_workflow
from sashi.tools.registry import FunctionRegistry
from sashi.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def _invalid_workflow(error: WorkflowValidationError) -> JSONResponse:
    logger.warning(f"Rejected workflow: {error}")
    body = ErrorResponse(error="Invalid workflow format", details=str(error))
    return JSONResponse(status_code=400, content=body.model_dump())


@router.post("/chat", response_model=ChatResponse, response_model_exclude_none=True, tags=["Chat"])
async def chat(
    request: ChatRequest,
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
) -> ChatResponse:
    """Run one chat turn: a new inquiry, or tool calls resubmitted after confirmation."""
    if request.inquiry is None and not request.tools:
        raise HTTPException(status_code=400, detail="Either 'inquiry' or 'tools' is required")

    logger.info(
        f"Chat turn with {len(request.previous)} previous messages, "
        f"{'inquiry' if request.inquiry is not None else f'{len(request.tools)} resubmitted tool calls'}"
    )
    try:
        result = await orchestrator.run_turn(inquiry=request.inquiry, tools=request.tools, previous=request.previous)
    except ValueError as e:
        logger.warning(f"Rejected chat inquiry: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e
    except CompletionError as e:
        logger.error(f"Completion service error during chat turn: {e}")
        raise HTTPException(status_code=502, detail=f"Completion service error: {e.message}") from e

    return ChatResponse(
        output=result.output,
        tool_calls=result.tool_calls,
        visualization=result.visualization,
        history=result.history,
        state=result.state.value,
        iterations=result.iterations,
        usage=result.usage,
    )


@router.post("/workflow/execute", tags=["Workflow"])
async def execute_workflow(
    request: WorkflowExecuteRequest,
    executor: WorkflowExecutor = Depends(get_workflow_executor),
) -> JSONResponse:
    """Execute a workflow. Failures carry the results of the actions that completed."""
    try:
        definition = parse_workflow(request.workflow)
        if request.debug:
            logger.info(f"Executing workflow: {json.dumps(request.workflow, default=str)}")
        response = await executor.execute(definition, request.user_inputs)
    except WorkflowValidationError as e:
        return _invalid_workflow(e)

    status_code = response.status_code if isinstance(response, WorkflowExecutionFailure) else 200
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json", by_alias=True))


@router.post("/workflow/verify", response_model=VerificationResponse, tags=["Workflow"])
async def verify(
    request: WorkflowRequest,
    registry: FunctionRegistry = Depends(get_registry),
) -> VerificationResponse:
    """Check a workflow against the registry without running it."""
    errors = verify_workflow(request.workflow, registry)
    return VerificationResponse(valid=not errors, errors=errors)


@router.post("/workflow/ui-entry-type", response_model=None, tags=["Workflow"])
async def ui_entry_type(
    request: WorkflowRequest,
    classifier: WorkflowEntryClassifier = Depends(get_entry_classifier),
) -> JSONResponse:
    """Decide how the UI should let the user start a workflow."""
    try:
        definition = parse_workflow(request.workflow)
    except WorkflowValidationError as e:
        return _invalid_workflow(e)

    entry = await classifier.classify(definition)
    body = EntryResponse(entry=entry)
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True, exclude_none=True))


@router.get("/functions", response_model=list[FunctionInfo], tags=["Functions"])
async def list_functions(registry: FunctionRegistry = Depends(get_registry)) -> list[FunctionInfo]:
    return [FunctionInfo.model_validate(function.describe()) for function in registry.list_all() if not function.hidden]


@router.get("/functions/{name}/toggle_active", response_model=FunctionToggleResponse, tags=["Functions"])
async def toggle_function(name: str, registry: FunctionRegistry = Depends(get_registry)) -> FunctionToggleResponse:
    """Flip whether the model may see and call a function."""
    try:
        active = registry.toggle_active(name)
    except KeyError as e:
        raise FunctionNotFoundError(name) from e
    return FunctionToggleResponse(name=name, active=active)


@router.post("/test/error-handling", tags=["Testing"])
async def error_handling_probe(
    request: ErrorHandlingTestRequest,
    settings: Settings = Depends(get_settings),
) -> dict:
    """Exercise the timeout, unhandled error and validation paths."""
    if not settings.enable_test_endpoints:
        raise HTTPException(status_code=404, detail="Not Found")

    logger.info(f"Error handling probe: {request.test_type}")
    if request.test_type == "timeout":
        await asyncio.sleep(settings.timeout_probe_seconds)
        return {"success": True, "message": f"Completed after {settings.timeout_probe_seconds}s delay"}
    if request.test_type == "error":
        raise RuntimeError("Intentional test error")
    if request.test_type == "validation":
        if request.required_field is None:
            raise HTTPException(status_code=400, detail="Validation failed: requiredField is required")
        return {"success": True, "message": "Validation passed"}

    raise HTTPException(status_code=400, detail=f"Unknown testType: {request.test_type}")


@router.get("/ping", tags=["Health"])
async def ping() -> dict:
    return {"message": "pong"}


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )
