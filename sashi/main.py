"""Main FastAPI application."""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sashi import __version__
from sashi.api.endpoints import router
from sashi.clients.base import CompletionClient
from sashi.config import Settings
from sashi.services.exceptions import SashiError
from sashi.tools.data_functions import register_default_functions
from sashi.tools.registry import FunctionRegistry
from sashi.utils.logging import LogConfig, get_logger, setup_logging

logger = get_logger(__name__)


def create_app(
    registry: FunctionRegistry | None = None,
    llm_client: CompletionClient | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the application around a function registry and a completion client.

    Args:
        registry: Functions exposed to the model and workflows (defaults to the generic data functions)
        llm_client: Completion client (defaults to an Anthropic client created on first use)
        settings: Runtime settings (defaults to values from the environment)
    """
    settings = settings or Settings()
    if registry is None:
        registry = FunctionRegistry()
        register_default_functions(registry)

    app = FastAPI(
        title="Sashi",
        description=(
            "Function-calling orchestration service: a chat assistant that calls registered "
            "backend functions, and a workflow executor that chains them."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        tags_metadata=[
            {"name": "Chat", "description": "Conversational turns with tool calling and confirmation."},
            {"name": "Workflow", "description": "Verify, classify and execute multi-step workflows."},
            {"name": "Functions", "description": "List registered functions and toggle their availability."},
            {"name": "Health", "description": "Service health monitoring and status checks."},
            {"name": "Testing", "description": "Probes for timeout and error handling behaviour."},
        ],
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.llm_client = llm_client

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SashiError)
    async def handle_service_error(request: Request, exc: SashiError) -> JSONResponse:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "details": str(exc)})

    app.include_router(router)
    logger.info(f"Application created with {len(registry)} registered functions")
    return app


setup_logging(LogConfig())
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("sashi.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
