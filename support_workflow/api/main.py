"""Main FastAPI application."""
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from support_workflow.agent.cache import WorkflowCache
from support_workflow.agent.graph import WorkflowCompiler
from support_workflow.agent.llm import LLMClient
from support_workflow.agent.nodes import NodeServices
from support_workflow.agent.runtime import WorkflowRuntime
from support_workflow.config import Settings, get_settings
from support_workflow.content import to_rich_text
from support_workflow.exceptions import StructuralError, WorkflowNotFoundError
from support_workflow.logging_config import configure_logging, get_logger
from support_workflow.models import (
    AIResponse,
    AIResponseRequest,
    HealthResponse,
    RefreshResponse,
    WorkflowDefinition,
    WorkflowValidationResponse,
)
from support_workflow.notifications import HandoffNotifier
from support_workflow.repository import InMemoryTicketRepository, JsonFileRoleConfigSource, TicketRepository
from support_workflow.retrieval import RetrievalPipeline
from support_workflow.vector_store import VectorStore, create_vector_store

logger = get_logger(__name__)


@dataclass
class AppServices:
    """Everything the endpoints need, built once at startup."""
    repository: TicketRepository
    store: VectorStore
    compiler: WorkflowCompiler
    cache: WorkflowCache
    runtime: WorkflowRuntime
    notifier: HandoffNotifier


def build_services(settings: Optional[Settings] = None) -> AppServices:
    """Wire the production collaborators from settings."""
    settings = settings or get_settings()
    repository = InMemoryTicketRepository.from_json_file(settings.ticket_data_path)
    store = create_vector_store(settings)
    notifier = HandoffNotifier(repository, settings=settings)
    node_services = NodeServices(
        llm=LLMClient(settings),
        retrieval=RetrievalPipeline(store, settings),
        repository=repository,
        notifier=notifier,
        settings=settings,
    )
    compiler = WorkflowCompiler(node_services, settings)
    cache = WorkflowCache(compiler, JsonFileRoleConfigSource(settings.workflow_config_path), settings)
    return AppServices(
        repository=repository,
        store=store,
        compiler=compiler,
        cache=cache,
        runtime=WorkflowRuntime(cache, repository, settings),
        notifier=notifier,
    )


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """
    Create the admin API.

    Args:
        services: Pre-built collaborators (tests inject fakes); built from
            settings at startup when omitted
    """
    app = FastAPI(
        title="Support Workflow Engine",
        description="Authored conversational workflows for support tickets",
        version="1.0.0",
    )
    app.state.services = services

    @app.on_event("startup")
    async def startup_event():
        logger.info("application_starting")
        if app.state.services is None:
            app.state.services = build_services()
        try:
            await app.state.services.cache.initialize()
        except Exception as e:
            logger.error("workflow_cache_initialization_failed", error=str(e))
        logger.info("application_started", scopes=app.state.services.cache.get_scopes())

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.services is not None:
            await app.state.services.notifier.drain()
        logger.info("application_stopped")

    @app.exception_handler(StructuralError)
    async def structural_error_handler(request: Request, exc: StructuralError):
        logger.warning("workflow_rejected", code=exc.code, detail=exc.message, path=request.url.path)
        return JSONResponse(status_code=422, content={"code": exc.code, "detail": exc.message})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    def get_services() -> AppServices:
        if app.state.services is None:
            raise HTTPException(status_code=503, detail="Services not initialized")
        return app.state.services

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        services = get_services()
        store_ok = await services.store.health()
        return HealthResponse(
            status="healthy" if store_ok else "degraded",
            vector_store=store_ok,
            scopes=services.cache.size(),
        )

    @app.post("/workflows/validate", response_model=WorkflowValidationResponse)
    async def validate_workflow(definition: WorkflowDefinition) -> WorkflowValidationResponse:
        """Compile a definition without caching it; StructuralError becomes a 422."""
        compiled = get_services().compiler.compile(definition)
        return WorkflowValidationResponse(
            workflow_id=compiled.workflow_id,
            nodes=compiled.nodes,
            excluded_nodes=compiled.excluded_nodes,
            has_cycle=compiled.has_cycle,
        )

    @app.post("/workflows/refresh", response_model=RefreshResponse)
    async def refresh_workflows() -> RefreshResponse:
        cache = get_services().cache
        await cache.refresh()
        return RefreshResponse(scopes=cache.get_scopes(), workflow_count=cache.workflow_count())

    @app.post("/tickets/{ticket_id}/ai-response", response_model=AIResponse)
    async def ai_response(ticket_id: str, request: Optional[AIResponseRequest] = None) -> AIResponse:
        """
        Run the ticket's workflow for its latest turn.

        Returns:
            The reply as text and as a rich-text document
        """
        start_time = time.time()
        request = request or AIResponseRequest()
        services = get_services()
        log = logger.bind(request_id=str(uuid.uuid4()), ticket_id=ticket_id)

        if request.is_workflow_test:
            ticket = await services.repository.get_test_ticket(ticket_id)
        else:
            ticket = await services.repository.get_ticket(ticket_id)
        if ticket is None:
            raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")

        try:
            response = await services.runtime.get_ai_response(ticket, request.is_workflow_test)
        except WorkflowNotFoundError as e:
            log.error("workflow_not_found", detail=e.message)
            raise HTTPException(status_code=503, detail=e.message)

        latency_ms = (time.time() - start_time) * 1000
        log.info("request_processed", response_length=len(response), latency_ms=latency_ms)
        return AIResponse(
            ticket_id=ticket_id,
            response=response,
            rich_text=to_rich_text(response),
            latency_ms=latency_ms,
        )

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
