import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .agent.mcp_backend import McpToolBackend, register_mcp_tools
from .agent.orchestrator import MarketQueryOrchestrator, QueryOptions
from .agent.tools import ToolRegistry
from .errors import GatewayError, IterationExhausted, OrchestrationError, QueryTimeout
from .services.context_window import ContextWindowConfig, ContextWindowManager
from .services.gateway import OpenAIGateway
from .services.session_store import SessionStore
from .services.storage import build_storage
from .settings import Settings, get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("marketmind")
    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


async def build_orchestrator(settings: Settings) -> MarketQueryOrchestrator:
    """Wire storage, session store, gateway, tools and context manager together."""
    store = SessionStore.from_settings(build_storage(settings), settings)
    await store.load()

    gateway = OpenAIGateway.from_settings(settings)
    registry = ToolRegistry()
    if settings.mcp_market_cmd:
        backend = McpToolBackend("nse_market", settings.mcp_market_cmd)
        count = await register_mcp_tools(registry, backend)
        LOGGER.info("Registered %d market tools", count)
    else:
        LOGGER.info("No MCP market server configured; running without tools")

    context_manager = ContextWindowManager(gateway, ContextWindowConfig.from_settings(settings))
    return MarketQueryOrchestrator(gateway, registry, store, context_manager, settings=settings)


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the orchestrator at startup; close storage on shutdown."""
    LOGGER.info("Starting MarketMind...")
    app.state.orchestrator = await build_orchestrator(settings)
    app.state.store = app.state.orchestrator.store

    yield

    LOGGER.info("Shutting down...")
    await app.state.store.close()


app = FastAPI(
    title="MarketMind",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    session_id: str | None = None
    user_id: str | None = None
    max_iterations: int = Field(default=settings.max_iterations, ge=1)
    use_memory: bool = True
    include_context: bool = True
    update_preferences: bool = True
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)


class ContextWindowUpdate(BaseModel):
    max_tokens: int | None = Field(default=None, gt=0)
    reserved_tokens: int | None = Field(default=None, ge=0)
    summarization_threshold: float | None = Field(default=None, gt=0, le=1)
    min_messages_to_summarize: int | None = Field(default=None, ge=2)
    tail_target_ratio: float | None = Field(default=None, gt=0, le=1)
    max_tail_messages: int | None = Field(default=None, ge=2)


def _orchestrator(request: Request) -> MarketQueryOrchestrator:
    return request.app.state.orchestrator


@app.exception_handler(OrchestrationError)
async def orchestration_error_handler(request: Request, exc: OrchestrationError) -> JSONResponse:
    status = 500
    if isinstance(exc, GatewayError):
        status = 502
    elif isinstance(exc, QueryTimeout):
        status = 504
    elif isinstance(exc, IterationExhausted):
        status = 422
    LOGGER.error("Query failed: %s", exc.to_dict())
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.post("/query")
async def query(body: QueryRequest, request: Request) -> dict[str, Any]:
    """Answer a natural-language market question."""
    LOGGER.info("Query start session_id=%s", body.session_id)
    options = QueryOptions(
        max_iterations=body.max_iterations,
        use_memory=body.use_memory,
        include_context=body.include_context,
        update_preferences=body.update_preferences,
        model=body.model,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        timeout_seconds=body.timeout_seconds,
    )
    result = await _orchestrator(request).process_query(
        body.query, body.session_id, body.user_id, options
    )
    return result.to_dict()


@app.get("/tools")
async def tools(request: Request) -> list[dict[str, Any]]:
    return _orchestrator(request).list_tools()


@app.get("/sessions/{session_id}")
async def session_info(session_id: str, request: Request) -> dict[str, Any]:
    info = _orchestrator(request).get_session_info(session_id)
    if info is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return info


@app.get("/sessions/{session_id}/export")
async def export_session(session_id: str, request: Request) -> dict[str, Any]:
    data = await _orchestrator(request).export_session(session_id)
    if data is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return data


@app.get("/sessions/{session_id}/context")
async def context_stats(session_id: str, request: Request) -> dict[str, Any]:
    orchestrator = _orchestrator(request)
    return {
        **orchestrator.get_context_stats(session_id),
        "summarization": orchestrator.get_summarization_overview(session_id),
    }


@app.post("/sessions/{session_id}/summarize")
async def force_summarization(session_id: str, request: Request) -> dict[str, Any]:
    summary = await _orchestrator(request).force_summarization(session_id)
    return {"summarized": summary is not None, "summary": summary.to_dict() if summary else None}


@app.delete("/sessions/{session_id}")
async def clear_session(session_id: str, request: Request) -> dict[str, Any]:
    removed = await _orchestrator(request).clear_session(session_id)
    return {"session_id": session_id, "removed": removed}


@app.get("/config/context-window")
async def get_context_window(request: Request) -> dict[str, Any]:
    return asdict(_orchestrator(request).get_context_window_config())


@app.put("/config/context-window")
async def update_context_window(body: ContextWindowUpdate, request: Request) -> dict[str, Any]:
    changes = body.model_dump(exclude_none=True)
    return asdict(_orchestrator(request).update_context_window_config(**changes))
