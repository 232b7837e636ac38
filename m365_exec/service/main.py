"""
M365 Code Execution Service - FastAPI application.
Module: m365_exec/service/main.py
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, status
from fastapi.responses import JSONResponse

from .builtin_skills import load_builtin_skills
from .capabilities import M365Capabilities
from .config import settings
from .executor import SandboxedExecutor
from .graph_client import GraphClient
from .models import ErrorResponse, SkillCategory, SkillFilters, ToolResponse
from .skill_executor import SkillExecutor
from .skill_store import SkillStore
from .tools import ToolRegistry, build_tool_registry

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format=settings.log_format,
)
logger = logging.getLogger(__name__)

# Global components (initialized in lifespan)
store: Optional[SkillStore] = None
graph_client: Optional[GraphClient] = None
engine: Optional[SandboxedExecutor] = None
tool_registry: Optional[ToolRegistry] = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager for startup and shutdown.

    Args:
        app: FastAPI application instance
    """
    global store, graph_client, engine, tool_registry

    # Startup
    logger.info("Starting M365 Code Execution Service")
    logger.info(f"Skills directory: {settings.skills_directory}")

    store = SkillStore(settings.skills_directory)
    await store.init()
    if settings.load_builtins_on_startup:
        await load_builtin_skills(store)

    graph_client = GraphClient(
        access_token=settings.graph_access_token,
        base_url=settings.graph_base_url,
        timeout=settings.graph_timeout_seconds,
    )
    if not settings.graph_access_token:
        logger.warning("No Graph access token configured; capability calls will fail")

    capabilities = M365Capabilities(graph_client)
    engine = SandboxedExecutor(max_execution_logs=settings.max_execution_logs)
    tool_registry = build_tool_registry(
        store,
        engine,
        capabilities,
        skill_executor=SkillExecutor(store, engine, capabilities),
        read_only=settings.read_only,
        enabled_tools_pattern=settings.enabled_tools_pattern,
        validate_adhoc_code=settings.validate_adhoc_code,
    )

    logger.info(f"Service ready on {settings.host}:{settings.port}")

    yield

    # Shutdown
    logger.info("Shutting down M365 Code Execution Service")
    await graph_client.close()


# Create FastAPI app
app = FastAPI(
    title="M365 Code Execution Service",
    description="Sandboxed Microsoft 365 script execution with persistent, reusable skills",
    version="1.0.0",
    lifespan=lifespan,
)


def _require_store() -> SkillStore:
    if not store:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Skill store not initialized",
        )
    return store


def _require_tools() -> ToolRegistry:
    if not tool_registry:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Tool registry not initialized",
        )
    return tool_registry


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint - service health check."""
    return {
        "service": settings.service_name,
        "status": "healthy",
        "tools_registered": len(tool_registry.names()) if tool_registry else 0,
    }


@app.get("/health", tags=["Health"])
async def health() -> dict:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "store_ready": store is not None,
        "engine_ready": engine is not None,
        "graph_token_configured": bool(settings.graph_access_token),
        "read_only": settings.read_only,
    }


@app.get("/tools", tags=["Tools"])
async def list_tools() -> List[Dict[str, Any]]:
    """List exposed tools with their input schemas."""
    return _require_tools().list_tools()


@app.post("/tools/{tool_name}", response_model=ToolResponse, tags=["Tools"])
async def invoke_tool(
    tool_name: str, arguments: Optional[Dict[str, Any]] = Body(default=None)
) -> ToolResponse:
    """
    Invoke a tool.

    Args:
        tool_name: Registered tool name (e.g. ``execute-m365-code``)
        arguments: Tool arguments

    Returns:
        Tool envelope; tool failures are reported with ``isError``

    Raises:
        HTTPException: If the tool is not registered
    """
    registry = _require_tools()
    try:
        return await registry.invoke(tool_name, arguments)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Tool not found: {tool_name}",
        )


@app.get("/skills/list", tags=["Skills"])
async def list_skills(
    category: Optional[SkillCategory] = Query(None, description="Filter by category"),
    tags: Optional[List[str]] = Query(None, description="Filter by tags (any match)"),
    is_builtin: Optional[bool] = Query(None, description="Filter by built-in flag"),
) -> dict:
    """
    List saved skills, most used first.

    Args:
        category: Optional category filter
        tags: Optional list of tags to filter by
        is_builtin: Optional built-in filter

    Returns:
        Skill summaries
    """
    filters = SkillFilters(category=category, tags=tags, is_builtin=is_builtin)
    skills = await _require_store().list(filters)
    return {"skills": [skill.summary() for skill in skills], "total": len(skills)}


@app.get("/skills/{skill_ref}", tags=["Skills"])
async def get_skill(skill_ref: str) -> dict:
    """
    Get a full skill document by ID or name.

    Raises:
        HTTPException: If skill not found
    """
    skill = await _require_store().resolve(skill_ref)
    if skill is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Skill not found: {skill_ref}",
        )
    return skill.to_document()


@app.exception_handler(Exception)
async def global_exception_handler(request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled errors.

    Args:
        request: Request object
        exc: Exception

    Returns:
        JSON error response
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    error_response = ErrorResponse(
        error="internal_server_error",
        message="An unexpected error occurred",
        details={"exception_type": type(exc).__name__},
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_response.model_dump(),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "m365_exec.service.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
