"""
Tool surface for code execution and skill management.
Module: m365_exec/service/tools.py

Every tool takes a pydantic input model and answers with the same envelope::

    {"content": [{"type": "text", "text": "<pretty JSON>"}], "isError": false}

Failures use the same envelope with ``isError: true`` and a body carrying
``success: false``, the error message and an ``errorType``.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from .config import settings
from .executor import ExecutionError, ExecutionTimeoutError, SandboxViolationError, SandboxedExecutor
from .models import (
    CodeExecutionRequest,
    CodeExecutionResult,
    CodeValidationRequest,
    Skill,
    SkillCreateRequest,
    SkillExecutionRequest,
    SkillFilters,
    SkillRefRequest,
    SkillSearchRequest,
    SkillUpdateRequest,
    TextContent,
    ToolResponse,
)
from .skill_executor import SkillExecutor
from .skill_store import (
    SkillNotFoundError,
    SkillProtectedError,
    SkillStorageError,
    SkillStore,
    SkillValidationError,
)

logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Raised by handlers for caller mistakes detected at the tool layer."""

    def __init__(
        self, message: str, error_type: str = "validation", details: Optional[Any] = None
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.details = details


ToolHandler = Callable[[Any], Awaitable[Any]]


@dataclass
class ToolDefinition:
    """A registered tool."""

    name: str
    description: str
    input_model: Type[BaseModel]
    handler: ToolHandler
    read_only: bool = False

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "readOnlyHint": self.read_only,
            "inputSchema": self.input_model.model_json_schema(by_alias=True),
        }


def classify_error(error: Exception) -> str:
    """Map an exception to the ``errorType`` reported to callers."""
    if isinstance(error, ToolError):
        return error.error_type
    if isinstance(error, ExecutionTimeoutError):
        return "timeout"
    if isinstance(error, (SandboxViolationError, SkillValidationError, ValidationError)):
        return "validation"
    if isinstance(error, ExecutionError):
        return "execution"
    if isinstance(error, SkillNotFoundError):
        return "not_found"
    if isinstance(error, SkillProtectedError):
        return "protected"
    if isinstance(error, SkillStorageError):
        return "storage"
    return "internal"


def text_response(payload: Any, is_error: bool = False) -> ToolResponse:
    """Wrap a JSON-serializable payload in the tool envelope."""
    text = json.dumps(payload, indent=2, default=str)
    return ToolResponse(content=[TextContent(text=text)], is_error=is_error)


def error_response(error: Exception) -> ToolResponse:
    payload: Dict[str, Any] = {
        "success": False,
        "error": str(error),
        "errorType": classify_error(error),
    }
    if isinstance(error, ToolError) and error.details is not None:
        payload["details"] = error.details
    if isinstance(error, SandboxViolationError):
        payload["details"] = error.violations
    elif isinstance(error, ExecutionError):
        payload["executionId"] = error.execution_id
        if error.trace:
            payload["trace"] = error.trace
    if isinstance(error, ValidationError):
        payload["details"] = error.errors(include_url=False)
    return text_response(payload, is_error=True)


class ToolRegistry:
    """Registry of exposed tools."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def list_tools(self) -> List[Dict[str, Any]]:
        return [tool.describe() for tool in self._tools.values()]

    async def invoke(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResponse:
        """
        Validate arguments and run a tool.

        Args:
            name: Tool name
            arguments: Raw arguments (camelCase or snake_case keys)

        Returns:
            Tool envelope; failures are reported with ``isError``

        Raises:
            KeyError: If no tool with this name is registered
        """
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(name)

        try:
            request = tool.input_model.model_validate(arguments or {})
            payload = await tool.handler(request)
        except Exception as e:
            if classify_error(e) == "internal":
                logger.error(f"Tool {name} raised unexpectedly: {e}", exc_info=True)
            else:
                logger.warning(f"Tool {name} failed: {e}")
            return error_response(e)

        return text_response(payload)


class SkillTools:
    """Handlers for the code execution and skill management tools."""

    def __init__(
        self,
        store: SkillStore,
        engine: SandboxedExecutor,
        capabilities: Any,
        skill_executor: Optional[SkillExecutor] = None,
        validate_adhoc_code: Optional[bool] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.capabilities = capabilities
        self.skill_executor = skill_executor or SkillExecutor(store, engine, capabilities)
        self.validate_adhoc_code = (
            settings.validate_adhoc_code if validate_adhoc_code is None else validate_adhoc_code
        )

    def _check_code(self, code: str) -> None:
        validation = self.store.validate_code(code)
        if not validation.valid:
            raise ToolError("Code validation failed", details=validation.errors)

    async def _ensure_name_available(self, name: str, skill_id: Optional[str] = None) -> None:
        existing = await self.store.get_by_name(name)
        if existing is not None and existing.id != skill_id:
            raise ToolError(
                f"Skill with name '{name}' already exists. Use update-m365-skill to modify it."
            )

    async def _resolve(self, skill_ref: str) -> Skill:
        skill = await self.store.resolve(skill_ref)
        if skill is None:
            raise SkillNotFoundError(f"Skill not found: {skill_ref}")
        return skill

    async def execute_code(self, request: CodeExecutionRequest) -> Dict[str, Any]:
        if self.validate_adhoc_code:
            self._check_code(request.code)

        start_time = time.time()
        result = await self.engine.execute(
            request.code, self.capabilities, timeout_ms=settings.clamp_timeout(request.timeout)
        )
        return CodeExecutionResult(
            result=result, execution_time_ms=(time.time() - start_time) * 1000
        ).model_dump(mode="json", by_alias=True)

    async def validate_code(self, request: CodeValidationRequest) -> Dict[str, Any]:
        return self.store.validate_code(request.code).model_dump()

    async def create_skill(self, request: SkillCreateRequest) -> Dict[str, Any]:
        self._check_code(request.code)
        await self._ensure_name_available(request.name)

        skill = await self.store.save(request.model_dump(exclude_none=True))
        logger.info(f"Skill created: {skill.name} ({skill.id})")
        document = skill.to_document()
        return {
            "success": True,
            "message": f"Skill '{skill.name}' created successfully",
            "skillId": skill.id,
            "skill": {
                key: document[key]
                for key in ("id", "name", "description", "category", "tags", "createdAt")
            },
        }

    async def list_skills(self, request: SkillFilters) -> Dict[str, Any]:
        skills = await self.store.list(request)
        return {"count": len(skills), "skills": [skill.summary() for skill in skills]}

    async def get_skill(self, request: SkillRefRequest) -> Dict[str, Any]:
        skill = await self._resolve(request.skill_id)
        return {"success": True, "skill": skill.to_document()}

    async def execute_skill(self, request: SkillExecutionRequest) -> Dict[str, Any]:
        result = await self.skill_executor.run(
            request.skill_id, params=request.params, timeout_ms=request.timeout
        )
        return result.model_dump(mode="json", by_alias=True)

    async def update_skill(self, request: SkillUpdateRequest) -> Dict[str, Any]:
        skill = await self.store.get(request.skill_id)
        if skill is None:
            raise SkillNotFoundError(f"Skill not found: {request.skill_id}")

        updates = request.updates
        if updates.code is not None and updates.code != skill.code:
            self._check_code(updates.code)
        if updates.name is not None and updates.name != skill.name:
            await self._ensure_name_available(updates.name, skill_id=skill.id)

        updated = await self.store.update(skill.id, updates)
        document = updated.to_document()
        return {
            "success": True,
            "message": f"Skill '{updated.name}' updated successfully",
            "skill": {
                key: document[key] for key in ("id", "name", "description", "category", "updatedAt")
            },
        }

    async def delete_skill(self, request: SkillRefRequest) -> Dict[str, Any]:
        if not await self.store.delete(request.skill_id):
            raise SkillNotFoundError(f"Skill not found: {request.skill_id}")
        logger.info(f"Skill deleted: {request.skill_id}")
        return {"success": True, "message": "Skill deleted successfully", "skillId": request.skill_id}

    async def search_skills(self, request: SkillSearchRequest) -> Dict[str, Any]:
        skills = await self.store.search(request.query)
        return {
            "query": request.query,
            "count": len(skills),
            "skills": [
                {
                    key: value
                    for key, value in skill.summary().items()
                    if key in ("id", "name", "description", "category", "usageCount", "tags")
                }
                for skill in skills
            ],
        }

    def definitions(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(
                name="execute-m365-code",
                description=(
                    "Execute Python code against Microsoft 365. The code is the body of an "
                    "async function: `await` calls on the `m365` object (mail, calendar, teams, "
                    "files, sharepoint, planner, todo) and `return` the result."
                ),
                input_model=CodeExecutionRequest,
                handler=self.execute_code,
            ),
            ToolDefinition(
                name="create-m365-skill",
                description=(
                    "Save reusable code as a named skill. Skills persist across sessions "
                    "and track their usage."
                ),
                input_model=SkillCreateRequest,
                handler=self.create_skill,
            ),
            ToolDefinition(
                name="list-m365-skills",
                description=(
                    "List all saved M365 skills with optional filtering. Shows skill metadata "
                    "including usage statistics."
                ),
                input_model=SkillFilters,
                handler=self.list_skills,
                read_only=True,
            ),
            ToolDefinition(
                name="get-m365-skill",
                description=(
                    "Get details of a specific skill including its full code. "
                    "Can retrieve by ID or name."
                ),
                input_model=SkillRefRequest,
                handler=self.get_skill,
                read_only=True,
            ),
            ToolDefinition(
                name="execute-m365-skill",
                description=(
                    "Execute a saved skill with optional parameters. "
                    "Automatically tracks usage statistics."
                ),
                input_model=SkillExecutionRequest,
                handler=self.execute_skill,
            ),
            ToolDefinition(
                name="update-m365-skill",
                description=(
                    "Update an existing skill. Can modify any field except ID and usage statistics."
                ),
                input_model=SkillUpdateRequest,
                handler=self.update_skill,
            ),
            ToolDefinition(
                name="delete-m365-skill",
                description=(
                    "Delete a saved skill. This action cannot be undone. "
                    "Built-in skills cannot be deleted."
                ),
                input_model=SkillRefRequest,
                handler=self.delete_skill,
            ),
            ToolDefinition(
                name="search-m365-skills",
                description="Search skills by query string. Searches across name, description, and tags.",
                input_model=SkillSearchRequest,
                handler=self.search_skills,
                read_only=True,
            ),
            ToolDefinition(
                name="validate-m365-code",
                description="Check code against the forbidden-pattern list without running it.",
                input_model=CodeValidationRequest,
                handler=self.validate_code,
                read_only=True,
            ),
        ]


def build_tool_registry(
    store: SkillStore,
    engine: SandboxedExecutor,
    capabilities: Any,
    skill_executor: Optional[SkillExecutor] = None,
    read_only: bool = False,
    enabled_tools_pattern: Optional[str] = None,
    validate_adhoc_code: Optional[bool] = None,
) -> ToolRegistry:
    """
    Build the tool registry.

    Args:
        store: Skill store
        engine: Execution engine
        capabilities: Capability facade bound as ``m365``
        skill_executor: Optional preconfigured skill executor
        read_only: Drop tools that change state or run code
        enabled_tools_pattern: Case-insensitive regex; only matching tool names are kept
        validate_adhoc_code: Override the ad-hoc deny-list check setting

    Returns:
        Registry containing the selected tools
    """
    pattern = None
    if enabled_tools_pattern:
        try:
            pattern = re.compile(enabled_tools_pattern, re.IGNORECASE)
            logger.info(f"Tool filtering enabled with pattern: {enabled_tools_pattern}")
        except re.error:
            logger.error(
                f"Invalid tool filter regex pattern: {enabled_tools_pattern}. Ignoring filter."
            )

    tools = SkillTools(
        store,
        engine,
        capabilities,
        skill_executor=skill_executor,
        validate_adhoc_code=validate_adhoc_code,
    )

    registry = ToolRegistry()
    for tool in tools.definitions():
        if read_only and not tool.read_only:
            logger.info(f"Skipping mutating tool {tool.name} in read-only mode")
            continue
        if pattern is not None and not pattern.search(tool.name):
            logger.debug(f"Skipping tool {tool.name} - doesn't match filter pattern")
            continue
        registry.register(tool)

    logger.info(f"Registered {len(registry.names())} tools")
    return registry
