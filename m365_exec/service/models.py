"""
Pydantic models for the M365 Code Execution Service.
Module: m365_exec/service/models.py

Skill documents are serialized with camelCase keys (``createdAt``,
``usageCount``...) while Python code uses snake_case attributes; both
spellings are accepted on input.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SkillCategory(str, Enum):
    """Domain areas a skill can belong to."""

    MAIL = "mail"
    CALENDAR = "calendar"
    TEAMS = "teams"
    FILES = "files"
    SHAREPOINT = "sharepoint"
    PLANNER = "planner"
    TODO = "todo"
    GENERAL = "general"


class ExecutionState(str, Enum):
    """Lifecycle of a single sandboxed invocation."""

    CREATED = "created"
    COMPILING = "compiling"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionState.COMPLETED,
            ExecutionState.TIMED_OUT,
            ExecutionState.FAILED,
        )


class SkillParameter(CamelModel):
    """Declaration of one skill input."""

    type: Literal["string", "number", "boolean", "object", "array"] = Field(
        ..., description="JSON type of the parameter"
    )
    description: str = Field(..., description="What the parameter controls")
    required: bool = Field(default=False, description="Whether callers must supply it")
    default: Optional[Any] = Field(default=None, description="Value used when omitted")


class Skill(CamelModel):
    """A persisted, reusable automation script."""

    id: str = Field(..., description="Opaque identifier, immutable once assigned")
    name: str = Field(..., description="Human-chosen identifier (advisory unique)")
    description: str = Field(..., description="What the skill does and when to use it")
    category: SkillCategory = Field(..., description="Primary domain area")
    code: str = Field(..., description="Python async function body")
    parameters: Optional[Dict[str, SkillParameter]] = Field(
        default=None, description="Parameter declarations"
    )
    return_type: Optional[str] = Field(default=None, description="Documentation only")
    author: Optional[str] = Field(default=None, description="Skill author")
    tags: List[str] = Field(default_factory=list, description="Searchable labels")
    created_at: datetime = Field(..., description="Set once at first save")
    updated_at: datetime = Field(..., description="Refreshed on every save")
    usage_count: int = Field(default=0, ge=0, description="Successful executions")
    is_public: bool = Field(default=False, description="Visibility flag")
    is_builtin: bool = Field(default=False, description="Protected from deletion")

    @field_validator("created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the on-disk / wire document."""
        return self.model_dump(mode="json", by_alias=True)

    def summary(self) -> Dict[str, Any]:
        """Compact view used by listing and search results."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            include={
                "id",
                "name",
                "description",
                "category",
                "usage_count",
                "tags",
                "is_public",
                "is_builtin",
                "created_at",
                "updated_at",
            },
        )


class SkillFilters(CamelModel):
    """Conjunctive filters for listing skills."""

    category: Optional[SkillCategory] = Field(default=None, description="Exact category")
    author: Optional[str] = Field(default=None, description="Exact author")
    is_public: Optional[bool] = Field(default=None, description="Public/private skills")
    is_builtin: Optional[bool] = Field(default=None, description="Built-in skills")
    tags: Optional[List[str]] = Field(
        default=None, description="Skills carrying ANY of these tags"
    )


class ValidationResult(BaseModel):
    """Outcome of the deny-list code check."""

    valid: bool
    errors: List[str] = Field(default_factory=list)


class ExecutionLog(BaseModel):
    """Execution log entry."""

    timestamp: datetime = Field(default_factory=utc_now)
    level: str = Field(..., description="Log level (INFO, WARNING, ERROR)")
    message: str = Field(..., description="Log message")
    context: Optional[Dict[str, Any]] = Field(default=None, description="Additional context")


# ---------------------------------------------------------------------------
# Tool inputs
# ---------------------------------------------------------------------------


class CodeExecutionRequest(CamelModel):
    """Run ad-hoc script text."""

    code: str = Field(
        ...,
        description=(
            "Python async function body. The code has access to an `m365` object "
            "(e.g. `await m365.mail.list(filter=\"isRead eq false\")`) and must "
            "`return` its result."
        ),
    )
    timeout: Optional[int] = Field(
        default=None, description="Execution timeout in milliseconds (default: 30000, max: 60000)"
    )


class CodeValidationRequest(CamelModel):
    """Check script text against the deny-list."""

    code: str = Field(..., description="Python code to check")


class SkillCreateRequest(CamelModel):
    """Create a reusable skill."""

    name: str = Field(
        ...,
        description="Skill name in camelCase (e.g., getUnreadUrgentEmails). Must be unique.",
    )
    description: str = Field(..., description="What the skill does and when to use it")
    category: SkillCategory = Field(..., description="Primary M365 category")
    code: str = Field(
        ..., description="Python async function body with access to `m365` and `params`"
    )
    parameters: Optional[Dict[str, SkillParameter]] = Field(
        default=None, description="Optional parameter definitions"
    )
    return_type: Optional[str] = Field(default=None, description="Description of the result")
    author: Optional[str] = Field(default=None, description="Skill author")
    tags: Optional[List[str]] = Field(default=None, description="Tags for search")
    is_public: bool = Field(default=False, description="Whether the skill can be shared")


class SkillUpdate(CamelModel):
    """Fields a caller may change on an existing skill."""

    name: Optional[str] = None
    description: Optional[str] = None
    code: Optional[str] = None
    category: Optional[SkillCategory] = None
    tags: Optional[List[str]] = None
    parameters: Optional[Dict[str, SkillParameter]] = None
    return_type: Optional[str] = None
    author: Optional[str] = None
    is_public: Optional[bool] = None


class SkillUpdateRequest(CamelModel):
    """Update an existing skill by identifier."""

    skill_id: str = Field(..., description="Skill ID to update")
    updates: SkillUpdate = Field(..., description="Fields to update")


class SkillRefRequest(CamelModel):
    """Reference a skill by identifier or name."""

    skill_id: str = Field(
        ..., description="Skill ID (UUID) or skill name. ID is tried first, then name."
    )


class SkillExecutionRequest(CamelModel):
    """Execute a saved skill."""

    skill_id: str = Field(..., description="Skill ID or name to execute")
    params: Optional[Dict[str, Any]] = Field(
        default=None, description="Parameters passed to the skill as `params`"
    )
    timeout: Optional[int] = Field(
        default=None, description="Execution timeout in milliseconds (default: 30000, max: 60000)"
    )


class SkillSearchRequest(CamelModel):
    """Free-text skill search."""

    query: str = Field(..., description="Matched against name, description and tags")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class CodeExecutionResult(CamelModel):
    """Result of an ad-hoc script run."""

    success: bool = True
    result: Any = None
    executed_at: datetime = Field(default_factory=utc_now)
    execution_time_ms: float = 0.0


class SkillExecutionResult(CamelModel):
    """Result of a skill run."""

    success: bool = True
    skill_name: str
    skill_id: str
    usage_count: int
    execution_time_ms: float
    result: Any = None


class TextContent(BaseModel):
    """Single text block of a tool response."""

    type: Literal["text"] = "text"
    text: str


class ToolResponse(CamelModel):
    """Uniform envelope returned by every tool."""

    content: List[TextContent]
    is_error: bool = False


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional details")
    execution_id: Optional[str] = Field(default=None, description="Execution ID if applicable")
