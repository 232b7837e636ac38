"""
M365 Code Execution Service - sandboxed execution and skill management.
"""

from .capabilities import CAPABILITY_SURFACE, M365Capabilities
from .executor import (
    ExecutionError,
    ExecutionTimeoutError,
    SandboxedExecutor,
    SandboxViolationError,
)
from .graph_client import GraphClient, GraphClientError
from .models import (
    CodeExecutionResult,
    ErrorResponse,
    ExecutionLog,
    ExecutionState,
    Skill,
    SkillCategory,
    SkillExecutionResult,
    SkillFilters,
    SkillParameter,
    ToolResponse,
    ValidationResult,
)
from .skill_store import (
    SkillNotFoundError,
    SkillProtectedError,
    SkillStorageError,
    SkillStore,
    SkillStoreError,
    SkillValidationError,
)
from .validator import CodeValidator, validate_code

__all__ = [
    "CAPABILITY_SURFACE",
    "M365Capabilities",
    "ExecutionError",
    "ExecutionTimeoutError",
    "SandboxedExecutor",
    "SandboxViolationError",
    "GraphClient",
    "GraphClientError",
    "CodeExecutionResult",
    "ErrorResponse",
    "ExecutionLog",
    "ExecutionState",
    "Skill",
    "SkillCategory",
    "SkillExecutionResult",
    "SkillFilters",
    "SkillParameter",
    "ToolResponse",
    "ValidationResult",
    "SkillNotFoundError",
    "SkillProtectedError",
    "SkillStorageError",
    "SkillStore",
    "SkillStoreError",
    "SkillValidationError",
    "CodeValidator",
    "validate_code",
]
