"""
Runs saved skills through the execution engine.
Module: m365_exec/service/skill_executor.py
"""

import logging
import time
import uuid
from typing import Any, Dict, Mapping, Optional

from jsonschema import Draft7Validator, ValidationError as JsonSchemaValidationError

from .config import settings
from .executor import SandboxedExecutor
from .models import Skill, SkillExecutionResult
from .skill_store import SkillNotFoundError, SkillStore, SkillValidationError

logger = logging.getLogger(__name__)


def build_params_schema(skill: Skill) -> Dict[str, Any]:
    """Build a JSON Schema (draft 7) from a skill's parameter declarations."""
    properties: Dict[str, Any] = {}
    required = []
    for name, declaration in (skill.parameters or {}).items():
        properties[name] = {"type": declaration.type, "description": declaration.description}
        if declaration.required:
            required.append(name)
    return {"type": "object", "properties": properties, "required": required}


def apply_defaults(skill: Skill, params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Fill declared defaults for parameters the caller omitted."""
    merged = dict(params or {})
    for name, declaration in (skill.parameters or {}).items():
        if name not in merged and declaration.default is not None:
            merged[name] = declaration.default
    return merged


class SkillExecutor:
    """Resolves a skill, checks its parameters, executes it and records usage."""

    def __init__(
        self,
        store: SkillStore,
        engine: SandboxedExecutor,
        capabilities: Any,
    ) -> None:
        """
        Initialize the skill executor.

        Args:
            store: Skill store used for resolution and usage accounting
            engine: Sandboxed execution engine
            capabilities: Facade bound as ``m365`` inside skills
        """
        self.store = store
        self.engine = engine
        self.capabilities = capabilities

    def validate_params(self, skill: Skill, params: Mapping[str, Any]) -> None:
        """
        Validate parameters against the skill's declarations.

        Raises:
            SkillValidationError: If validation fails
        """
        try:
            Draft7Validator(build_params_schema(skill)).validate(dict(params))
        except JsonSchemaValidationError as e:
            raise SkillValidationError(f"Parameter validation failed for {skill.name}: {e.message}")

    async def run(
        self,
        skill_ref: str,
        params: Optional[Mapping[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> SkillExecutionResult:
        """
        Execute a saved skill.

        Usage is counted only when the skill returns successfully.

        Args:
            skill_ref: Skill ID, or name if no ID matches
            params: Parameters bound read-only as ``params``
            timeout_ms: Deadline in milliseconds (clamped to the configured max)

        Returns:
            Skill execution result with the post-increment usage count

        Raises:
            SkillNotFoundError: If no skill matches
            SkillValidationError: If parameters do not match the declarations
            ExecutionTimeoutError: If the deadline elapses
            ExecutionError: If the skill fails
        """
        skill = await self.store.resolve(skill_ref)
        if skill is None:
            raise SkillNotFoundError(f"Skill not found: {skill_ref}")

        merged = apply_defaults(skill, params)
        self.validate_params(skill, merged)

        execution_id = str(uuid.uuid4())
        logger.info(f"[{execution_id[:8]}] Executing skill: {skill.name} ({skill.id})")
        start_time = time.time()

        result = await self.engine.execute(
            skill.code,
            self.capabilities,
            timeout_ms=settings.clamp_timeout(timeout_ms),
            params=merged,
            execution_id=execution_id,
        )
        execution_time_ms = (time.time() - start_time) * 1000

        usage_count = await self.store.increment_usage(skill.id)
        if usage_count is None:
            # Deleted while running; report the count it had.
            logger.warning(f"Skill {skill.id} disappeared before usage was recorded")
            usage_count = skill.usage_count

        logger.info(f"Skill executed successfully: {skill.name} ({execution_time_ms:.0f}ms)")
        return SkillExecutionResult(
            success=True,
            skill_name=skill.name,
            skill_id=skill.id,
            usage_count=usage_count,
            execution_time_ms=execution_time_ms,
            result=result,
        )
