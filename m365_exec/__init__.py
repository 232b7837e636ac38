"""
M365 Code Execution module.

This module provides a service responsible for:
- Running short Python automation scripts against Microsoft 365
- Persisting scripts as reusable, parameterized skills
- Tracking skill usage across sessions

Scripts only reach Microsoft 365 through a fixed capability facade.
"""

__version__ = "1.0.0"
__author__ = "M365 Code Execution Team"

from .service.config import ExecSettings, settings
from .service.executor import ExecutionError, ExecutionTimeoutError, SandboxedExecutor
from .service.models import Skill, SkillCategory, SkillFilters, SkillParameter
from .service.skill_executor import SkillExecutor
from .service.skill_store import SkillStore

__all__ = [
    "ExecSettings",
    "settings",
    "ExecutionError",
    "ExecutionTimeoutError",
    "SandboxedExecutor",
    "Skill",
    "SkillCategory",
    "SkillFilters",
    "SkillParameter",
    "SkillExecutor",
    "SkillStore",
]
