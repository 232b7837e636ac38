"""
Shared fixtures for M365 Code Execution tests.

Module: m365_exec/tests/conftest.py
"""

from types import SimpleNamespace
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest

from m365_exec.service.executor import SandboxedExecutor
from m365_exec.service.skill_executor import SkillExecutor
from m365_exec.service.skill_store import SkillStore


def make_capabilities(
    messages: Any = None,
    events: Any = None,
    planner_tasks: Any = None,
    todo_lists: Any = None,
    todo_tasks: Any = None,
) -> SimpleNamespace:
    """Build a stand-in facade whose operations are AsyncMocks."""
    return SimpleNamespace(
        mail=SimpleNamespace(
            list=AsyncMock(return_value=messages if messages is not None else {"value": []}),
            get=AsyncMock(return_value={}),
            send=AsyncMock(return_value={"success": True}),
            delete=AsyncMock(return_value={"success": True}),
        ),
        calendar=SimpleNamespace(
            list=AsyncMock(return_value=events if events is not None else {"value": []}),
        ),
        planner=SimpleNamespace(
            list_tasks=AsyncMock(
                return_value=planner_tasks if planner_tasks is not None else {"value": []}
            ),
        ),
        todo=SimpleNamespace(
            list_lists=AsyncMock(
                return_value=todo_lists if todo_lists is not None else {"value": []}
            ),
            list_tasks=AsyncMock(
                return_value=todo_tasks if todo_tasks is not None else {"value": []}
            ),
        ),
    )


@pytest.fixture
def capabilities_factory():
    """Factory for stand-in facades with custom payloads."""
    return make_capabilities


@pytest.fixture
def capabilities() -> SimpleNamespace:
    """Facade whose mail.list returns three messages."""
    return make_capabilities(messages={"value": [{}, {}, {}]})


@pytest.fixture
def store(tmp_path) -> SkillStore:
    """Skill store rooted in a temporary directory."""
    return SkillStore(str(tmp_path / "skills"))


@pytest.fixture
def engine() -> SandboxedExecutor:
    """Execution engine instance."""
    return SandboxedExecutor(max_execution_logs=50)


@pytest.fixture
def skill_executor(
    store: SkillStore, engine: SandboxedExecutor, capabilities: SimpleNamespace
) -> SkillExecutor:
    """Skill executor wired to the stand-in facade."""
    return SkillExecutor(store, engine, capabilities)


@pytest.fixture
def skill_data() -> Dict[str, Any]:
    """Minimal valid skill record."""
    return {
        "name": "countUnread",
        "description": "Count unread messages",
        "category": "mail",
        "code": 'm = await m365.mail.list(filter="isRead eq false")\nreturn len(m["value"])',
        "tags": ["email", "unread"],
    }
