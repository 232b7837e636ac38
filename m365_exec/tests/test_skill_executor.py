"""
Tests for running saved skills.

Module: m365_exec/tests/test_skill_executor.py
"""

from typing import Any, Dict

import pytest

from m365_exec.service.executor import ExecutionError, ExecutionTimeoutError
from m365_exec.service.models import Skill, utc_now
from m365_exec.service.skill_executor import SkillExecutor, build_params_schema
from m365_exec.service.skill_store import SkillNotFoundError, SkillStore, SkillValidationError


class TestSkillExecutor:
    """Test suite for SkillExecutor.run."""

    @pytest.mark.asyncio
    async def test_count_unread_scenario(
        self, store: SkillStore, skill_executor: SkillExecutor, skill_data: Dict[str, Any]
    ) -> None:
        """Test create, execute and usage accounting end to end."""
        skill = await store.save(skill_data)
        assert skill.usage_count == 0

        result = await skill_executor.run(skill.id)

        assert result.success is True
        assert result.result == 3
        assert result.skill_name == "countUnread"
        assert result.usage_count == 1
        assert (await store.get(skill.id)).usage_count == 1

    @pytest.mark.asyncio
    async def test_resolve_by_name(
        self, store: SkillStore, skill_executor: SkillExecutor, skill_data: Dict[str, Any]
    ) -> None:
        skill = await store.save(skill_data)

        result = await skill_executor.run("countUnread")

        assert result.skill_id == skill.id

    @pytest.mark.asyncio
    async def test_unknown_skill(self, skill_executor: SkillExecutor) -> None:
        with pytest.raises(SkillNotFoundError):
            await skill_executor.run("noSuchSkill")

    @pytest.mark.asyncio
    async def test_failure_does_not_count(
        self, store: SkillStore, skill_executor: SkillExecutor, skill_data: Dict[str, Any]
    ) -> None:
        """Test that usage is only incremented after a successful return."""
        skill = await store.save({**skill_data, "code": "raise RuntimeError('nope')"})

        with pytest.raises(ExecutionError, match="nope"):
            await skill_executor.run(skill.id)

        assert (await store.get(skill.id)).usage_count == 0

    @pytest.mark.asyncio
    async def test_timeout_does_not_count(
        self, store: SkillStore, skill_executor: SkillExecutor, skill_data: Dict[str, Any]
    ) -> None:
        skill = await store.save({**skill_data, "code": "while True:\n    pass"})

        with pytest.raises(ExecutionTimeoutError):
            await skill_executor.run(skill.id, timeout_ms=300)

        assert (await store.get(skill.id)).usage_count == 0

    @pytest.mark.asyncio
    async def test_params_and_defaults(
        self, store: SkillStore, skill_executor: SkillExecutor, skill_data: Dict[str, Any]
    ) -> None:
        """Test that declared defaults fill omitted parameters."""
        skill = await store.save(
            {
                **skill_data,
                "code": "return {'top': params['top'], 'sender': params.get('sender')}",
                "parameters": {
                    "top": {"type": "number", "description": "Max items", "default": 10},
                    "sender": {"type": "string", "description": "Sender address"},
                },
            }
        )

        defaulted = await skill_executor.run(skill.id)
        explicit = await skill_executor.run(skill.id, params={"top": 3, "sender": "a@x.com"})

        assert defaulted.result == {"top": 10, "sender": None}
        assert explicit.result == {"top": 3, "sender": "a@x.com"}
        assert explicit.usage_count == 2

    @pytest.mark.asyncio
    async def test_missing_required_param(
        self, store: SkillStore, skill_executor: SkillExecutor, skill_data: Dict[str, Any]
    ) -> None:
        skill = await store.save(
            {
                **skill_data,
                "parameters": {
                    "listId": {"type": "string", "description": "List", "required": True}
                },
            }
        )

        with pytest.raises(SkillValidationError, match="listId"):
            await skill_executor.run(skill.id)

        assert (await store.get(skill.id)).usage_count == 0

    @pytest.mark.asyncio
    async def test_wrong_param_type(
        self, store: SkillStore, skill_executor: SkillExecutor, skill_data: Dict[str, Any]
    ) -> None:
        skill = await store.save(
            {
                **skill_data,
                "parameters": {"top": {"type": "number", "description": "Max items"}},
            }
        )

        with pytest.raises(SkillValidationError):
            await skill_executor.run(skill.id, params={"top": "ten"})

    @pytest.mark.asyncio
    async def test_undeclared_params_pass_through(
        self, store: SkillStore, skill_executor: SkillExecutor, skill_data: Dict[str, Any]
    ) -> None:
        skill = await store.save({**skill_data, "code": "return params['extra']"})

        result = await skill_executor.run(skill.id, params={"extra": [1, 2]})

        assert result.result == [1, 2]


def test_build_params_schema(skill_data: Dict[str, Any]) -> None:
    now = utc_now()
    skill = Skill.model_validate(
        {
            **skill_data,
            "id": "s1",
            "created_at": now,
            "updated_at": now,
            "parameters": {"q": {"type": "string", "description": "Query", "required": True}},
        }
    )

    assert build_params_schema(skill) == {
        "type": "object",
        "properties": {"q": {"type": "string", "description": "Query"}},
        "required": ["q"],
    }
