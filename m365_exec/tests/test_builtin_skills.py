"""
Tests for the built-in skill catalog.

Module: m365_exec/tests/test_builtin_skills.py
"""

import ast
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import pytest

from m365_exec.service.builtin_skills import BUILTIN_SKILLS, load_builtin_skills
from m365_exec.service.executor import SandboxedExecutor
from m365_exec.service.models import SkillFilters
from m365_exec.service.sandbox import check_script, wrap_script
from m365_exec.service.skill_store import SkillProtectedError, SkillStore
from m365_exec.service.validator import validate_code

EXPECTED_NAMES = {
    "summarizeTodaysEmails",
    "getUnreadUrgentEmails",
    "analyzeTodaysMeetings",
    "getOverduePlannerTasks",
    "getTodaysTodoTasks",
    "dailyProductivitySummary",
}


def graph_time(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.0000000")


class TestCatalog:
    """Static checks on the catalog."""

    def test_catalog_names(self) -> None:
        assert {s["name"] for s in BUILTIN_SKILLS} == EXPECTED_NAMES

    @pytest.mark.parametrize("definition", BUILTIN_SKILLS, ids=lambda d: d["name"])
    def test_code_passes_validation(self, definition: Dict[str, Any]) -> None:
        """Test that every built-in passes both the deny-list and the sandbox guard."""
        assert validate_code(definition["code"]).errors == []
        assert check_script(ast.parse(wrap_script(definition["code"]))) == []


class TestLoader:
    """Seeding behaviour."""

    @pytest.mark.asyncio
    async def test_load_is_idempotent(self, store: SkillStore) -> None:
        assert await load_builtin_skills(store) == 6
        assert await load_builtin_skills(store) == 0

        skills = await store.list(SkillFilters(is_builtin=True))
        assert {s.name for s in skills} == EXPECTED_NAMES
        assert all(s.is_public for s in skills)

    @pytest.mark.asyncio
    async def test_existing_name_is_skipped(self, store: SkillStore) -> None:
        """Test that a user skill with a built-in name is left alone."""
        await store.save(
            {
                "name": "getUnreadUrgentEmails",
                "description": "My own version",
                "category": "mail",
                "code": "return []",
            }
        )

        assert await load_builtin_skills(store) == 5
        mine = await store.get_by_name("getUnreadUrgentEmails")
        assert mine.description == "My own version"
        assert mine.is_builtin is False

    @pytest.mark.asyncio
    async def test_builtins_cannot_be_deleted(self, store: SkillStore) -> None:
        await load_builtin_skills(store)
        skill = await store.get_by_name("dailyProductivitySummary")

        with pytest.raises(SkillProtectedError):
            await store.delete(skill.id)


class TestExecution:
    """Built-ins run against stand-in facades."""

    @pytest.mark.asyncio
    async def test_summarize_todays_emails(
        self, engine: SandboxedExecutor, capabilities_factory
    ) -> None:
        messages = {
            "value": [
                {"from": {"emailAddress": {"address": "a@x.com"}}, "isRead": False, "importance": "high"},
                {"from": {"emailAddress": {"address": "a@x.com"}}, "isRead": True, "importance": "normal"},
                {"from": {"emailAddress": {"address": "b@x.com"}}, "isRead": False, "importance": "normal"},
            ]
        }
        caps = capabilities_factory(messages=messages)

        result = await engine.execute(SUMMARY_CODE["summarizeTodaysEmails"], caps)

        assert result["total"] == 3
        assert result["unread"] == 2
        assert result["urgent"] == 1
        assert result["topSenders"][0] == {"email": "a@x.com", "count": 2, "unread": 1, "urgent": 1}
        kwargs = caps.mail.list.await_args.kwargs
        assert kwargs["filter"].startswith("receivedDateTime ge ")
        assert kwargs["top"] == 100

    @pytest.mark.asyncio
    async def test_unread_urgent_emails(self, engine: SandboxedExecutor, capabilities_factory) -> None:
        caps = capabilities_factory(
            messages={
                "value": [
                    {
                        "from": {"emailAddress": {"address": "boss@x.com"}},
                        "subject": "Now",
                        "bodyPreview": "p" * 150,
                        "receivedDateTime": "2024-05-01T08:00:00Z",
                    }
                ]
            }
        )

        result = await engine.execute(SUMMARY_CODE["getUnreadUrgentEmails"], caps)

        assert result == [
            {
                "from": "boss@x.com",
                "subject": "Now",
                "preview": "p" * 100,
                "received": "2024-05-01T08:00:00Z",
            }
        ]

    @pytest.mark.asyncio
    async def test_analyze_todays_meetings(
        self, engine: SandboxedExecutor, capabilities_factory
    ) -> None:
        start = datetime(2024, 5, 1, 9, 0)
        events = {
            "value": [
                {
                    "subject": "Standup",
                    "start": {"dateTime": graph_time(start)},
                    "end": {"dateTime": graph_time(start + timedelta(minutes=30))},
                    "attendees": [{}, {}],
                    "isOnlineMeeting": True,
                },
                {
                    "subject": "Review",
                    "start": {"dateTime": graph_time(start - timedelta(hours=1))},
                    "end": {"dateTime": graph_time(start - timedelta(minutes=30))},
                    "attendees": [],
                    "isOnlineMeeting": False,
                },
            ]
        }
        caps = capabilities_factory(events=events)

        result = await engine.execute(SUMMARY_CODE["analyzeTodaysMeetings"], caps)

        assert result["totalMeetings"] == 2
        assert result["totalDuration"] == 60
        assert result["averageDuration"] == 30
        assert result["onlineMeetings"] == 1
        assert result["totalAttendees"] == 2
        assert [m["subject"] for m in result["meetings"]] == ["Review", "Standup"]

    @pytest.mark.asyncio
    async def test_overdue_planner_tasks(
        self, engine: SandboxedExecutor, capabilities_factory
    ) -> None:
        now = datetime.now(timezone.utc)
        tasks = {
            "value": [
                {"title": "Late", "dueDateTime": (now - timedelta(days=3)).strftime("%Y-%m-%dT%H:%M:%SZ"), "percentComplete": 50},
                {"title": "Later", "dueDateTime": (now - timedelta(days=10)).strftime("%Y-%m-%dT%H:%M:%SZ"), "percentComplete": 0},
                {"title": "Done", "dueDateTime": (now - timedelta(days=3)).strftime("%Y-%m-%dT%H:%M:%SZ"), "percentComplete": 100},
                {"title": "Future", "dueDateTime": (now + timedelta(days=3)).strftime("%Y-%m-%dT%H:%M:%SZ"), "percentComplete": 0},
                {"title": "Undated", "percentComplete": 0},
            ]
        }
        caps = capabilities_factory(planner_tasks=tasks)

        result = await engine.execute(SUMMARY_CODE["getOverduePlannerTasks"], caps)

        assert [t["taskTitle"] for t in result] == ["Later", "Late"]
        assert result[0]["daysOverdue"] == 10

    @pytest.mark.asyncio
    async def test_todays_todo_tasks(self, engine: SandboxedExecutor, capabilities_factory) -> None:
        today = datetime.now(timezone.utc).date().isoformat()
        caps = capabilities_factory(
            todo_lists={"value": [{"id": "list-1", "displayName": "Work"}]},
            todo_tasks={
                "value": [
                    {"title": "Low", "importance": "low", "status": "notStarted",
                     "dueDateTime": {"dateTime": f"{today}T00:00:00.0000000"}},
                    {"title": "High", "importance": "high", "status": "notStarted",
                     "dueDateTime": {"dateTime": f"{today}T00:00:00.0000000"}},
                    {"title": "Finished", "importance": "high", "status": "completed",
                     "dueDateTime": {"dateTime": f"{today}T00:00:00.0000000"}},
                    {"title": "NoDue", "importance": "high", "status": "notStarted"},
                ]
            },
        )

        result = await engine.execute(SUMMARY_CODE["getTodaysTodoTasks"], caps)

        assert result["date"] == today
        assert result["count"] == 2
        assert [t["taskTitle"] for t in result["tasks"]] == ["High", "Low"]
        caps.todo.list_tasks.assert_awaited_once_with("list-1")

    @pytest.mark.asyncio
    async def test_daily_productivity_summary(
        self, engine: SandboxedExecutor, capabilities_factory
    ) -> None:
        start = datetime(2024, 5, 1, 9, 0)
        caps = capabilities_factory(
            messages={"value": [{"isRead": False, "importance": "high"}, {"isRead": True}]},
            events={
                "value": [
                    {
                        "start": {"dateTime": graph_time(start)},
                        "end": {"dateTime": graph_time(start + timedelta(minutes=90))},
                    }
                ]
            },
        )

        result = await engine.execute(SUMMARY_CODE["dailyProductivitySummary"], caps)

        assert result["emails"] == {"total": 2, "unread": 1, "urgent": 1}
        assert result["meetings"] == {"count": 1, "totalMinutes": 90}
        assert result["summary"] == "2 emails (1 unread, 1 urgent), 1 meetings (1h 30m)"


SUMMARY_CODE = {definition["name"]: definition["code"] for definition in BUILTIN_SKILLS}
