"""
Built-in skill catalog.
Module: m365_exec/service/builtin_skills.py

Pre-installed skills seeded into the store at startup. Seeding is idempotent:
skills whose name already exists are left untouched.
"""

import logging
from typing import Any, Dict, List

from .skill_store import SkillStore

logger = logging.getLogger(__name__)


SUMMARIZE_TODAYS_EMAILS = """
start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
end = start + timedelta(days=1)
window = (
    f"receivedDateTime ge {start.strftime('%Y-%m-%dT%H:%M:%SZ')} "
    f"and receivedDateTime lt {end.strftime('%Y-%m-%dT%H:%M:%SZ')}"
)
messages = await m365.mail.list(
    filter=window,
    select="from,subject,importance,isRead,hasAttachments",
    top=100,
)

by_sender = defaultdict(lambda: {"count": 0, "unread": 0, "urgent": 0})
unread = 0
urgent = 0
for msg in messages.get("value", []):
    sender = ((msg.get("from") or {}).get("emailAddress") or {}).get("address", "unknown")
    stats = by_sender[sender]
    stats["count"] += 1
    if not msg.get("isRead"):
        stats["unread"] += 1
        unread += 1
    if msg.get("importance") == "high":
        stats["urgent"] += 1
        urgent += 1

top_senders = sorted(by_sender.items(), key=lambda item: item[1]["count"], reverse=True)[:5]
return {
    "date": start.date().isoformat(),
    "total": len(messages.get("value", [])),
    "unread": unread,
    "urgent": urgent,
    "topSenders": [dict(email=email, **stats) for email, stats in top_senders],
}
"""

GET_UNREAD_URGENT_EMAILS = """
messages = await m365.mail.list(
    filter="isRead eq false and importance eq 'high'",
    select="from,subject,receivedDateTime,bodyPreview",
    orderby="receivedDateTime desc",
    top=50,
)
return [
    {
        "from": ((m.get("from") or {}).get("emailAddress") or {}).get("address"),
        "subject": m.get("subject"),
        "preview": (m.get("bodyPreview") or "")[:100],
        "received": m.get("receivedDateTime"),
    }
    for m in messages.get("value", [])
]
"""

ANALYZE_TODAYS_MEETINGS = """
start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
end = start + timedelta(days=1)
events = await m365.calendar.list(
    filter=(
        f"start/dateTime ge '{start.strftime('%Y-%m-%dT%H:%M:%SZ')}' "
        f"and start/dateTime lt '{end.strftime('%Y-%m-%dT%H:%M:%SZ')}'"
    ),
    select="subject,start,end,attendees,isOnlineMeeting,organizer",
)

total_minutes = 0
online = 0
attendees = 0
meetings = []
for event in events.get("value", []):
    begins = datetime.fromisoformat(event["start"]["dateTime"][:19])
    ends = datetime.fromisoformat(event["end"]["dateTime"][:19])
    minutes = (ends - begins).total_seconds() / 60
    count = len(event.get("attendees") or [])
    total_minutes += minutes
    attendees += count
    if event.get("isOnlineMeeting"):
        online += 1
    meetings.append({
        "subject": event.get("subject"),
        "start": event["start"]["dateTime"],
        "duration": round(minutes),
        "attendeeCount": count,
        "isOnline": bool(event.get("isOnlineMeeting")),
    })

total = len(meetings)
return {
    "date": start.date().isoformat(),
    "totalMeetings": total,
    "totalDuration": round(total_minutes),
    "averageDuration": round(total_minutes / total) if total else 0,
    "onlineMeetings": online,
    "totalAttendees": attendees,
    "meetings": sorted(meetings, key=lambda m: m["start"]),
}
"""

GET_OVERDUE_PLANNER_TASKS = """
now = datetime.now(timezone.utc)
tasks = await m365.planner.list_tasks()
overdue = []
for task in tasks.get("value", []):
    due = task.get("dueDateTime")
    if not due or task.get("percentComplete", 0) >= 100:
        continue
    due_at = datetime.fromisoformat(due[:19]).replace(tzinfo=timezone.utc)
    if due_at >= now:
        continue
    overdue.append({
        "planId": task.get("planId"),
        "taskTitle": task.get("title"),
        "dueDate": due[:10],
        "daysOverdue": (now - due_at).days,
        "priority": task.get("priority"),
        "percentComplete": task.get("percentComplete", 0),
    })
return sorted(overdue, key=lambda t: t["daysOverdue"], reverse=True)
"""

GET_TODAYS_TODO_TASKS = """
today = datetime.now(timezone.utc).date().isoformat()
lists = await m365.todo.list_lists()
importance_order = {"high": 0, "normal": 1, "low": 2}
due_today = []
for todo_list in lists.get("value", []):
    tasks = await m365.todo.list_tasks(todo_list["id"])
    for task in tasks.get("value", []):
        due = (task.get("dueDateTime") or {}).get("dateTime")
        if not due or due[:10] != today or task.get("status") == "completed":
            continue
        due_today.append({
            "listName": todo_list.get("displayName"),
            "taskTitle": task.get("title"),
            "importance": task.get("importance", "normal"),
            "isReminderOn": task.get("isReminderOn", False),
            "status": task.get("status"),
        })

due_today.sort(key=lambda t: importance_order.get(t["importance"], 1))
return {"date": today, "count": len(due_today), "tasks": due_today}
"""

DAILY_PRODUCTIVITY_SUMMARY = """
start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
end = start + timedelta(days=1)
start_iso = start.strftime('%Y-%m-%dT%H:%M:%SZ')
end_iso = end.strftime('%Y-%m-%dT%H:%M:%SZ')

emails, meetings = await gather(
    m365.mail.list(
        filter=f"receivedDateTime ge {start_iso} and receivedDateTime lt {end_iso}",
        select="isRead,importance",
        top=100,
    ),
    m365.calendar.list(
        filter=f"start/dateTime ge '{start_iso}' and start/dateTime lt '{end_iso}'",
        select="start,end",
    ),
)

meeting_minutes = 0
for event in meetings.get("value", []):
    begins = datetime.fromisoformat(event["start"]["dateTime"][:19])
    ends = datetime.fromisoformat(event["end"]["dateTime"][:19])
    meeting_minutes += (ends - begins).total_seconds() / 60

mail = emails.get("value", [])
email_stats = {
    "total": len(mail),
    "unread": len([e for e in mail if not e.get("isRead")]),
    "urgent": len([e for e in mail if e.get("importance") == "high"]),
}
meeting_count = len(meetings.get("value", []))
hours = int(meeting_minutes // 60)
minutes = round(meeting_minutes % 60)
return {
    "date": start.date().isoformat(),
    "emails": email_stats,
    "meetings": {"count": meeting_count, "totalMinutes": round(meeting_minutes)},
    "summary": (
        f"{email_stats['total']} emails ({email_stats['unread']} unread, "
        f"{email_stats['urgent']} urgent), {meeting_count} meetings ({hours}h {minutes}m)"
    ),
}
"""


BUILTIN_SKILLS: List[Dict[str, Any]] = [
    {
        "name": "summarizeTodaysEmails",
        "description": (
            "Get a comprehensive summary of today's emails including count, unread count, "
            "urgent emails, and top senders"
        ),
        "category": "mail",
        "code": SUMMARIZE_TODAYS_EMAILS,
        "tags": ["email", "summary", "daily", "report"],
    },
    {
        "name": "getUnreadUrgentEmails",
        "description": "Get all unread high-priority emails with sender, subject, and received time",
        "category": "mail",
        "code": GET_UNREAD_URGENT_EMAILS,
        "tags": ["email", "urgent", "unread", "filter"],
    },
    {
        "name": "analyzeTodaysMeetings",
        "description": (
            "Analyze today's calendar meetings including duration, attendee count, "
            "and meeting types"
        ),
        "category": "calendar",
        "code": ANALYZE_TODAYS_MEETINGS,
        "tags": ["calendar", "meetings", "analysis", "daily"],
    },
    {
        "name": "getOverduePlannerTasks",
        "description": "Get all overdue Planner tasks assigned to the current user",
        "category": "planner",
        "code": GET_OVERDUE_PLANNER_TASKS,
        "tags": ["planner", "tasks", "overdue", "report"],
    },
    {
        "name": "getTodaysTodoTasks",
        "description": "Get all To Do tasks due today across all lists",
        "category": "todo",
        "code": GET_TODAYS_TODO_TASKS,
        "tags": ["todo", "tasks", "daily", "due"],
    },
    {
        "name": "dailyProductivitySummary",
        "description": "Combined summary of emails, meetings, and tasks for today",
        "category": "general",
        "code": DAILY_PRODUCTIVITY_SUMMARY,
        "tags": ["productivity", "summary", "daily", "report", "overview"],
    },
]


async def load_builtin_skills(store: SkillStore) -> int:
    """
    Seed the built-in catalog into a store.

    Args:
        store: Target skill store

    Returns:
        Number of skills created (existing names are skipped)
    """
    loaded = 0

    for definition in BUILTIN_SKILLS:
        name = definition["name"]
        try:
            if await store.get_by_name(name):
                logger.debug(f"Built-in skill '{name}' already exists, skipping")
                continue

            await store.save({**definition, "is_public": True, "is_builtin": True})
            loaded += 1
            logger.info(f"Loaded built-in skill: {name}")
        except Exception as e:
            logger.error(f"Failed to load built-in skill '{name}': {e}")

    if loaded:
        logger.info(f"Loaded {loaded} built-in skills")

    return loaded
