"""
Capability facade over Microsoft Graph.
Module: m365_exec/service/capabilities.py

Scripts reach Microsoft 365 only through the operations listed in
``CAPABILITY_SURFACE``. Each domain area is a small class delegating to
``GraphClient.graph_request`` and decoding the JSON envelope it returns.
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import quote, urlencode

from .graph_client import GraphClient

logger = logging.getLogger(__name__)

# Closed set of operations exposed to scripts, keyed by area attribute.
CAPABILITY_SURFACE: Dict[str, Tuple[str, ...]] = {
    "mail": ("list", "get", "send", "delete"),
    "calendar": ("list", "get", "create", "update", "delete"),
    "teams": ("list", "get_channels", "get_messages"),
    "files": ("list", "get", "upload"),
    "sharepoint": ("search_sites", "get_site", "get_lists", "get_list_items"),
    "planner": ("list_tasks", "get_task", "create_task", "update_task"),
    "todo": ("list_lists", "list_tasks", "create_task", "update_task"),
}

EMPTY_RESPONSE = {"message": "OK!"}


def build_query(**options: Any) -> str:
    """Build an OData query string from keyword options (``filter`` -> ``$filter``)."""
    pairs = [(f"${key}", str(value)) for key, value in options.items() if value]
    return f"?{urlencode(pairs)}" if pairs else ""


def _segment(value: str) -> str:
    return quote(str(value), safe="")


class CapabilityArea:
    """Base class for one domain area of the facade."""

    def __init__(self, client: GraphClient) -> None:
        self.client = client

    async def _call(self, path: str, **kwargs: Any) -> Any:
        response = await self.client.graph_request(path, **kwargs)
        return json.loads(response["content"][0]["text"])

    async def _call_or_success(self, path: str, **kwargs: Any) -> Any:
        data = await self._call(path, **kwargs)
        if not data or data == EMPTY_RESPONSE:
            return {"success": True}
        return data


class MailCapabilities(CapabilityArea):
    async def list(
        self,
        filter: Optional[str] = None,
        select: Optional[str] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
        orderby: Optional[str] = None,
    ) -> Any:
        query = build_query(filter=filter, select=select, top=top, skip=skip, orderby=orderby)
        return await self._call(f"/me/messages{query}")

    async def get(self, message_id: str) -> Any:
        return await self._call(f"/me/messages/{_segment(message_id)}")

    async def send(self, message: Mapping[str, Any]) -> Any:
        return await self._call_or_success(
            "/me/sendMail",
            method="POST",
            body={"message": dict(message), "saveToSentItems": True},
        )

    async def delete(self, message_id: str) -> Any:
        await self._call(f"/me/messages/{_segment(message_id)}", method="DELETE")
        return {"success": True}


class CalendarCapabilities(CapabilityArea):
    async def list(
        self,
        filter: Optional[str] = None,
        select: Optional[str] = None,
        top: Optional[int] = None,
    ) -> Any:
        query = build_query(filter=filter, select=select, top=top)
        return await self._call(f"/me/events{query}")

    async def get(self, event_id: str) -> Any:
        return await self._call(f"/me/events/{_segment(event_id)}")

    async def create(self, event: Mapping[str, Any]) -> Any:
        return await self._call("/me/events", method="POST", body=dict(event))

    async def update(self, event_id: str, event: Mapping[str, Any]) -> Any:
        return await self._call_or_success(
            f"/me/events/{_segment(event_id)}", method="PATCH", body=dict(event)
        )

    async def delete(self, event_id: str) -> Any:
        await self._call(f"/me/events/{_segment(event_id)}", method="DELETE")
        return {"success": True}


class TeamsCapabilities(CapabilityArea):
    async def list(self) -> Any:
        return await self._call("/me/joinedTeams")

    async def get_channels(self, team_id: str) -> Any:
        return await self._call(f"/teams/{_segment(team_id)}/channels")

    async def get_messages(self, team_id: str, channel_id: str) -> Any:
        return await self._call(
            f"/teams/{_segment(team_id)}/channels/{_segment(channel_id)}/messages"
        )


class FilesCapabilities(CapabilityArea):
    async def list(self, drive_id: str = "me/drive") -> Any:
        return await self._call(f"/{drive_id}/root/children")

    async def get(self, drive_id: str, item_id: str) -> Any:
        """Download item content; returns the raw text rather than parsed JSON."""
        response = await self.client.graph_request(
            f"/drives/{_segment(drive_id)}/items/{_segment(item_id)}/content"
        )
        text = response["content"][0]["text"]
        data = json.loads(text)
        if isinstance(data, dict) and "rawResponse" in data:
            return data["rawResponse"]
        return text

    async def upload(self, drive_id: str, item_id: str, content: str) -> Any:
        return await self._call_or_success(
            f"/drives/{_segment(drive_id)}/items/{_segment(item_id)}/content",
            method="PUT",
            body=str(content),
        )


class SharePointCapabilities(CapabilityArea):
    async def search_sites(self, query: str) -> Any:
        return await self._call(f"/sites?{urlencode({'search': query})}")

    async def get_site(self, site_id: str) -> Any:
        return await self._call(f"/sites/{_segment(site_id)}")

    async def get_lists(self, site_id: str) -> Any:
        return await self._call(f"/sites/{_segment(site_id)}/lists")

    async def get_list_items(self, site_id: str, list_id: str) -> Any:
        return await self._call(f"/sites/{_segment(site_id)}/lists/{_segment(list_id)}/items")


class PlannerCapabilities(CapabilityArea):
    async def list_tasks(self) -> Any:
        return await self._call("/me/planner/tasks")

    async def get_task(self, task_id: str) -> Any:
        """Fetch a task; the payload carries ``_etag`` for optimistic updates."""
        return await self._call(f"/planner/tasks/{_segment(task_id)}", include_headers=True)

    async def create_task(self, task: Mapping[str, Any]) -> Any:
        return await self._call("/planner/tasks", method="POST", body=dict(task))

    async def update_task(
        self, task_id: str, task: Mapping[str, Any], etag: Optional[str] = None
    ) -> Any:
        headers = {"If-Match": etag} if etag else {}
        return await self._call_or_success(
            f"/planner/tasks/{_segment(task_id)}",
            method="PATCH",
            body=dict(task),
            headers=headers,
        )


class TodoCapabilities(CapabilityArea):
    async def list_lists(self) -> Any:
        return await self._call("/me/todo/lists")

    async def list_tasks(self, list_id: str) -> Any:
        return await self._call(f"/me/todo/lists/{_segment(list_id)}/tasks")

    async def create_task(self, list_id: str, task: Mapping[str, Any]) -> Any:
        return await self._call(
            f"/me/todo/lists/{_segment(list_id)}/tasks", method="POST", body=dict(task)
        )

    async def update_task(self, list_id: str, task_id: str, task: Mapping[str, Any]) -> Any:
        return await self._call_or_success(
            f"/me/todo/lists/{_segment(list_id)}/tasks/{_segment(task_id)}",
            method="PATCH",
            body=dict(task),
        )


class M365Capabilities:
    """
    The complete facade handed to the execution engine.

    Only the areas and operations named in ``CAPABILITY_SURFACE`` are
    reachable from scripts; the engine builds its proxy from that map, not
    from this object's attributes.
    """

    def __init__(self, client: GraphClient) -> None:
        self.client = client
        self.mail = MailCapabilities(client)
        self.calendar = CalendarCapabilities(client)
        self.teams = TeamsCapabilities(client)
        self.files = FilesCapabilities(client)
        self.sharepoint = SharePointCapabilities(client)
        self.planner = PlannerCapabilities(client)
        self.todo = TodoCapabilities(client)
