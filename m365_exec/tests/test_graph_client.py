"""
Tests for the Microsoft Graph client.

Module: m365_exec/tests/test_graph_client.py
"""

import json
from typing import Callable, List

import httpx
import pytest

from m365_exec.service.graph_client import GraphClient, GraphClientError, strip_odata


def make_client(handler: Callable[[httpx.Request], httpx.Response], token: str = "token-123"):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GraphClient(
        access_token=token,
        base_url="https://graph.example.test/v1.0",
        http_client=http_client,
    )


def envelope_payload(response: dict):
    assert response["content"][0]["type"] == "text"
    return json.loads(response["content"][0]["text"])


class TestGraphClient:
    """Test suite for GraphClient.graph_request."""

    @pytest.mark.asyncio
    async def test_sends_bearer_token_and_json_body(self) -> None:
        """Test request construction."""
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": "evt-1"})

        client = make_client(handler)
        response = await client.graph_request("/me/events", method="POST", body={"subject": "Sync"})
        await client.close()

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://graph.example.test/v1.0/me/events"
        assert request.headers["Authorization"] == "Bearer token-123"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"subject": "Sync"}
        assert envelope_payload(response) == {"id": "evt-1"}

    @pytest.mark.asyncio
    async def test_strips_odata_annotations(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "@odata.context": "https://graph/$metadata#messages",
                    "@odata.nextLink": "https://graph/next",
                    "value": [{"@odata.etag": "W/1", "subject": "Hello"}],
                },
            )

        client = make_client(handler)
        payload = envelope_payload(await client.graph_request("/me/messages"))

        assert payload == {"value": [{"subject": "Hello"}]}

    @pytest.mark.asyncio
    async def test_empty_body(self) -> None:
        client = make_client(lambda request: httpx.Response(202))

        payload = envelope_payload(await client.graph_request("/me/sendMail", method="POST", body={}))

        assert payload == {"message": "OK!"}

    @pytest.mark.asyncio
    async def test_include_headers_adds_etag(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "task-1"}, headers={"ETag": 'W/"abc"'})

        client = make_client(handler)
        payload = envelope_payload(
            await client.graph_request("/planner/tasks/task-1", include_headers=True)
        )

        assert payload == {"id": "task-1", "_etag": 'W/"abc"'}

    @pytest.mark.asyncio
    async def test_extra_headers_forwarded(self) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        client = make_client(handler)
        await client.graph_request(
            "/planner/tasks/task-1", method="PATCH", body={"title": "x"}, headers={"If-Match": "e1"}
        )

        assert seen[0].headers["If-Match"] == "e1"

    @pytest.mark.asyncio
    async def test_error_status_raises(self) -> None:
        client = make_client(lambda request: httpx.Response(404, text="itemNotFound"))

        with pytest.raises(GraphClientError) as exc_info:
            await client.graph_request("/me/messages/missing")

        assert exc_info.value.status_code == 404
        assert "404" in str(exc_info.value)
        assert "itemNotFound" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_token(self) -> None:
        client = make_client(lambda request: httpx.Response(200, json={}), token=None)

        with pytest.raises(GraphClientError, match="No access token"):
            await client.graph_request("/me")

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(GraphClientError, match="failed"):
            await client.graph_request("/me")


def test_strip_odata_nested() -> None:
    data = {"@odata.type": "x", "items": [{"@odata.id": "1", "keep": {"@odata.etag": "e", "v": 1}}]}

    assert strip_odata(data) == {"items": [{"keep": {"v": 1}}]}
