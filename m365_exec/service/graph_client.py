"""
Microsoft Graph API client.
Module: m365_exec/service/graph_client.py

Performs authenticated requests and normalizes every successful response into
a text-content envelope::

    {"content": [{"type": "text", "text": "<JSON payload>"}]}

Failures are raised as GraphClientError rather than returned as envelopes.
"""

import json
import logging
from typing import Any, Dict, Optional, Union

import httpx

logger = logging.getLogger(__name__)

ODATA_PREFIX = "@odata."


class GraphClientError(Exception):
    """Raised when a Graph request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def strip_odata(data: Any) -> Any:
    """Remove ``@odata.*`` annotations recursively, in place."""
    if isinstance(data, dict):
        for key in [k for k in data if k.startswith(ODATA_PREFIX)]:
            del data[key]
        for value in data.values():
            strip_odata(value)
    elif isinstance(data, list):
        for item in data:
            strip_odata(item)
    return data


class GraphClient:
    """Async client for the Microsoft Graph REST API."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: str = "https://graph.microsoft.com/v1.0",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            access_token: Bearer token sent with every request
            base_url: Graph API root
            timeout: HTTP timeout in seconds
            http_client: Optional preconfigured client (used by tests)
        """
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    def set_access_token(self, access_token: str) -> None:
        self.access_token = access_token

    async def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def graph_request(
        self,
        path: str,
        *,
        method: str = "GET",
        body: Optional[Union[str, Dict[str, Any]]] = None,
        headers: Optional[Dict[str, str]] = None,
        include_headers: bool = False,
    ) -> Dict[str, Any]:
        """
        Perform a Graph request and wrap the response in a text envelope.

        Args:
            path: Resource path relative to the API root (e.g. ``/me/messages``)
            method: HTTP method
            body: JSON-serializable mapping, or raw text for content uploads
            headers: Extra request headers (e.g. ``If-Match``)
            include_headers: Add the response ETag to the payload as ``_etag``

        Returns:
            ``{"content": [{"type": "text", "text": ...}]}`` envelope

        Raises:
            GraphClientError: On missing credentials, transport errors or
                non-2xx responses
        """
        if not self.access_token:
            raise GraphClientError("No access token available")

        request_headers = {"Authorization": f"Bearer {self.access_token}"}
        content: Optional[Union[str, bytes]] = None
        if isinstance(body, str):
            request_headers["Content-Type"] = "text/plain"
            content = body
        elif body is not None:
            request_headers["Content-Type"] = "application/json"
            content = json.dumps(body)
        request_headers.update(headers or {})

        url = f"{self.base_url}{path}"
        logger.info(f"Calling {method.upper()} {path}")

        client = await self._client()
        try:
            response = await client.request(
                method.upper(), url, headers=request_headers, content=content
            )
        except httpx.TimeoutException:
            raise GraphClientError(f"Timeout calling Microsoft Graph at {path}")
        except httpx.HTTPError as e:
            raise GraphClientError(f"Microsoft Graph request to {path} failed: {e}")

        if response.status_code == 403:
            detail = response.text
            hint = ""
            if "scope" in detail or "permission" in detail:
                hint = " The signed-in account lacks the required permission scope."
            raise GraphClientError(
                f"Microsoft Graph API error: 403 {response.reason_phrase} - {detail}.{hint}",
                status_code=403,
            )

        if not response.is_success:
            raise GraphClientError(
                f"Microsoft Graph API error: {response.status_code} "
                f"{response.reason_phrase} - {response.text}",
                status_code=response.status_code,
            )

        payload = self._parse_payload(response.text)

        if include_headers and isinstance(payload, dict):
            payload["_etag"] = response.headers.get("ETag", "no-etag-found")

        return self.format_response(payload)

    @staticmethod
    def _parse_payload(text: str) -> Any:
        if text == "":
            return {"message": "OK!"}
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return {"message": "OK!", "rawResponse": text}

    @staticmethod
    def format_response(payload: Any) -> Dict[str, Any]:
        """Wrap a payload in the text-content envelope."""
        if payload is None:
            payload = {"success": True}
        strip_odata(payload)
        return {"content": [{"type": "text", "text": json.dumps(payload, indent=2)}]}
