"""Async n8n REST API client using httpx.

Every request helper returns the decoded JSON body on success and an error
dict on failure instead of raising:

    {"error": "HTTP 400", "status_code": 400, "detail": "<body>", "retry_after": None}
    {"error": "timeout", "timeout": True, "detail": "<exception text>"}
    {"error": "<exception text>", "transport": True}

Callers classify these dicts (see classify() in agent/healer.py).
asyncio.CancelledError is never caught here, so cancelling the awaiting task
aborts the in-flight request.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from workflow_deploy_agent.client.config import Settings

logger = logging.getLogger("workflow_deploy_agent.client")


def is_error(result: Any) -> bool:
    return isinstance(result, dict) and "error" in result


class EngineClient:
    """Thin async wrapper around the n8n public workflow API."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers=settings.headers,
            timeout=httpx.Timeout(settings.timeout, connect=settings.connect_timeout),
            transport=transport,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            r = await self._client.request(method, path, **kwargs)
            r.raise_for_status()
            return r.json() if r.text.strip() else {"success": True}
        except httpx.HTTPStatusError as e:
            logger.error("%s %s -> %s", method, path, e.response.status_code)
            return {
                "error": f"HTTP {e.response.status_code}",
                "status_code": e.response.status_code,
                "detail": e.response.text,
                "retry_after": e.response.headers.get("Retry-After"),
            }
        except httpx.TimeoutException as e:
            logger.warning("%s %s timed out: %s", method, path, e)
            return {"error": "timeout", "timeout": True, "detail": str(e) or type(e).__name__}
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            return {"error": str(e) or type(e).__name__, "transport": True}
        except ValueError as e:
            # 2xx with a body that is not JSON
            logger.error("%s %s returned an undecodable body: %s", method, path, e)
            return {"error": f"invalid JSON response: {e}"}

    # ==================================================================
    # SYSTEM
    # ==================================================================

    async def ping(self) -> Any:
        try:
            r = await self._client.get(f"{self._settings.api_endpoint}/healthz")
            return {"status": r.json().get("status", "ok") if r.text.strip() else "ok"}
        except (httpx.HTTPError, ValueError) as e:
            return {"error": str(e)}

    # ==================================================================
    # WORKFLOWS
    # ==================================================================

    async def create_workflow(self, payload: dict[str, Any]) -> Any:
        return await self._request("POST", "/workflows", json=payload)

    async def get_workflow(self, workflow_id: str) -> Any:
        return await self._request("GET", f"/workflows/{workflow_id}")

    async def delete_workflow(self, workflow_id: str) -> Any:
        return await self._request("DELETE", f"/workflows/{workflow_id}")

    async def list_workflows(self, limit: int = 100, cursor: str | None = None) -> Any:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        return await self._request("GET", "/workflows", params=params)

    async def iter_workflows(self, page_size: int = 100) -> list[dict[str, Any]] | dict[str, Any]:
        """Fetch every workflow, following nextCursor pagination.

        Returns the error dict of the first failing page.
        """
        items: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            page = await self.list_workflows(limit=page_size, cursor=cursor)
            if is_error(page):
                return page
            items.extend(page.get("data", []))
            cursor = page.get("nextCursor")
            if not cursor:
                return items

    def webhook_url(self, path: str) -> str:
        return f"{self._settings.webhook_base_url}/{path.lstrip('/')}"

    def editor_url(self, workflow_id: str) -> str:
        return f"{self._settings.api_endpoint}/workflow/{workflow_id}"
