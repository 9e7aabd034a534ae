from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from relay.config import TrackerConfig
from relay.errors import TrackerError
from relay.models import Comment, Task

logger = logging.getLogger(__name__)


class WorkTracker(ABC):
    """Work-tracking service holding the tasks assigned to the bot."""

    @abstractmethod
    async def fetch_assigned(self) -> list[Task]:
        """Tasks currently assigned to the bot in the watched statuses."""

    @abstractmethod
    async def add_comment(self, task_id: str, text: str) -> None:
        """Post a comment on a task."""

    @abstractmethod
    async def update_status(self, task_id: str, status: str) -> None:
        """Move a task to another status."""

    @abstractmethod
    async def fetch_comments(self, task_id: str) -> list[Comment]:
        """Comments on a task, newest first."""

    async def aclose(self) -> None:
        return None


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    json: Any = None,
    params: Any = None,
    max_retries: int = 3,
    backoff_base: float = 2.0,
) -> httpx.Response:
    """Execute an HTTP request, retrying transport errors and 5xx responses."""
    last_exc: Exception | None = None
    for attempt in range(max_retries):
        try:
            response = await client.request(method, url, json=json, params=params)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            last_exc = exc
            if exc.response.status_code < 500:
                raise
            logger.warning(
                "HTTP %s from %s (attempt %d)", exc.response.status_code, url, attempt + 1
            )
        except httpx.TransportError as exc:
            last_exc = exc
            logger.warning("Transport error for %s (attempt %d): %s", url, attempt + 1, exc)
        if attempt < max_retries - 1:
            await asyncio.sleep(min(backoff_base**attempt, 30.0))
    raise last_exc  # type: ignore[misc]


class ClickUpClient(WorkTracker):
    def __init__(
        self,
        config: TrackerConfig,
        *,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int = 3,
        backoff_base: float = 2.0,
    ) -> None:
        self.config = config
        token = token or config.token()
        if not token:
            raise TrackerError(
                f"No ClickUp API token: set the {config.token_env} environment variable."
            )
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._client = httpx.AsyncClient(
            base_url=config.api_url.rstrip("/"),
            headers={"Authorization": token, "Content-Type": "application/json"},
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await request_with_retry(
                self._client,
                method,
                path,
                max_retries=self.max_retries,
                backoff_base=self.backoff_base,
                **kwargs,
            )
        except httpx.HTTPStatusError as exc:
            raise TrackerError(
                f"ClickUp {method} {path} failed: {exc.response.status_code} {exc.response.text[:200]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise TrackerError(f"ClickUp {method} {path} failed: {exc}") from exc
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise TrackerError(
                f"ClickUp {method} {path} returned a non-JSON body: {response.text[:200]}",
                status_code=response.status_code,
            ) from exc

    async def fetch_assigned(self) -> list[Task]:
        if not self.config.workspace_id or not self.config.bot_user_id:
            raise TrackerError("tracker.workspace_id and tracker.bot_user_id must be configured.")
        params: list[tuple[str, str]] = [("assignees[]", self.config.bot_user_id)]
        params.extend(("statuses[]", status) for status in self.config.statuses)
        params.extend([("subtasks", "true"), ("include_closed", "false")])
        payload = await self._request(
            "GET", f"/team/{self.config.workspace_id}/task", params=params
        )
        tasks = []
        for item in payload.get("tasks", []):
            tasks.append(
                Task(
                    id=str(item["id"]),
                    title=str(item.get("name") or ""),
                    description=str(item.get("description") or item.get("text_content") or ""),
                    url=str(item.get("url") or ""),
                )
            )
        return tasks

    async def add_comment(self, task_id: str, text: str) -> None:
        await self._request("POST", f"/task/{task_id}/comment", json={"comment_text": text})

    async def update_status(self, task_id: str, status: str) -> None:
        await self._request("PUT", f"/task/{task_id}", json={"status": status})

    async def fetch_comments(self, task_id: str) -> list[Comment]:
        payload = await self._request("GET", f"/task/{task_id}/comment")
        comments = []
        for item in payload.get("comments", []):
            user = item.get("user") or {}
            comments.append(
                Comment(
                    id=str(item["id"]),
                    text=str(item.get("comment_text") or ""),
                    author_id=str(user.get("id") or ""),
                    created_at=str(item.get("date") or ""),
                )
            )
        return comments
