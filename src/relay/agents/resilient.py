from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from relay.agents.base import AgentBackend
from relay.errors import AgentExecutionError, AgentTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 2.0
    timeout_seconds: float = 45 * 60.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

    name = "resilient"

    def __init__(
        self,
        primary: AgentBackend,
        fallback: AgentBackend | None = None,
        retry_policy: RetryPolicy | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempt_order(self) -> list[AgentBackend]:
        attempts = [self.primary]
        if self.fallback is not None and self.fallback is not self.primary:
            attempts.append(self.fallback)
        return attempts

    async def _bounded(self, backend: AgentBackend, **kwargs: Any) -> str:
        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(backend.run(**kwargs), timeout=timeout)
        except TimeoutError as exc:
            raise AgentTimeoutError(
                f"{backend.name} timed out after {timeout:.1f}s",
                agent=backend.name,
                retriable=True,
            ) from exc

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        task_id: str,
        working_directory: Path | None = None,
    ) -> str:
        errors: list[str] = []
        for backend in self._attempt_order():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend.name,
                            "task_id": task_id,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    output = await self._bounded(
                        backend,
                        system_prompt=system_prompt,
                        user_prompt=user_prompt,
                        task_id=task_id,
                        working_directory=working_directory,
                    )
                except AgentExecutionError as exc:
                    errors.append(f"{backend.name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend.name,
                            "task_id": task_id,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    logger.warning("Agent backend %s failed for task %s: %s", backend.name, task_id, exc)
                    if not exc.retriable:
                        break
                    continue
                if backend is not self.primary:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend.name,
                            "task_id": task_id,
                            "attempt": attempt,
                        }
                    )
                return output

        summary = "; ".join(errors[-6:])
        raise AgentExecutionError(
            f"All agent attempts failed. {summary}",
            retriable=False,
        )
