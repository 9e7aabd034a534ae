from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from openai import OpenAI, OpenAIError

from relay.agents.base import AgentBackend
from relay.errors import AgentExecutionError


class OpenAIBackend(AgentBackend):
    """Responses-API backend, used for analysis runs that only produce text."""

    name = "openai"

    def __init__(self, *, model: str = "gpt-5", client: Any | None = None) -> None:
        self.model = model
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                raise AgentExecutionError(
                    f"OpenAI client unavailable: {exc}", agent=self.name, retriable=False
                ) from exc
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        task_id: str,
        working_directory: Path | None = None,
    ) -> str:
        client = self._get_client()

        def _request() -> Any:
            return client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise AgentExecutionError(
                f"OpenAI request failed for task {task_id}: {exc}",
                agent=self.name,
                retriable=True,
            ) from exc
        return self._extract_text(payload).strip()
