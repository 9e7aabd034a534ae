from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from relay.agents.base import AgentBackend
from relay.errors import AgentExecutionError, AgentProcessError
from relay.registry import ProcessRegistry

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


class CliBackend(AgentBackend):
    """Launches an agent binary and collects the text of its JSON event stream.

    The child pid is registered with the process registry for the lifetime of
    the run so housekeeping and shutdown can observe or kill it.
    """

    name = "cli"

    def __init__(
        self,
        binary: str,
        *,
        registry: ProcessRegistry | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.binary = binary
        self.registry = registry
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, system_prompt: str, user_prompt: str) -> list[str]:
        raise NotImplementedError

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        for key in ("delta", "result"):
            value = event.get(key)
            if isinstance(value, str):
                return value
        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            nested = message.get("content")
            if isinstance(nested, str):
                return nested
            if isinstance(nested, list):
                return CliBackend._extract_content({"content": nested})
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        task_id: str,
        working_directory: Path | None = None,
    ) -> str:
        command = self.build_command(system_prompt, user_prompt)
        self._emit({"event": "agent_cli_start", "backend": self.name, "command": command[:3]})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory) if working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"{self.name} binary not found: {self.binary}",
                agent=self.name,
                retriable=False,
            ) from exc

        entry = None
        if self.registry is not None:
            entry = self.registry.register(task_id, pid=process.pid, label=self.name)

        # A full stderr pipe blocks the agent, so drain it while reading stdout.
        stderr_task = asyncio.create_task(self._drain(process.stderr))
        try:
            chunks = await self._collect(process)
            return_code = await process.wait()
            stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
        except asyncio.CancelledError:
            # Timed out or shutting down: do not leave the agent running.
            await self._terminate(process, stderr_task)
            if entry is not None:
                self.registry.mark_failed(entry, "cancelled")
            raise
        except AgentProcessError as exc:
            await self._terminate(process, stderr_task)
            if entry is not None:
                self.registry.mark_failed(entry, str(exc))
            raise

        self._emit({"event": "agent_cli_exit", "backend": self.name, "exit_code": return_code})

        if return_code != 0:
            if entry is not None:
                self.registry.mark_failed(entry, f"exit code {return_code}")
            raise AgentExecutionError(
                f"{self.name} failed with exit code {return_code}: {stderr_output[:400]}",
                agent=self.name,
                exit_code=return_code,
                retriable=True,
            )
        if entry is not None:
            self.registry.mark_completed(entry)
        return "".join(chunks).strip()

    @staticmethod
    async def _drain(stream: asyncio.StreamReader | None) -> bytes:
        if stream is None:
            return b""
        return await stream.read()

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process, stderr_task: asyncio.Task) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        stderr_task.cancel()

    async def _collect(self, process: asyncio.subprocess.Process) -> list[str]:
        if process.stdout is None:
            raise AgentProcessError(
                f"{self.name} did not expose stdout.", agent=self.name, retriable=False
            )
        chunks: list[str] = []
        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                chunks.append(line + "\n")
                continue
            if isinstance(event, dict):
                content = self._extract_content(event)
                if content:
                    chunks.append(content)
        if parse_buffer:
            chunks.append(parse_buffer)
        return chunks


class ClaudeCliBackend(CliBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", **kwargs: Any) -> None:
        super().__init__(binary, **kwargs)

    def build_command(self, system_prompt: str, user_prompt: str) -> list[str]:
        return [
            self.binary,
            "-p",
            user_prompt,
            "--append-system-prompt",
            system_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]


class CodexCliBackend(CliBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", *, model: str | None = None, **kwargs: Any) -> None:
        super().__init__(binary, **kwargs)
        self.model = model

    def build_command(self, system_prompt: str, user_prompt: str) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--full-auto",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        if self.model:
            command.extend(["-m", self.model])
        command.append(user_prompt)
        return command
