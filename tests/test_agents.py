import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from relay.agents import (
    AgentBackend,
    AgentContext,
    AnalysisAgent,
    ClaudeCliBackend,
    CliBackend,
    CodexCliBackend,
    FixAgent,
    ImplementationAgent,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
    ReviewAgent,
)
from relay.agents.roles import FIX_COMMIT_PREFIX, REVIEW_COMMIT_PREFIX
from relay.config import RepositoryConfig
from relay.errors import AgentExecutionError, AgentProcessError
from relay.models import Task
from relay.registry import ProcessRegistry

TASK = Task(id="42", title="Add login", description="OAuth flow", url="https://t/42")
CONTEXT = AgentContext(repository=RepositoryConfig(owner="acme", repo="widgets"))


class AlwaysFailBackend(AgentBackend):
    def __init__(self, name: str = "failing", *, retriable: bool = True) -> None:
        self.name = name
        self.retriable = retriable
        self.calls = 0

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        task_id: str,
        working_directory: Path | None = None,
    ) -> str:
        _ = system_prompt, user_prompt, task_id, working_directory
        self.calls += 1
        raise AgentExecutionError("boom", agent=self.name, retriable=self.retriable)


class StaticBackend(AgentBackend):
    def __init__(self, output: str, name: str = "static") -> None:
        self.output = output
        self.name = name
        self.prompts: list[tuple[str, str]] = []

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        task_id: str,
        working_directory: Path | None = None,
    ) -> str:
        _ = task_id, working_directory
        self.prompts.append((system_prompt, user_prompt))
        return self.output


class SlowBackend(AgentBackend):
    name = "slow"

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        task_id: str,
        working_directory: Path | None = None,
    ) -> str:
        _ = system_prompt, user_prompt, task_id, working_directory
        await asyncio.sleep(10)
        return "late"


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, text: bytes = b"") -> None:
        self.text = text

    async def read(self) -> bytes:
        return self.text


class FakeProcess:
    def __init__(self, lines: list[bytes], *, exit_code: int = 0, stderr: bytes = b"") -> None:
        self.pid = 4242
        self.returncode: int | None = None
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.exit_code = exit_code

    async def wait(self) -> int:
        self.returncode = self.exit_code
        return self.exit_code

    def kill(self) -> None:
        self.returncode = -9


def _patch_subprocess(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> list[tuple]:
    launched: list[tuple] = []

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        launched.append((args, kwargs))
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return launched


def test_claude_build_command_shape() -> None:
    command = ClaudeCliBackend(binary="claude").build_command("system", "implement feature")

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert command[command.index("--output-format") + 1] == "stream-json"
    assert "--dangerously-skip-permissions" in command


def test_codex_build_command_shape() -> None:
    command = CodexCliBackend(binary="codex", model="gpt-5-codex").build_command(
        "system", "implement feature"
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert 'instructions="system"' in command
    assert command[-1] == "implement feature"


def test_cli_backend_collects_stream_and_registers_process(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    events: list[dict[str, Any]] = []
    process = FakeProcess(
        [
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"hello "}]}}\n',
            b"\n",
            b'{"type":"result",\n',
            b'"result":"world"}\n',
        ]
    )
    launched = _patch_subprocess(monkeypatch, process)
    registry = ProcessRegistry()
    backend = ClaudeCliBackend(registry=registry, event_hook=events.append)

    output = asyncio.run(
        backend.run("system", "user", task_id="42", working_directory=tmp_path)
    )

    assert output == "hello world"
    assert launched[0][1]["cwd"] == str(tmp_path)
    (entry,) = registry.processes("42")
    assert entry.pid == 4242
    assert entry.status == "completed"
    assert [event["event"] for event in events] == ["agent_cli_start", "agent_cli_exit"]


def test_cli_backend_keeps_plain_text_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_subprocess(
        monkeypatch,
        FakeProcess([b'{"type":"delta","delta":"hello"}\n', b"noise-before-json\n"]),
    )

    output = asyncio.run(CodexCliBackend().run("system", "user", task_id="42"))

    assert output == "hellonoise-before-json"


def test_cli_backend_nonzero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_subprocess(monkeypatch, FakeProcess([], exit_code=2, stderr=b"auth required"))
    registry = ProcessRegistry()

    with pytest.raises(AgentExecutionError, match="exit code 2: auth required") as excinfo:
        asyncio.run(CodexCliBackend(registry=registry).run("system", "user", task_id="42"))

    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable
    assert registry.processes("42")[0].status == "failed"


def test_cli_backend_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def missing(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", missing)

    with pytest.raises(AgentProcessError) as excinfo:
        asyncio.run(ClaudeCliBackend(binary="no-such-claude").run("s", "u", task_id="42"))

    assert not excinfo.value.retriable
    assert "no-such-claude" in str(excinfo.value)


class ScriptBackend(CliBackend):
    name = "script"

    def __init__(self, script: str, **kwargs: Any) -> None:
        super().__init__(sys.executable, **kwargs)
        self.script = script

    def build_command(self, system_prompt: str, user_prompt: str) -> list[str]:
        _ = system_prompt, user_prompt
        return [self.binary, "-c", self.script]


def test_cli_backend_survives_agent_flooding_stderr() -> None:
    script = (
        "import sys\n"
        "sys.stderr.write('x' * 300000)\n"
        "sys.stderr.flush()\n"
        "print('{\"content\": \"done\"}')\n"
    )
    registry = ProcessRegistry()
    backend = ScriptBackend(script, registry=registry)

    output = asyncio.run(
        asyncio.wait_for(backend.run("system", "user", task_id="42"), timeout=20)
    )

    assert output == "done"
    assert registry.processes("42")[0].status == "completed"


def test_cli_backend_kills_and_reaps_agent_on_timeout() -> None:
    registry = ProcessRegistry()
    backend = ScriptBackend("import time\ntime.sleep(30)\n", registry=registry)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(
            asyncio.wait_for(backend.run("system", "user", task_id="42"), timeout=1)
        )

    entry = registry.processes("42")[0]
    assert entry.status == "failed"
    assert entry.error == "cancelled"
    assert not ProcessRegistry.is_alive(entry.pid)


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend("primary")
    backend = ResilientBackend(
        primary,
        StaticBackend("ok", name="fallback"),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = asyncio.run(backend.run("system", "user", task_id="42"))

    assert output == "ok"
    assert primary.calls == 2
    assert [event["event"] for event in events] == [
        "backend_attempt_failed",
        "backend_retry",
        "backend_attempt_failed",
        "backend_fallback_success",
    ]


def test_resilient_backend_skips_retries_for_non_retriable_errors() -> None:
    primary = AlwaysFailBackend("primary", retriable=False)
    backend = ResilientBackend(
        primary,
        StaticBackend("ok"),
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    assert asyncio.run(backend.run("system", "user", task_id="42")) == "ok"
    assert primary.calls == 1


def test_resilient_backend_times_out_and_exhausts() -> None:
    backend = ResilientBackend(
        SlowBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=0.01),
    )

    with pytest.raises(AgentExecutionError, match="All agent attempts failed") as excinfo:
        asyncio.run(backend.run("system", "user", task_id="42"))

    assert "slow timed out" in str(excinfo.value)
    assert not excinfo.value.retriable


def test_role_agent_converts_backend_failure() -> None:
    agent = ImplementationAgent(AlwaysFailBackend())

    result = asyncio.run(agent.invoke(TASK, CONTEXT))

    assert not result.success
    assert result.error == "boom"


def test_implementation_agent_prompt_and_branch() -> None:
    backend = StaticBackend("done")
    context = AgentContext(
        repository=RepositoryConfig(owner="acme", repo="widgets", base_branch="develop"),
        prior_artifact="specs/42/feature-spec.md",
    )

    result = asyncio.run(ImplementationAgent(backend).invoke(TASK, context))

    assert result.success
    assert result.branch == "task-42"
    _system, instruction = backend.prompts[0]
    assert "specs/42/feature-spec.md" in instruction
    assert "git checkout -b task-42" in instruction
    assert "gh pr create --repo acme/widgets --base develop" in instruction


def test_analysis_agent_writes_feature_spec(tmp_path: Path) -> None:
    agent = AnalysisAgent(StaticBackend("# Login\n\nPlan"), artifacts_dir=tmp_path / "features")

    result = asyncio.run(agent.invoke(TASK, CONTEXT))

    assert result.success
    artifact = Path(result.artifact_path)
    assert artifact == tmp_path / "features" / "42" / "feature-spec.md"
    assert artifact.read_text(encoding="utf-8") == "# Login\n\nPlan\n"


def test_analysis_agent_rejects_empty_output(tmp_path: Path) -> None:
    agent = AnalysisAgent(StaticBackend(""), artifacts_dir=tmp_path)

    result = asyncio.run(agent.invoke(TASK, CONTEXT))

    assert not result.success
    assert result.error == "Analysis produced no output."


def test_review_and_fix_prompts_use_commit_conventions() -> None:
    review_backend = StaticBackend("reviewed")
    fix_backend = StaticBackend("fixed")
    context = AgentContext(repository=CONTEXT.repository, branch="task-42")

    asyncio.run(ReviewAgent(review_backend).invoke(TASK, context))
    asyncio.run(FixAgent(fix_backend).invoke(TASK, context))

    assert f"{REVIEW_COMMIT_PREFIX} (#42)" in review_backend.prompts[0][1]
    assert f"{FIX_COMMIT_PREFIX} (#42)" in fix_backend.prompts[0][1]
    assert "git checkout task-42" in fix_backend.prompts[0][1]


def test_openai_backend_uses_responses_api() -> None:
    requests: list[dict[str, Any]] = []

    class FakeResponses:
        def create(self, **kwargs: Any) -> SimpleNamespace:
            requests.append(kwargs)
            return SimpleNamespace(output_text="  spec body  ")

    client = SimpleNamespace(responses=FakeResponses())
    backend = OpenAIBackend(model="gpt-5-mini", client=client)

    output = asyncio.run(backend.run("system", "user", task_id="42"))

    assert output == "spec body"
    assert requests[0]["model"] == "gpt-5-mini"
    assert requests[0]["input"][0] == {"role": "system", "content": "system"}
