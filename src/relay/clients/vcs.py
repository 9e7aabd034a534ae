from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod

from relay.errors import ReconciliationQueryError
from relay.models import Commit, PullRequest

logger = logging.getLogger(__name__)


class VcsHost(ABC):
    @abstractmethod
    async def find_pull_request(self, owner: str, repo: str, branch: str) -> PullRequest | None:
        """The pull request whose head branch is ``branch``, if any."""

    @abstractmethod
    async def latest_commit(self, owner: str, repo: str, branch: str) -> Commit | None:
        """The most recent commit on ``branch``, if the branch exists."""


class GitHubCliHost(VcsHost):
    """GitHub access through the ``gh`` CLI and its stored credentials."""

    def __init__(self, binary: str = "gh", *, timeout_seconds: float = 10.0) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def _environment() -> dict[str, str]:
        env = os.environ.copy()
        # Token variables override the keyring login that gh is configured with.
        env.pop("GITHUB_TOKEN", None)
        env.pop("GH_TOKEN", None)
        return env

    async def _run_gh(self, args: list[str]) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._environment(),
            )
        except FileNotFoundError as exc:
            raise ReconciliationQueryError(f"gh binary not found: {self.binary}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ReconciliationQueryError(
                f"gh {args[0]} timed out after {self.timeout_seconds:.0f}s"
            ) from exc
        if process.returncode != 0:
            raise ReconciliationQueryError(
                f"gh {' '.join(args[:2])} failed: {stderr.decode('utf-8', errors='replace').strip()}"
            )
        return stdout.decode("utf-8", errors="replace")

    @staticmethod
    def _parse(raw: str) -> object:
        try:
            return json.loads(raw or "null")
        except json.JSONDecodeError as exc:
            raise ReconciliationQueryError(f"Unparseable gh output: {raw[:200]}") from exc

    async def find_pull_request(self, owner: str, repo: str, branch: str) -> PullRequest | None:
        raw = await self._run_gh(
            [
                "pr",
                "list",
                "--repo",
                f"{owner}/{repo}",
                "--head",
                branch,
                "--state",
                "all",
                "--json",
                "number,url,state",
                "--limit",
                "1",
            ]
        )
        payload = self._parse(raw)
        if not isinstance(payload, list) or not payload:
            return None
        item = payload[0]
        return PullRequest(
            number=int(item["number"]), url=str(item["url"]), state=str(item.get("state") or "OPEN")
        )

    async def latest_commit(self, owner: str, repo: str, branch: str) -> Commit | None:
        try:
            raw = await self._run_gh(
                ["api", f"repos/{owner}/{repo}/commits?sha={branch}&per_page=1"]
            )
        except ReconciliationQueryError as exc:
            # Branch not pushed yet.
            if "404" in str(exc) or "Not Found" in str(exc):
                logger.debug("No commits yet for %s/%s@%s", owner, repo, branch)
                return None
            raise
        payload = self._parse(raw)
        if not isinstance(payload, list) or not payload:
            return None
        item = payload[0]
        return Commit(sha=str(item["sha"]), message=str(item.get("commit", {}).get("message") or ""))
