"""Git Resolver Service - branch and commit lookup for baseline scoping.

Baselines are stored per branch so feature branches can diverge from
``main`` without overwriting its references. This service answers the two
questions the baseline store asks: which branch is checked out, and which
commit is HEAD.
"""

import asyncio
from pathlib import Path
from typing import Optional, Protocol

import structlog

logger = structlog.get_logger()


class VCSResolver(Protocol):
    """Version-control collaborator used by the baseline store."""

    async def get_current_branch(self) -> str: ...

    async def get_current_commit(self) -> str: ...


class GitResolver:
    """Resolve branch and commit by shelling out to git.

    Falls back to ``default_branch`` and an empty commit when the working
    directory is not a repository, git is missing, or HEAD is detached.
    """

    def __init__(
        self,
        repo_path: str | Path = ".",
        default_branch: str = "main",
        timeout: float = 10.0,
    ):
        self.repo_path = Path(repo_path)
        self.default_branch = default_branch
        self.timeout = timeout
        self.log = logger.bind(component="git_resolver")

    async def get_current_branch(self) -> str:
        stdout, stderr, code = await self._run_git_command(["rev-parse", "--abbrev-ref", "HEAD"])
        branch = stdout.strip()
        if code != 0 or not branch or branch == "HEAD":
            self.log.debug("Falling back to default branch", stderr=stderr.strip() or None)
            return self.default_branch
        return branch

    async def get_current_commit(self) -> str:
        stdout, stderr, code = await self._run_git_command(["rev-parse", "HEAD"])
        if code != 0:
            self.log.debug("Could not resolve HEAD commit", stderr=stderr.strip() or None)
            return ""
        return stdout.strip()

    async def _run_git_command(
        self,
        args: list[str],
        timeout: Optional[float] = None,
    ) -> tuple[str, str, int]:
        """Run a git command asynchronously.

        Args:
            args: Git command arguments
            timeout: Command timeout in seconds

        Returns:
            Tuple of (stdout, stderr, return_code)
        """
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=str(self.repo_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self.log.warning("Git command failed to start", args=args, error=str(e))
            return "", str(e), 1

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout or self.timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            self.log.error("Git command timed out", args=args)
            return "", "Command timed out", 1

        return (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            process.returncode or 0,
        )


class StaticVCSResolver:
    """Fixed branch/commit, for CI environments that export them."""

    def __init__(self, branch: str, commit: str = ""):
        self.branch = branch
        self.commit = commit

    async def get_current_branch(self) -> str:
        return self.branch

    async def get_current_commit(self) -> str:
        return self.commit
