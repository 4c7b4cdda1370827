"""Worktree gateway backed by git.

Each assigned issue gets its own worktree on an ``issue-N`` branch, so
agents working in parallel never share a checkout.
"""

import asyncio
from pathlib import Path
from typing import Optional

from rich.console import Console

from ..errors import GatewayError, ValidationError


console = Console()


def worktree_path_for(repo_path: str, branch: str, base: Optional[str] = None) -> Path:
    """Where the worktree for ``branch`` lives.

    Defaults to ``<repo>-worktrees/<branch>`` next to the repository.
    """
    repo = Path(repo_path).expanduser().resolve()
    root = Path(base).expanduser() if base else repo.parent / f"{repo.name}-worktrees"
    return root / branch


def parse_worktree_list(output: str) -> dict[str, Optional[str]]:
    """Map worktree path to checked-out branch from ``git worktree list --porcelain``."""
    worktrees: dict[str, Optional[str]] = {}
    current: Optional[str] = None
    for line in output.splitlines():
        if line.startswith("worktree "):
            current = line[len("worktree "):].strip()
            worktrees[current] = None
        elif line.startswith("branch ") and current is not None:
            worktrees[current] = line[len("branch "):].strip().removeprefix("refs/heads/")
    return worktrees


class GitWorktreeGateway:
    """``WorktreeGateway`` implementation over ``git``."""

    def __init__(self, base_path: Optional[str] = None, git_path: str = "git"):
        """Initialize the gateway.

        Args:
            base_path: Directory holding worktrees (default: next to each repository)
            git_path: git executable
        """
        self.base_path = base_path
        self.git_path = git_path

    async def _run(self, cwd: str, *args: str, check: bool = True) -> tuple[int, str, str]:
        """Run a git command in ``cwd``."""
        command = [self.git_path, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise GatewayError(f"git not found: {self.git_path}", command=command) from e

        stdout, stderr = await process.communicate()
        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace").strip()
        if check and process.returncode != 0:
            raise GatewayError(f"git {args[0]} failed: {err}", command=command, stderr=err)
        return process.returncode, out, err

    async def _branch_exists(self, repo_path: str, branch: str) -> bool:
        code, _, _ = await self._run(
            repo_path, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False,
        )
        return code == 0

    async def create_worktree(self, repo_path: str, branch: str) -> str:
        if not Path(repo_path).expanduser().is_dir():
            raise ValidationError(f"Repository path does not exist: {repo_path}")
        repo = str(Path(repo_path).expanduser())
        target = worktree_path_for(repo, branch, self.base_path)

        _, listing, _ = await self._run(repo, "worktree", "list", "--porcelain")
        existing = parse_worktree_list(listing)
        for path, checked_out in existing.items():
            if checked_out == branch:
                console.print(f"[dim]Reusing worktree {path} for {branch}[/dim]")
                return path

        target.parent.mkdir(parents=True, exist_ok=True)
        if await self._branch_exists(repo, branch):
            await self._run(repo, "worktree", "add", str(target), branch)
        else:
            await self._run(repo, "worktree", "add", "-b", branch, str(target))
        console.print(f"[dim]Created worktree {target} on {branch}[/dim]")
        return str(target)

    async def push_branch(self, worktree_path: str, branch: str) -> None:
        await self._run(worktree_path, "push", "-u", "origin", branch)
