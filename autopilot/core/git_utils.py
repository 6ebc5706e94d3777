"""Git operations used by the workflow: commits and worktree isolation."""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from .exceptions import GitOperationError

WORKTREES_DIR = ".worktrees"
WORKTREE_BRANCH_PREFIX = "autopilot-worktree-"


class CommitStatus(str, Enum):
    COMMITTED = "committed"
    NO_CHANGES = "noChanges"


@dataclass
class CommitResult:
    """Outcome of committing all changes in a directory."""

    status: CommitStatus
    output: str = ""

    @property
    def committed(self) -> bool:
        return self.status == CommitStatus.COMMITTED


@dataclass
class WorktreeInfo:
    """An isolated working copy of a repository on its own branch."""

    id: str
    original_repo_path: Path
    worktree_path: Path
    branch_name: str
    created_at: datetime = field(default_factory=datetime.utcnow)


class GitUtils:
    """
    Async wrappers around the git command line.

    Every operation takes the directory it acts on, so one instance serves
    any number of repositories and worktrees.
    """

    def __init__(self, git_path: str = "git"):
        """
        Initialize Git utilities.

        Args:
            git_path: Git executable
        """
        self.git_path = git_path

    async def _run_git(
        self,
        *args: str,
        cwd: Path,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> Tuple[int, str, str]:
        """
        Run a git command.

        Args:
            args: Git command arguments
            cwd: Directory to run in
            check: Raise error on non-zero exit
            timeout: Seconds before the command is killed

        Returns:
            Tuple of (returncode, stdout, stderr)

        Raises:
            GitOperationError: If the command fails (and check=True) or times out
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.git_path,
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise GitOperationError("Git command not found") from e
        except OSError as e:
            raise GitOperationError(f"Git operation failed: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise GitOperationError(
                f"Git command timed out after {timeout:g}s: git {' '.join(args)}",
                timed_out=True,
            ) from e

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")

        if check and process.returncode != 0:
            raise GitOperationError(
                f"Git command failed: git {' '.join(args)}\nError: {err.strip()}",
                exit_code=process.returncode,
                stderr=err,
            )

        return process.returncode, out, err

    async def is_git_repo(self, directory: Path) -> bool:
        """Check if the directory is inside a git repository."""
        returncode, _, _ = await self._run_git(
            "rev-parse", "--git-dir", cwd=directory, check=False
        )
        return returncode == 0

    async def commit_all(
        self, message: str, directory: Path, timeout: Optional[float] = None
    ) -> CommitResult:
        """
        Stage everything and commit.

        Args:
            message: Commit message
            directory: Repository or worktree directory
            timeout: Seconds allowed per git command

        Returns:
            CommitResult, NO_CHANGES when there was nothing to commit

        Raises:
            GitOperationError: If staging or committing fails
        """
        await self._run_git("add", "-A", cwd=directory, timeout=timeout)

        returncode, stdout, stderr = await self._run_git(
            "commit", "-m", message, cwd=directory, check=False, timeout=timeout
        )
        if returncode == 0:
            return CommitResult(CommitStatus.COMMITTED, stdout)

        # git reports an empty commit on stdout, with exit code 1
        combined = f"{stdout}\n{stderr}".lower()
        if returncode == 1 and (
            "nothing to commit" in combined or "no changes added to commit" in combined
        ):
            return CommitResult(CommitStatus.NO_CHANGES, stdout)

        raise GitOperationError(
            f"Git commit failed with exit code {returncode}: {stderr.strip() or stdout.strip()}",
            exit_code=returncode,
            stderr=stderr,
        )

    async def get_changed_files(self, directory: Path, since_commit: str = "HEAD") -> List[str]:
        """List files changed since a commit, including uncommitted changes."""
        _, stdout, _ = await self._run_git("diff", "--name-only", since_commit, cwd=directory)
        return [line for line in stdout.splitlines() if line.strip()]

    async def create_worktree(self, repo_path: Path) -> WorktreeInfo:
        """
        Create an isolated worktree on a new branch.

        The worktree lives in ``<repo>/.worktrees/<id>`` on branch
        ``autopilot-worktree-<id>``.

        Raises:
            GitOperationError: If the directory or worktree cannot be created
        """
        repo_path = Path(repo_path)
        worktree_id = str(uuid.uuid4())
        worktrees_dir = repo_path / WORKTREES_DIR
        worktree_path = worktrees_dir / worktree_id
        branch_name = f"{WORKTREE_BRANCH_PREFIX}{worktree_id}"

        try:
            worktrees_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise GitOperationError(f"Failed to create directory: {worktrees_dir}") from e

        await self._run_git(
            "worktree", "add", str(worktree_path), "-b", branch_name, cwd=repo_path
        )

        return WorktreeInfo(
            id=worktree_id,
            original_repo_path=repo_path,
            worktree_path=worktree_path,
            branch_name=branch_name,
        )

    async def remove_worktree(self, worktree: WorktreeInfo, force: bool = False) -> None:
        """Remove a worktree created by create_worktree."""
        args = ["worktree", "remove", str(worktree.worktree_path)]
        if force:
            args.append("--force")
        await self._run_git(*args, cwd=worktree.original_repo_path)

    async def list_worktrees(self, repo_path: Path) -> List[WorktreeInfo]:
        """List worktrees of the repository created by create_worktree."""
        repo_path = Path(repo_path)
        _, stdout, _ = await self._run_git("worktree", "list", "--porcelain", cwd=repo_path)
        return parse_worktree_list(stdout, repo_path)


def parse_worktree_list(output: str, original_repo_path: Path) -> List[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output.

    Only worktrees under ``<repo>/.worktrees`` with a branch are returned.
    """
    worktrees: List[WorktreeInfo] = []
    worktrees_dir = str(Path(original_repo_path) / WORKTREES_DIR)

    for entry in output.split("\n\n"):
        if not entry.strip():
            continue

        path: Optional[str] = None
        branch: Optional[str] = None
        for line in entry.splitlines():
            if line.startswith("worktree "):
                path = line[len("worktree ") :]
            elif line.startswith("branch "):
                branch = line[len("branch ") :]
                if branch.startswith("refs/heads/"):
                    branch = branch[len("refs/heads/") :]

        if path is None or branch is None or not path.startswith(worktrees_dir):
            continue

        worktree_path = Path(path)
        try:
            worktree_id = str(uuid.UUID(worktree_path.name))
        except ValueError:
            continue

        worktrees.append(
            WorktreeInfo(
                id=worktree_id,
                original_repo_path=Path(original_repo_path),
                worktree_path=worktree_path,
                branch_name=branch,
            )
        )

    return worktrees
