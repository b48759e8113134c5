"""Parallel execution of independent sub-tasks on isolated git worktrees.

Each sub-task gets its own branch and working copy next to the main
repository. Tasks run concurrently; merging back is strictly sequential so
conflicts are attributed to exactly one branch.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from build_factory.agents.cli_agent import STEPS_DIRNAME
from build_factory.config import ConflictPolicy
from build_factory.retry_classifier import RateLimitedError

logger = logging.getLogger(__name__)

SHARED_INSTRUCTIONS_FILE = "CLAUDE.md"
# Untracked in every worktree via the shared info/exclude file.
LOCAL_EXCLUDES = (f"{STEPS_DIRNAME}/",)

_GIT_IDENTITY_DEFAULTS = {
    "GIT_AUTHOR_NAME": "build-factory",
    "GIT_AUTHOR_EMAIL": "build-factory@localhost",
    "GIT_COMMITTER_NAME": "build-factory",
    "GIT_COMMITTER_EMAIL": "build-factory@localhost",
}
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class GitCommandError(RuntimeError):
    """Git exited non-zero."""

    def __init__(self, args: Sequence[str], returncode: int, output: str) -> None:
        super().__init__(f"git {' '.join(args)} failed with exit code {returncode}: {output.strip()}")
        self.git_args = tuple(args)
        self.returncode = returncode
        self.output = output


class GitRunner:
    """Runs git CLI commands with a timeout."""

    def __init__(self, *, timeout_seconds: int = 120) -> None:
        self.timeout_seconds = timeout_seconds

    def run(self, args: Sequence[str], *, cwd: Path, check: bool = True) -> subprocess.CompletedProcess[str]:
        env = os.environ.copy()
        for key, value in _GIT_IDENTITY_DEFAULTS.items():
            env.setdefault(key, value)
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=self.timeout_seconds,
            check=False,
        )
        if check and completed.returncode != 0:
            raise GitCommandError(args, completed.returncode, completed.stderr or completed.stdout)
        return completed


@dataclass(slots=True)
class Worktree:
    path: Path
    branch_name: str
    task_name: str


@dataclass(slots=True)
class MergeConflict:
    branch_name: str
    task_name: str
    message: str


@dataclass(slots=True)
class MergeResult:
    """Sequential merge outcome. Conflicts are reported, never resolved."""

    merged: list[str] = field(default_factory=list)
    conflicts: list[MergeConflict] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    stopped: bool = False

    @property
    def clean(self) -> bool:
        return not self.conflicts and not self.stopped


@dataclass(slots=True)
class CleanupResult:
    removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ParallelTask:
    name: str
    instruction: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskRunResult:
    task_name: str
    ok: bool
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ParallelRunResult:
    results: list[TaskRunResult]
    merge: MergeResult
    cleanup: CleanupResult

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results) and self.merge.clean

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [
                {"task": result.task_name, "ok": result.ok, "error": result.error}
                for result in self.results
            ],
            "merged": list(self.merge.merged),
            "conflicts": [
                {"branch": conflict.branch_name, "task": conflict.task_name, "message": conflict.message}
                for conflict in self.merge.conflicts
            ],
            "merge_stopped": self.merge.stopped,
            "cleanup_errors": list(self.cleanup.errors),
        }


TaskRunner = Callable[[ParallelTask, Worktree], TaskRunResult]


def worktree_path_for(repo_path: Path, task_name: str) -> Path:
    return repo_path.resolve().parent / f"build-{safe_name(task_name)}"


def safe_name(value: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("-", value.strip()).strip("-.")
    if not cleaned:
        raise ValueError(f"Cannot derive a filesystem-safe name from {value!r}")
    return cleaned


class WorktreeManager:
    """Creates, merges and removes per-task worktrees of one repository."""

    def __init__(
        self,
        *,
        git: GitRunner | None = None,
        conflict_policy: ConflictPolicy = ConflictPolicy.REPORT,
        delete_branches: bool = True,
        max_parallel: int = 4,
    ) -> None:
        self.git = git or GitRunner()
        self.conflict_policy = conflict_policy
        self.delete_branches = delete_branches
        self.max_parallel = max(1, max_parallel)

    def ensure_repository(self, repo_path: Path) -> None:
        """Initialize ``repo_path`` as a git repository with at least one commit.

        Agent step directories are added to the local exclude file so they never
        reach a commit.
        """

        repo_path.mkdir(parents=True, exist_ok=True)
        if self.git.run(["rev-parse", "--git-dir"], cwd=repo_path, check=False).returncode != 0:
            logger.info("Initializing git repository at %s", repo_path)
            self.git.run(["init"], cwd=repo_path)
        if self.git.run(["rev-parse", "--verify", "HEAD"], cwd=repo_path, check=False).returncode != 0:
            self.git.run(["commit", "--allow-empty", "-m", "Initial commit"], cwd=repo_path)
        self._exclude_local_paths(repo_path)

    def current_branch(self, repo_path: Path) -> str:
        return self.git.run(["branch", "--show-current"], cwd=repo_path).stdout.strip()

    def create_worktree(
        self,
        repo_path: Path,
        branch_name: str,
        task_name: str,
        *,
        base_branch: str | None = None,
    ) -> Worktree:
        self.ensure_repository(repo_path)
        worktree_path = worktree_path_for(repo_path, task_name)

        if worktree_path.exists():
            logger.info("Removing stale worktree %s", worktree_path)
            self.git.run(["worktree", "remove", str(worktree_path), "--force"], cwd=repo_path, check=False)
            if worktree_path.exists():
                shutil.rmtree(worktree_path)
        self.git.run(["worktree", "prune"], cwd=repo_path, check=False)
        if self._branch_exists(repo_path, branch_name):
            self.git.run(["branch", "-D", branch_name], cwd=repo_path)

        args = ["worktree", "add", str(worktree_path), "-b", branch_name]
        if base_branch:
            args.append(base_branch)
        self.git.run(args, cwd=repo_path)

        shared = repo_path / SHARED_INSTRUCTIONS_FILE
        if shared.is_file():
            shutil.copyfile(shared, worktree_path / SHARED_INSTRUCTIONS_FILE)

        logger.info("Created worktree %s on branch %s", worktree_path, branch_name)
        return Worktree(path=worktree_path, branch_name=branch_name, task_name=task_name)

    def merge_worktrees(
        self,
        repo_path: Path,
        worktrees: Sequence[Worktree],
        *,
        commit_message: str | None = None,
    ) -> MergeResult:
        """Commit pending changes in each worktree and merge branches one at a time."""

        result = MergeResult()
        main_branch = self.current_branch(repo_path)
        for index, worktree in enumerate(worktrees):
            status = self.git.run(["status", "--porcelain"], cwd=worktree.path).stdout
            if status.strip():
                self.git.run(["add", "-A"], cwd=worktree.path)
                self.git.run(
                    ["commit", "-m", commit_message or f"Complete task: {worktree.task_name}"],
                    cwd=worktree.path,
                )

            self.git.run(["checkout", main_branch], cwd=repo_path)
            merged = self.git.run(
                ["merge", worktree.branch_name, "--no-edit"],
                cwd=repo_path,
                check=False,
            )
            if merged.returncode == 0:
                result.merged.append(worktree.branch_name)
                continue

            output = f"{merged.stdout}\n{merged.stderr}"
            if "CONFLICT" not in output:
                raise GitCommandError(["merge", worktree.branch_name], merged.returncode, output)

            logger.warning("Merge conflict on branch %s", worktree.branch_name)
            result.conflicts.append(
                MergeConflict(
                    branch_name=worktree.branch_name,
                    task_name=worktree.task_name,
                    message=_conflict_summary(output),
                ),
            )
            self.git.run(["merge", "--abort"], cwd=repo_path, check=False)
            if self.conflict_policy == ConflictPolicy.ABORT:
                result.stopped = True
                result.skipped.extend(remaining.branch_name for remaining in worktrees[index + 1 :])
                break
        return result

    def cleanup_worktrees(
        self,
        repo_path: Path,
        worktrees: Sequence[Worktree],
        *,
        delete_branches: bool | None = None,
    ) -> CleanupResult:
        """Remove worktrees (and optionally branches), collecting errors instead of raising."""

        delete = self.delete_branches if delete_branches is None else delete_branches
        result = CleanupResult()
        for worktree in worktrees:
            try:
                self.git.run(["worktree", "remove", str(worktree.path), "--force"], cwd=repo_path)
                result.removed.append(str(worktree.path))
            except (GitCommandError, subprocess.TimeoutExpired) as error:
                result.errors.append(f"{worktree.path}: {error}")
            if not delete:
                continue
            try:
                if self._branch_exists(repo_path, worktree.branch_name):
                    self.git.run(["branch", "-D", worktree.branch_name], cwd=repo_path)
            except (GitCommandError, subprocess.TimeoutExpired) as error:
                result.errors.append(f"{worktree.branch_name}: {error}")
        self.git.run(["worktree", "prune"], cwd=repo_path, check=False)
        return result

    def run_parallel(
        self,
        repo_path: Path,
        tasks: Sequence[ParallelTask],
        runner: TaskRunner,
        *,
        branch_prefix: str,
        base_branch: str | None = None,
    ) -> ParallelRunResult:
        """Fan tasks out to worktrees, merge the successful ones, always clean up.

        Raises:
            ValueError: two task names map to the same worktree path or branch.
        """

        _check_distinct_names(repo_path, tasks)
        worktrees: list[Worktree] = []
        try:
            for task in tasks:
                worktrees.append(
                    self.create_worktree(
                        repo_path,
                        f"{branch_prefix}/{safe_name(task.name)}",
                        f"{repo_path.name}-{task.name}",
                        base_branch=base_branch,
                    ),
                )

            with ThreadPoolExecutor(max_workers=min(self.max_parallel, max(1, len(tasks)))) as pool:
                futures = [
                    pool.submit(_run_task_safely, runner, task, worktree)
                    for task, worktree in zip(tasks, worktrees, strict=True)
                ]
                results = [future.result() for future in futures]

            succeeded = [
                worktree for worktree, result in zip(worktrees, results, strict=True) if result.ok
            ]
            merge = self.merge_worktrees(repo_path, succeeded)
        finally:
            cleanup = self.cleanup_worktrees(repo_path, worktrees)
            for error in cleanup.errors:
                logger.warning("Worktree cleanup error: %s", error)

        return ParallelRunResult(results=results, merge=merge, cleanup=cleanup)

    def _exclude_local_paths(self, repo_path: Path) -> None:
        raw = self.git.run(["rev-parse", "--git-path", "info/exclude"], cwd=repo_path).stdout.strip()
        exclude_path = Path(raw)
        if not exclude_path.is_absolute():
            exclude_path = repo_path / exclude_path
        text = exclude_path.read_text("utf-8") if exclude_path.exists() else ""
        missing = [entry for entry in LOCAL_EXCLUDES if entry not in text.splitlines()]
        if not missing:
            return
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        prefix = "\n" if text and not text.endswith("\n") else ""
        with exclude_path.open("a", encoding="utf-8") as handle:
            handle.write(prefix + "".join(f"{entry}\n" for entry in missing))

    def _branch_exists(self, repo_path: Path, branch_name: str) -> bool:
        listed = self.git.run(["branch", "--list", branch_name], cwd=repo_path, check=False)
        return bool(listed.stdout.strip())


def _check_distinct_names(repo_path: Path, tasks: Sequence[ParallelTask]) -> None:
    seen: dict[str, str] = {}
    for task in tasks:
        path_key = f"worktree {safe_name(f'{repo_path.name}-{task.name}')}"
        for key in (path_key, f"branch {safe_name(task.name)}"):
            if key in seen:
                raise ValueError(f"Tasks {seen[key]!r} and {task.name!r} would share {key}")
            seen[key] = task.name


def _run_task_safely(runner: TaskRunner, task: ParallelTask, worktree: Worktree) -> TaskRunResult:
    try:
        return runner(task, worktree)
    except RateLimitedError:
        raise
    except Exception as error:  # noqa: BLE001
        logger.warning("Parallel task %s failed: %s", task.name, error)
        return TaskRunResult(task_name=task.name, ok=False, error=str(error))


def _conflict_summary(output: str) -> str:
    lines = [line.strip() for line in output.splitlines() if "CONFLICT" in line]
    return "; ".join(lines) or output.strip()
