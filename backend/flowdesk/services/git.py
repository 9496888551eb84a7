"""Git operations for workspaces, via the ``git`` command line.

Worktrees isolate each workspace on its own branch. Operations whose result
is a value raise GitError on failure; worktree creation and commits return
result objects carrying the error text instead.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_BRANCH_CANDIDATES = ("main", "master", "develop", "trunk")
FALLBACK_DEFAULT_BRANCH = "main"

_ORIGIN_HEAD_RE = re.compile(r"refs/remotes/origin/(.+)")
_GITHUB_REMOTE_RE = re.compile(r"github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?$")
_GENERIC_REMOTE_RE = re.compile(r"[:/]([^/:]+)/([^/]+?)(?:\.git)?$")


class GitError(RuntimeError):
    pass


class ChangeStatus(str, enum.Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    UNTRACKED = "untracked"


@dataclass
class GitFileChange:
    file_path: str
    status: ChangeStatus
    additions: int | None = None
    deletions: int | None = None

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "status": self.status.value,
            "additions": self.additions,
            "deletions": self.deletions,
        }


@dataclass
class WorktreeResult:
    success: bool
    worktree_path: str | None = None
    branch: str | None = None
    error: str | None = None


@dataclass
class CommitResult:
    success: bool
    commit_hash: str | None = None
    error: str | None = None


@dataclass
class GitStatus:
    has_uncommitted_changes: bool = False
    has_unpushed_commits: bool = False
    current_branch: str | None = None


@dataclass
class GitRemoteInfo:
    provider: str
    owner: str
    repo: str


async def _run(cmd: list[str], cwd: Path | str) -> tuple[str, str, int]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, NotADirectoryError) as e:
        raise GitError(f"{cmd[0]} could not be started in {cwd}: {e}") from e
    stdout, stderr = await proc.communicate()
    return stdout.decode(errors="replace"), stderr.decode(errors="replace"), proc.returncode


async def _git(repo: Path | str, *args: str) -> tuple[str, str, int]:
    return await _run(["git", *args], repo)


# ── Repository discovery ───────────────────────────────────────


async def get_git_root(path: Path | str) -> str:
    out, err, rc = await _git(path, "rev-parse", "--show-toplevel")
    if rc != 0:
        raise GitError(f"Not a git repository: {path}")
    return out.strip()


async def is_git_repository(path: Path | str) -> bool:
    try:
        _, _, rc = await _git(path, "rev-parse", "--is-inside-work-tree")
    except GitError:
        return False
    return rc == 0


# ── Worktrees ──────────────────────────────────────────────────


async def create_worktree(
    main_repo: Path | str,
    branch: str,
    worktree_path: Path | str,
    start_point: str | None = None,
) -> WorktreeResult:
    worktree_path = Path(worktree_path)
    try:
        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        _, err, rc = await _git(
            main_repo, "worktree", "add", str(worktree_path), "-B", branch, start_point or "HEAD"
        )
    except (OSError, GitError) as e:
        return WorktreeResult(success=False, error=str(e))
    if rc != 0:
        logger.warning("git worktree add failed for %s: %s", worktree_path, err.strip())
        return WorktreeResult(success=False, error=err.strip())
    logger.info("Created worktree %s on branch %s", worktree_path, branch)
    return WorktreeResult(success=True, worktree_path=str(worktree_path), branch=branch)


async def remove_worktree(main_repo: Path | str, worktree_path: Path | str) -> bool:
    try:
        _, err, rc = await _git(main_repo, "worktree", "remove", str(worktree_path), "--force")
    except GitError:
        return False
    if rc != 0:
        logger.warning("git worktree remove failed for %s: %s", worktree_path, err.strip())
    return rc == 0


async def worktree_exists(main_repo: Path | str, worktree_path: Path | str) -> bool:
    try:
        out, _, rc = await _git(main_repo, "worktree", "list", "--porcelain")
    except GitError:
        return False
    if rc != 0:
        return False
    target = Path(worktree_path).resolve()
    for line in out.splitlines():
        if line.startswith("worktree ") and Path(line[len("worktree "):]).resolve() == target:
            return True
    return False


# ── Branches ───────────────────────────────────────────────────


async def current_branch(repo: Path | str) -> str | None:
    try:
        out, _, rc = await _git(repo, "rev-parse", "--abbrev-ref", "HEAD")
    except GitError:
        return None
    return out.strip() if rc == 0 else None


async def default_branch(repo: Path | str) -> str:
    """origin/HEAD when set, else the first well-known local branch name."""
    try:
        out, _, rc = await _git(repo, "symbolic-ref", "refs/remotes/origin/HEAD")
        if rc == 0:
            match = _ORIGIN_HEAD_RE.search(out)
            if match:
                return match.group(1).strip()

        out, _, _ = await _git(repo, "branch", "--list", "--format=%(refname:short)")
    except GitError:
        return FALLBACK_DEFAULT_BRANCH
    branches = [b.strip() for b in out.splitlines() if b.strip()]
    for candidate in DEFAULT_BRANCH_CANDIDATES:
        if candidate in branches:
            return candidate
    return branches[0] if branches else FALLBACK_DEFAULT_BRANCH


# ── Changes ────────────────────────────────────────────────────


def _map_status(code: str) -> ChangeStatus:
    # XY: X is the index, Y the working tree
    for letter, status in (
        ("A", ChangeStatus.ADDED),
        ("M", ChangeStatus.MODIFIED),
        ("D", ChangeStatus.DELETED),
        ("R", ChangeStatus.RENAMED),
        ("?", ChangeStatus.UNTRACKED),
    ):
        if letter in code:
            return status
    return ChangeStatus.MODIFIED


async def file_changes(repo: Path | str) -> list[GitFileChange]:
    out, err, rc = await _git(repo, "status", "--porcelain", "-z")
    if rc != 0:
        raise GitError(f"git status failed: {err.strip()}")

    changes: dict[str, GitFileChange] = {}
    entries = iter(out.split("\0"))
    for entry in entries:
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        status = _map_status(code)
        if status == ChangeStatus.RENAMED:
            next(entries, None)  # rename source
        changes[path] = GitFileChange(file_path=path, status=status)

    out, _, rc = await _git(repo, "diff", "HEAD", "--numstat")
    if rc == 0:
        for line in out.splitlines():
            parts = line.split("\t")
            if len(parts) != 3 or not parts[0].isdigit() or not parts[1].isdigit():
                continue
            change = changes.get(parts[2])
            if change is not None:
                change.additions = int(parts[0])
                change.deletions = int(parts[1])

    return list(changes.values())


async def diff(repo: Path | str, base_branch: str | None = None) -> str:
    """Uncommitted diff; when clean and a base branch is given, the diff against origin's copy of it."""
    out, err, rc = await _git(repo, "diff")
    if rc != 0:
        raise GitError(f"git diff failed: {err.strip()}")
    if not out.strip() and base_branch:
        ref = base_branch if base_branch.startswith("origin/") else f"origin/{base_branch}"
        out, err, rc = await _git(repo, "diff", ref)
        if rc != 0:
            raise GitError(f"git diff {ref} failed: {err.strip()}")
    return out


async def commit(repo: Path | str, message: str) -> CommitResult:
    try:
        await _git(repo, "add", "-A")
        out, err, rc = await _git(repo, "commit", "-m", message)
        if rc != 0:
            return CommitResult(success=False, error=(err or out).strip())
        hash_out, _, _ = await _git(repo, "rev-parse", "HEAD")
    except GitError as e:
        return CommitResult(success=False, error=str(e))
    return CommitResult(success=True, commit_hash=hash_out.strip())


async def status(repo: Path | str) -> GitStatus:
    out, err, rc = await _git(repo, "status", "--porcelain")
    if rc != 0:
        raise GitError(f"git status failed: {err.strip()}")
    unpushed, _, unpushed_rc = await _git(repo, "rev-list", "@{u}..HEAD")
    return GitStatus(
        has_uncommitted_changes=bool(out.strip()),
        has_unpushed_commits=unpushed_rc == 0 and bool(unpushed.strip()),
        current_branch=await current_branch(repo),
    )


async def detect_remote_info(repo: Path | str) -> GitRemoteInfo | None:
    try:
        out, _, rc = await _git(repo, "remote", "get-url", "origin")
    except GitError:
        return None
    if rc != 0:
        return None
    url = out.strip()

    match = _GITHUB_REMOTE_RE.search(url)
    if match:
        return GitRemoteInfo(provider="github", owner=match.group(1), repo=match.group(2))
    match = _GENERIC_REMOTE_RE.search(url)
    if match:
        return GitRemoteInfo(provider="unknown", owner=match.group(1), repo=match.group(2))
    return None
