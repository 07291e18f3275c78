"""Git helpers for measuring progress and committing loop output."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import subprocess
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_IDENTITY = (("user.name", "Yoke"), ("user.email", "yoke@localhost"))


def _git_subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that keep child console events away from the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            **_git_subprocess_isolation_kwargs(),
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitError(f"`git {' '.join(args)}` could not run: {exc}") from exc
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def is_repo(path: str | Path) -> bool:
    """Return True when *path* is inside a git work tree."""
    try:
        result = _run_git("rev-parse", "--is-inside-work-tree", cwd=Path(path), check=False)
    except GitError:
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


def status_porcelain(repo: str | Path) -> str:
    """Return ``git status --porcelain`` output."""
    return _run_git("status", "--porcelain", cwd=Path(repo)).stdout.strip()


def head_sha(repo: str | Path) -> str:
    """Return the short SHA of HEAD."""
    return _run_git("rev-parse", "--short", "HEAD", cwd=Path(repo)).stdout.strip()


def is_clean(repo: str | Path) -> bool:
    """Return True when the working tree is clean."""
    return status_porcelain(repo) == ""


def _pending_paths(repo: Path) -> dict[str, str]:
    """Map each modified/untracked path to its two-letter porcelain status."""
    raw = _run_git("status", "--porcelain", "-z", "--untracked-files=all", cwd=repo).stdout
    paths: dict[str, str] = {}
    records = iter(raw.split("\0"))
    for record in records:
        if len(record) < 4:
            continue
        code, path = record[:2], record[3:]
        paths[path] = code
        if code[0] in {"R", "C"}:
            # Rename/copy records carry the source path as the next field.
            next(records, None)
    return paths


def _file_signature(path: Path) -> str:
    try:
        return hashlib.sha1(path.read_bytes()).hexdigest()
    except OSError:
        return "missing"


def working_tree_snapshot(repo: str | Path) -> dict[str, str]:
    """Return ``{path: signature}`` for every file that differs from HEAD.

    The signature combines the porcelain status with a content hash, so a
    file edited again while already dirty still shows up as a change.
    """
    cwd = Path(repo)
    return {
        path: f"{code}:{_file_signature(cwd / path)}"
        for path, code in _pending_paths(cwd).items()
    }


def count_changed_files(previous: Mapping[str, str], current: Mapping[str, str]) -> int:
    """Number of paths whose snapshot signature differs between two snapshots."""
    paths = set(previous) | set(current)
    return sum(1 for path in paths if previous.get(path) != current.get(path))


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def ensure_git_identity(repo: str | Path) -> None:
    """Ensure the repo has a git identity configured for commits.

    Checks ``user.name`` and ``user.email`` in the repo-local config.
    If either is missing, sets a default so ``git commit`` won't fail.
    """
    cwd = Path(repo)
    for key, fallback in GIT_IDENTITY:
        result = _run_git("config", key, cwd=cwd, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            _run_git("config", key, fallback, cwd=cwd)
            logger.info("Set %s = %s in %s", key, fallback, cwd)


def commit_all(repo: str | Path, message: str) -> str | None:
    """Stage everything and commit.

    Returns the new commit SHA, or ``None`` when there was nothing to commit.
    """
    cwd = Path(repo)
    if is_clean(cwd):
        logger.info("Nothing to commit in %s", cwd)
        return None
    ensure_git_identity(cwd)
    _run_git("add", "-A", cwd=cwd)
    _run_git("commit", "-m", message, cwd=cwd)
    sha = head_sha(cwd)
    logger.info("Committed loop progress as %s", sha)
    return sha


def generate_commit_message(loop_number: int, task: str | None) -> str:
    """Build a structured commit message for an autonomous loop checkpoint."""
    # Subject on one line, short enough for `git log --oneline`.
    subject = re.sub(r"\s+", " ", task or "autonomous progress").strip()
    if len(subject) > 60:
        subject = subject[:57] + "..."
    return f"[yoke] loop {loop_number}: {subject}\n\nCheckpoint committed by the autonomous loop.\n"
