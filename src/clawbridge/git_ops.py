"""Git helpers for the supervisor's commit-on-success / stash-on-failure protocol.

Only the supervisor mutates the working tree. Every helper here is
synchronous; async callers wrap them in ``asyncio.to_thread``.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Literal

from clawbridge.config import get_settings
from clawbridge.logger import logger

_SUBPROCESS_TIMEOUT = 30

StashRestoreResult = Literal["restored", "missing", "conflict"]


class GitCommandError(Exception):
    """Raised when a git command fails."""

    def __init__(self, command: str, stderr: str, returncode: int) -> None:
        self.command = command
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"git {command} failed (exit {returncode}): {stderr}")


def run_git(
    *args: str,
    cwd: Path | None = None,
    timeout: int = _SUBPROCESS_TIMEOUT,
) -> subprocess.CompletedProcess[str]:
    """Run a git command with standard timeout and error capture."""
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd or get_settings().project_root),
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def require_success(result: subprocess.CompletedProcess[str], command: str) -> str:
    """Assert that a git command succeeded, raising GitCommandError otherwise.

    Returns the stripped stdout on success.
    """
    if result.returncode != 0:
        raise GitCommandError(command, result.stderr.strip(), result.returncode)
    return result.stdout.strip()


def get_head_sha(cwd: Path | None = None) -> str:
    """Return the current git HEAD SHA, or 'unknown' on failure."""
    try:
        result = run_git("rev-parse", "HEAD", cwd=cwd)
        return result.stdout.strip() if result.returncode == 0 else "unknown"
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("get_head_sha failed", error=str(exc))
        return "unknown"


def get_head_commit_message(max_length: int = 72, cwd: Path | None = None) -> str:
    """Return the subject line of the HEAD commit, truncated if needed."""
    try:
        result = run_git("log", "-1", "--format=%s", cwd=cwd)
        msg = result.stdout.strip() if result.returncode == 0 else ""
        if len(msg) > max_length:
            return msg[: max_length - 1] + "…"
        return msg
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("Failed to read HEAD commit message", err=str(exc))
        return ""


def is_repo_dirty(cwd: Path | None = None) -> bool:
    """Check if the working tree has uncommitted changes (untracked files count)."""
    try:
        result = run_git("status", "--porcelain", cwd=cwd)
        return bool(result.stdout.strip()) if result.returncode == 0 else False
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("is_repo_dirty failed", error=str(exc), cwd=str(cwd))
        return False


def stash_changes(label: str, cwd: Path | None = None) -> bool:
    """Stash all changes, untracked files included, under *label*.

    Returns True if a stash entry was created, False when the tree was clean.
    Raises GitCommandError if git refuses.
    """
    if not is_repo_dirty(cwd=cwd):
        logger.info("Working tree clean, nothing to stash")
        return False
    require_success(run_git("stash", "push", "-u", "-m", label, cwd=cwd), "stash push")
    logger.info("Working tree stashed", label=label)
    return True


def find_stash(label: str, cwd: Path | None = None) -> str | None:
    """Return the ref (``stash@{N}``) of the newest stash whose message has *label*."""
    result = run_git("stash", "list", cwd=cwd)
    out = require_success(result, "stash list")
    for line in out.splitlines():
        ref, sep, description = line.partition(":")
        if sep and label in description:
            return ref.strip()
    return None


def restore_stash(label: str, cwd: Path | None = None) -> StashRestoreResult:
    """Pop the stash labelled *label* back into the working tree.

    A conflicting pop leaves the tree partially merged and the stash entry in
    place; that state is reported as ``"conflict"`` for a human to resolve.
    """
    ref = find_stash(label, cwd=cwd)
    if ref is None:
        logger.info("No stash found to restore", label=label)
        return "missing"

    result = run_git("stash", "pop", ref, cwd=cwd)
    if result.returncode != 0:
        logger.warning(
            "Stash pop conflicted, manual resolution required",
            ref=ref,
            stderr=result.stderr.strip()[-500:],
        )
        return "conflict"

    logger.info("Stash restored to working tree", ref=ref)
    return "restored"


def commit_all(message: str, cwd: Path | None = None) -> bool:
    """Stage everything and commit. Returns False when the tree was clean.

    Raises GitCommandError if staging or committing fails.
    """
    if not is_repo_dirty(cwd=cwd):
        return False
    require_success(run_git("add", "-A", cwd=cwd), "add -A")
    require_success(run_git("commit", "-m", message, cwd=cwd), "commit")
    logger.info("Working tree committed", message=message, sha=get_head_sha(cwd=cwd)[:8])
    return True
