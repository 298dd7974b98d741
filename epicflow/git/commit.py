"""Git commit operations.

Only named files are ever staged; there is no "add everything".
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from epicflow.git.runner import run_git, GitResult
from epicflow.git.safety import find_sensitive_files, find_untracked_sensitive_files
from epicflow.git.status import get_modified_tracked_files, head_sha

logger = logging.getLogger(__name__)


def stage_files(repo: Path, files: list[str]) -> GitResult:
    """Stage specific files (additions, modifications and deletions)."""
    if not files:
        return GitResult(returncode=0, stdout="", stderr="")
    return run_git(["add", "-A", "--"] + files, repo)


def has_staged_changes(repo: Path) -> bool:
    return not run_git(["diff", "--cached", "--quiet"], repo).success


def commit(repo: Path, message: str) -> GitResult:
    """Create a commit with the given message."""
    return run_git(["commit", "-m", message], repo)


@dataclass
class StoryCommit:
    committed: bool
    message: str
    staged: list[str] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)
    error: str = ""
    sha: str = ""


def commit_named_files(repo: Path, message: str, reported_files: list[str]) -> StoryCommit:
    """
    Commit the worker-reported files plus modified tracked files.

    Sensitive paths are never staged. An untracked sensitive file that is not
    gitignored aborts the commit.
    """
    untracked_sensitive = find_untracked_sensitive_files(repo)
    if untracked_sensitive:
        return StoryCommit(
            committed=False,
            message=message,
            excluded=untracked_sensitive,
            error=f"Untracked sensitive files present (add them to .gitignore): {', '.join(untracked_sensitive)}",
        )

    modified = get_modified_tracked_files(repo)
    candidates: list[str] = []
    for name in list(reported_files) + modified:
        if name and name not in candidates:
            candidates.append(name)

    excluded = find_sensitive_files(candidates)
    if excluded:
        logger.warning(f"Not staging sensitive files: {', '.join(excluded)}")
    # Reported files that don't exist and aren't tracked deletions can't be staged
    staged = [
        name for name in candidates
        if name not in excluded and (name in modified or (repo / name).exists())
    ]

    result = stage_files(repo, staged)
    if not result.success:
        return StoryCommit(False, message, staged, excluded, error=result.stderr.strip())

    if not has_staged_changes(repo):
        logger.info("Nothing to commit")
        return StoryCommit(False, message, staged, excluded)

    result = commit(repo, message)
    if not result.success:
        return StoryCommit(False, message, staged, excluded,
                           error=result.stderr.strip() or result.stdout.strip())
    return StoryCommit(True, message, staged, excluded, sha=head_sha(repo) or "")
