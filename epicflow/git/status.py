"""Read-only repository queries: working tree state, branch and HEAD."""

from pathlib import Path

from epicflow.git.runner import run_git


def has_uncommitted_changes(repo: Path) -> bool:
    """Anything staged, modified or untracked (ignored files don't count)."""
    return bool(run_git(["status", "--porcelain"], repo).lines)


def get_untracked_files(repo: Path) -> list[str]:
    return run_git(["ls-files", "--others", "--exclude-standard"], repo).lines


def get_modified_tracked_files(repo: Path) -> list[str]:
    """Tracked paths changed in the work tree or the index, deletions included, in first-seen order."""
    unstaged = run_git(["diff", "--name-only"], repo).lines
    staged = run_git(["diff", "--name-only", "--cached"], repo).lines
    return list(dict.fromkeys(name.strip() for name in unstaged + staged))


def current_branch(repo: Path) -> str | None:
    """None on a detached HEAD or outside a repository."""
    result = run_git(["branch", "--show-current"], repo)
    return (result.stdout.strip() or None) if result.success else None


def head_sha(repo: Path, ref: str = "HEAD") -> str | None:
    result = run_git(["rev-parse", ref], repo)
    return result.stdout.strip() if result.success else None


def changed_since(repo: Path, ref: str) -> list[str]:
    """Paths changed between ref and HEAD; empty if either can't be resolved."""
    return run_git(["diff", "--name-only", f"{ref}..HEAD"], repo).lines
