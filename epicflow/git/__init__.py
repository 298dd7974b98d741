"""
Git access for story commits.

Everything goes through run_git(), which never raises for git failures.
Queries degrade to empty/None results outside a repository; commit_named_files()
reports problems on the returned StoryCommit.
"""

from epicflow.git.runner import GitResult, is_git_repo, run_git
from epicflow.git.status import (
    current_branch,
    get_modified_tracked_files,
    get_untracked_files,
    has_uncommitted_changes,
    head_sha,
)
from epicflow.git.safety import (
    BranchCheck,
    check_branch_protection,
    find_sensitive_files,
    find_untracked_sensitive_files,
    is_sensitive,
)
from epicflow.git.commit import StoryCommit, commit_named_files

__all__ = [
    "GitResult", "run_git", "is_git_repo",
    "has_uncommitted_changes", "get_untracked_files", "get_modified_tracked_files",
    "current_branch", "head_sha",
    "BranchCheck", "check_branch_protection", "find_sensitive_files",
    "find_untracked_sensitive_files", "is_sensitive",
    "StoryCommit", "commit_named_files",
]
