"""Pre-commit safety checks: sensitive files and protected branches."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from epicflow.git.status import current_branch, get_untracked_files
from epicflow.lib.constants import DEFAULT_PROTECTED_BRANCHES, SENSITIVE_FILE_PATTERNS

logger = logging.getLogger(__name__)


def is_sensitive(path: str, patterns: Iterable[str] = SENSITIVE_FILE_PATTERNS) -> bool:
    return any(re.search(p, path) for p in patterns)


def find_sensitive_files(paths: Iterable[str], patterns: Iterable[str] = SENSITIVE_FILE_PATTERNS) -> list[str]:
    """Return the paths matching any sensitive pattern."""
    patterns = list(patterns)
    return [p for p in paths if is_sensitive(p, patterns)]


def find_untracked_sensitive_files(repo: Path) -> list[str]:
    """Untracked, non-ignored files that look like secrets."""
    return find_sensitive_files(get_untracked_files(repo))


@dataclass
class BranchCheck:
    ok: bool
    branch: Optional[str]
    message: str = ""


def check_branch_protection(repo: Path, protected: Iterable[str] = DEFAULT_PROTECTED_BRANCHES) -> BranchCheck:
    """
    Refuse automatic commits on protected branches.

    An empty protected list disables the check.
    """
    protected = list(protected)
    branch = current_branch(repo)
    if protected and branch in protected:
        return BranchCheck(
            ok=False,
            branch=branch,
            message=(
                f"Refusing to commit on protected branch '{branch}'. "
                f"Create a feature branch first, or set PROTECTED_BRANCHES='' to disable this check."
            ),
        )
    return BranchCheck(ok=True, branch=branch)
