"""Run git non-interactively against the project repository."""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# Unattended runs: never prompt for credentials, keep messages parseable
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return not self.timed_out and self.returncode == 0

    @property
    def lines(self) -> list[str]:
        return [line for line in self.stdout.splitlines() if line.strip()]


def run_git(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """
    Run `git -C cwd <args>`.

    Never raises for git failures: a timeout comes back with timed_out set
    and returncode -1, a missing git executable as returncode 127.
    """
    verb = args[0] if args else "git"
    try:
        proc = subprocess.run(
            ["git", "-C", str(cwd), *args],
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, **_GIT_ENV},
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"git {verb} in {cwd} timed out after {timeout}s")
        return GitResult(-1, "", f"git {verb} timed out after {timeout}s", timed_out=True)
    except FileNotFoundError:
        return GitResult(127, "", "git executable not found on PATH")

    if proc.returncode != 0:
        logger.debug(f"git {verb} exited {proc.returncode}: {proc.stderr.strip()}")
    return GitResult(proc.returncode, proc.stdout, proc.stderr)


def is_git_repo(path: Path) -> bool:
    result = run_git(["rev-parse", "--is-inside-work-tree"], path)
    return result.success and result.stdout.strip() == "true"
