"""
Project tooling: static checks, tests and the regression baseline.

The project's toolchain is detected once at startup from marker files
(package.json, Cargo.toml, go.mod, pyproject.toml/requirements.txt). Each
toolchain strategy knows its static checks and its test command.
"""

import json
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from epicflow.lib.constants import DEFAULT_MAX_TEST_FAILURE_SIZE
from epicflow.lib.test_parser import (
    count_passing,
    failure_signatures,
    filter_new_failures,
    format_parsed_output,
    has_compile_errors,
    parse_test_output,
)

logger = logging.getLogger(__name__)


@dataclass
class Check:
    name: str
    cmd: list[str]


@dataclass
class CheckResult:
    name: str
    passed: bool
    output: str = ""
    exit_code: int = 0
    timed_out: bool = False


@dataclass
class ToolingReport:
    passed: bool
    results: list[CheckResult] = field(default_factory=list)
    # New failures (baseline filtered), bounded; empty when passed
    failure_excerpt: str = ""

    @property
    def failed_checks(self) -> list[str]:
        return [r.name for r in self.results if not r.passed]


class Toolchain:
    """Base strategy. Subclasses declare marker files and commands."""
    name = "none"
    markers: tuple[str, ...] = ()

    def detect(self, root: Path) -> bool:
        return any((root / m).exists() for m in self.markers)

    def static_checks(self, root: Path) -> list[Check]:
        return []

    def test_command(self, root: Path) -> Optional[list[str]]:
        return None


class NodeToolchain(Toolchain):
    name = "node"
    markers = ("package.json",)

    def _scripts(self, root: Path) -> dict:
        try:
            return json.loads((root / "package.json").read_text()).get("scripts") or {}
        except (OSError, json.JSONDecodeError, AttributeError) as e:
            logger.warning(f"Could not read package.json scripts: {e}")
            return {}

    def static_checks(self, root: Path) -> list[Check]:
        scripts = self._scripts(root)
        checks = []
        for script in ("typecheck", "type-check", "tsc"):
            if script in scripts:
                checks.append(Check("typecheck", ["npm", "run", script]))
                break
        else:
            if (root / "tsconfig.json").exists():
                checks.append(Check("typecheck", ["npx", "tsc", "--noEmit"]))
        if "lint" in scripts:
            checks.append(Check("lint", ["npm", "run", "lint"]))
        if "build" in scripts:
            checks.append(Check("build", ["npm", "run", "build"]))
        if "test" in scripts:
            checks.append(Check("test", ["npm", "test"]))
        return checks

    def test_command(self, root: Path) -> Optional[list[str]]:
        return ["npm", "test"] if "test" in self._scripts(root) else None


class RustToolchain(Toolchain):
    name = "rust"
    markers = ("Cargo.toml",)

    def static_checks(self, root: Path) -> list[Check]:
        return [Check("check", ["cargo", "check"]), Check("test", ["cargo", "test"])]

    def test_command(self, root: Path) -> Optional[list[str]]:
        return ["cargo", "test"]


class GoToolchain(Toolchain):
    name = "go"
    markers = ("go.mod",)

    def static_checks(self, root: Path) -> list[Check]:
        return [Check("build", ["go", "build", "./..."]), Check("test", ["go", "test", "./..."])]

    def test_command(self, root: Path) -> Optional[list[str]]:
        return ["go", "test", "-v", "./..."]


class PythonToolchain(Toolchain):
    name = "python"
    markers = ("pyproject.toml", "requirements.txt", "setup.py")

    def static_checks(self, root: Path) -> list[Check]:
        checks = []
        if shutil.which("pytest"):
            checks.append(Check("test", ["pytest", "-q"]))
        if ((root / "mypy.ini").exists() or (root / "setup.cfg").exists()) and shutil.which("mypy"):
            checks.append(Check("typecheck", ["mypy", "."]))
        return checks

    def test_command(self, root: Path) -> Optional[list[str]]:
        return ["pytest", "-q"] if shutil.which("pytest") else None


# Detection order matters: a Node project may also ship a requirements.txt
TOOLCHAINS: list[Toolchain] = [NodeToolchain(), RustToolchain(), GoToolchain(), PythonToolchain()]


def detect_toolchain(root: Path) -> Toolchain:
    """Pick the first toolchain whose marker exists; base Toolchain if none."""
    for toolchain in TOOLCHAINS:
        if toolchain.detect(root):
            logger.info(f"Detected {toolchain.name} toolchain")
            return toolchain
    logger.info("No known toolchain detected; static analysis and test checks are no-ops")
    return Toolchain()


class ProjectTooling:
    """Runs the detected toolchain's checks in the project root."""

    def __init__(
        self,
        root: Path,
        toolchain: Optional[Toolchain] = None,
        timeout: int = 900,
        max_output: int = DEFAULT_MAX_TEST_FAILURE_SIZE,
        dry_run: bool = False,
        on_command: Optional[Callable[[list[str], int, float], None]] = None,
    ):
        self.root = Path(root)
        self.toolchain = toolchain or detect_toolchain(self.root)
        self.timeout = timeout
        self.max_output = max_output
        self.dry_run = dry_run
        self.on_command = on_command
        self.failure_baseline: set[str] = set()
        self.passing_baseline: Optional[int] = None

    def _run(self, check: Check) -> CheckResult:
        if self.dry_run:
            logger.info(f"[DRY RUN] Would run {' '.join(check.cmd)}")
            return CheckResult(check.name, True)

        start = time.time()
        try:
            result = subprocess.run(
                check.cmd,
                cwd=str(self.root),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"{check.name} timed out after {self.timeout}s")
            return CheckResult(check.name, False, f"{check.name} timed out after {self.timeout}s",
                               exit_code=124, timed_out=True)
        except FileNotFoundError as e:
            logger.warning(f"{check.name} could not run: {e}")
            return CheckResult(check.name, False, str(e), exit_code=127)

        if self.on_command:
            self.on_command(check.cmd, result.returncode, time.time() - start)
        output = f"{result.stdout}\n{result.stderr}".strip()
        return CheckResult(check.name, result.returncode == 0, output, result.returncode)

    def run_tests(self) -> Optional[CheckResult]:
        """Run the test command; None when the project has no tests to run."""
        cmd = self.toolchain.test_command(self.root)
        if cmd is None:
            return None
        return self._run(Check("test", cmd))

    def capture_baseline(self) -> set[str]:
        """Record failures (and the passing count) before any story runs."""
        result = self.run_tests()
        if result is None:
            return self.failure_baseline
        self.passing_baseline = count_passing(result.output)
        if not result.passed:
            self.failure_baseline = failure_signatures(result.output)
            logger.info(f"Baseline has {len(self.failure_baseline)} pre-existing failure(s)")
        return self.failure_baseline

    def run_static_analysis(self) -> ToolingReport:
        """Run every static check. Pre-existing failures don't fail the report."""
        results = [self._run(check) for check in self.toolchain.static_checks(self.root)]
        failed = [r for r in results if not r.passed]
        if not failed:
            return ToolingReport(passed=True, results=results)

        excerpts = []
        for result in failed:
            new = filter_new_failures(result.output, self.failure_baseline, self.max_output)
            if new:
                excerpts.append(f"### {result.name} (exit {result.exit_code})\n{new}")

        if not excerpts:
            logger.info("All check failures are pre-existing (baseline); treating as passed")
            return ToolingReport(passed=True, results=results)

        excerpt = "\n\n".join(excerpts)
        if len(excerpt) > self.max_output:
            excerpt = excerpt[-self.max_output:]
        return ToolingReport(passed=False, results=results, failure_excerpt=excerpt)

    def verify_red_tests(self) -> CheckResult:
        """
        Run tests expecting failures (TDD red phase).

        Passes unless the output shows compile errors; failing tests are expected.
        """
        result = self.run_tests()
        if result is None:
            return CheckResult("test-verify", True, "No test command for this project")
        if not result.passed and has_compile_errors(result.output):
            summary = format_parsed_output(parse_test_output(result.output))
            return CheckResult("test-verify", False, summary, result.exit_code)
        return CheckResult("test-verify", True, result.output, result.exit_code)


class RegressionTracker:
    """
    Grow-only passing test baseline.

    A drop in passing tests is reported but never blocks; the baseline only
    moves forward on success.
    """

    def __init__(self, baseline: Optional[int] = None):
        self.baseline = baseline

    def check(self, output: str) -> tuple[bool, str]:
        count = count_passing(output)
        if count is None:
            return True, "Could not determine passing test count"
        if self.baseline is None or count >= self.baseline:
            previous = self.baseline
            self.baseline = count
            return True, f"{count} passing (baseline {previous if previous is not None else 'unset'})"
        return False, f"Passing tests dropped from {self.baseline} to {count}"
