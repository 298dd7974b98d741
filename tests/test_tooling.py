"""Tests for epicflow.lib.tooling."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from epicflow.lib.tooling import (
    Check,
    NodeToolchain,
    ProjectTooling,
    RegressionTracker,
    Toolchain,
    detect_toolchain,
)


class FakeToolchain(Toolchain):
    name = "fake"

    def __init__(self, checks=None, test_cmd=("run-tests",)):
        self.checks = checks or []
        self.test_cmd = list(test_cmd) if test_cmd else None

    def static_checks(self, root):
        return self.checks

    def test_command(self, root):
        return self.test_cmd


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def mock_run():
    with patch("epicflow.lib.tooling.subprocess.run") as run:
        yield run


class TestDetectToolchain:
    def test_node(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        (tmp_path / "requirements.txt").write_text("")
        assert detect_toolchain(tmp_path).name == "node"

    def test_rust(self, tmp_path):
        (tmp_path / "Cargo.toml").write_text("")
        assert detect_toolchain(tmp_path).name == "rust"

    def test_none(self, tmp_path):
        toolchain = detect_toolchain(tmp_path)
        assert toolchain.name == "none"
        assert toolchain.static_checks(tmp_path) == []
        assert toolchain.test_command(tmp_path) is None

    def test_node_scripts(self, tmp_path):
        scripts = {"typecheck": "tsc", "lint": "eslint .", "test": "jest"}
        (tmp_path / "package.json").write_text(json.dumps({"scripts": scripts}))
        checks = NodeToolchain().static_checks(tmp_path)
        assert [c.name for c in checks] == ["typecheck", "lint", "test"]
        assert NodeToolchain().test_command(tmp_path) == ["npm", "test"]

    def test_node_tsconfig_fallback(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        (tmp_path / "tsconfig.json").write_text("{}")
        checks = NodeToolchain().static_checks(tmp_path)
        assert checks[0].cmd == ["npx", "tsc", "--noEmit"]
        assert NodeToolchain().test_command(tmp_path) is None


class TestProjectTooling:
    """Tests for running checks."""

    def test_dry_run_executes_nothing(self, tmp_path, mock_run):
        tooling = ProjectTooling(tmp_path, FakeToolchain([Check("lint", ["lint"])]), dry_run=True)
        report = tooling.run_static_analysis()
        assert report.passed
        mock_run.assert_not_called()

    def test_on_command_callback(self, tmp_path, mock_run):
        mock_run.return_value = completed(0, "ok")
        seen = []
        tooling = ProjectTooling(tmp_path, FakeToolchain(), on_command=lambda cmd, code, secs: seen.append((cmd, code)))
        tooling.run_tests()
        assert seen == [(["run-tests"], 0)]
        assert mock_run.call_args.kwargs["cwd"] == str(tmp_path)

    def test_no_test_command(self, tmp_path, mock_run):
        tooling = ProjectTooling(tmp_path, FakeToolchain(test_cmd=None))
        assert tooling.run_tests() is None
        assert tooling.capture_baseline() == set()
        assert tooling.passing_baseline is None

    def test_capture_baseline(self, tmp_path, mock_run):
        mock_run.return_value = completed(1, "--- FAIL: TestOld (0.10s)\n--- PASS: TestA (0.00s)\n")
        tooling = ProjectTooling(tmp_path, FakeToolchain())
        assert tooling.capture_baseline() == {"--- FAIL: TestOld"}
        assert tooling.passing_baseline == 1

    def test_preexisting_failures_pass(self, tmp_path, mock_run):
        tooling = ProjectTooling(tmp_path, FakeToolchain([Check("test", ["go", "test"])]))
        tooling.failure_baseline = {"--- FAIL: TestOld"}
        mock_run.return_value = completed(1, "--- FAIL: TestOld (0.20s)\n")
        assert tooling.run_static_analysis().passed

    def test_new_failure_reported(self, tmp_path, mock_run):
        checks = [Check("build", ["go", "build"]), Check("test", ["go", "test"])]
        tooling = ProjectTooling(tmp_path, FakeToolchain(checks))
        mock_run.side_effect = [completed(0), completed(1, "--- FAIL: TestNew (0.01s)\n")]

        report = tooling.run_static_analysis()

        assert not report.passed
        assert report.failed_checks == ["test"]
        assert "### test (exit 1)" in report.failure_excerpt
        assert "--- FAIL: TestNew" in report.failure_excerpt

    def test_excerpt_bounded(self, tmp_path, mock_run):
        tooling = ProjectTooling(tmp_path, FakeToolchain([Check("lint", ["lint"])]), max_output=200)
        mock_run.return_value = completed(2, "error: " + "x" * 5000)
        report = tooling.run_static_analysis()
        assert len(report.failure_excerpt) <= 200

    def test_timeout(self, tmp_path, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="run-tests", timeout=5)
        result = ProjectTooling(tmp_path, FakeToolchain(), timeout=5).run_tests()
        assert result.timed_out
        assert result.exit_code == 124

    def test_missing_binary(self, tmp_path, mock_run):
        mock_run.side_effect = FileNotFoundError("run-tests")
        result = ProjectTooling(tmp_path, FakeToolchain()).run_tests()
        assert not result.passed
        assert result.exit_code == 127

    def test_red_tests_expected_to_fail(self, tmp_path, mock_run):
        mock_run.return_value = completed(1, "FAILED tests/test_a.py::test_new - assert False")
        assert ProjectTooling(tmp_path, FakeToolchain()).verify_red_tests().passed

    def test_red_tests_compile_error(self, tmp_path, mock_run):
        mock_run.return_value = completed(1, "", "ERROR collecting tests/test_a.py\nSyntax error in test_a.py")
        result = ProjectTooling(tmp_path, FakeToolchain()).verify_red_tests()
        assert not result.passed
        assert result.name == "test-verify"


class TestRegressionTracker:
    """Tests for the grow-only passing baseline."""

    def test_grows(self):
        tracker = RegressionTracker(10)
        ok, _ = tracker.check("12 passed")
        assert ok
        assert tracker.baseline == 12

    def test_drop_reported_baseline_kept(self):
        tracker = RegressionTracker(10)
        ok, message = tracker.check("8 passed, 2 failed")
        assert not ok
        assert "from 10 to 8" in message
        assert tracker.baseline == 10

    def test_unset_baseline_seeded(self):
        tracker = RegressionTracker()
        assert tracker.check("5 passed")[0]
        assert tracker.baseline == 5

    def test_unknown_count_passes(self):
        tracker = RegressionTracker(10)
        assert tracker.check("no summary")[0]
        assert tracker.baseline == 10
