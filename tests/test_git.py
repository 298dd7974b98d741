"""Tests for epicflow.git module."""

import subprocess
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest

from epicflow.git.runner import run_git, GitResult, is_git_repo
from epicflow.git.status import (
    changed_since,
    current_branch,
    get_modified_tracked_files,
    has_uncommitted_changes,
    head_sha,
)
from epicflow.git.safety import check_branch_protection, find_sensitive_files, is_sensitive
from epicflow.git.commit import commit_named_files


def ok(stdout=""):
    return GitResult(returncode=0, stdout=stdout, stderr="")


class FakeGit:
    """Answers run_git calls from a table keyed by the leading arguments."""

    def __init__(self, responses=None):
        self.responses = {
            ("ls-files",): ok(),
            ("diff", "--name-only"): ok(),
            ("diff", "--name-only", "--cached"): ok(),
            ("add",): ok(),
            ("diff", "--cached", "--quiet"): GitResult(returncode=1, stdout="", stderr=""),
            ("commit",): ok("[feature 1a2b3c4] message"),
        }
        self.responses.update(responses or {})
        self.calls = []

    def __call__(self, args, cwd, timeout=30):
        self.calls.append(args)
        # Longest matching prefix wins
        for size in range(len(args), 0, -1):
            key = tuple(args[:size])
            if key in self.responses:
                return self.responses[key]
        return ok()

    def added(self):
        adds = [c for c in self.calls if c[0] == "add"]
        return adds[0][3:] if adds else []


@pytest.fixture
def fake_git():
    def install(responses=None):
        fake = FakeGit(responses)
        for target in ("epicflow.git.status.run_git", "epicflow.git.commit.run_git"):
            patcher = patch(target, fake)
            patcher.start()
            patchers.append(patcher)
        return fake

    patchers = []
    yield install
    for patcher in patchers:
        patcher.stop()


class TestGitResult:
    """Test GitResult dataclass."""

    def test_success_when_returncode_zero(self):
        assert GitResult(returncode=0, stdout="ok", stderr="").success is True

    def test_failure_when_timed_out(self):
        assert GitResult(returncode=0, stdout="ok", stderr="", timed_out=True).success is False


class TestRunGit:
    """Test run_git function."""

    @patch("epicflow.git.runner.subprocess.run")
    def test_passes_cwd_with_C_flag(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        run_git(["status", "--porcelain"], Path("/my/repo"))
        assert mock_run.call_args[0][0] == ["git", "-C", "/my/repo", "status", "--porcelain"]

    @patch("epicflow.git.runner.subprocess.run")
    def test_handles_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=30)
        result = run_git(["status"], Path("/tmp"))
        assert result.timed_out
        assert "timed out" in result.stderr

    @patch("epicflow.git.runner.subprocess.run")
    def test_missing_git_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError()
        result = run_git(["status"], Path("/tmp"))
        assert result.returncode == 127

    @patch("epicflow.git.runner.subprocess.run")
    def test_is_git_repo(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="true\n", stderr="")
        assert is_git_repo(Path("/tmp"))


class TestStatus:
    @patch("epicflow.git.status.run_git")
    def test_uncommitted(self, mock_run):
        mock_run.return_value = ok(" M file.txt\n")
        assert has_uncommitted_changes(Path("/tmp")) is True
        mock_run.return_value = ok("")
        assert has_uncommitted_changes(Path("/tmp")) is False

    def test_branch_and_head(self, fake_git):
        fake_git({("branch", "--show-current"): ok("feature/epic-2\n"), ("rev-parse",): ok("abc123\n")})
        assert current_branch(Path("/tmp")) == "feature/epic-2"
        assert head_sha(Path("/tmp")) == "abc123"

    def test_detached_head(self, fake_git):
        fake_git({("branch", "--show-current"): ok("")})
        assert current_branch(Path("/tmp")) is None

    def test_modified_tracked_deduplicated(self, fake_git):
        fake_git({
            ("diff", "--name-only"): ok("src/a.py\nsrc/b.py\n"),
            ("diff", "--name-only", "--cached"): ok("src/b.py\nsrc/c.py\n"),
        })
        assert get_modified_tracked_files(Path("/tmp")) == ["src/a.py", "src/b.py", "src/c.py"]

    def test_changed_since(self, fake_git):
        git = fake_git({("diff", "--name-only", "abc123..HEAD"): ok("src/a.py\ndocs/x.md\n")})
        assert changed_since(Path("/tmp"), "abc123") == ["src/a.py", "docs/x.md"]
        assert git.calls[-1] == ["diff", "--name-only", "abc123..HEAD"]


class TestSafety:
    """Tests for sensitive file and branch checks."""

    @pytest.mark.parametrize("path", [".env", "config/.env.local", "deploy/server.pem",
                                      "home/.ssh/id_rsa", "gcp/credentials.json", ".npmrc"])
    def test_sensitive(self, path):
        assert is_sensitive(path)

    @pytest.mark.parametrize("path", ["src/environment.py", "docs/keys.md", "README.md"])
    def test_not_sensitive(self, path):
        assert not is_sensitive(path)

    def test_find_sensitive(self):
        assert find_sensitive_files(["a.py", ".env", "b.key"]) == [".env", "b.key"]

    def test_protected_branch(self, fake_git):
        fake_git({("branch", "--show-current"): ok("main\n")})
        check = check_branch_protection(Path("/tmp"), ["main", "master"])
        assert not check.ok
        assert "PROTECTED_BRANCHES" in check.message

    def test_feature_branch_ok(self, fake_git):
        fake_git({("branch", "--show-current"): ok("feature/epic-2\n")})
        assert check_branch_protection(Path("/tmp")).ok

    def test_empty_list_disables(self, fake_git):
        fake_git({("branch", "--show-current"): ok("main\n")})
        assert check_branch_protection(Path("/tmp"), []).ok


class TestCommitNamedFiles:
    """Tests for named-file story commits."""

    def test_stages_reported_and_modified(self, tmp_path, fake_git):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "new.py").write_text("x = 1\n")
        git = fake_git({("diff", "--name-only"): ok("src/old.py\n"), ("rev-parse",): ok("1a2b3c4d5e\n")})

        result = commit_named_files(tmp_path, "feat(epic-2): complete 2-1", ["src/new.py"])

        assert result.committed
        assert git.added() == ["src/new.py", "src/old.py"]
        assert result.sha == "1a2b3c4d5e"
        assert ["commit", "-m", "feat(epic-2): complete 2-1"] in git.calls

    def test_only_named_paths_staged(self, tmp_path, fake_git):
        (tmp_path / "a.py").write_text("")
        git = fake_git()
        commit_named_files(tmp_path, "msg", ["a.py"])
        adds = [c for c in git.calls if c[0] == "add"]
        assert adds == [["add", "-A", "--", "a.py"]]

    def test_sensitive_reported_file_excluded(self, tmp_path, fake_git):
        (tmp_path / "app.py").write_text("")
        (tmp_path / "server.pem").write_text("")
        git = fake_git()

        result = commit_named_files(tmp_path, "msg", ["app.py", "server.pem"])

        assert result.excluded == ["server.pem"]
        assert git.added() == ["app.py"]

    def test_untracked_sensitive_aborts(self, tmp_path, fake_git):
        git = fake_git({("ls-files",): ok(".env\n")})

        result = commit_named_files(tmp_path, "msg", ["app.py"])

        assert not result.committed
        assert ".gitignore" in result.error
        assert not any(c[0] in ("add", "commit") for c in git.calls)

    def test_missing_reported_file_skipped(self, tmp_path, fake_git):
        git = fake_git()
        commit_named_files(tmp_path, "msg", ["ghost.py"])
        assert git.added() == []

    def test_nothing_staged(self, tmp_path, fake_git):
        git = fake_git({("diff", "--cached", "--quiet"): ok()})
        result = commit_named_files(tmp_path, "msg", [])
        assert not result.committed
        assert result.error == ""
        assert not any(c[0] == "commit" for c in git.calls)

    def test_commit_failure_reported(self, tmp_path, fake_git):
        (tmp_path / "a.py").write_text("")
        fake_git({("commit",): GitResult(returncode=1, stdout="", stderr="pre-commit hook failed")})
        result = commit_named_files(tmp_path, "msg", ["a.py"])
        assert not result.committed
        assert result.error == "pre-commit hook failed"
