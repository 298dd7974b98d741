"""Tests for the epicflow command line."""

import sys

import pytest

from epicflow import cli
from epicflow.lib.config import ProjectLayout
from epicflow.lib.constants import EXIT_SETUP_ERROR
from epicflow.lib.metrics import MetricsRecorder, metrics_path
from epicflow.runner.checkpoint import Checkpoint, CheckpointManager
from epicflow.commands.run import options_from_args


@pytest.fixture
def project(tmp_path):
    (tmp_path / "docs" / "epics").mkdir(parents=True)
    (tmp_path / "docs" / "epics" / "epic-3.md").write_text("# Epic 3: Search\n")
    stories = tmp_path / "docs" / "stories"
    stories.mkdir(parents=True)
    (stories / "3-1-index.md").write_text("# Story 3.1: Build the search index\n\nStatus: done\n")
    (stories / "3-2-query.md").write_text(
        "# Story 3.2: Query parser with operators, phrases and field filters\n\nStatus: review\n"
    )
    return tmp_path


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["epicflow", *argv])
    return cli.main()


class TestList:
    def test_lists_stories(self, project, monkeypatch, capsys):
        assert run_cli(monkeypatch, "-C", str(project), "list", "3") == 0
        out = capsys.readouterr().out
        assert "epic-3.md" in out
        assert "3-1-index" in out and "done" in out
        assert "3-2-query" in out and "in-progress" in out
        assert "..." in out
        assert "2 story(s), 1 done" in out

    def test_no_stories(self, tmp_path, monkeypatch, capsys):
        assert run_cli(monkeypatch, "-C", str(tmp_path), "list", "8") == 0
        assert "No stories found" in capsys.readouterr().out


class TestStatus:
    def test_nothing_recorded(self, project, monkeypatch, capsys):
        assert run_cli(monkeypatch, "-C", str(project), "status", "3") == 0
        out = capsys.readouterr().out
        assert "Running:        no" in out
        assert "Checkpoint:     none" in out
        assert "Metrics:        none" in out

    def test_checkpoint_and_metrics(self, project, monkeypatch, capsys):
        layout = ProjectLayout.for_root(project)
        CheckpointManager(layout.artifacts_dir).save(
            Checkpoint("3", last_index=0, last_story_id="3-1-index", completed=1), exit_code=130,
        )
        metrics = MetricsRecorder(metrics_path(layout.metrics_dir, "3"), "3", total=2)
        metrics.add_issue("3-2-query", "max_retries_exhausted", "review still failing")
        metrics.set_counts(2, 1, 1, 0)

        run_cli(monkeypatch, "-C", str(project), "status", "3")

        out = capsys.readouterr().out
        assert "next story index 1" in out
        assert "interrupted with exit code 130" in out
        assert "epicflow run 3 --resume" in out
        assert "1 completed, 1 failed, 0 skipped of 2" in out
        assert "[max_retries_exhausted] 3-2-query: review still failing" in out


class TestRun:
    def test_dry_run(self, project, monkeypatch, capsys):
        (project / "docs" / "stories" / "3-1-index.md").write_text("# Story 3.1\n\nStatus: ready-for-dev\n")
        assert run_cli(monkeypatch, "-C", str(project), "run", "3", "--dry-run", "--no-prefect") == 0
        out = capsys.readouterr().out
        assert "DRY RUN" in out
        assert "EPIC EXECUTION COMPLETE" in out
        assert "Status: ready-for-dev" in (project / "docs" / "stories" / "3-1-index.md").read_text()

    def test_project_root_after_subcommand(self, project, tmp_path, monkeypatch, capsys):
        (project / "docs" / "stories" / "3-1-index.md").write_text("# Story 3.1\n\nStatus: ready-for-dev\n")
        monkeypatch.chdir(tmp_path / "docs")
        assert run_cli(monkeypatch, "run", "3", "--dry-run", "--no-prefect", "--project-root", str(project)) == 0
        assert "EPIC EXECUTION COMPLETE" in capsys.readouterr().out
        assert run_cli(monkeypatch, "-C", str(project), "list", "3") == 0
        assert "2 story(s)" in capsys.readouterr().out

    def test_setup_error_exit_code(self, tmp_path, monkeypatch, capsys):
        assert run_cli(monkeypatch, "-C", str(tmp_path), "run", "7", "--no-prefect") == EXIT_SETUP_ERROR
        assert "ERROR: No stories found for epic 7" in capsys.readouterr().out

    def test_missing_project_root(self, tmp_path, monkeypatch):
        with pytest.raises(SystemExit) as exc_info:
            run_cli(monkeypatch, "-C", str(tmp_path / "nope"), "status", "1")
        assert exc_info.value.code == 2

    def test_options_from_flags(self, monkeypatch):
        captured = {}
        monkeypatch.setattr(cli.cmd_run_module, "execute_epic",
                            lambda root, epic_id, options, use_prefect: captured.update(
                                epic_id=epic_id, options=options, use_prefect=use_prefect) or 0)
        monkeypatch.setattr(sys, "argv", ["epicflow", "run", "5", "--skip-arch", "--start-from", "5-3",
                                          "--resume", "--no-commit"])
        assert cli.main() == 0
        options = captured["options"]
        assert captured["epic_id"] == "5"
        assert captured["use_prefect"] is True
        assert options.skip_arch and options.resume and options.no_commit
        assert options.start_from == "5-3"
        assert not options.dry_run


def test_options_from_args_ignores_unknown():
    class Args:
        dry_run = True
        no_prefect = True
        epic_id = "1"
    assert options_from_args(Args()).dry_run is True
