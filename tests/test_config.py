"""Tests for epicflow.lib.config and epicflow.lib.envparse."""

import pytest

from epicflow.lib.config import ProjectLayout, RunOptions, load_pipeline_config
from epicflow.lib.envparse import load_env, parse_env_text, write_env
from epicflow.workflow.gates import GATES, gate_spec


class TestParseEnv:
    """Tests for the safe KEY=value parser."""

    def test_basic(self):
        values = parse_env_text('# comment\n\nA=1\nB="quoted value"\nC=\'single\'\n')
        assert values == {"A": "1", "B": "quoted value", "C": "single"}

    @pytest.mark.parametrize("value", ["`id`", "$(whoami)", "${HOME}", "a; rm", "a && b", "a | b"])
    def test_forbidden(self, value):
        with pytest.raises(ValueError, match="Forbidden"):
            parse_env_text(f"KEY={value}")

    def test_bad_key(self):
        with pytest.raises(ValueError, match="Invalid key"):
            parse_env_text("lower=1")

    def test_no_equals(self):
        with pytest.raises(ValueError, match="no '='"):
            parse_env_text("JUSTTEXT")

    def test_write_and_load(self, tmp_path):
        path = tmp_path / "sub" / "values.env"
        write_env(path, {"A": 1, "B": None}, header="generated")
        assert path.read_text().startswith("# generated\n")
        assert load_env(path) == {"A": "1", "B": ""}

    def test_write_refuses_unsafe(self, tmp_path):
        with pytest.raises(ValueError):
            write_env(tmp_path / "x.env", {"A": "$(id)"})

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_env(tmp_path / "missing.env")


class TestPipelineConfig:
    """Tests for epicflow.env loading."""

    def test_defaults(self, tmp_path):
        config = load_pipeline_config(tmp_path, environ={})
        assert config.max_prompt_size == 150000
        assert config.retry_max_attempts == 3
        assert config.protected_branches == ["main", "master"]
        assert config.gate_ceilings == {}

    def test_file_and_environment(self, tmp_path):
        (tmp_path / "epicflow.env").write_text(
            "MAX_PROMPT_SIZE=80000\nMAX_REVIEW_FIX_ATTEMPTS=5\nWORKER_TIMEOUT=60\n"
        )
        config = load_pipeline_config(tmp_path, environ={"WORKER_TIMEOUT": "120", "UNRELATED": "x"})

        assert config.max_prompt_size == 80000
        assert config.worker_timeout == 120
        assert config.gate_ceilings == {"review": 5}

    def test_empty_protected_branches(self, tmp_path):
        config = load_pipeline_config(tmp_path, environ={"PROTECTED_BRANCHES": ""})
        assert config.protected_branches == []

    def test_non_integer_falls_back(self, tmp_path):
        config = load_pipeline_config(tmp_path, environ={"RETRY_MAX_ATTEMPTS": "many"})
        assert config.retry_max_attempts == 3

    @pytest.mark.parametrize("value", ["three", "-1", "2.5"])
    def test_unusable_ceiling_keeps_gate_default(self, tmp_path, value):
        config = load_pipeline_config(tmp_path, environ={
            "MAX_REVIEW_FIX_ATTEMPTS": value,
            "MAX_ARCH_FIX_ATTEMPTS": "0",
        })
        assert config.gate_ceilings == {"arch-compliance": 0}
        assert gate_spec("review", config.gate_ceilings).max_attempts == GATES["review"].max_attempts
        assert gate_spec("arch-compliance", config.gate_ceilings).max_attempts == 0

    def test_fractional_retry_delays(self, tmp_path):
        (tmp_path / "epicflow.env").write_text("RETRY_INITIAL_DELAY=0.5\nRETRY_MAX_DELAY=2.5\n")
        config = load_pipeline_config(tmp_path, environ={})
        assert config.retry_initial_delay == 0.5
        assert config.retry_max_delay == 2.5


class TestLayout:
    def test_paths(self, tmp_path):
        layout = ProjectLayout.for_root(tmp_path)
        assert layout.metrics_dir == tmp_path.resolve() / "docs" / "sprint-artifacts" / "metrics"
        assert layout.uat_path("2").name == "epic-2-uat.md"
        assert layout.traceability_path("2").name == "epic-2-traceability.md"
        assert len(layout.story_dirs) == 3

    def test_run_options_defaults(self):
        options = RunOptions(dry_run=True)
        assert options.dry_run
        assert not options.skip_review
        assert options.start_from is None
