"""Tests for agents.yaml loading and worker command building."""

import pytest

from epicflow.lib.agents_config import (
    AgentsConfig,
    DEFAULT_STAGE_COMMANDS,
    DEFAULT_WORKER_COMMAND,
    get_stage_binary,
    get_stage_command,
    load_agents_config,
    validate_stage_binaries,
)


@pytest.fixture
def agents_yaml(tmp_path):
    def write(text):
        (tmp_path / "agents.yaml").write_text(text)
        return load_agents_config(tmp_path)
    return write


class TestLoading:
    def test_no_project(self):
        assert load_agents_config(None).stages == DEFAULT_STAGE_COMMANDS

    def test_no_file(self, tmp_path):
        assert load_agents_config(tmp_path).stages == DEFAULT_STAGE_COMMANDS

    def test_only_worker_phases_get_commands(self):
        assert {"static-analysis", "regression", "test-verify"}.isdisjoint(DEFAULT_STAGE_COMMANDS)
        assert DEFAULT_STAGE_COMMANDS["traceability-fix"] == DEFAULT_WORKER_COMMAND

    def test_stage_overrides_accept_underscored_names(self, agents_yaml):
        config = agents_yaml(
            "stages:\n"
            "  review: opus-agent -p {prompt}\n"
            "  test_quality: other-agent -p\n"
        )
        assert config.template("review") == "opus-agent -p {prompt}"
        assert config.template("test-quality") == "other-agent -p"
        assert config.template("design") == DEFAULT_WORKER_COMMAND

    def test_default_then_stage(self, agents_yaml):
        config = agents_yaml("default: my-agent -p\nstages:\n  uat: uat-agent\n")
        assert config.template("dev") == "my-agent -p"
        assert config.template("uat") == "uat-agent"

    @pytest.mark.parametrize("text", [
        "stages: [unclosed\n",
        "stages:\n  deploy: x\n",
        "stages:\n  - dev\n",
        "- just\n- a list\n",
        "timeouts:\n  dev: soon\n",
    ])
    def test_broken_file_ignored_whole(self, agents_yaml, text):
        config = agents_yaml(text)
        assert config.stages == DEFAULT_STAGE_COMMANDS
        assert config.timeouts == {}

    def test_timeouts(self, agents_yaml):
        config = agents_yaml("timeouts:\n  dev: 1800\n  test_quality: 300\n")
        assert config.timeout_for("dev", 600) == 1800
        assert config.timeout_for("test-quality", 600) == 300
        assert config.timeout_for("review", 600) == 600


class TestStageCommand:
    def test_prompt_on_stdin_by_default(self):
        command = get_stage_command(AgentsConfig(), "dev", {"prompt": "build it"})
        assert command.cmd == DEFAULT_WORKER_COMMAND.split()
        assert command.get_stdin_input("build it") == "build it"
        assert command.output_format is None

    def test_prompt_placeholder_is_one_argument(self):
        prompt = 'fix the "quoted" string and \'this\' too\nline two'
        config = AgentsConfig(stages={"review": "agent -p {prompt} --output-format json"})
        command = get_stage_command(config, "review", {"prompt": prompt})
        assert command.cmd == ["agent", "-p", prompt, "--output-format", "json"]
        assert not command.prompt_via_stdin
        assert command.get_stdin_input(prompt) is None
        assert command.output_format == "json"

    def test_project_root_inside_a_word(self):
        config = AgentsConfig(stages={"dev": "agent --cwd={project_root} -p"})
        command = get_stage_command(config, "dev", {"project_root": "/src/app"})
        assert command.cmd == ["agent", "--cwd=/src/app", "-p"]

    def test_unfilled_placeholder_left_as_is(self):
        config = AgentsConfig(stages={"dev": "agent --model {model}"})
        assert get_stage_command(config, "dev").cmd == ["agent", "--model", "{model}"]

    def test_equals_output_format(self):
        config = AgentsConfig(stages={"uat": "agent --output-format=stream-json -p"})
        assert get_stage_command(config, "uat").output_format == "stream-json"

    @pytest.mark.parametrize("lookup", [get_stage_command, get_stage_binary])
    def test_unknown_stage(self, lookup):
        with pytest.raises(ValueError, match="Unknown stage"):
            lookup(AgentsConfig(), "deploy")


class TestBinaries:
    def test_default_binary(self):
        assert get_stage_binary(AgentsConfig(), "review") == "claude"

    def test_missing_binary_names_phases_and_fix(self):
        config = AgentsConfig(stages={
            "dev": "definitely-not-installed-agent -p",
            "fix": "definitely-not-installed-agent -p",
            "review": "sh -c",
        })
        result = validate_stage_binaries(config, ["dev", "review", "fix"])
        assert not result.ok
        assert result.missing_binary == "definitely-not-installed-agent"
        assert result.stages_affected == ["dev", "fix"]
        assert "is not installed" in result.error_message
        assert "agents.yaml" in result.error_message

    def test_unconfigured_stages_not_checked(self):
        config = AgentsConfig(stages={"dev": "sh -c"})
        assert validate_stage_binaries(config, ["dev", "fix"]).ok
