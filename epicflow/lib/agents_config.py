"""
Worker command configuration.

agents.yaml in the project root picks the CLI command (and optionally the
timeout) for each phase. Without it every worker phase runs the default
command with the prompt on stdin.

Example agents.yaml:

    default: claude --dangerously-skip-permissions -p
    stages:
      review: claude --model opus --dangerously-skip-permissions -p
      uat: claude --output-format json -p {prompt}
    timeouts:
      dev: 1800

Command templates are split like a shell would split them, then each word has
its placeholders filled:

- {prompt}: the prompt as a single argument. Without it the prompt goes to stdin.
- {project_root}: absolute path of the project.
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from epicflow.lib.types import Phase

logger = logging.getLogger(__name__)

AGENTS_FILENAME = "agents.yaml"
DEFAULT_WORKER_COMMAND = "claude --dangerously-skip-permissions -p"

# Phases that never invoke the worker (run project tooling instead)
INTERNAL_PHASES = frozenset({Phase.TEST_VERIFY, Phase.STATIC_ANALYSIS, Phase.REGRESSION})

DEFAULT_STAGE_COMMANDS = {
    phase.value: DEFAULT_WORKER_COMMAND
    for phase in Phase
    if phase not in INTERNAL_PHASES
}

_PLACEHOLDER = re.compile(r'\{(\w+)\}')
_OUTPUT_FORMAT = re.compile(r'--output-format(?:=|\s+)(\S+)')


@dataclass
class AgentsConfig:
    """Worker command per phase value ('dev', 'test-quality', ...)."""
    stages: dict[str, str] = field(default_factory=lambda: DEFAULT_STAGE_COMMANDS.copy())
    timeouts: dict[str, int] = field(default_factory=dict)

    def template(self, stage: str) -> str:
        if stage not in self.stages:
            raise ValueError(f"Unknown stage: {stage}")
        return self.stages[stage]

    def timeout_for(self, stage: str, default: int) -> int:
        return self.timeouts.get(stage, default)


def _phase_map(section, label: str) -> dict[str, object]:
    """Normalize a yaml mapping keyed by phase name (test_quality -> test-quality)."""
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"'{label}' must be a mapping")
    return {Phase.parse(str(name)).value: value for name, value in section.items()}


def load_agents_config(project_dir: Optional[Path]) -> AgentsConfig:
    """
    Read agents.yaml from a project.

    A missing or unreadable file gives the defaults; a broken file is logged
    and ignored rather than half-applied.
    """
    if project_dir is None:
        return AgentsConfig()
    path = Path(project_dir) / AGENTS_FILENAME
    if not path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(path.read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError("top level must be a mapping")
        default = data.get("default")
        stages = {name: str(default or command) for name, command in DEFAULT_STAGE_COMMANDS.items()}
        stages.update({name: str(cmd) for name, cmd in _phase_map(data.get("stages"), "stages").items()})
        timeouts = {name: int(sec) for name, sec in _phase_map(data.get("timeouts"), "timeouts").items()}
    except (yaml.YAMLError, ValueError, TypeError) as e:
        logger.warning(f"Ignoring {path}: {e}")
        return AgentsConfig()

    logger.debug(f"Loaded worker commands from {path}")
    return AgentsConfig(stages=stages, timeouts=timeouts)


@dataclass
class StageCommand:
    """A phase's worker command, ready for subprocess."""
    cmd: list[str]
    prompt_via_stdin: bool
    output_format: str | None  # e.g. "json" for --output-format json

    def get_stdin_input(self, prompt: str) -> str | None:
        return prompt if self.prompt_via_stdin else None


def get_stage_command(config: AgentsConfig, stage: str, context: dict[str, str] | None = None) -> StageCommand:
    """
    Build the command for a phase.

    Placeholders are filled per word after splitting, so a prompt with quotes
    or newlines stays one argument.

    Raises:
        ValueError: if the phase has no configured command
    """
    template = config.template(stage)
    context = context or {}
    unresolved = set()

    def fill(match: re.Match) -> str:
        name = match.group(1)
        if name in context:
            return str(context[name])
        unresolved.add(name)
        return match.group(0)

    cmd = [_PLACEHOLDER.sub(fill, word) for word in shlex.split(template)]
    # {prompt} is only "unresolved" when the caller didn't pass one yet
    unresolved.discard("prompt")
    if unresolved:
        logger.error(f"Stage '{stage}' has unsubstituted variables {sorted(unresolved)}: {template}")

    match = _OUTPUT_FORMAT.search(template)
    return StageCommand(
        cmd=cmd,
        prompt_via_stdin="{prompt}" not in template,
        output_format=match.group(1) if match else None,
    )


def get_stage_binary(config: AgentsConfig, stage: str) -> str:
    """Executable a phase runs (first word of its command)."""
    words = shlex.split(config.template(stage))
    return words[0] if words else ""


def check_binary_available(binary: str) -> bool:
    return bool(binary) and shutil.which(binary) is not None


@dataclass
class BinaryCheckResult:
    ok: bool
    missing_binary: str | None = None
    stages_affected: list[str] = field(default_factory=list)
    error_message: str | None = None


def validate_stage_binaries(config: AgentsConfig, stages: list[str]) -> BinaryCheckResult:
    """
    Check every phase's executable is on PATH before the run starts.

    Reports the first missing executable with the phases that need it and an
    agents.yaml snippet to switch them to something else.
    """
    needed: dict[str, list[str]] = {}
    for stage in stages:
        if stage in config.stages:
            needed.setdefault(get_stage_binary(config, stage), []).append(stage)

    missing = next((binary for binary in needed if not check_binary_available(binary)), None)
    if missing is None:
        return BinaryCheckResult(ok=True)

    affected = needed[missing]
    snippet = "\n".join(f"       {stage}: {DEFAULT_WORKER_COMMAND}" for stage in affected)
    message = (
        f"Required tool '{missing}' is not installed.\n\n"
        f"Phases that need it: {', '.join(affected)}\n\n"
        f"Install {missing}, or point these phases at another tool in {AGENTS_FILENAME}:\n\n"
        f"     stages:\n{snippet}"
    )
    return BinaryCheckResult(ok=False, missing_binary=missing, stages_affected=affected, error_message=message)
