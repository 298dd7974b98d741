"""
Generation worker integration for epicflow.

The worker is an external CLI (claude by default) that receives a prompt and
returns free-form text. Every phase invocation goes through the retry
controller; raw output is written to a per-phase log file.
"""

import json
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional

from epicflow.lib.agents_config import AgentsConfig, get_stage_command
from epicflow.lib.retry import InvocationResult, RetryController
from epicflow.lib.types import Phase

logger = logging.getLogger(__name__)


class GenerationWorker:
    """Runs the configured worker command for a phase."""

    def __init__(
        self,
        project_root: Path,
        config: AgentsConfig,
        retry: Optional[RetryController] = None,
        timeout: int = 600,
        on_command: Optional[Callable[[list[str], int, float], None]] = None,
    ):
        self.project_root = Path(project_root)
        self.config = config
        self.retry = retry or RetryController()
        self.timeout = timeout
        self.on_command = on_command

    def run(self, prompt: str, phase: Phase, timeout: Optional[int] = None,
            log_file: Optional[Path] = None) -> InvocationResult:
        """
        Invoke the worker for one phase.

        Args:
            prompt: Full prompt text
            phase: Phase being executed (selects the command from agents.yaml)
            timeout: Seconds before the invocation is killed
            log_file: Where to write the command and raw output

        Returns:
            InvocationResult; timed_out is set (exit 124) when the timeout hit
        """
        timeout = timeout or self.config.timeout_for(phase.value, self.timeout)
        command = get_stage_command(
            self.config,
            phase.value,
            {"prompt": prompt, "project_root": str(self.project_root)},
        )

        # Remove ANTHROPIC_API_KEY so claude uses its own OAuth credentials
        env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}

        def call() -> InvocationResult:
            start = time.time()
            try:
                result = subprocess.run(
                    command.cmd,
                    cwd=str(self.project_root),
                    input=command.get_stdin_input(prompt),
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    env=env,
                )
            except subprocess.TimeoutExpired as e:
                partial = e.stdout if isinstance(e.stdout, str) else ""
                invocation = InvocationResult.timeout(timeout, partial)
                self._log(log_file, command.cmd, invocation, "")
                return invocation
            except FileNotFoundError as e:
                invocation = InvocationResult(output=f"Worker binary not found: {e}", exit_code=127)
                self._log(log_file, command.cmd, invocation, "")
                return invocation

            if self.on_command:
                self.on_command(command.cmd[:1] + [phase.value], result.returncode, time.time() - start)

            output = result.stdout
            if command.output_format == "json":
                output = _unwrap_json_output(output)
            if result.returncode != 0 and result.stderr:
                output = f"{output}\n{result.stderr}"

            invocation = InvocationResult(output=output, exit_code=result.returncode)
            self._log(log_file, command.cmd, invocation, result.stderr)
            return invocation

        logger.info(f"Invoking worker for {phase.value} ({len(prompt.encode('utf-8'))}B prompt)")
        return self.retry.invoke(call)

    @staticmethod
    def _log(log_file: Optional[Path], cmd: list[str], result: InvocationResult, stderr: str):
        if not log_file:
            return
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "a") as f:
            f.write(
                f"=== COMMAND ===\n{cmd[0] if cmd else ''} ...\n\n"
                f"=== EXIT CODE ===\n{result.exit_code}\n\n"
                f"=== STDOUT ===\n{result.output}\n\n"
                f"=== STDERR ===\n{stderr}\n"
            )


def _unwrap_json_output(stdout: str) -> str:
    """claude --output-format json wraps the response in {"type":"result","result":"..."}."""
    try:
        wrapper = json.loads(stdout.strip())
    except json.JSONDecodeError:
        return stdout
    if isinstance(wrapper, dict) and isinstance(wrapper.get("result"), str):
        return wrapper["result"]
    return stdout


class DryRunWorker:
    """Stands in for the worker during --dry-run; nothing is executed."""

    def __init__(self):
        self.calls: list[Phase] = []

    def run(self, prompt: str, phase: Phase, timeout: Optional[int] = None,
            log_file: Optional[Path] = None) -> InvocationResult:
        self.calls.append(phase)
        logger.info(f"[DRY RUN] Would invoke worker for {phase.value} ({len(prompt)} chars)")
        output = (
            f"[DRY RUN] {phase.value} not executed\n"
            '```json\n{"status": "COMPLETE", "summary": "dry run"}\n```\n'
        )
        return InvocationResult(output=output, exit_code=0)
