"""
Configuration loaders for epicflow.

Pipeline settings come from an optional epicflow.env in the project root, with
process environment variables of the same name taking precedence. Run flags
from the CLI are a pydantic model so they can be passed straight into the
Prefect flow.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from . import envparse
from .constants import (
    CHECKPOINT_MAX_AGE_DAYS,
    DEFAULT_MAX_PROMPT_SIZE,
    DEFAULT_MAX_TEST_FAILURE_SIZE,
    DEFAULT_PROMPT_RESERVE,
    DEFAULT_PROTECTED_BRANCHES,
    EPICS_DIR,
    HANDOFF_DIR,
    SPRINT_ARTIFACTS_DIR,
    STORY_DIRS,
    TRACEABILITY_DIR,
    UAT_DIR,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "epicflow.env"


@dataclass
class PipelineConfig:
    """Tunables from epicflow.env / environment."""
    max_prompt_size: int = DEFAULT_MAX_PROMPT_SIZE
    prompt_reserve: int = DEFAULT_PROMPT_RESERVE
    retry_max_attempts: int = 3
    retry_initial_delay: float = 5
    retry_max_delay: float = 60
    worker_timeout: int = 600
    tool_timeout: int = 900
    max_test_failure_size: int = DEFAULT_MAX_TEST_FAILURE_SIZE
    checkpoint_max_age_days: int = CHECKPOINT_MAX_AGE_DAYS
    protected_branches: list[str] = field(default_factory=lambda: list(DEFAULT_PROTECTED_BRANCHES))
    # Fix ceilings keyed by gate name; missing keys fall back to gate defaults
    gate_ceilings: dict[str, int] = field(default_factory=dict)


@dataclass
class ProjectLayout:
    """Filesystem locations for one project."""
    root: Path
    story_dirs: list[Path]
    epics_dir: Path
    artifacts_dir: Path
    uat_dir: Path
    traceability_dir: Path

    @classmethod
    def for_root(cls, root: Path) -> "ProjectLayout":
        root = Path(root).resolve()
        return cls(
            root=root,
            story_dirs=[root / d for d in STORY_DIRS],
            epics_dir=root / EPICS_DIR,
            artifacts_dir=root / SPRINT_ARTIFACTS_DIR,
            uat_dir=root / UAT_DIR,
            traceability_dir=root / TRACEABILITY_DIR,
        )

    @property
    def metrics_dir(self) -> Path:
        return self.artifacts_dir / "metrics"

    @property
    def test_specs_dir(self) -> Path:
        return self.artifacts_dir / "test-specs"

    @property
    def handoff_dir(self) -> Path:
        return self.root / HANDOFF_DIR

    @property
    def chain_plan_path(self) -> Path:
        return self.artifacts_dir / "chain-plan.yaml"

    def uat_path(self, epic_id: str) -> Path:
        return self.uat_dir / f"epic-{epic_id}-uat.md"

    def traceability_path(self, epic_id: str) -> Path:
        return self.traceability_dir / f"epic-{epic_id}-traceability.md"


class RunOptions(BaseModel):
    """Flags controlling one epic run."""
    dry_run: bool = False
    skip_review: bool = False
    no_commit: bool = False
    parallel: bool = False  # accepted, has no effect
    verbose: bool = False
    start_from: Optional[str] = None
    skip_done: bool = False
    resume: bool = False
    skip_arch: bool = False
    skip_test_quality: bool = False
    skip_traceability: bool = False
    skip_static_analysis: bool = False
    skip_design: bool = False
    skip_regression: bool = False
    skip_tdd: bool = False
    skip_test_spec: bool = False
    skip_test_impl: bool = False
    legacy_output: bool = False


_GATE_CEILING_KEYS = {
    "review": "MAX_REVIEW_FIX_ATTEMPTS",
    "arch-compliance": "MAX_ARCH_FIX_ATTEMPTS",
    "test-quality": "MAX_TEST_QUALITY_FIX_ATTEMPTS",
    "static-analysis": "MAX_STATIC_ANALYSIS_FIX_ATTEMPTS",
    "traceability": "MAX_TRACEABILITY_FIX_ATTEMPTS",
}


def _int(env: dict, key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {key}={raw!r}, using {default}")
        return default


def _float(env: dict, key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {key}={raw!r}, using {default}")
        return default


def _ceilings(env: dict) -> dict[str, int]:
    """Configured fix ceilings; an unusable value leaves the gate's own default in force."""
    ceilings = {}
    for gate, key in _GATE_CEILING_KEYS.items():
        raw = env.get(key, "")
        try:
            value = int(raw)
        except ValueError:
            if raw:
                logger.warning(f"Ignoring {key}={raw!r}, {gate} keeps its default ceiling")
            continue
        if value < 0:
            logger.warning(f"Ignoring negative {key}={raw!r}, {gate} keeps its default ceiling")
            continue
        ceilings[gate] = value
    return ceilings


def load_pipeline_config(project_root: Path, environ: Optional[dict] = None) -> PipelineConfig:
    """Load epicflow.env (if present) overlaid with environment variables."""
    env: dict[str, str] = {}
    config_path = Path(project_root) / CONFIG_FILENAME
    if config_path.exists():
        env.update(envparse.load_env(config_path))

    environ = os.environ if environ is None else environ
    known = {
        "MAX_PROMPT_SIZE", "PROMPT_RESERVE_BYTES", "RETRY_MAX_ATTEMPTS",
        "RETRY_INITIAL_DELAY", "RETRY_MAX_DELAY", "WORKER_TIMEOUT", "TOOL_TIMEOUT",
        "PROTECTED_BRANCHES", "MAX_TEST_FAILURE_SIZE", "CHECKPOINT_MAX_AGE_DAYS",
        *_GATE_CEILING_KEYS.values(),
    }
    for key in known:
        if key in environ:
            env[key] = environ[key]

    # PROTECTED_BRANCHES='' disables branch protection
    if "PROTECTED_BRANCHES" in env:
        protected = env["PROTECTED_BRANCHES"].split()
    else:
        protected = list(DEFAULT_PROTECTED_BRANCHES)

    return PipelineConfig(
        max_prompt_size=_int(env, "MAX_PROMPT_SIZE", DEFAULT_MAX_PROMPT_SIZE),
        prompt_reserve=_int(env, "PROMPT_RESERVE_BYTES", DEFAULT_PROMPT_RESERVE),
        retry_max_attempts=_int(env, "RETRY_MAX_ATTEMPTS", 3),
        retry_initial_delay=_float(env, "RETRY_INITIAL_DELAY", 5),
        retry_max_delay=_float(env, "RETRY_MAX_DELAY", 60),
        worker_timeout=_int(env, "WORKER_TIMEOUT", 600),
        tool_timeout=_int(env, "TOOL_TIMEOUT", 900),
        max_test_failure_size=_int(env, "MAX_TEST_FAILURE_SIZE", DEFAULT_MAX_TEST_FAILURE_SIZE),
        checkpoint_max_age_days=_int(env, "CHECKPOINT_MAX_AGE_DAYS", CHECKPOINT_MAX_AGE_DAYS),
        protected_branches=protected,
        gate_ceilings=_ceilings(env),
    )
