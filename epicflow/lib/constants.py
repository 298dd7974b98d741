"""Shared constants for epicflow."""

import re

# Epic IDs are numeric ("3") or short slugs ("auth")
EPIC_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')

# Process exit codes
EXIT_OK = 0
EXIT_STORY_FAILED = 1
EXIT_SETUP_ERROR = 2
EXIT_INTERRUPTED = 130
EXIT_TERMINATED = 143
EXIT_TIMEOUT = 124

# Story lifecycle statuses (as written to story documents)
STORY_PENDING = "pending"
STORY_IN_PROGRESS = "in-progress"
STORY_DONE = "done"
STORY_BLOCKED = "blocked"

# Default directory layout, relative to the project root
STORY_DIRS = ("docs/stories", "docs/sprint-artifacts", "docs/sprints")
EPICS_DIR = "docs/epics"
SPRINT_ARTIFACTS_DIR = "docs/sprint-artifacts"
UAT_DIR = "docs/uat"
TRACEABILITY_DIR = "docs/sprint-artifacts/traceability"
HANDOFF_DIR = "docs/handoffs"

# Prompt sizing
DEFAULT_MAX_PROMPT_SIZE = 150000
DEFAULT_PROMPT_RESERVE = 5000
DECISION_LOG_CONTEXT_LIMIT = 20000

# Tooling output sizing
DEFAULT_MAX_TEST_FAILURE_SIZE = 50000

# Checkpoints older than this are discarded
CHECKPOINT_MAX_AGE_DAYS = 7

# Metrics issue types
ISSUE_DEV_FAILED = "dev_phase_failed"
ISSUE_STATIC_ANALYSIS_FAILED = "static_analysis_failed"
ISSUE_STATIC_ANALYSIS_MAX_RETRIES = "static_analysis_max_retries"
ISSUE_ARCH_VIOLATIONS = "arch_violations"
ISSUE_REVIEW_MAX_RETRIES = "max_retries_exhausted"
ISSUE_REVIEW_NO_FINDINGS = "review_failed_without_findings"
ISSUE_TEST_QUALITY = "test_quality_concerns"
ISSUE_REGRESSION = "regression_detected"
ISSUE_TRACEABILITY_GAPS = "traceability_gaps"
ISSUE_COMMIT_FAILED = "commit_failed"

# Fix attempt outcomes
FIX_SUCCESS = "success"
FIX_FAILED = "failed"
FIX_MAX_RETRIES = "max_retries"

# Files that must never be staged by an automatic commit
SENSITIVE_FILE_PATTERNS = [
    r"\.env$",
    r"\.env\.",
    r"credentials\.json$",
    r"secrets\.json$",
    r"\.secrets$",
    r"\.pem$",
    r"\.key$",
    r"\.p12$",
    r"id_rsa",
    r"\.credentials$",
    r"\.npmrc$",
    r"\.pypirc$",
]

DEFAULT_PROTECTED_BRANCHES = ("main", "master")
