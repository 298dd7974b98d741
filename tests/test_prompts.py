"""Tests for the prompts module."""

import pytest

from epicflow.lib.prompts import (
    load_prompt,
    render_prompt,
    build_section,
    clear_cache,
    template_name,
    template_variables,
    PromptError,
    PROMPTS_DIR,
)
from epicflow.lib.types import Phase

STORY = {"story_id": "2-1-login", "story_file": "docs/stories/2-1-login.md"}

TEMPLATE_VARIABLES = {
    "design": {**STORY, "project_root": "/src/app"},
    "dev": {**STORY, "project_root": "/src/app"},
    "test_spec": {**STORY, "test_spec_path": "docs/sprint-artifacts/test-specs/2-1-login-test-spec.md"},
    "test_impl": {**STORY, "test_spec_path": "docs/sprint-artifacts/test-specs/2-1-login-test-spec.md"},
    "review": STORY,
    "test_quality": STORY,
    "arch": {**STORY, "architecture_doc": "docs/architecture.md"},
    "fix": {**STORY, "gate": "review", "attempt": 1, "max_attempts": 3},
    "traceability": {"epic_id": "2", "stories": "- 2-1-login", "story_count": 1,
                     "traceability_path": "docs/sprint-artifacts/traceability/epic-2-traceability.md"},
    "traceability_fix": {"epic_id": "2", "attempt": 1, "max_attempts": 3},
    "uat": {"epic_id": "2", "stories": "- 2-1-login", "uat_path": "docs/uat/epic-2-uat.md"},
}


@pytest.fixture(autouse=True)
def fresh_cache():
    clear_cache()
    yield
    clear_cache()


class TestTemplates:
    """Every shipped template renders with its documented variables."""

    def test_every_template_covered(self):
        shipped = {p.stem for p in PROMPTS_DIR.glob("*.md")}
        assert shipped == set(TEMPLATE_VARIABLES)

    @pytest.mark.parametrize("name", sorted(TEMPLATE_VARIABLES))
    def test_renders(self, name):
        text = render_prompt(name, **TEMPLATE_VARIABLES[name])
        assert "<!--" not in text
        assert "{{" not in text
        # Every template asks for a structured result block
        assert "```json" in text
        assert '"status"' in text

    def test_fix_mentions_attempt(self):
        text = render_prompt("fix", **TEMPLATE_VARIABLES["fix"])
        assert "fix attempt 1 of\n3" in text or "fix attempt 1 of 3" in text
        assert "FIX COMPLETE: 2-1-login" in text

    def test_review_sentinels(self):
        text = render_prompt("review", **STORY)
        assert "REVIEW PASSED: 2-1-login" in text
        assert "REVIEW FAILED: 2-1-login" in text


class TestLoadPrompt:
    def test_missing_template(self):
        with pytest.raises(PromptError, match="not found"):
            load_prompt("nonexistent")

    def test_missing_variable(self):
        with pytest.raises(PromptError, match="Missing required variable"):
            render_prompt("dev", story_id="2-1-login")

    def test_cached(self):
        assert load_prompt("dev") is load_prompt("dev")

    def test_extra_variables_ignored(self):
        text = render_prompt("review", extra="unused", **STORY)
        assert "2-1-login" in text

    def test_missing_lists_every_variable(self):
        with pytest.raises(PromptError, match="project_root, story_file"):
            render_prompt(Phase.DEV, story_id="2-1-login")


class TestTemplateNames:
    @pytest.mark.parametrize("phase,name", [
        (Phase.TEST_SPEC, "test_spec"),
        (Phase.ARCH_COMPLIANCE, "arch"),
        (Phase.TRACEABILITY_FIX, "traceability_fix"),
        ("uat", "uat"),
    ])
    def test_template_name(self, phase, name):
        assert template_name(phase) == name

    def test_every_worker_phase_has_template(self):
        internal = {Phase.TEST_VERIFY, Phase.STATIC_ANALYSIS, Phase.REGRESSION}
        for phase in Phase:
            if phase not in internal:
                assert (PROMPTS_DIR / f"{template_name(phase)}.md").exists()

    def test_variables(self):
        assert template_variables("fix") == {"story_id", "story_file", "gate", "attempt", "max_attempts"}

    def test_render_by_phase(self):
        assert render_prompt(Phase.REVIEW, **STORY) == render_prompt("review", **STORY)


class TestBuildSection:
    def test_with_content(self):
        assert build_section("body", "## Header") == "## Header\n\nbody\n"

    def test_empty_message(self):
        assert build_section(None, "## Header", "none") == "## Header\n\nnone\n"

    def test_nothing(self):
        assert build_section("", "## Header") == ""
