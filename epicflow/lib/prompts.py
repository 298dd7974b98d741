"""
Phase prompt templates.

Each worker phase has a Markdown template in epicflow/prompts/. Templates are
str.format() strings: {story_id} is a placeholder, {{ and }} are literal braces
(the JSON result block every template asks for). HTML comments document the
template and are stripped before the worker sees it.
"""

import logging
import re
import string
from functools import lru_cache
from pathlib import Path

from epicflow.lib.types import Phase

logger = logging.getLogger(__name__)

__all__ = [
    "PromptError", "PROMPTS_DIR", "template_name", "load_prompt", "template_variables",
    "render_prompt", "build_section", "clear_cache",
]

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

_COMMENT = re.compile(r'<!--.*?-->\s*', re.DOTALL)

# Phases whose template name isn't just the phase value with underscores
_TEMPLATE_OVERRIDES = {Phase.ARCH_COMPLIANCE: "arch"}


class PromptError(Exception):
    """A template is missing or can't be rendered."""
    pass


def template_name(phase: Phase | str) -> str:
    """Template file stem for a phase ('test-spec' -> 'test_spec')."""
    if isinstance(phase, Phase):
        return _TEMPLATE_OVERRIDES.get(phase, phase.value.replace("-", "_"))
    return phase


@lru_cache(maxsize=32)
def load_prompt(name: str) -> str:
    """Template text with comments stripped. Cached per name."""
    path = PROMPTS_DIR / f"{name}.md"
    if not path.exists():
        raise PromptError(f"Prompt template '{name}' not found (expected {path})")
    logger.debug(f"Loading prompt template {name}")
    return _COMMENT.sub("", path.read_text()).lstrip()


def template_variables(name: str) -> set[str]:
    """Placeholder names a template needs."""
    return {
        field.split(".")[0].split("[")[0]
        for _, field, _, _ in string.Formatter().parse(load_prompt(name))
        if field
    }


def render_prompt(phase: Phase | str, **variables) -> str:
    """
    Render the template for a phase.

    Extra variables are ignored so callers can pass a shared set.

    Raises:
        PromptError: if the template is missing or a placeholder has no value
    """
    name = template_name(phase)
    template = load_prompt(name)
    missing = template_variables(name) - set(variables)
    if missing:
        raise PromptError(
            f"Missing required variable(s) {', '.join(sorted(missing))} in prompt '{name}' "
            f"(given: {', '.join(sorted(variables)) or 'none'})"
        )
    return template.format(**variables)


def build_section(content: str | None, header: str, empty_msg: str | None = None) -> str:
    """Markdown section, or '' when there is nothing to say."""
    body = content or empty_msg
    if body is None or body == "":
        return ""
    return f"{header}\n\n{body}\n"


def clear_cache():
    load_prompt.cache_clear()
