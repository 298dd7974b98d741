"""
Story discovery and status bookkeeping.

Stories are markdown documents found in the configured story directories,
either by naming convention ("2-1-login.md", "story-2.1-login.md",
"story-2-1-login.md") or because their content references the epic
("Epic: 2"). Status lives in the document's "Status:" line and, when the
project has one, in sprint-status.yaml under development_status.
"""

import logging
import re
from pathlib import Path
from typing import Optional

import yaml

from epicflow.lib.config import ProjectLayout
from epicflow.lib.types import Story

logger = logging.getLogger(__name__)

_STATUS_LINE = re.compile(r'^Status:[ \t]*(.*)$', re.MULTILINE)
_VERSION_PART = re.compile(r'(\d+)')


def version_key(name: str) -> list:
    """Sort key comparing digit runs numerically (like sort -V)."""
    return [(0, int(part), "") if part.isdigit() else (1, 0, part)
            for part in _VERSION_PART.split(name) if part]


def _references_epic(text: str, epic_id: str) -> bool:
    eid = re.escape(epic_id)
    pattern = rf'(Epic\s*:\s*{eid}([^0-9]|$)|epic-{eid}([^0-9]|$)|Epic\s+{eid}([^0-9]|$))'
    return re.search(pattern, text, re.MULTILINE) is not None


# Documents epicflow itself writes next to the stories (decision log, handoffs, UAT)
_GENERATED_DOC = re.compile(r'^epic-[\w.-]+-(decisions|handoff|uat|traceability)\.md$')


def _matches_name(name: str, epic_id: str) -> bool:
    eid = re.escape(epic_id)
    return any(re.match(p, name) for p in (
        rf'^{eid}-\d+-.+\.md$',
        rf'^story-{eid}\.\d+-.+\.md$',
        rf'^story-{eid}-\d+-.+\.md$',
    ))


def discover_stories(epic_id: str, story_dirs: list[Path]) -> list[Story]:
    """
    Find the stories belonging to an epic.

    Returns:
        Stories deduplicated by resolved path, in version order of their ids
    """
    found: dict[Path, Story] = {}
    for directory in story_dirs:
        if not directory.is_dir():
            continue
        for path in sorted(directory.glob("*.md")):
            resolved = path.resolve()
            if resolved in found or _GENERATED_DOC.match(path.name):
                continue
            if _matches_name(path.name, epic_id):
                matched = True
            else:
                try:
                    matched = _references_epic(path.read_text(errors="replace"), epic_id)
                except OSError as e:
                    logger.warning(f"Could not read {path}: {e}")
                    matched = False
            if matched:
                found[resolved] = Story(id=path.stem, path=path, status=read_story_status(path) or "")

    return sorted(found.values(), key=lambda s: (version_key(s.id), str(s.path)))


def find_epic_file(epic_id: str, epics_dir: Path) -> Optional[Path]:
    """Locate the epic document (epic-3.md, epic-3-auth.md, epic-003-auth.md, 3.md)."""
    if not epics_dir.is_dir():
        return None
    candidates = [f"epic-{epic_id}.md", f"epic-{epic_id}-*.md"]
    if epic_id.isdigit():
        candidates += [f"epic-{int(epic_id):03d}-*.md", f"epic-0{epic_id}-*.md"]
    candidates.append(f"{epic_id}.md")

    for pattern in candidates:
        matches = sorted(epics_dir.glob(pattern))
        if matches:
            return matches[0]
    return None


def read_story_status(path: Path) -> Optional[str]:
    """Value of the document's Status: line, lower-cased, or None."""
    try:
        match = _STATUS_LINE.search(path.read_text(errors="replace"))
    except OSError:
        return None
    return match.group(1).strip().lower() if match else None


def update_story_status(path: Path, status: str) -> bool:
    """Rewrite the Status: line. Returns False if the document has none."""
    text = path.read_text()
    if not _STATUS_LINE.search(text):
        logger.warning(f"No Status field found in story file: {path.name}")
        return False
    path.write_text(_STATUS_LINE.sub(f"Status: {status}", text, count=1))
    logger.debug(f"Updated story status: {path.stem} -> {status}")
    return True


def sprint_status_key(story_id: str) -> str:
    """Normalize a story id to its sprint-status key ("story-1.2-x" -> "1-2-x")."""
    for pattern in (r'^(\d+)-(\d+)-(.+)$', r'^story-(\d+)\.(\d+)-(.+)$', r'^story-(\d+)-(\d+)-(.+)$'):
        match = re.match(pattern, story_id)
        if match:
            return "-".join(match.groups())
    return story_id


class SprintStatusWriter:
    """Strategy for editing development_status in sprint-status.yaml."""
    name = "base"

    def supports(self, text: str) -> bool:
        raise NotImplementedError

    def write(self, text: str, key: str, status: str) -> str:
        raise NotImplementedError


class LineEditWriter(SprintStatusWriter):
    """Edits "  key: value" lines in place; keeps comments and layout."""
    name = "line-edit"

    def supports(self, text: str) -> bool:
        return re.search(r'^development_status:\s*$', text, re.MULTILINE) is not None

    def write(self, text: str, key: str, status: str) -> str:
        pattern = re.compile(rf'^([ \t]+{re.escape(key)}:)[^\n#]*?([ \t]*#.*)?$', re.MULTILINE)
        return pattern.sub(lambda m: f"{m.group(1)} {status}{m.group(2) or ''}", text, count=1)


class YamlDocumentWriter(SprintStatusWriter):
    """Round-trips the whole document through PyYAML (drops comments)."""
    name = "yaml-document"

    def supports(self, text: str) -> bool:
        return True

    def write(self, text: str, key: str, status: str) -> str:
        data = yaml.safe_load(text) or {}
        data["development_status"][key] = status
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


SPRINT_STATUS_WRITERS: list[SprintStatusWriter] = [LineEditWriter(), YamlDocumentWriter()]


class SprintStatus:
    """sprint-status.yaml for a project, with the writer chosen once."""

    FILENAME = "sprint-status.yaml"

    def __init__(self, path: Path):
        self.path = path
        text = path.read_text()
        self.writer = next(w for w in SPRINT_STATUS_WRITERS if w.supports(text))
        logger.debug(f"Sprint status {path} using {self.writer.name} writer")

    @classmethod
    def locate(cls, layout: ProjectLayout) -> Optional["SprintStatus"]:
        """Search sprint artifacts, docs/sprints, then docs."""
        for directory in (layout.artifacts_dir, layout.root / "docs" / "sprints", layout.root / "docs"):
            path = directory / cls.FILENAME
            if path.is_file():
                return cls(path)
        return None

    def entries(self) -> dict:
        try:
            data = yaml.safe_load(self.path.read_text()) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Failed to parse {self.path}: {e}")
            return {}
        status = data.get("development_status") if isinstance(data, dict) else None
        return status if isinstance(status, dict) else {}

    def update(self, story_id: str, status: str) -> bool:
        key = sprint_status_key(story_id)
        if key not in self.entries():
            logger.debug(f"Story key '{key}' not found in {self.path.name}")
            return False
        self.path.write_text(self.writer.write(self.path.read_text(), key, status))
        logger.info(f"Updated sprint status: {key} -> {status}")
        return True
