"""
Story list persistence (prd.json).

A working directory holds one prd.json with the project's stories. The
file is schema-checked when read and before every write. Stories are
never deleted: the loop only flips `passes` once an iteration for the
story has been durably recorded.
"""

import json
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from storyloop.lib import validate
from storyloop.runner.errors import ConfigError

logger = logging.getLogger(__name__)

PRD_FILENAME = "prd.json"
PRD_VERSION = "1.0"
DEFAULT_PRIORITY = 10

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class Story:
    """One unit of work. Lower priority runs sooner."""
    id: str
    title: str
    description: str
    priority: float = DEFAULT_PRIORITY
    passes: bool = False
    validation_command: Optional[str] = None
    acceptance_criteria: Optional[list[str]] = None
    issue_number: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Story":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


@dataclass
class Prd:
    project_name: str
    version: str = PRD_VERSION
    description: Optional[str] = None
    stories: list[Story] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "project_name": self.project_name,
            "description": self.description,
            "stories": [s.to_dict() for s in self.stories],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Prd":
        return cls(
            project_name=data["project_name"],
            version=data.get("version", PRD_VERSION),
            description=data.get("description"),
            stories=[Story.from_dict(s) for s in data.get("stories", [])],
            metadata=dict(data.get("metadata") or {}),
        )

    def get_story(self, story_id: str) -> Optional[Story]:
        for story in self.stories:
            if story.id == story_id:
                return story
        return None


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_story_id(existing: Iterable[str] = ()) -> str:
    """story-<base36 epoch ms>, bumped past any id already in use."""
    taken = set(existing)
    ms = int(time.time() * 1000)
    story_id = f"story-{_base36(ms)}"
    while story_id in taken:
        ms += 1
        story_id = f"story-{_base36(ms)}"
    return story_id


def prd_path(workdir: Path) -> Path:
    return Path(workdir) / PRD_FILENAME


def load_prd(workdir: Path) -> Prd:
    """Read and validate prd.json.

    Raises:
        ConfigError: if the file is missing or doesn't match the schema
    """
    path = prd_path(workdir)
    if not path.exists():
        raise ConfigError(f"No {PRD_FILENAME} found in {workdir}. Run 'sloop init' first.")
    try:
        data = validate.validate_file(path, "prd")
    except validate.ValidationError as e:
        raise ConfigError(f"Invalid {PRD_FILENAME}: {e}") from None
    return Prd.from_dict(data)


def save_prd(workdir: Path, prd: Prd) -> None:
    path = prd_path(workdir)
    data = prd.to_dict()
    validate.validate_before_write(data, "prd", path)
    path.write_text(json.dumps(data, indent=2) + "\n")


def init_project(workdir: Path, project_name: str, description: Optional[str] = None) -> Prd:
    """Create prd.json in an existing directory.

    Raises:
        ConfigError: if the directory is missing or already has a prd.json
    """
    workdir = Path(workdir)
    if not workdir.is_dir():
        raise ConfigError(f"Directory does not exist: {workdir}")
    if prd_path(workdir).exists():
        raise ConfigError(f"{PRD_FILENAME} already exists in {workdir}")

    prd = Prd(
        project_name=project_name,
        description=description,
        metadata={
            "created_at": datetime.now().isoformat(),
            "last_iteration": None,
            "total_iterations": 0,
        },
    )
    save_prd(workdir, prd)
    return prd


def parse_acceptance_criteria(value: Optional[str]) -> Optional[list[str]]:
    """Accept a JSON list of strings or a single criterion string."""
    if value is None or not value.strip():
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return [value.strip()]
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return [str(parsed)]


def add_story(
    workdir: Path,
    title: str,
    description: str,
    priority: float = DEFAULT_PRIORITY,
    validation_command: Optional[str] = None,
    acceptance_criteria: Optional[list[str]] = None,
) -> Story:
    prd = load_prd(workdir)
    story = Story(
        id=generate_story_id(s.id for s in prd.stories),
        title=title,
        description=description,
        priority=priority,
        validation_command=validation_command,
        acceptance_criteria=acceptance_criteria,
    )
    prd.stories.append(story)
    save_prd(workdir, prd)
    logger.info(f"Added {story.id}: {title}")
    return story


EDITABLE_FIELDS = (
    "title", "description", "priority", "passes",
    "validation_command", "acceptance_criteria", "issue_number",
)


def edit_story(workdir: Path, story_id: str, **updates) -> Story:
    """Apply field updates to one story. None values are ignored.

    Raises:
        ValueError: unknown story or field
    """
    unknown = [k for k in updates if k not in EDITABLE_FIELDS]
    if unknown:
        raise ValueError(f"Cannot edit field(s): {', '.join(unknown)}")

    prd = load_prd(workdir)
    story = prd.get_story(story_id)
    if story is None:
        raise ValueError(f"Story not found: {story_id}")

    for key, value in updates.items():
        if value is not None:
            setattr(story, key, value)
    save_prd(workdir, prd)
    return story


def remaining_stories(prd: Prd) -> list[Story]:
    return [s for s in prd.stories if not s.passes]


def select_next_story(prd: Prd, exclude: Iterable[str] = ()) -> Optional[Story]:
    """Lowest priority number among incomplete stories; file order breaks ties."""
    excluded = set(exclude)
    candidates = [s for s in remaining_stories(prd) if s.id not in excluded]
    if not candidates:
        return None
    return min(candidates, key=lambda s: s.priority)


def mark_story_complete(workdir: Path, story_id: str) -> Prd:
    """Set passes=True. Call only after the iteration is in the durable log."""
    prd = load_prd(workdir)
    story = prd.get_story(story_id)
    if story is None:
        raise ValueError(f"Story not found: {story_id}")
    story.passes = True
    save_prd(workdir, prd)
    return prd


def record_iteration(workdir: Path) -> None:
    """Bump iteration metadata. Best effort."""
    try:
        prd = load_prd(workdir)
    except ConfigError as e:
        logger.warning(f"Could not update iteration metadata: {e}")
        return
    prd.metadata["total_iterations"] = int(prd.metadata.get("total_iterations", 0)) + 1
    prd.metadata["last_iteration"] = datetime.now().isoformat()
    try:
        save_prd(workdir, prd)
    except (OSError, validate.ValidationError) as e:
        logger.warning(f"Could not update iteration metadata: {e}")


def set_story_issue(workdir: Path, story_id: str, issue_number: int) -> None:
    edit_story(workdir, story_id, issue_number=issue_number)


def set_tracking_issue(workdir: Path, issue_number: int) -> None:
    prd = load_prd(workdir)
    prd.metadata["tracking_issue"] = issue_number
    save_prd(workdir, prd)


def status_summary(prd: Prd) -> dict:
    remaining = remaining_stories(prd)
    next_story = select_next_story(prd)
    return {
        "project_name": prd.project_name,
        "total": len(prd.stories),
        "completed": len(prd.stories) - len(remaining),
        "remaining": len(remaining),
        "next_story": next_story.id if next_story else None,
        "total_iterations": prd.metadata.get("total_iterations", 0),
        "last_iteration": prd.metadata.get("last_iteration"),
    }
