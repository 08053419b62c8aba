"""
Loop events: JSON event files plus desktop notifications.

Events are written to <state>/events/<ms>-<type>-<job>.json so other
tools can watch a loop without talking to the process. Desktop
notifications use notify-send (freedesktop compliant) when installed.
Both are best effort.
"""

import json
import logging
import shutil
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from storyloop.lib.config import get_state_dir

logger = logging.getLogger(__name__)

EVENTS_SUBDIR = "events"
VALID_URGENCIES = ("low", "normal", "critical")
MAX_NOTIFICATION_LENGTH = 200

EVENT_TYPES = (
    "loop_start",
    "loop_complete",
    "loop_error",
    "story_complete",
    "story_failed",
    "story_verification_rejected",
)

# Which events pop a desktop notification, and how loudly
_NOTIFY_URGENCY = {
    "loop_complete": "low",
    "loop_error": "critical",
    "story_failed": "normal",
    "story_verification_rejected": "normal",
}


def events_dir(state_dir: Optional[Path] = None) -> Path:
    return (state_dir or get_state_dir()) / EVENTS_SUBDIR


def notify(title: str, message: str, urgency: str = "normal"):
    """
    Send desktop notification.

    Args:
        title: Notification title
        message: Notification body
        urgency: One of "low", "normal", "critical"
    """
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug("notify-send not found, skipping notification")
        return

    if len(message) > MAX_NOTIFICATION_LENGTH:
        message = message[:MAX_NOTIFICATION_LENGTH] + "..."

    try:
        result = subprocess.run([
            "notify-send",
            "--urgency", urgency,
            "--app-name", "Storyloop",
            title,
            message
        ], capture_output=True, text=True, timeout=5)

        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")


def emit_event(
    event_type: str,
    job_id: str,
    state_dir: Optional[Path] = None,
    **fields,
) -> Optional[Path]:
    """Write one event file and notify if the type warrants it.

    Returns the event path, or None if it could not be written.
    """
    if event_type not in EVENT_TYPES:
        logger.warning(f"Unknown event type '{event_type}'")

    ms = int(time.time() * 1000)
    event = {
        "type": event_type,
        "job_id": job_id,
        "timestamp": datetime.now().isoformat(),
        "epoch": ms,
        **fields,
    }

    path = None
    try:
        directory = events_dir(state_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{ms}-{event_type}-{job_id}.json"
        path.write_text(json.dumps(event, indent=2, default=str))
    except OSError as e:
        logger.warning(f"Failed to write {event_type} event: {e}")
        path = None

    urgency = _NOTIFY_URGENCY.get(event_type)
    if urgency:
        subject = fields.get("story_title") or fields.get("project_name") or job_id
        detail = fields.get("error") or fields.get("message") or event_type.replace("_", " ")
        notify(f"Storyloop: {subject}", str(detail), urgency)

    return path


def cleanup_old_events(retention_hours: int, state_dir: Optional[Path] = None) -> int:
    """Remove event files older than retention_hours. Returns the count removed."""
    directory = events_dir(state_dir)
    if not directory.exists():
        return 0

    cutoff = time.time() - retention_hours * 3600
    removed = 0
    for path in directory.glob("*.json"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logger.debug(f"Could not remove old event {path}: {e}")
    return removed
