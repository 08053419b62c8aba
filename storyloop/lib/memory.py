"""
Long-term memory store (the `swarm memory` CLI).

Everything here is best effort: if the CLI is missing, slow or failing,
the call logs and returns an empty value. The loop never waits longer
than the configured timeout on a memory call.
"""

import logging
import shutil
import subprocess
from typing import Optional

from storyloop.lib.agents_config import AgentsConfig, build_command

logger = logging.getLogger(__name__)

MEMORY_BINARY = "swarm"
DEFAULT_MEMORY_TIMEOUT = 15
MAX_INFORMATION_LENGTH = 1000
PULL_LIMIT = 3000


class MemoryStore:
    """Thin wrapper over the memory CLI. Availability is checked once."""

    def __init__(
        self,
        agents_config: Optional[AgentsConfig] = None,
        timeout: int = DEFAULT_MEMORY_TIMEOUT,
        enabled: bool = True,
    ):
        self.agents_config = agents_config or AgentsConfig()
        self.timeout = timeout
        self.enabled = enabled
        self._available: Optional[bool] = None

    @property
    def available(self) -> bool:
        if not self.enabled:
            return False
        if self._available is None:
            self._available = shutil.which(MEMORY_BINARY) is not None
            if not self._available:
                logger.debug(f"{MEMORY_BINARY} not found, memory store disabled")
        return self._available

    def _run(self, name: str, context: dict) -> Optional[str]:
        try:
            argv = build_command(self.agents_config, name, context)
            result = subprocess.run(argv, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Memory {name} timed out after {self.timeout}s")
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Memory {name} failed: {e}")
            return None

        if result.returncode != 0:
            logger.debug(f"Memory {name} exited {result.returncode}: {result.stderr.strip()[:200]}")
            return None
        return result.stdout.strip()

    def store(self, information: str, tags: str) -> None:
        if not self.available:
            return
        info = information.replace("\n", " ")[:MAX_INFORMATION_LENGTH]
        self._run("memory_store", {"information": info, "tags": tags.replace('"', "")})

    def find(self, query: str, limit: int = 3) -> str:
        if not self.available:
            return ""
        return self._run("memory_find", {"query": query.replace("\n", " "), "limit": str(limit)}) or ""

    def pull_context(self, story, project_name: str) -> str:
        """Several targeted queries combined into one block for the prompt."""
        if not self.available:
            return ""

        description_words = " ".join((story.description or story.title or "").split()[:5])
        queries = (
            ("Story-Relevant Learnings", story.title, 5),
            ("Prior Failure Patterns", f"storyloop failure {project_name}", 5),
            ("Project Learnings", f"storyloop learning {project_name}", 3),
            ("Technology Gotchas", f"{description_words} gotcha", 3),
            ("Recent Iteration Behavior", f"storyloop session-insight {project_name}", 2),
        )
        parts = []
        for heading, query, limit in queries:
            found = self.find(query, limit)
            if found:
                parts.append(f"### {heading}\n{found}")

        combined = "\n\n".join(parts)
        return combined[:PULL_LIMIT] + "\n..." if len(combined) > PULL_LIMIT else combined
