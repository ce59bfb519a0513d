"""
In-memory cache for the RULES.md instruction document.

The file is read only when the store is loaded or reloaded; every chat turn
reads the cached text. A built-in default is used when the file is missing or
cannot be read.
"""
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_RULES = """# Code Analysis Assistant Rules

You are a code analysis assistant helping testers understand how the code works.

## Available capabilities (read-only)
- Read source files
- Search code contents
- Find file paths
- Jump to code definitions

## Answering guidelines
1. **Prefer prose** to describe what the code does and how it flows
2. Flowcharts and architecture diagrams are welcome for system design
3. Avoid **dumping large blocks of source**
4. When code is needed, show only **key snippets** or keep them folded

## Style
- Concise and direct
- Lead with what matters
- Explain the logic from a tester's point of view
"""


class RulesStore:
    def __init__(self, path: Optional[Path], default: str = DEFAULT_RULES):
        self._path = Path(path) if path else None
        self._default = default
        self._rules = default

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def get(self) -> str:
        """Return the cached rules without touching the filesystem."""
        return self._rules

    def load(self) -> str:
        if self._path is None:
            logger.warning("Rules path not configured, using default rules")
            content = self._default
        elif not self._path.is_file():
            logger.warning("RULES.md not found at %s, using default rules", self._path)
            content = self._default
        else:
            try:
                content = self._path.read_text(encoding="utf-8")
                logger.info("Rules loaded from %s (%d chars)", self._path, len(content))
            except Exception:
                logger.exception("Failed to load rules from %s", self._path)
                content = self._default
        self._rules = content
        return content

    def reload(self) -> str:
        logger.info("Reloading rules from %s", self._path)
        return self.load()
