"""JSON file store for the encoded snapshot."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class SnapshotStore:
    """Reads and writes one encoded snapshot at ``path``.

    Writes go to a sibling temporary file that is then moved into place, so
    a crash mid-write leaves the previous snapshot intact.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Any | None:
        """Return the stored payload, or None if absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("snapshot_load_failed", path=str(self.path), error=str(e))
            return None

    def save(self, payload: dict[str, Any] | None) -> None:
        """Persist ``payload``; None removes the stored snapshot."""
        if payload is None:
            self.clear()
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False)
        os.replace(tmp_path, self.path)
        logger.debug("snapshot_saved", path=str(self.path))

    def clear(self) -> None:
        """Delete the stored snapshot if present."""
        if self.path.exists():
            self.path.unlink()
            logger.info("snapshot_cleared", path=str(self.path))
