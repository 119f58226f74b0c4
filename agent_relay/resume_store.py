"""Durable channel id -> resume id mapping."""

import json
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class ResumeIdStore:
    """
    Persists the conversation resume id of each channel to a JSON file.

    The whole mapping is rewritten on every change so the file always holds
    a complete snapshot; a missing or empty file means no prior sessions.
    """

    def __init__(self, path: str):
        self.path = Path(path).expanduser()
        self._ids: dict[str, str] = {}

    def load(self) -> dict[str, str]:
        """
        Load persisted resume ids from disk.

        Returns:
            Mapping of channel id to resume id (empty if nothing persisted
            or the file could not be read)
        """
        self._ids = {}
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text()
            if not raw.strip():
                return {}
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load resume ids from {self.path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.error(f"Ignoring malformed resume id file {self.path} (expected an object)")
            return {}

        self._ids = {str(k): str(v) for k, v in data.items() if v}
        logger.info(f"Loaded {len(self._ids)} persisted resume ids")
        return dict(self._ids)

    def get(self, channel_id: str) -> Optional[str]:
        return self._ids.get(channel_id)

    def set(self, channel_id: str, resume_id: str) -> bool:
        self._ids[channel_id] = resume_id
        return self._save()

    def clear(self, channel_id: str) -> bool:
        self._ids.pop(channel_id, None)
        return self._save()

    def all(self) -> dict[str, str]:
        return dict(self._ids)

    def _save(self) -> bool:
        """
        Write the full mapping using temp file + rename.

        Returns:
            True if saved, False if an error occurred (the in-memory mapping
            is kept either way).
        """
        temp_file = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w") as f:
                json.dump(self._ids, f, indent=2)
            # Atomic rename (POSIX guarantees atomicity)
            temp_file.rename(self.path)
            return True
        except OSError as e:
            logger.error(f"Failed to save resume ids to {self.path}: {e}")
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            return False
