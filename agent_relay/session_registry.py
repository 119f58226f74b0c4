"""Registry of per-channel session state."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional

from .models import ChannelSession
from .resume_store import ResumeIdStore

logger = logging.getLogger(__name__)

CAPABILITY_DIR_NAME = ".agent-relay"
CAPABILITY_FILE_NAME = "capabilities.json"


def channel_dir_name(channel_id: str) -> str:
    """Filesystem-safe directory name for a channel id."""
    return re.sub(r'[^A-Za-z0-9_.-]', '_', channel_id)


class ChannelSessionRegistry:
    """
    Maps channel ids to ChannelSession records.

    The registry is the only owner of channel records: every mutation of a
    channel's busy/queue/prompt state happens while holding that channel's
    lock from lock_for(). Locks are never shared across channels.
    """

    def __init__(self, resume_store: ResumeIdStore, config: Optional[dict] = None):
        self.resume_store = resume_store
        self.config = config or {}
        paths_config = self.config.get("paths", {})
        self.app_dir = Path(paths_config.get("app_dir", ".")).expanduser()
        self.sessions: dict[str, ChannelSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def load(self) -> int:
        """
        Load persisted resume ids. Channel records themselves are created
        lazily on the first message and pick their resume id up from the store.

        Returns:
            Number of persisted resume ids
        """
        return len(self.resume_store.load())

    def capability_config_path(self, channel_id: str) -> Path:
        return self.app_dir / CAPABILITY_DIR_NAME / channel_dir_name(channel_id) / CAPABILITY_FILE_NAME

    def get(self, channel_id: str) -> Optional[ChannelSession]:
        return self.sessions.get(channel_id)

    def get_or_create(self, channel_id: str) -> ChannelSession:
        """Return the channel's record, creating it (with any persisted resume id) on first use."""
        session = self.sessions.get(channel_id)
        if session is None:
            session = ChannelSession(
                channel_id=channel_id,
                resume_id=self.resume_store.get(channel_id),
                capability_config_path=str(self.capability_config_path(channel_id)),
            )
            self.sessions[channel_id] = session
            logger.info(
                f"Created channel session {channel_id}"
                + (f" (resuming {session.resume_id})" if session.resume_id else "")
            )
        return session

    def lock_for(self, channel_id: str) -> asyncio.Lock:
        return self._locks.setdefault(channel_id, asyncio.Lock())

    def list_sessions(self) -> list[ChannelSession]:
        return list(self.sessions.values())

    def is_busy(self, channel_id: str) -> bool:
        session = self.sessions.get(channel_id)
        return bool(session and session.busy)

    def record_resume_id(self, channel_id: str, resume_id: str) -> bool:
        """Store a captured resume id on the channel and persist it."""
        session = self.get_or_create(channel_id)
        session.resume_id = resume_id
        session.awaiting_resume_id = False
        logger.info(f"Captured resume id {resume_id} for channel {channel_id}")
        return self.resume_store.set(channel_id, resume_id)

    def clear_resume_id(self, channel_id: str) -> bool:
        session = self.sessions.get(channel_id)
        if session:
            session.resume_id = None
            session.awaiting_resume_id = False
        return self.resume_store.clear(channel_id)

    def remove(self, channel_id: str) -> Optional[ChannelSession]:
        """Drop a channel record (explicit teardown). The persisted resume id is kept."""
        self._locks.pop(channel_id, None)
        session = self.sessions.pop(channel_id, None)
        if session:
            logger.info(f"Removed channel session {channel_id}")
        return session
