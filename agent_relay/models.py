"""Data models for the agent relay."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class DeliveryResult(Enum):
    """Result of handing a command to a channel."""
    DELIVERED = "delivered"  # Written to the process immediately (channel idle)
    QUEUED = "queued"        # Appended to the channel queue (channel busy)
    FAILED = "failed"        # No live process for the channel


class PromptKind(Enum):
    """Shape of an interactive prompt scraped from terminal output."""
    BINARY = "binary"
    MENU = "menu"


class ApprovalDecision(Enum):
    """Human decision on a tool approval request."""
    ALLOW = "allow"
    ALLOW_SESSION = "allow_session"
    DENY = "deny"

    @property
    def is_allowed(self) -> bool:
        return self in (ApprovalDecision.ALLOW, ApprovalDecision.ALLOW_SESSION)


class EventType(Enum):
    """Notifications emitted by the core to the chat front-end."""
    PROMPT_DETECTED = "prompt_detected"
    APPROVAL_REQUEST = "approval_request"
    QUEUE_PROCESSING = "queue_processing"
    TURN_COMPLETE = "turn_complete"
    PROCESS_EXITED = "process_exited"
    AGENT_MESSAGE = "agent_message"


@dataclass
class PendingPrompt:
    """An interactive prompt awaiting an answer from the chat user."""
    kind: PromptKind
    title: str
    options: list[str]
    raw: str = ""
    detected_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "options": list(self.options),
            "raw": self.raw,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class QueuedCommand:
    """A command waiting for its channel to go idle.

    The credential is stored by value when the command is queued, so a later
    credential switch does not change what this command runs with.
    """
    text: str
    credential: Optional[str] = None
    dispatched: Optional[asyncio.Future] = None  # Resolves True/False on dispatch or drop
    result_waiter: Optional[asyncio.Future] = None  # Receives the command's structured result
    queued_at: datetime = field(default_factory=datetime.now)

    def resolve(self, success: bool):
        """Resolve the dispatch future once; later calls are ignored."""
        if self.dispatched is not None and not self.dispatched.done():
            self.dispatched.set_result(success)
        if not success and self.result_waiter is not None and not self.result_waiter.done():
            self.result_waiter.set_result(None)


@dataclass
class UsageStats:
    """Token usage reported in a structured result object."""
    input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_context(self) -> int:
        return self.input_tokens + self.cache_creation_input_tokens + self.cache_read_input_tokens

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "output_tokens": self.output_tokens,
            "total_context": self.total_context,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UsageStats":
        return cls(
            input_tokens=int(data.get("input_tokens") or 0),
            cache_creation_input_tokens=int(data.get("cache_creation_input_tokens") or 0),
            cache_read_input_tokens=int(data.get("cache_read_input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
        )


@dataclass
class ChannelSession:
    """Per-channel state owned by the ChannelSessionRegistry."""
    channel_id: str
    busy: bool = False
    expected_sentinel: Optional[str] = None  # Completion line of the command in flight
    agent_posted: bool = False  # The agent posted to the channel itself during this turn
    command_queue: list[QueuedCommand] = field(default_factory=list)
    resume_id: Optional[str] = None
    awaiting_resume_id: bool = False
    model_override: Optional[str] = None
    capability_config_path: str = ""
    tool_allowlist: set[str] = field(default_factory=set)
    pending_prompt: Optional[PendingPrompt] = None
    last_usage: Optional[UsageStats] = None
    last_result_text: Optional[str] = None
    last_result: Optional[dict] = None
    process: Any = None  # ProcessSession, attached by the dispatcher
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)

    @property
    def queue_length(self) -> int:
        return len(self.command_queue)

    @property
    def has_process(self) -> bool:
        return self.process is not None and self.process.is_alive

    def touch(self):
        self.last_activity = datetime.now()

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "channel_id": self.channel_id,
            "busy": self.busy,
            "queue_length": self.queue_length,
            "resume_id": self.resume_id,
            "awaiting_resume_id": self.awaiting_resume_id,
            "model_override": self.model_override,
            "capability_config_path": self.capability_config_path,
            "tool_allowlist": sorted(self.tool_allowlist),
            "pending_prompt": self.pending_prompt.to_dict() if self.pending_prompt else None,
            "last_usage": self.last_usage.to_dict() if self.last_usage else None,
            "has_process": self.has_process,
            "pid": self.process.pid if self.has_process else None,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }


@dataclass
class PendingApproval:
    """An approval request waiting for a decision or its timeout."""
    request_id: str
    channel_id: str
    tool_name: str
    future: asyncio.Future
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class RelayEvent:
    """A notification emitted by the core for the chat front-end."""
    channel_id: str
    event_type: EventType
    data: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
