"""Shared pytest fixtures for agent relay tests."""

import asyncio
import json
from typing import Optional

import pytest

from agent_relay.approvals import ApprovalCoordinator
from agent_relay.dispatcher import CommandDispatcher
from agent_relay.models import RelayEvent
from agent_relay.notifier import Notifier
from agent_relay.output_parser import DEFAULT_SENTINEL
from agent_relay.resume_store import ResumeIdStore
from agent_relay.session_registry import ChannelSessionRegistry


# Completion line no dispatched command ever expects
STALE_SENTINEL_LINE = f"{DEFAULT_SENTINEL}\n"


def sentinel_line(dispatcher, channel_id: str = "c1") -> str:
    """The completion line the channel's in-flight command will echo."""
    return f"{dispatcher.registry.get(channel_id).expected_sentinel}\n"


def result_json(text: str = "done", session_id: Optional[str] = None, **usage) -> str:
    """Render a structured result object the way the agent prints it."""
    payload = {"type": "result", "subtype": "success", "result": text}
    if session_id:
        payload["session_id"] = session_id
    payload["usage"] = {
        "input_tokens": usage.get("input_tokens", 10),
        "cache_creation_input_tokens": usage.get("cache_creation_input_tokens", 20),
        "cache_read_input_tokens": usage.get("cache_read_input_tokens", 30),
        "output_tokens": usage.get("output_tokens", 5),
    }
    return json.dumps(payload, separators=(",", ":"))


class FakeProcess:
    """Stands in for ProcessSession: records writes and lets tests push output or exit."""

    instances: list["FakeProcess"] = []

    def __init__(self, channel_id: str, working_dir: str = ".", env: Optional[dict] = None, config: Optional[dict] = None):
        self.channel_id = channel_id
        self.working_dir = working_dir
        self.env = env or {}
        self.config = config or {}
        self.pid = 4242
        self.is_alive = True
        self.exit_code: Optional[int] = None
        self.lines: list[str] = []
        self.raw: list[str] = []
        self.interrupts = 0
        self.closed = False
        self.output_buffer: list[str] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        FakeProcess.instances.append(self)

    async def start(self) -> int:
        return self.pid

    def write(self, text: str) -> bool:
        if not self.is_alive:
            return False
        self.raw.append(text)
        return True

    def write_line(self, line: str) -> bool:
        if not self.is_alive:
            return False
        self.lines.append(line)
        return True

    def interrupt(self) -> bool:
        self.interrupts += 1
        return self.is_alive

    def get_output(self, lines: int = 50) -> list[str]:
        return self.output_buffer[-lines:] if lines > 0 else []

    def emit(self, chunk: str):
        self.output_buffer.append(chunk)
        self._queue.put_nowait(chunk)

    def exit(self, code: int = 0):
        self.is_alive = False
        self.exit_code = code
        self._queue.put_nowait(None)

    async def chunks(self):
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def wait(self) -> Optional[int]:
        return self.exit_code

    async def close(self):
        self.is_alive = False
        self.closed = True
        self._queue.put_nowait(None)


@pytest.fixture
def relay_config(tmp_path) -> dict:
    return {
        "paths": {"app_dir": str(tmp_path / "app")},
        "agent": {"default_model": "test-model", "working_dir": str(tmp_path)},
        "server": {"host": "127.0.0.1", "port": 8420},
        "approvals": {"timeout_seconds": 300},
        "parser": {"prompt_settle_seconds": 0.05},
    }


@pytest.fixture
def resume_file(tmp_path):
    return tmp_path / "resume_ids.json"


@pytest.fixture
def registry(resume_file, relay_config) -> ChannelSessionRegistry:
    reg = ChannelSessionRegistry(ResumeIdStore(str(resume_file)), config=relay_config)
    reg.load()
    return reg


@pytest.fixture
def events() -> list[RelayEvent]:
    return []


@pytest.fixture
def notifier(events) -> Notifier:
    """Notifier that records every event it emits."""
    n = Notifier()

    async def record(event: RelayEvent):
        events.append(event)

    n.add_handler(record)
    return n


@pytest.fixture
async def dispatcher(registry, notifier, relay_config):
    """CommandDispatcher backed by FakeProcess."""
    FakeProcess.instances = []
    d = CommandDispatcher(registry, notifier, config=relay_config, process_factory=FakeProcess)
    yield d
    tasks = list(d._pump_tasks.values()) + list(d._settle_tasks.values())
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


@pytest.fixture
def coordinator(registry, notifier, relay_config) -> ApprovalCoordinator:
    return ApprovalCoordinator(registry, notifier, config=relay_config)


def events_of(events: list[RelayEvent], event_type) -> list[RelayEvent]:
    return [e for e in events if e.event_type == event_type]


async def wait_until(predicate, attempts: int = 200):
    """Yield to the event loop until predicate() holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")
