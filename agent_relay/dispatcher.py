"""Command dispatch: builds agent command lines and drives the busy/queue/drain cycle."""

import asyncio
import itertools
import json
import logging
from pathlib import Path
from typing import Callable, Optional

from .models import ChannelSession, DeliveryResult, EventType, PromptKind, QueuedCommand, UsageStats
from .notifier import Notifier
from .output_parser import DEFAULT_SENTINEL, StreamScanner, make_sentinel
from .process_session import ProcessSession
from .session_registry import ChannelSessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_PERMISSION_PROMPT_TOOL = "mcp__relay-approval__tool-approval"
DEFAULT_CAPABILITY_SERVERS = {
    "relay-approval": {"command": "relay-approval-sidecar", "args": []},
}

# Read-only tools the agent may use without asking
DEFAULT_ALLOWED_TOOLS = [
    "Read",
    "Bash(ls *)", "Bash(cat *)", "Bash(find *)", "Bash(head *)", "Bash(tail *)",
    "Bash(grep *)", "Bash(wc *)", "Bash(file *)", "Bash(pwd)", "Bash(which *)",
    "Bash(tree *)", "Bash(du *)", "Bash(df *)", "Bash(echo *)", "Bash(stat *)",
    "Bash(realpath *)", "Bash(dirname *)", "Bash(basename *)",
    "Bash(git log *)", "Bash(git diff *)", "Bash(git status *)", "Bash(git show *)",
    "Bash(git branch *)",
]


class ResponseTimeout(Exception):
    """No structured result arrived within the caller's deadline."""


def escape_payload(text: str) -> str:
    """Escape text for embedding inside a double-quoted shell argument on one line."""
    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
        .replace("\n", " ")
        .replace("\r", "")
    )


class CommandDispatcher:
    """
    Runs agent commands on channel process sessions, one at a time per channel.

    A command sent to an idle channel is written immediately and marks the
    channel busy; a command sent to a busy channel is queued and written when
    the completion sentinel of the previous one arrives. Each command echoes
    its own sentinel, so a late marker from an interrupted command cannot
    finish the one that replaced it. All state changes go
    through the registry's per-channel lock.
    """

    def __init__(
        self,
        registry: ChannelSessionRegistry,
        notifier: Notifier,
        config: Optional[dict] = None,
        process_factory: Callable[..., ProcessSession] = ProcessSession,
    ):
        self.registry = registry
        self.notifier = notifier
        self.config = config or {}
        self.process_factory = process_factory

        agent_config = self.config.get("agent", {})
        self.agent_command = agent_config.get("command", "claude")
        self.default_model = agent_config.get("default_model", DEFAULT_MODEL)
        self.allowed_tools: list[str] = agent_config.get("allowed_tools", DEFAULT_ALLOWED_TOOLS)
        self.permission_prompt_tool = agent_config.get("permission_prompt_tool", DEFAULT_PERMISSION_PROMPT_TOOL)
        self.capability_servers: dict = agent_config.get("capability_servers", DEFAULT_CAPABILITY_SERVERS)
        self.sentinel = agent_config.get("sentinel", DEFAULT_SENTINEL)
        self.working_dir = str(Path(agent_config.get("working_dir", ".")).expanduser())
        self.credential_env_var = self.config.get("credentials", {}).get("env_var", "CLAUDE_CODE_OAUTH_TOKEN")

        server_config = self.config.get("server", {})
        self.orchestrator_url = server_config.get(
            "public_url",
            f"http://{server_config.get('host', '127.0.0.1')}:{server_config.get('port', 8420)}",
        )
        self.approval_timeout = self.config.get("approvals", {}).get("timeout_seconds", 300)

        timeouts = self.config.get("timeouts", {})
        dispatcher_timeouts = timeouts.get("dispatcher", {})
        self.result_timeout = dispatcher_timeouts.get("result_timeout_seconds", 60)

        parser_config = self.config.get("parser", {})
        self._scanner_kwargs = {
            "max_buffer_chars": parser_config.get("max_buffer_chars", 1_000_000),
            "carry_chars": parser_config.get("carry_chars", 512),
            "prompt_window_chars": parser_config.get("prompt_window_chars", 4000),
        }
        self.prompt_settle_seconds = parser_config.get("prompt_settle_seconds", 1.0)

        self._scanners: dict[str, StreamScanner] = {}
        self._pump_tasks: dict[str, asyncio.Task] = {}
        self._spawn_locks: dict[str, asyncio.Lock] = {}
        self._settle_tasks: dict[str, asyncio.Task] = {}
        self._dispatch_seq = itertools.count(1)
        # At most one command is in flight per channel, so one waiter slot each
        self._result_waiters: dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def write_capability_config(self, session: ChannelSession) -> Path:
        """Write the agent's tool-server config for a channel and return its path."""
        servers = {}
        for name, server in self.capability_servers.items():
            env = dict(server.get("env", {}))
            env.update({
                "CHANNEL_ID": session.channel_id,
                "ORCHESTRATOR_URL": self.orchestrator_url,
                "APPROVAL_TIMEOUT_MS": str(int(self.approval_timeout * 1000)),
            })
            servers[name] = {
                "command": server.get("command"),
                "args": list(server.get("args", [])),
                "env": env,
            }

        path = Path(session.capability_config_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"mcpServers": servers}, indent=2))
        return path

    async def ensure_process(self, channel_id: str, credential: Optional[str] = None) -> ChannelSession:
        """
        Return the channel's record with a live process, spawning one if needed.

        Raises:
            ProcessSessionError: If the shell could not be spawned
        """
        spawn_lock = self._spawn_locks.setdefault(channel_id, asyncio.Lock())
        async with spawn_lock:
            session = self.registry.get_or_create(channel_id)
            if session.has_process:
                return session

            self.write_capability_config(session)
            env = {"CHANNEL_ID": channel_id}
            if credential:
                env[self.credential_env_var] = credential

            process = self.process_factory(
                channel_id,
                working_dir=self.working_dir,
                env=env,
                config=self.config,
            )
            await process.start()

            session.process = process
            session.touch()
            self._scanners[channel_id] = StreamScanner(**self._scanner_kwargs)
            self._pump_tasks[channel_id] = asyncio.create_task(self._pump(channel_id, process))
            return session

    async def _pump(self, channel_id: str, process: ProcessSession):
        """Feed one process's output through the parser in arrival order."""
        async for chunk in process.chunks():
            try:
                await self.handle_output(channel_id, chunk)
            except Exception as e:
                logger.error(f"Error handling output for channel {channel_id}: {e}")
        exit_code = await process.wait()
        await self.handle_process_exit(channel_id, process, exit_code)

    async def handle_process_exit(self, channel_id: str, process: ProcessSession, exit_code: Optional[int]):
        """Detach an exited process and discard the channel's busy and queued state."""
        session = self.registry.get(channel_id)
        if session is None or session.process is not process:
            logger.info(f"Detached process for channel {channel_id} exited (code={exit_code})")
            return

        async with self.registry.lock_for(channel_id):
            dropped = session.command_queue
            session.command_queue = []
            self._end_turn(session)
            session.awaiting_resume_id = False
            session.pending_prompt = None
            session.process = None
            for command in dropped:
                command.resolve(False)
            self._scanners.pop(channel_id, None)
            self._pump_tasks.pop(channel_id, None)
            self._fail_result_waiter(channel_id)
            self._cancel_settle(channel_id)

        if dropped:
            logger.warning(
                f"Process for channel {channel_id} exited (code={exit_code}); "
                f"discarded {len(dropped)} queued command(s)"
            )
        else:
            logger.info(f"Process for channel {channel_id} exited (code={exit_code})")

        await self.notifier.notify(
            channel_id,
            EventType.PROCESS_EXITED,
            exit_code=exit_code,
            dropped_commands=len(dropped),
        )

    async def teardown(self, channel_id: str) -> bool:
        """Close the channel's process and remove its record."""
        session = self.registry.get(channel_id)
        if session is None:
            return False

        async with self.registry.lock_for(channel_id):
            process = session.process
            session.process = None
            for command in session.command_queue:
                command.resolve(False)
            session.command_queue = []
            self._end_turn(session)
            self._fail_result_waiter(channel_id)

        self._scanners.pop(channel_id, None)
        self._spawn_locks.pop(channel_id, None)
        self._cancel_settle(channel_id)
        task = self._pump_tasks.pop(channel_id, None)
        if process is not None:
            await process.close()
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=5)
            except asyncio.TimeoutError:
                task.cancel()
        self.registry.remove(channel_id)
        return True

    async def shutdown(self):
        for channel_id in list(self.registry.sessions):
            await self.teardown(channel_id)

    # ------------------------------------------------------------------
    # Command construction and dispatch
    # ------------------------------------------------------------------

    def get_model(self, channel_id: str) -> str:
        session = self.registry.get(channel_id)
        if session and session.model_override:
            return session.model_override
        return self.default_model

    def set_model(self, channel_id: str, model: str):
        session = self.registry.get_or_create(channel_id)
        session.model_override = model
        logger.info(f"Model for channel {channel_id} set to {model}")

    def clear_model(self, channel_id: str):
        session = self.registry.get(channel_id)
        if session:
            session.model_override = None

    def build_command(
        self,
        session: ChannelSession,
        text: str,
        credential: Optional[str] = None,
        sentinel: Optional[str] = None,
    ) -> str:
        """Build the one-line shell command that runs the agent on `text` and then echoes `sentinel`."""
        parts = []
        if credential:
            parts.append(f'{self.credential_env_var}="{escape_payload(credential)}"')
        parts.extend([
            self.agent_command,
            "-p", f'"{escape_payload(text)}"',
            "--model", session.model_override or self.default_model,
            "--output-format", "json",
        ])
        if self.allowed_tools:
            parts.extend(["--allowedTools", f'"{",".join(self.allowed_tools)}"'])
        if self.permission_prompt_tool:
            parts.extend(["--permission-prompt-tool", self.permission_prompt_tool])
        if session.resume_id:
            parts.extend(["--resume", f'"{session.resume_id}"'])
        parts.extend(["--mcp-config", f'"{session.capability_config_path}"'])
        return " ".join(parts) + f' ; echo "{sentinel or self.sentinel}"'

    def _dispatch_locked(
        self,
        session: ChannelSession,
        text: str,
        credential: Optional[str],
        result_waiter: Optional[asyncio.Future] = None,
    ) -> bool:
        """Write a command to an idle channel. Caller holds the channel lock."""
        if not session.has_process:
            logger.error(f"No live process for channel {session.channel_id}")
            return False

        sentinel = make_sentinel(self.sentinel, next(self._dispatch_seq))
        command = self.build_command(session, text, credential, sentinel)
        if not session.process.write_line(command):
            return False

        session.busy = True
        session.expected_sentinel = sentinel
        session.agent_posted = False
        session.last_result_text = None
        session.awaiting_resume_id = session.resume_id is None
        session.touch()
        scanner = self._scanners.get(session.channel_id)
        if scanner:
            scanner.reset()

        self._fail_result_waiter(session.channel_id)
        if result_waiter is not None:
            self._result_waiters[session.channel_id] = result_waiter

        logger.info(
            f"Dispatched to channel {session.channel_id} (model={session.model_override or self.default_model}, "
            + (f"resume={session.resume_id[:8]}...)" if session.resume_id else "new conversation)")
        )
        return True

    async def submit(
        self,
        channel_id: str,
        text: str,
        credential: Optional[str] = None,
        result_waiter: Optional[asyncio.Future] = None,
    ) -> tuple[DeliveryResult, Optional[QueuedCommand]]:
        """
        Hand a command to a channel without waiting for a queued dispatch.

        Returns:
            (DELIVERED, None) if written now, (QUEUED, command) if the channel
            is busy, (FAILED, None) if the channel has no live process
        """
        session = self.registry.get(channel_id)
        if session is None or not session.has_process:
            logger.warning(f"Cannot dispatch to channel {channel_id}: no live process")
            return DeliveryResult.FAILED, None

        async with self.registry.lock_for(channel_id):
            if session.busy:
                command = QueuedCommand(
                    text=text,
                    credential=credential,
                    dispatched=asyncio.get_running_loop().create_future(),
                    result_waiter=result_waiter,
                )
                session.command_queue.append(command)
                logger.info(f"Channel {channel_id} busy, queued command ({session.queue_length} waiting)")
                return DeliveryResult.QUEUED, command

            if self._dispatch_locked(session, text, credential, result_waiter):
                return DeliveryResult.DELIVERED, None
            return DeliveryResult.FAILED, None

    async def dispatch(self, channel_id: str, text: str, credential: Optional[str] = None) -> bool:
        """
        Run a command on a channel, waiting for its turn if the channel is busy.

        Returns once the command has been written to the process (not when it
        completes). False if the channel has no live process or the queued
        command was dropped by an interrupt, reset or process exit.
        """
        delivery, command = await self.submit(channel_id, text, credential)
        if delivery == DeliveryResult.QUEUED:
            return await command.dispatched
        return delivery == DeliveryResult.DELIVERED

    async def request_result(
        self,
        channel_id: str,
        text: str,
        credential: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[dict]:
        """
        Dispatch a command and wait for its structured result.

        Returns:
            The parsed result object, or None if the command could not be
            dispatched or finished without one

        Raises:
            ResponseTimeout: If no result arrived within `timeout` seconds
        """
        timeout = timeout if timeout is not None else self.result_timeout
        waiter = asyncio.get_running_loop().create_future()

        async def _run() -> Optional[dict]:
            delivery, command = await self.submit(channel_id, text, credential, result_waiter=waiter)
            if delivery == DeliveryResult.FAILED:
                return None
            if command is not None and not await command.dispatched:
                return None
            return await waiter

        try:
            return await asyncio.wait_for(_run(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ResponseTimeout(f"No result from channel {channel_id} within {timeout}s")

    def _fail_result_waiter(self, channel_id: str):
        waiter = self._result_waiters.pop(channel_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    # ------------------------------------------------------------------
    # Output handling
    # ------------------------------------------------------------------

    @staticmethod
    def _record_result(session: ChannelSession, result: dict):
        session.last_result = result
        usage = result.get("usage")
        if isinstance(usage, dict):
            session.last_usage = UsageStats.from_dict(usage)
        text = result.get("result")
        if isinstance(text, str) and text:
            session.last_result_text = text

    @staticmethod
    def _end_turn(session: ChannelSession):
        """Mark the channel idle and forget the in-flight command's per-turn state."""
        session.busy = False
        session.expected_sentinel = None
        session.agent_posted = False
        session.last_result_text = None

    async def handle_output(self, channel_id: str, chunk: str):
        """Apply the parser to one output chunk and act on the signals it finds."""
        session = self.registry.get(channel_id)
        if session is None:
            return
        logger.debug(f"[{channel_id}] output: {chunk!r}")

        async with self.registry.lock_for(channel_id):
            scanner = self._scanners.setdefault(
                channel_id, StreamScanner(**self._scanner_kwargs)
            )
            scan = scanner.scan(
                chunk,
                awaiting_resume_id=session.awaiting_resume_id,
                sentinel=session.expected_sentinel if session.busy else None,
                prompt_pending=session.pending_prompt is not None,
            )

            if scan.resume_id and session.awaiting_resume_id:
                self.registry.record_resume_id(channel_id, scan.resume_id)

            if scan.result is not None:
                self._record_result(session, scan.result)
                waiter = self._result_waiters.pop(channel_id, None)
                if waiter is not None and not waiter.done():
                    waiter.set_result(scan.result)

            prompt = None
            if scan.prompt is not None and session.pending_prompt is None:
                prompt = scan.prompt
                session.pending_prompt = prompt

            completed_sentinel = session.expected_sentinel if scan.completed else None
            self._cancel_settle(channel_id)
            if scan.prompt_unsettled and session.pending_prompt is None:
                self._settle_tasks[channel_id] = asyncio.create_task(self._settle_after_quiet(channel_id))

        if prompt is not None:
            await self._announce_prompt(channel_id, prompt)

        if completed_sentinel:
            await self.on_completion_signal(channel_id, completed_sentinel)

    async def _announce_prompt(self, channel_id: str, prompt):
        logger.info(f"Prompt detected on channel {channel_id}: {prompt.title} ({prompt.kind.value})")
        await self.notifier.notify(
            channel_id,
            EventType.PROMPT_DETECTED,
            kind=prompt.kind.value,
            title=prompt.title,
            options=list(prompt.options),
            raw=prompt.raw,
        )

    def _cancel_settle(self, channel_id: str):
        task = self._settle_tasks.pop(channel_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _settle_after_quiet(self, channel_id: str):
        await asyncio.sleep(self.prompt_settle_seconds)
        self._settle_tasks.pop(channel_id, None)
        await self.settle_output(channel_id)

    async def settle_output(self, channel_id: str) -> bool:
        """
        Treat the channel's output so far as final.

        Called once output has been quiet for a while, so a menu whose last
        option is not followed by another line is still reported.
        """
        session = self.registry.get(channel_id)
        if session is None:
            return False
        async with self.registry.lock_for(channel_id):
            scanner = self._scanners.get(channel_id)
            if scanner is None or session.pending_prompt is not None:
                return False
            prompt = scanner.settle()
            if prompt is None:
                return False
            session.pending_prompt = prompt
        await self._announce_prompt(channel_id, prompt)
        return True

    async def on_completion_signal(self, channel_id: str, sentinel: Optional[str] = None):
        """
        Finish the in-flight command and dispatch the next queued one, if any.

        With `sentinel`, only the command that echoes that sentinel is finished;
        a marker left over from an interrupted command is ignored.
        """
        session = self.registry.get(channel_id)
        if session is None:
            return

        next_command = None
        async with self.registry.lock_for(channel_id):
            if not session.busy:
                return
            if sentinel is not None and sentinel != session.expected_sentinel:
                logger.info(f"Ignoring stale completion marker on channel {channel_id}")
                return
            # The agent already answered through the channel; don't post the result twice
            result_text = None if session.agent_posted else session.last_result_text
            self._end_turn(session)
            self._fail_result_waiter(channel_id)

            if session.command_queue:
                next_command = session.command_queue.pop(0)
                ok = self._dispatch_locked(
                    session, next_command.text, next_command.credential, next_command.result_waiter
                )
                next_command.resolve(ok)

        logger.info(f"Command finished on channel {channel_id}")
        await self.notifier.notify(channel_id, EventType.TURN_COMPLETE, result_text=result_text)
        if next_command is not None:
            await self.notifier.notify(channel_id, EventType.QUEUE_PROCESSING, text=next_command.text)

    # ------------------------------------------------------------------
    # Channel controls
    # ------------------------------------------------------------------

    async def reset_conversation(self, channel_id: str) -> bool:
        """
        Start a fresh conversation on the channel.

        Clears the resume id, busy flag, queue, pending prompt and session
        allowlist together and persists the cleared resume id. A command still
        running is interrupted so its output cannot leak into the next one.
        """
        session = self.registry.get(channel_id)
        if session is None:
            return False

        async with self.registry.lock_for(channel_id):
            if session.busy and session.has_process:
                session.process.interrupt()
            dropped = session.command_queue
            session.command_queue = []
            self._end_turn(session)
            session.pending_prompt = None
            session.tool_allowlist.clear()
            self.registry.clear_resume_id(channel_id)
            for command in dropped:
                command.resolve(False)
            self._fail_result_waiter(channel_id)
            scanner = self._scanners.get(channel_id)
            if scanner:
                scanner.reset()
                scanner.clear_prompt_window()
            self._cancel_settle(channel_id)

        logger.info(f"Reset conversation for channel {channel_id} (dropped {len(dropped)} queued)")
        return True

    async def interrupt(self, channel_id: str) -> bool:
        """Send Ctrl-C to the channel's process, clear busy and drop the whole queue."""
        session = self.registry.get(channel_id)
        if session is None or not session.has_process:
            return False

        async with self.registry.lock_for(channel_id):
            sent = session.process.interrupt()
            dropped = session.command_queue
            session.command_queue = []
            self._end_turn(session)
            session.pending_prompt = None
            for command in dropped:
                command.resolve(False)
            self._fail_result_waiter(channel_id)

        logger.info(f"Interrupted channel {channel_id}, dropped {len(dropped)} queued command(s)")
        return sent

    async def send_prompt_response(self, channel_id: str, option_index: int) -> bool:
        """
        Answer the channel's pending prompt.

        Binary prompts receive `y` or `n`; menus receive the 1-based option
        number. The pending prompt is cleared on success.
        """
        session = self.registry.get(channel_id)
        if session is None or not session.has_process:
            return False

        async with self.registry.lock_for(channel_id):
            prompt = session.pending_prompt
            if prompt is None:
                logger.warning(f"No pending prompt for channel {channel_id}")
                return False
            if not 0 <= option_index < len(prompt.options):
                logger.warning(f"Option {option_index} out of range for prompt on channel {channel_id}")
                return False

            if prompt.kind == PromptKind.BINARY:
                key = "y" if option_index == 0 else "n"
            else:
                key = str(option_index + 1)

            if not session.process.write(key + "\r"):
                return False
            session.pending_prompt = None
            session.touch()

        logger.info(f"Answered prompt on channel {channel_id} with {key!r}")
        return True

    async def clear_prompt(self, channel_id: str) -> bool:
        session = self.registry.get(channel_id)
        if session is None:
            return False
        async with self.registry.lock_for(channel_id):
            had_prompt = session.pending_prompt is not None
            session.pending_prompt = None
            scanner = self._scanners.get(channel_id)
            if scanner:
                scanner.clear_prompt_window()
        return had_prompt

    def mark_agent_posted(self, channel_id: str):
        """Record that the agent posted to the channel itself during the current turn."""
        session = self.registry.get(channel_id)
        if session:
            session.agent_posted = True

    def send_raw(self, channel_id: str, text: str) -> bool:
        """Write raw text to the channel's terminal, bypassing the queue."""
        session = self.registry.get(channel_id)
        if session is None or not session.has_process:
            return False
        session.touch()
        return session.process.write(text)

    def get_output(self, channel_id: str, lines: int = 50) -> Optional[list[str]]:
        session = self.registry.get(channel_id)
        if session is None or session.process is None:
            return None
        return session.process.get_output(lines)

    def usage_summary(self, channel_id: str) -> Optional[dict]:
        session = self.registry.get(channel_id)
        if session is None or session.last_usage is None:
            return None
        return session.last_usage.to_dict()
