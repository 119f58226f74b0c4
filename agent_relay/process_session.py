"""Interactive shell processes that agent commands are typed into."""

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
import uuid
from collections import deque
from datetime import datetime
from typing import AsyncIterator, Optional

from .output_parser import strip_ansi

logger = logging.getLogger(__name__)

DEFAULT_SHELL = ["bash", "--norc", "--noprofile", "--noediting", "-i"]
INTERRUPT_KEY = "\x03"


class ProcessSessionError(RuntimeError):
    """Raised when the shell process cannot be started."""


def _acquire_controlling_tty():
    """Make the pty slave (already on fd 0) the controlling terminal of the new session."""
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass  # Job control is unavailable; Ctrl-C still reaches the shell's process group


class ProcessSession:
    """
    One shell process behind a pseudo-terminal, owned by exactly one channel.

    Output is read from the pty master as it arrives and is both appended to
    a bounded ring buffer (oldest chunk evicted first) and handed to a single
    consumer through chunks().
    """

    def __init__(
        self,
        channel_id: str,
        working_dir: str = ".",
        env: Optional[dict[str, str]] = None,
        config: Optional[dict] = None,
    ):
        self.id = uuid.uuid4().hex[:8]
        self.channel_id = channel_id
        self.working_dir = working_dir
        self.extra_env = env or {}
        self.config = config or {}

        agent_config = self.config.get("agent", {})
        self.shell_command: list[str] = agent_config.get("shell", DEFAULT_SHELL)
        self.cols = agent_config.get("terminal_cols", 120)
        self.rows = agent_config.get("terminal_rows", 40)
        buffer_size = agent_config.get("output_buffer_chunks", 1000)

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        process_timeouts = timeouts.get("process", {})
        self.warmup_seconds = process_timeouts.get("warmup_seconds", 0.5)
        self.terminate_seconds = process_timeouts.get("terminate_seconds", 3)

        self.output_buffer: deque[str] = deque(maxlen=buffer_size)
        self.last_activity = datetime.now()
        self.exit_code: Optional[int] = None

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._master_fd: Optional[int] = None
        self._chunks: asyncio.Queue = asyncio.Queue()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._reading = False

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update({
            "TERM": "xterm-256color",
            "PS1": "",
            "PS2": "",
        })
        env.update(self.extra_env)
        return env

    async def start(self) -> int:
        """
        Spawn the shell and wait out the warm-up grace period.

        Returns:
            Process id of the shell

        Raises:
            ProcessSessionError: If the shell could not be spawned
        """
        if self._proc:
            return self._proc.pid

        master_fd, slave_fd = pty.openpty()
        attrs = termios.tcgetattr(slave_fd)
        # No echo (typed commands must not show up as output), no line editing
        # (canonical mode caps a line at 4096 bytes); ISIG stays on for Ctrl-C
        attrs[3] &= ~(termios.ECHO | termios.ICANON)
        attrs[6][termios.VMIN] = 1
        attrs[6][termios.VTIME] = 0
        termios.tcsetattr(slave_fd, termios.TCSANOW, attrs)
        fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, struct.pack("HHHH", self.rows, self.cols, 0, 0))

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.shell_command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.working_dir,
                env=self._build_env(),
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except OSError as e:
            os.close(master_fd)
            raise ProcessSessionError(f"Failed to spawn {self.shell_command[0]}: {e}") from e
        finally:
            os.close(slave_fd)

        self._master_fd = master_fd
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        self._reading = True
        logger.info(f"Spawned shell for channel {self.channel_id} (pid={self._proc.pid}, session={self.id})")

        await asyncio.sleep(self.warmup_seconds)
        return self._proc.pid

    def _on_readable(self):
        try:
            data = os.read(self._master_fd, 4096)
        except OSError:
            # EIO once every slave fd is closed, i.e. the shell exited
            data = b""

        if not data:
            self._stop_reading()
            tail = self._decoder.decode(b"", final=True)
            if tail:
                self._push(tail)
            self._chunks.put_nowait(None)
            return

        text = self._decoder.decode(data)
        if text:
            self._push(text)

    def _push(self, text: str):
        self.output_buffer.append(text)
        self.last_activity = datetime.now()
        self._chunks.put_nowait(text)

    def _stop_reading(self):
        if self._reading and self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
            self._reading = False

    async def chunks(self) -> AsyncIterator[str]:
        """Yield output chunks in arrival order until the process exits. Single consumer."""
        while True:
            chunk = await self._chunks.get()
            if chunk is None:
                break
            yield chunk

    async def wait(self) -> Optional[int]:
        """Wait for the shell to exit and return its exit code."""
        if not self._proc:
            return None
        self.exit_code = await self._proc.wait()
        return self.exit_code

    def write(self, text: str) -> bool:
        """
        Write raw text to the terminal.

        Returns:
            True if every byte was written
        """
        if not self.is_alive or self._master_fd is None:
            logger.error(f"Shell for channel {self.channel_id} is not running")
            return False

        data = text.encode("utf-8")
        try:
            while data:
                written = os.write(self._master_fd, data)
                data = data[written:]
        except OSError as e:
            logger.error(f"Failed to write to shell for channel {self.channel_id}: {e}")
            return False
        self.last_activity = datetime.now()
        return True

    def write_line(self, line: str) -> bool:
        """Write one command line followed by a line terminator."""
        return self.write(line + "\n")

    def interrupt(self) -> bool:
        """Send Ctrl-C to the foreground job."""
        return self.write(INTERRUPT_KEY)

    def resize(self, cols: int, rows: int) -> bool:
        if self._master_fd is None:
            return False
        try:
            fcntl.ioctl(self._master_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
        except OSError as e:
            logger.warning(f"Failed to resize terminal for channel {self.channel_id}: {e}")
            return False
        self.cols, self.rows = cols, rows
        return True

    def get_output(self, lines: int = 50) -> list[str]:
        """Return the most recent output chunks with ANSI codes stripped."""
        if lines <= 0:
            return []
        return [strip_ansi(chunk) for chunk in list(self.output_buffer)[-lines:]]

    async def close(self):
        """Terminate the shell and its jobs, then release the pty."""
        self._stop_reading()
        if self._proc and self._proc.returncode is None:
            try:
                # Interactive shells ignore SIGTERM; SIGHUP ends the shell and its jobs
                os.killpg(self._proc.pid, signal.SIGHUP)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=self.terminate_seconds)
            except asyncio.TimeoutError:
                self._proc.kill()
                await self._proc.wait()
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None
        self._chunks.put_nowait(None)
        logger.info(f"Closed shell for channel {self.channel_id} (session={self.id})")
