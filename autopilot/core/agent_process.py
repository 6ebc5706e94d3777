"""Streaming subprocess engine for the agent CLI.

An AgentProcess runs the agent executable once and exposes its stdout as an
async iterator of decoded stream messages. The process is started on first
consumption and is always reaped before the iterator finishes: on clean exit,
non-zero exit, timeout, interruption, or when the consumer stops early.
"""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import AsyncIterator, List, Optional, Sequence

from .exceptions import (
    AgentNotFoundError,
    NonZeroExitError,
    OutputReadError,
    ProcessInterruptedError,
    ProcessTimeoutError,
)
from .stream_messages import StreamMessageParser

logger = logging.getLogger(__name__)

# stream-json lines embed whole file contents; the asyncio default of 64 KiB is too small
DEFAULT_LINE_LIMIT = 16 * 1024 * 1024


class AgentProcess:
    """A single, non-restartable run of the agent executable."""

    def __init__(
        self,
        executable: str,
        arguments: Sequence[str],
        working_dir: Path,
        timeout: Optional[float] = None,
        stdin_data: Optional[bytes] = None,
        parser: Optional[StreamMessageParser] = None,
        line_limit: int = DEFAULT_LINE_LIMIT,
    ):
        """Initialize the process wrapper.

        Args:
            executable: Path or name of the agent executable
            arguments: Argument vector (without the executable)
            working_dir: Working directory for the process
            timeout: Wall-clock timeout in seconds (None for no limit)
            stdin_data: Bytes delivered on stdin, which is closed afterwards
            parser: Line decoder (a lenient StreamMessageParser by default)
            line_limit: Maximum length of one output line in bytes
        """
        self.executable = executable
        self.arguments: List[str] = list(arguments)
        self.working_dir = Path(working_dir)
        self.timeout = timeout
        self.stdin_data = stdin_data
        self.parser = parser or StreamMessageParser()
        self.line_limit = line_limit
        self.stderr = ""

        self._process: Optional[asyncio.subprocess.Process] = None
        self._consumed = False
        self._interrupt_requested = False
        self._terminate_requested = False
        self._signal_delivered = False
        self._timed_out = False
        self._closed = asyncio.Event()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def messages(self) -> AsyncIterator:
        """Start the process and yield decoded messages in emission order.

        Raises:
            AgentNotFoundError: If the executable does not exist
            OutputReadError: If the process cannot start or its output cannot be read
            ProcessTimeoutError: If the timeout elapsed
            ProcessInterruptedError: If interrupt() or terminate() stopped the process
            NonZeroExitError: If the process exited with a non-zero status
        """
        if self._consumed:
            raise RuntimeError("AgentProcess output can only be consumed once")
        self._consumed = True

        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *self.arguments,
                cwd=str(self.working_dir),
                stdin=asyncio.subprocess.PIPE
                if self.stdin_data is not None
                else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.line_limit,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            self._closed.set()
            raise AgentNotFoundError(self.executable) from e
        except OSError as e:
            self._closed.set()
            raise OutputReadError(f"Failed to start agent process: {e}") from e

        self._process = process
        logger.debug("Started agent process %s: %s", process.pid, self.executable)

        # Signals requested before the process existed
        if self._terminate_requested:
            self._kill()
        elif self._interrupt_requested:
            self._send_signal(signal.SIGINT)

        stderr_task = asyncio.ensure_future(process.stderr.read())
        stdin_task = (
            asyncio.ensure_future(self._write_stdin(process))
            if self.stdin_data is not None
            else None
        )
        watchdog = (
            asyncio.ensure_future(self._watch_timeout(self.timeout))
            if self.timeout
            else None
        )

        try:
            while True:
                try:
                    raw = await process.stdout.readline()
                except (ValueError, asyncio.LimitOverrunError) as e:
                    raise OutputReadError(f"Failed to read agent output: {e}") from e
                if not raw:
                    break

                message = self.parser.parse(raw.decode("utf-8", errors="replace"))
                if message is not None:
                    yield message

            exit_code = await process.wait()
            stderr = await stderr_task
            self.stderr = stderr.decode("utf-8", errors="replace")

            if self._timed_out:
                raise ProcessTimeoutError(self.timeout)
            if self._signal_delivered:
                raise ProcessInterruptedError()
            if exit_code != 0:
                raise NonZeroExitError(exit_code, self.stderr)

        finally:
            if watchdog is not None:
                watchdog.cancel()
            if stdin_task is not None and not stdin_task.done():
                stdin_task.cancel()
            await self._reap()
            if not stderr_task.done():
                stderr_task.cancel()
            self._closed.set()
            logger.debug(
                "Agent process %s finished with code %s", process.pid, process.returncode
            )

    def interrupt(self) -> None:
        """Ask the process to stop gracefully (SIGINT). Idempotent."""
        self._interrupt_requested = True
        self._send_signal(signal.SIGINT)

    def terminate(self) -> None:
        """Kill the process and its process group. Idempotent."""
        self._terminate_requested = True
        self._kill()

    async def wait_closed(self) -> None:
        """Wait until a consumed process has exited and been reaped."""
        if self._consumed:
            await self._closed.wait()

    async def _reap(self) -> None:
        if self._process is None:
            return
        if self._process.returncode is None:
            self._kill()
        await self._process.wait()

    async def _watch_timeout(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self.is_running:
            logger.warning("Agent process %s timed out after %ss", self.pid, timeout)
            self._timed_out = True
            self._kill()

    async def _write_stdin(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.stdin.write(self.stdin_data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            # The exit status reports the real failure
            logger.debug("Agent closed stdin early: %s", e)
        finally:
            process.stdin.close()

    def _kill(self) -> None:
        if not self.is_running:
            return
        try:
            os.killpg(self._process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except PermissionError:
            self._process.kill()
        self._signal_delivered = True

    def _send_signal(self, sig: int) -> None:
        if not self.is_running:
            return
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            return
        self._signal_delivered = True
