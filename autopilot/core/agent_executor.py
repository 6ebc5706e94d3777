"""Invoke the agent CLI and collect the outcome of one run.

This module builds the agent command line for a permission mode and optional
session, streams the run through an AgentProcess, forwards every decoded
message to a callback, and returns the terminal result.
"""

import os
import shutil
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from .agent_process import DEFAULT_LINE_LIMIT, AgentProcess
from .exceptions import AgentNotFoundError, NoResultMessageError
from .phases import PermissionMode
from .prompt_content import PromptContent
from .stream_messages import ResultMessage, Usage

MessageCallback = Callable[[object], None]


@dataclass
class AgentResult:
    """Result of one agent invocation."""

    result: str
    session_id: Optional[str]
    total_cost_usd: float
    duration_ms: int
    is_error: bool
    usage: Usage = field(default_factory=Usage)
    num_turns: int = 0

    @classmethod
    def from_message(cls, message: ResultMessage) -> "AgentResult":
        return cls(
            result=message.result,
            session_id=message.session_id,
            total_cost_usd=message.total_cost_usd,
            duration_ms=message.duration_ms,
            is_error=message.is_error,
            usage=message.usage,
            num_turns=message.num_turns,
        )


class AgentExecutor:
    """Execute the agent CLI with streaming output and cooperative cancellation."""

    def __init__(
        self,
        executable: str = "claude",
        extra_args: Optional[Sequence[str]] = None,
        default_timeout: Optional[float] = None,
        line_limit: int = DEFAULT_LINE_LIMIT,
    ):
        """Initialize agent executor.

        Args:
            executable: Agent executable name or path
            extra_args: Additional arguments appended to every invocation
            default_timeout: Timeout in seconds when execute() is given none
            line_limit: Maximum length of one output line in bytes
        """
        self.executable = executable
        self.extra_args: List[str] = list(extra_args or [])
        self.default_timeout = default_timeout
        self.line_limit = line_limit
        self._current: Optional[AgentProcess] = None

    @property
    def is_running(self) -> bool:
        return self._current is not None and self._current.is_running

    def resolve_executable(self) -> str:
        """Absolute path of the agent executable.

        Raises:
            AgentNotFoundError: If it cannot be found
        """
        if os.sep in self.executable:
            if os.access(self.executable, os.X_OK):
                return self.executable
            raise AgentNotFoundError(self.executable)
        resolved = shutil.which(self.executable)
        if resolved is None:
            raise AgentNotFoundError(self.executable)
        return resolved

    def validate_agent_available(self) -> bool:
        """Check if the agent executable can be found."""
        try:
            self.resolve_executable()
        except AgentNotFoundError:
            return False
        return True

    def build_arguments(
        self,
        prompt: PromptContent,
        permission_mode: PermissionMode = PermissionMode.DEFAULT,
        session_id: Optional[str] = None,
    ) -> List[str]:
        """Build the argument vector for one invocation."""
        args = [
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            PermissionMode(permission_mode).value,
        ]
        if session_id:
            args.extend(["--resume", session_id])
        args.extend(self.extra_args)
        if prompt.has_images:
            # Prompt travels on stdin as structured content
            args.extend(["--input-format", "stream-json"])
        else:
            args.append(prompt.text)
        return args

    async def execute(
        self,
        prompt: Union[str, PromptContent],
        working_dir: Path,
        permission_mode: PermissionMode = PermissionMode.DEFAULT,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
        on_message: Optional[MessageCallback] = None,
    ) -> AgentResult:
        """Run the agent once and return its result.

        Args:
            prompt: Prompt text or content with images
            working_dir: Project directory the agent works in
            permission_mode: Agent permission level
            session_id: Session to resume, if any
            timeout: Timeout in seconds (uses default if None)
            on_message: Called with every decoded message, in order

        Returns:
            AgentResult built from the final result message

        Raises:
            AgentProcessError: If the process fails (see AgentProcess.messages)
            NoResultMessageError: If the stream ended without a result
        """
        content = PromptContent.coerce(prompt)
        process = AgentProcess(
            executable=self.resolve_executable(),
            arguments=self.build_arguments(content, permission_mode, session_id),
            working_dir=Path(working_dir),
            timeout=timeout if timeout is not None else self.default_timeout,
            stdin_data=content.stdin_payload() if content.has_images else None,
            line_limit=self.line_limit,
        )
        self._current = process

        result_message: Optional[ResultMessage] = None
        try:
            async with aclosing(process.messages()) as messages:
                async for message in messages:
                    if isinstance(message, ResultMessage):
                        result_message = message
                    if on_message is not None:
                        on_message(message)
        finally:
            if self._current is process:
                self._current = None

        if result_message is None:
            raise NoResultMessageError()
        return AgentResult.from_message(result_message)

    def interrupt(self) -> None:
        """Gracefully interrupt the running invocation, if any."""
        if self._current is not None:
            self._current.interrupt()

    def terminate(self) -> None:
        """Kill the running invocation, if any."""
        if self._current is not None:
            self._current.terminate()

    async def wait_stopped(self) -> None:
        """Wait until the running invocation, if any, has been reaped."""
        process = self._current
        if process is not None:
            await process.wait_closed()
