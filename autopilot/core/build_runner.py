"""Build and test execution for the target project."""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from autopilot.config.models import ProjectConfiguration, ProjectType

from .exceptions import BuildTestError

logger = logging.getLogger(__name__)

SHELL = "/bin/bash"

DEFAULT_BUILD_COMMANDS: Dict[ProjectType, str] = {
    ProjectType.SWIFT: "swift build",
    ProjectType.XCODE: "xcodebuild build",
    ProjectType.TYPESCRIPT: "npm run build",
    ProjectType.JAVASCRIPT: "npm run build",
    ProjectType.RUST: "cargo build",
    ProjectType.GO: "go build ./...",
}

DEFAULT_TEST_COMMANDS: Dict[ProjectType, str] = {
    ProjectType.SWIFT: "swift test",
    ProjectType.XCODE: "xcodebuild test",
    ProjectType.TYPESCRIPT: "npm test",
    ProjectType.JAVASCRIPT: "npm test",
    ProjectType.RUST: "cargo test",
    ProjectType.GO: "go test ./...",
    ProjectType.PYTHON: "pytest",
}


@dataclass
class CommandResult:
    """Result of a build or test command."""

    success: bool
    output: str
    error_output: Optional[str]
    exit_code: int
    duration: float
    command: str = ""
    timed_out: bool = False

    @property
    def failure_output(self) -> str:
        """Output most useful for diagnosing a failure."""
        return self.error_output or self.output


def detect_project_type(directory: Path) -> ProjectType:
    """Detect the project type from manifest files in the directory."""
    directory = Path(directory)
    if (directory / "Package.swift").exists():
        return ProjectType.SWIFT
    if any(child.suffix == ".xcodeproj" for child in directory.iterdir()):
        return ProjectType.XCODE
    if (directory / "package.json").exists():
        if (directory / "tsconfig.json").exists():
            return ProjectType.TYPESCRIPT
        return ProjectType.JAVASCRIPT
    if (directory / "Cargo.toml").exists():
        return ProjectType.RUST
    if (directory / "go.mod").exists():
        return ProjectType.GO
    for manifest in ("pyproject.toml", "setup.py", "requirements.txt"):
        if (directory / manifest).exists():
            return ProjectType.PYTHON
    return ProjectType.UNKNOWN


class BuildRunner:
    """Runs build and test commands through the shell."""

    def __init__(self, shell: str = SHELL):
        self.shell = shell
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def effective_project_type(self, directory: Path, config: ProjectConfiguration) -> ProjectType:
        if config.project_type != ProjectType.UNKNOWN:
            return config.project_type
        return detect_project_type(directory)

    def build_command(self, directory: Path, config: ProjectConfiguration) -> Optional[str]:
        """Configured build command, else the default for the project type."""
        if config.build_command:
            return config.build_command
        return DEFAULT_BUILD_COMMANDS.get(self.effective_project_type(directory, config))

    def test_command(self, directory: Path, config: ProjectConfiguration) -> Optional[str]:
        """Configured test command, else the default for the project type."""
        if config.test_command:
            return config.test_command
        return DEFAULT_TEST_COMMANDS.get(self.effective_project_type(directory, config))

    async def run_build(
        self, directory: Path, config: ProjectConfiguration, timeout: Optional[float] = None
    ) -> CommandResult:
        """Run the project build.

        Raises:
            BuildTestError: If no build command is known or it cannot start
        """
        command = self.build_command(directory, config)
        if command is None:
            raise BuildTestError("No build command configured for this project")
        return await self.run_command(command, directory, timeout)

    async def run_tests(
        self, directory: Path, config: ProjectConfiguration, timeout: Optional[float] = None
    ) -> CommandResult:
        """Run the project tests.

        Raises:
            BuildTestError: If no test command is known or it cannot start
        """
        command = self.test_command(directory, config)
        if command is None:
            raise BuildTestError("No test command configured for this project")
        return await self.run_command(command, directory, timeout)

    async def run_command(
        self, command: str, directory: Path, timeout: Optional[float] = None
    ) -> CommandResult:
        """Run a shell command, killing it when the timeout elapses."""
        start_time = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                command,
                cwd=str(directory),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise BuildTestError(f"Failed to start '{command}': {e}") from e

        self._process = process
        timed_out = False
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Command '%s' timed out after %ss", command, timeout)
            timed_out = True
            self.terminate()
            stdout, stderr = await process.communicate()
        finally:
            if self._process is process:
                self._process = None

        error_output = stderr.decode("utf-8", errors="replace")
        exit_code = process.returncode if process.returncode is not None else -1
        return CommandResult(
            success=exit_code == 0 and not timed_out,
            output=stdout.decode("utf-8", errors="replace"),
            error_output=error_output or None,
            exit_code=exit_code,
            duration=time.monotonic() - start_time,
            command=command,
            timed_out=timed_out,
        )

    def terminate(self) -> None:
        """Kill the running command and its children, if any."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
