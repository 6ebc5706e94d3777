"""Tests for build and test command execution."""

import asyncio

import pytest

from autopilot.config.models import ProjectConfiguration, ProjectType
from autopilot.core.build_runner import BuildRunner, CommandResult, detect_project_type
from autopilot.core.exceptions import BuildTestError


class TestDetectProjectType:
    """Test project type detection from manifest files."""

    @pytest.mark.parametrize(
        "files,expected",
        [
            (["Package.swift"], ProjectType.SWIFT),
            (["package.json", "tsconfig.json"], ProjectType.TYPESCRIPT),
            (["package.json"], ProjectType.JAVASCRIPT),
            (["Cargo.toml"], ProjectType.RUST),
            (["go.mod"], ProjectType.GO),
            (["pyproject.toml"], ProjectType.PYTHON),
            (["requirements.txt"], ProjectType.PYTHON),
            (["README.md"], ProjectType.UNKNOWN),
        ],
    )
    def test_detects_manifests(self, project_dir, files, expected):
        for name in files:
            (project_dir / name).write_text("")

        assert detect_project_type(project_dir) == expected

    def test_detects_xcode_project(self, project_dir):
        (project_dir / "App.xcodeproj").mkdir()

        assert detect_project_type(project_dir) == ProjectType.XCODE


class TestCommands:
    """Test command resolution."""

    def test_configured_command_wins(self, project_dir):
        (project_dir / "Cargo.toml").write_text("")
        config = ProjectConfiguration(build_command="make", test_command="make check")
        runner = BuildRunner()

        assert runner.build_command(project_dir, config) == "make"
        assert runner.test_command(project_dir, config) == "make check"

    def test_defaults_from_detected_type(self, project_dir):
        (project_dir / "Cargo.toml").write_text("")
        runner = BuildRunner()

        assert runner.build_command(project_dir, ProjectConfiguration()) == "cargo build"
        assert runner.test_command(project_dir, ProjectConfiguration()) == "cargo test"

    def test_configured_type_skips_detection(self, project_dir):
        (project_dir / "Cargo.toml").write_text("")
        config = ProjectConfiguration(project_type=ProjectType.GO)

        assert BuildRunner().build_command(project_dir, config) == "go build ./..."

    def test_python_has_no_build(self, project_dir):
        (project_dir / "pyproject.toml").write_text("")
        runner = BuildRunner()

        assert runner.build_command(project_dir, ProjectConfiguration()) is None
        assert runner.test_command(project_dir, ProjectConfiguration()) == "pytest"

    def test_run_build_without_command(self, project_dir):
        with pytest.raises(BuildTestError, match="No build command"):
            asyncio.run(BuildRunner().run_build(project_dir, ProjectConfiguration()))


class TestRunCommand:
    """Test running shell commands."""

    def test_success(self, project_dir):
        result = asyncio.run(BuildRunner().run_command("echo built", project_dir))

        assert result.success
        assert result.exit_code == 0
        assert result.output == "built\n"
        assert result.error_output is None
        assert result.command == "echo built"

    def test_failure_keeps_stderr(self, project_dir):
        result = asyncio.run(
            BuildRunner().run_command("echo partial; echo 'error: boom' >&2; exit 3", project_dir)
        )

        assert not result.success
        assert result.exit_code == 3
        assert result.output == "partial\n"
        assert result.failure_output == "error: boom\n"

    def test_failure_output_falls_back_to_stdout(self):
        result = CommandResult(
            success=False, output="FAILED test_x", error_output=None, exit_code=1, duration=0.1
        )

        assert result.failure_output == "FAILED test_x"

    def test_runs_in_directory(self, project_dir):
        (project_dir / "marker.txt").write_text("here")

        result = asyncio.run(BuildRunner().run_command("cat marker.txt", project_dir))

        assert result.output == "here"

    @pytest.mark.slow
    def test_timeout_kills_command(self, project_dir):
        runner = BuildRunner()

        result = asyncio.run(runner.run_command("sleep 10", project_dir, timeout=0.5))

        assert result.timed_out
        assert not result.success
        assert result.duration < 5
        assert not runner.is_running

    def test_missing_shell(self, project_dir):
        runner = BuildRunner(shell=str(project_dir / "no-shell"))

        with pytest.raises(BuildTestError, match="Failed to start"):
            asyncio.run(runner.run_command("true", project_dir))

    def test_terminate_when_idle_is_noop(self):
        runner = BuildRunner()

        runner.terminate()

        assert not runner.is_running
