"""Shared pytest fixtures and utilities for autopilot tests."""

import subprocess
from pathlib import Path
from typing import Generator

import pytest

from autopilot.config.models import AutopilotConfig
from autopilot.orchestrator import ExecutionContext, ExecutionStateMachine, PlanStorage
from autopilot.tests.mocks import SAMPLE_PLAN, FakeAgentExecutor, FakeBuildRunner, FakeGit


# ============================================================================
# Directory and File Fixtures
# ============================================================================


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Empty project directory the agent would work in."""
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def git_repo(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary git repository for testing.

    The repository is initialized with:
    - Git config (user.name and user.email)
    - Initial commit with README.md

    Yields:
        Path to the git repository
    """
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir(parents=True, exist_ok=True)

    for command in (
        ["git", "init"],
        ["git", "config", "user.name", "Test User"],
        ["git", "config", "user.email", "test@example.com"],
    ):
        subprocess.run(command, cwd=repo_path, check=True, capture_output=True)

    readme = repo_path / "README.md"
    readme.write_text("# Test Repository\n\nGenerated for testing.\n")
    subprocess.run(["git", "add", "."], cwd=repo_path, check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial commit"],
        cwd=repo_path,
        check=True,
        capture_output=True,
    )

    yield repo_path


@pytest.fixture
def plan_file(tmp_path: Path) -> Path:
    """Plan document with two tasks."""
    path = tmp_path / "plan.md"
    path.write_text(SAMPLE_PLAN, encoding="utf-8")
    return path


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def config() -> AutopilotConfig:
    """Default configuration."""
    return AutopilotConfig()


@pytest.fixture
def sample_config_dict() -> dict:
    """Configuration dictionary as found in config.yaml."""
    return {
        "agent": {"executable": "claude", "context_window_size": 100000},
        "retry": {"max_attempts": 2, "initial_delay": 0.5},
        "autonomous": {
            "auto_answer_enabled": True,
            "auto_failure_handling": "retryThenSkip",
            "run_build_after_commit": True,
        },
        "timeouts": {"plan_mode_timeout": "5m", "execution_timeout": "1h"},
        "project": {"build_command": "make", "max_build_fix_attempts": 2},
        "logging": {"level": "debug", "retention_days": 7},
    }


# ============================================================================
# State Machine Fixtures
# ============================================================================


async def no_sleep(delay: float) -> None:
    """Retry delay replacement that returns immediately."""
    return None


@pytest.fixture
def make_machine(project_dir: Path):
    """Factory building a state machine wired to fakes.

    Returns:
        Function taking (config, executor, git, build_runner) overrides
    """

    def _make(
        config: AutopilotConfig = None,
        executor: FakeAgentExecutor = None,
        git: FakeGit = None,
        build_runner: FakeBuildRunner = None,
    ) -> ExecutionStateMachine:
        context = ExecutionContext(config or AutopilotConfig())
        context.project_path = project_dir
        return ExecutionStateMachine(
            context,
            executor=executor or FakeAgentExecutor(),
            git=git or FakeGit(),
            build_runner=build_runner or FakeBuildRunner(),
            plan_storage=PlanStorage(project_dir),
            sleep=no_sleep,
        )

    return _make


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (may be slower)"
    )
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "git: mark test as requiring git operations")
    config.addinivalue_line("markers", "unit: mark test as unit test (fast, isolated)")
