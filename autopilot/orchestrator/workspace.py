"""Several independent workflow instances side by side.

Each instance owns its context, state machine, agent executor and build
runner, so instances never share mutable state. A second instance that
targets a repository already in use is bound to a fresh git worktree.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from autopilot.config.models import AutopilotConfig
from autopilot.core.agent_executor import AgentExecutor
from autopilot.core.build_runner import BuildRunner
from autopilot.core.exceptions import AutopilotError, GitOperationError
from autopilot.core.git_utils import GitUtils, WorktreeInfo

from .execution_context import ExecutionContext
from .state_machine import ExecutionStateMachine

logger = logging.getLogger(__name__)

MachineFactory = Callable[[ExecutionContext], ExecutionStateMachine]


@dataclass
class WorkflowInstance:
    """One workflow: its context, its state machine and maybe a worktree."""

    id: str
    label: str
    context: ExecutionContext
    state_machine: ExecutionStateMachine
    repository_path: Optional[Path] = None
    worktree: Optional[WorktreeInfo] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def working_directory(self) -> Optional[Path]:
        return self.context.project_path


class Workspace:
    """Manages independent workflow instances."""

    def __init__(
        self,
        config: Optional[AutopilotConfig] = None,
        git: Optional[GitUtils] = None,
        machine_factory: Optional[MachineFactory] = None,
    ):
        """Initialize an empty workspace.

        Args:
            config: Configuration for new instances (defaults if None)
            git: Git helper used for worktrees (creates default if None)
            machine_factory: Builds the state machine of a new context
        """
        self.config = config or AutopilotConfig()
        self.git = git or GitUtils()
        self._machine_factory = machine_factory or self._default_machine
        self._instances: Dict[str, WorkflowInstance] = {}
        self.active_id: Optional[str] = None

    def _default_machine(self, context: ExecutionContext) -> ExecutionStateMachine:
        agent = context.config.agent
        return ExecutionStateMachine(
            context,
            executor=AgentExecutor(executable=agent.executable, extra_args=agent.extra_args),
            git=self.git,
            build_runner=BuildRunner(),
        )

    @property
    def instances(self) -> List[WorkflowInstance]:
        return list(self._instances.values())

    @property
    def active_instance(self) -> Optional[WorkflowInstance]:
        if self.active_id is None:
            return None
        return self._instances.get(self.active_id)

    def get(self, instance_id: str) -> WorkflowInstance:
        try:
            return self._instances[instance_id]
        except KeyError:
            raise AutopilotError(f"Unknown workflow instance: {instance_id}") from None

    def select(self, instance_id: str) -> WorkflowInstance:
        """Make an instance the active one."""
        instance = self.get(instance_id)
        self.active_id = instance.id
        return instance

    async def create_instance(
        self,
        project_path: Optional[Union[str, Path]] = None,
        label: str = "New Workflow",
        isolate: bool = True,
    ) -> WorkflowInstance:
        """
        Add a workflow instance and make it active.

        Args:
            project_path: Project directory of the new instance
            label: Display label
            isolate: Use a worktree when another instance targets the same repository

        Returns:
            The new instance

        Raises:
            GitOperationError: If the worktree cannot be created
        """
        context = ExecutionContext(self.config.model_copy(deep=True))
        repository: Optional[Path] = None
        worktree: Optional[WorktreeInfo] = None

        if project_path is not None:
            repository = Path(project_path).resolve()
            context.project_path = repository
            if isolate and self._repository_in_use(repository):
                if await self.git.is_git_repo(repository):
                    worktree = await self.git.create_worktree(repository)
                    context.project_path = worktree.worktree_path
                    logger.info(
                        "Isolated %s in worktree %s", repository, worktree.worktree_path
                    )
                else:
                    logger.warning(
                        "%s is already open but is not a git repository; sharing it",
                        repository,
                    )

        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            label=label,
            context=context,
            state_machine=self._machine_factory(context),
            repository_path=repository,
            worktree=worktree,
        )
        self._instances[instance.id] = instance
        self.active_id = instance.id
        return instance

    def _repository_in_use(self, repository: Path) -> bool:
        return any(
            instance.repository_path == repository for instance in self._instances.values()
        )

    async def close_instance(self, instance_id: str, remove_worktree: bool = True) -> None:
        """
        Stop an instance if it is running and remove it.

        Its worktree, if any, is removed unless ``remove_worktree`` is False.
        """
        instance = self.get(instance_id)
        if instance.context.can_stop:
            await instance.state_machine.stop()

        if instance.worktree is not None and remove_worktree:
            try:
                await self.git.remove_worktree(instance.worktree, force=True)
            except GitOperationError as e:
                logger.warning("Could not remove worktree %s: %s", instance.worktree.worktree_path, e)

        del self._instances[instance_id]
        if self.active_id == instance_id:
            self.active_id = next(iter(self._instances), None)

    async def close_all(self) -> None:
        for instance_id in list(self._instances):
            await self.close_instance(instance_id)
