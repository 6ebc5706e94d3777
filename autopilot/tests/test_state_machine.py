"""Tests for the execution state machine."""

import asyncio

import pytest

from autopilot.config.models import AutopilotConfig, AutoFailureHandling
from autopilot.core.exceptions import (
    ConfigurationError,
    GitOperationError,
    InvalidControlSignalError,
)
from autopilot.core.phases import ExecutionPhase, PermissionMode
from autopilot.core.plan import PlanTask, TaskStatus
from autopilot.core.prompt_content import ImageAttachment
from autopilot.orchestrator import TaskFailureResponse, parse_plan
from autopilot.orchestrator.execution_context import FallbackReasonKind, LogType, QuestionAnswer
from autopilot.orchestrator.state_machine import format_clarifications, is_ui_task
from autopilot.tests.mocks import (
    SAMPLE_PLAN,
    FakeAgentExecutor,
    FakeBuildRunner,
    FakeGit,
    MockRun,
    ask_user_question,
    assistant_text,
    assistant_tool_use,
    command_result,
)

FEATURE = "Add CSV export to the reports page"


def fail_first_task(call):
    """Agent run that fails for task 1 and succeeds otherwise."""
    if "## Task 1:" in call.prompt:
        return MockRun(result="Could not finish", is_error=True)
    return MockRun()


async def wait_until(predicate, attempts: int = 1000) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("Condition never became true")


class BlockingCommitGit(FakeGit):
    """Holds commits whose message starts with a prefix until released."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix
        self.blocked = asyncio.Event()
        self.release = asyncio.Event()

    async def commit_all(self, message, directory, timeout=None):
        if message.startswith(self.prefix):
            self.blocked.set()
            await self.release.wait()
        return await super().commit_all(message, directory, timeout)


def log_messages(machine, log_type=LogType.INFO):
    return [entry.message for entry in machine.context.logs if entry.type == log_type]


class TestHelpers:
    """Test module-level helpers."""

    def test_ui_task_detection(self):
        assert is_ui_task(PlanTask(id="1", ordinal=1, title="Add export button"))
        assert is_ui_task(PlanTask(id="1", ordinal=1, title="Polish", description="Style the sidebar"))
        assert not is_ui_task(PlanTask(id="1", ordinal=1, title="Create export model"))
        # Keywords only match whole words
        assert not is_ui_task(PlanTask(id="1", ordinal=1, title="Build the parser"))

    def test_format_clarifications(self):
        text = format_clarifications(
            [
                QuestionAnswer(question="Which format?", answer="CSV"),
                QuestionAnswer(question="Paginate?", answer="No"),
            ]
        )
        assert text == "Q: Which format?\nA: CSV\n\nQ: Paginate?\nA: No"


class TestHappyPath:
    """Test a run where every step succeeds."""

    def test_full_run_completes_all_tasks(self, make_machine, project_dir):
        executor = FakeAgentExecutor()
        git = FakeGit()
        machine = make_machine(executor=executor, git=git)

        asyncio.run(machine.start(project_dir, FEATURE))

        context = machine.context
        assert machine.phase == ExecutionPhase.COMPLETED
        assert [task.status for task in context.plan.tasks] == [
            TaskStatus.COMPLETED,
            TaskStatus.COMPLETED,
        ]
        assert executor.kinds == [
            "generate_plan",
            "rewrite_plan",
            "execute_task",
            "review_code",
            "write_tests",
            "execute_task",
            "review_code",
            "write_tests",
        ]
        assert git.commits == [
            "feat: implement Create export model",
            "refactor: code review fixes for Create export model",
            "test: add tests for Create export model",
            "feat: implement Add export endpoint",
            "refactor: code review fixes for Add export endpoint",
            "test: add tests for Add export endpoint",
        ]
        assert (project_dir / "plan.md").read_text() == context.plan.raw_text

    def test_permission_modes_and_timeouts(self, make_machine, project_dir):
        executor = FakeAgentExecutor()
        machine = make_machine(executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        modes = {call.kind: call.permission_mode for call in executor.calls}
        assert modes == {
            "generate_plan": PermissionMode.PLAN,
            "rewrite_plan": PermissionMode.PLAN,
            "execute_task": PermissionMode.ACCEPT_EDITS,
            "review_code": PermissionMode.PLAN,
            "write_tests": PermissionMode.PLAN,
        }
        timeouts = machine.context.timeout_configuration
        assert executor.calls_of("execute_task")[0].timeout == timeouts.execution_timeout
        assert executor.calls_of("review_code")[0].timeout == timeouts.plan_mode_timeout
        assert all(call.working_dir == project_dir for call in executor.calls)

    def test_sessions_resume_within_task_and_reset_between_tasks(
        self, make_machine, project_dir
    ):
        executor = FakeAgentExecutor()
        machine = make_machine(executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert executor.calls_of("generate_plan")[0].session_id is None
        assert executor.calls_of("rewrite_plan")[0].session_id == "session-1"
        assert executor.calls_of("review_code")[0].session_id == "session-1"
        # The context is cleared after task 1
        assert executor.calls_of("execute_task")[1].session_id is None
        assert machine.context.session_id is None

    def test_usage_is_accumulated(self, make_machine, project_dir):
        machine = make_machine()

        asyncio.run(machine.start(project_dir, FEATURE))

        context = machine.context
        assert context.total_input_tokens == 800
        assert context.total_output_tokens == 400
        assert context.total_cost == pytest.approx(0.08)

    def test_task_prompts_carry_task_and_progress(self, make_machine, project_dir):
        executor = FakeAgentExecutor()
        machine = make_machine(executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        first, second = executor.calls_of("execute_task")
        assert "## Task 1: Create export model" in first.prompt
        assert "- [ ] Model has a name field" in first.prompt
        assert "Already Completed" not in first.prompt
        assert "## Task 2: Add export endpoint" in second.prompt
        assert "- Task 1: Create export model" in second.prompt

    def test_images_attach_to_first_prompt_only(self, make_machine, project_dir):
        executor = FakeAgentExecutor()
        machine = make_machine(executor=executor)
        image = ImageAttachment(data="aGVsbG8=", media_type="image/png")

        asyncio.run(machine.start(project_dir, FEATURE, images=[image]))

        assert executor.calls[0].image_count == 1
        assert all(call.image_count == 0 for call in executor.calls[1:])

    def test_history_records_transitions(self, make_machine, project_dir):
        machine = make_machine()

        asyncio.run(machine.start(project_dir, FEATURE))

        history = machine.history
        assert history[0].from_phase == ExecutionPhase.IDLE
        assert history[0].to_phase == ExecutionPhase.GENERATING_INITIAL_PLAN
        assert history[-1].to_phase == ExecutionPhase.COMPLETED

    def test_build_and_tests_after_commit(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.run_build_after_commit = True
        config.autonomous.run_tests_after_commit = True
        runner = FakeBuildRunner()
        machine = make_machine(config=config, build_runner=runner)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert runner.builds == 2
        assert runner.test_runs == 2

    def test_ui_tasks_skip_tests(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.skip_tests_for_ui_tasks = True
        executor = FakeAgentExecutor()
        machine = make_machine(config=config, executor=executor)
        plan = parse_plan("## Task 1: Add export button\n**Description:** Button on the toolbar\n")

        asyncio.run(machine.start_with_existing_plan(plan, project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert executor.kinds == ["execute_task", "review_code"]

    def test_restart_after_completion(self, make_machine, project_dir):
        executor = FakeAgentExecutor()
        machine = make_machine(executor=executor)

        async def scenario():
            await machine.start(project_dir, FEATURE)
            await machine.start(feature_description="Add PDF export")

        asyncio.run(scenario())

        context = machine.context
        assert machine.phase == ExecutionPhase.COMPLETED
        assert context.feature_description == "Add PDF export"
        assert any(entry.type == LogType.SEPARATOR for entry in context.logs)
        assert len(executor.calls_of("generate_plan")) == 2


class TestExistingPlan:
    """Test starting from a plan document."""

    def test_runs_only_pending_tasks(self, make_machine, project_dir):
        executor = FakeAgentExecutor()
        machine = make_machine(executor=executor)
        plan = parse_plan(SAMPLE_PLAN)
        plan.tasks[0].status = TaskStatus.COMPLETED

        asyncio.run(machine.start_with_existing_plan(plan, project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert len(executor.calls_of("execute_task")) == 1
        assert "## Task 2: Add export endpoint" in executor.calls_of("execute_task")[0].prompt
        assert "generate_plan" not in executor.kinds

    def test_plan_without_pending_tasks_completes(self, make_machine, project_dir):
        executor = FakeAgentExecutor()
        machine = make_machine(executor=executor)
        plan = parse_plan(SAMPLE_PLAN)
        for task in plan.tasks:
            task.status = TaskStatus.COMPLETED

        asyncio.run(machine.start_with_existing_plan(plan, project_dir))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert executor.calls == []


class TestStartValidation:
    """Test input validation of start."""

    def test_empty_feature_is_rejected(self, make_machine, project_dir):
        machine = make_machine()

        with pytest.raises(ConfigurationError):
            asyncio.run(machine.start(project_dir, "   "))

        assert machine.phase == ExecutionPhase.IDLE
        assert machine.context.errors[-1].is_recoverable is False

    def test_missing_project_directory_is_rejected(self, make_machine, tmp_path):
        machine = make_machine()

        with pytest.raises(ConfigurationError, match="does not exist"):
            asyncio.run(machine.start(tmp_path / "missing", FEATURE))

    def test_control_signals_outside_a_run(self, make_machine):
        machine = make_machine()

        with pytest.raises(InvalidControlSignalError):
            machine.pause()
        with pytest.raises(InvalidControlSignalError):
            asyncio.run(machine.resume())
        with pytest.raises(InvalidControlSignalError):
            asyncio.run(machine.stop())
        with pytest.raises(InvalidControlSignalError):
            asyncio.run(machine.answer_question("yes"))
        with pytest.raises(InvalidControlSignalError):
            asyncio.run(machine.respond_to_task_failure("retry"))


class TestPlanningFailures:
    """Test failures while planning."""

    def test_plan_generation_error_fails_run(self, make_machine, project_dir):
        executor = FakeAgentExecutor(
            {"generate_plan": MockRun(result="Rate limited", is_error=True)}
        )
        machine = make_machine(executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.FAILED
        assert machine.context.errors[-1].message == "Generating Plan failed"
        assert "rewrite_plan" not in executor.kinds

    def test_plan_without_tasks_fails_run(self, make_machine, project_dir):
        executor = FakeAgentExecutor(
            {
                "generate_plan": MockRun(result="I need more information."),
                "rewrite_plan": MockRun(result="Still no plan."),
            }
        )
        machine = make_machine(executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.FAILED
        assert "does not contain any tasks" in machine.context.errors[-1].underlying_error

    def test_rewrite_failure_keeps_generated_plan(self, make_machine, project_dir):
        executor = FakeAgentExecutor(
            {"rewrite_plan": MockRun(result="Overloaded", is_error=True)}
        )
        machine = make_machine(executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert len(machine.context.plan.tasks) == 2
        assert "Keeping the generated plan" in log_messages(machine)


class TestTaskFailures:
    """Test the task failure policies."""

    def test_retry_then_skip(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.auto_failure_handling = AutoFailureHandling.RETRY_THEN_SKIP
        config.autonomous.max_task_retries = 1
        executor = FakeAgentExecutor({"execute_task": fail_first_task})
        git = FakeGit()
        machine = make_machine(config=config, executor=executor, git=git)

        asyncio.run(machine.start(project_dir, FEATURE))

        tasks = machine.context.plan.tasks
        assert machine.phase == ExecutionPhase.COMPLETED
        assert tasks[0].status == TaskStatus.SKIPPED
        assert tasks[1].status == TaskStatus.COMPLETED
        # One attempt plus one retry for task 1, one run for task 2
        assert len(executor.calls_of("execute_task")) == 3
        assert git.commits[0] == "feat: implement Add export endpoint"

    def test_retry_then_stop(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.auto_failure_handling = AutoFailureHandling.RETRY_THEN_STOP
        config.autonomous.max_task_retries = 0
        executor = FakeAgentExecutor({"execute_task": fail_first_task})
        machine = make_machine(config=config, executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.FAILED
        assert machine.context.plan.tasks[0].status == TaskStatus.FAILED
        assert machine.context.errors[-1].message == "Task 1 failed 1 time(s); stopping"

    def test_pause_for_user_then_retry(self, make_machine, project_dir):
        executor = FakeAgentExecutor({"execute_task": fail_first_task})
        machine = make_machine(executor=executor)

        async def scenario():
            await machine.start(project_dir, FEATURE)
            failure = machine.context.pending_task_failure
            assert failure is not None
            assert failure.task_id == "1"
            assert failure.failed_phase == ExecutionPhase.EXECUTING_TASK
            assert machine.phase == ExecutionPhase.EXECUTING_TASK
            assert not machine.context.can_pause

            executor.responses["execute_task"] = MockRun()
            await machine.respond_to_task_failure(TaskFailureResponse.RETRY)

        asyncio.run(scenario())

        assert machine.phase == ExecutionPhase.COMPLETED
        assert machine.context.pending_task_failure is None
        assert [task.status for task in machine.context.plan.tasks] == [
            TaskStatus.COMPLETED,
            TaskStatus.COMPLETED,
        ]

    def test_pause_for_user_then_skip(self, make_machine, project_dir):
        executor = FakeAgentExecutor({"execute_task": fail_first_task})
        machine = make_machine(executor=executor)

        async def scenario():
            await machine.start(project_dir, FEATURE)
            await machine.respond_to_task_failure("skip")

        asyncio.run(scenario())

        assert machine.phase == ExecutionPhase.COMPLETED
        assert machine.context.plan.tasks[0].status == TaskStatus.SKIPPED

    def test_pause_for_user_then_stop(self, make_machine, project_dir):
        executor = FakeAgentExecutor({"execute_task": fail_first_task})
        machine = make_machine(executor=executor)

        async def scenario():
            await machine.start(project_dir, FEATURE)
            await machine.respond_to_task_failure(TaskFailureResponse.STOP)

        asyncio.run(scenario())

        assert machine.phase == ExecutionPhase.FAILED
        assert machine.context.plan.tasks[0].status == TaskStatus.FAILED
        assert machine.context.pending_task_failure is None


class TestQuestions:
    """Test questions raised by the agent."""

    def test_undecodable_question_is_ignored(self, make_machine, project_dir):
        executor = FakeAgentExecutor(
            {
                "execute_task": MockRun(
                    messages=[
                        assistant_text("Checking"),
                        assistant_tool_use("AskUserQuestion", "not-an-object"),
                    ]
                )
            }
        )
        machine = make_machine(executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert machine.context.pending_question is None
        assert executor.interrupt_count == 0
        assert "Checking" in log_messages(machine, LogType.OUTPUT)
        assert "AskUserQuestion" in log_messages(machine, LogType.TOOL_USE)
        assert "Ignoring a question that could not be decoded" in log_messages(machine)

    def test_question_blocks_until_answered(self, make_machine, project_dir):
        executor = FakeAgentExecutor(
            {
                "execute_task": [
                    MockRun(messages=[ask_user_question("Which database?", ["SQLite", "PostgreSQL"])]),
                    MockRun(),
                ]
            }
        )
        machine = make_machine(executor=executor)

        async def scenario():
            await machine.start(project_dir, FEATURE)
            assert machine.phase == ExecutionPhase.WAITING_FOR_USER
            pending = machine.context.pending_question
            assert pending.raised_in_phase == ExecutionPhase.EXECUTING_TASK
            assert [option.label for option in pending.question.options] == [
                "SQLite",
                "PostgreSQL",
            ]
            assert executor.interrupt_count == 1

            await machine.answer_question("  PostgreSQL ")

        asyncio.run(scenario())

        assert machine.phase == ExecutionPhase.COMPLETED
        assert machine.context.pending_question is None
        assert machine.context.clarifications == [
            QuestionAnswer(question="Which database?", answer="PostgreSQL")
        ]
        retried = executor.calls_of("execute_task")[1]
        assert retried.prompt.startswith('You asked: "Which database?"\nAnswer: PostgreSQL\n')
        assert retried.session_id == "session-1"
        # Later prompts carry the clarification instead of the one-off answer
        later = executor.calls_of("execute_task")[2]
        assert not later.prompt.startswith("You asked")
        assert "Q: Which database?\nA: PostgreSQL" in later.prompt

    def test_empty_answer_is_rejected(self, make_machine, project_dir):
        executor = FakeAgentExecutor(
            {"execute_task": MockRun(messages=[ask_user_question("Which database?")])}
        )
        machine = make_machine(executor=executor)

        async def scenario():
            await machine.start(project_dir, FEATURE)
            with pytest.raises(InvalidControlSignalError):
                await machine.answer_question("   ")

        asyncio.run(scenario())

        assert machine.phase == ExecutionPhase.WAITING_FOR_USER

    def test_auto_answer_picks_matching_option(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.auto_answer_enabled = True
        executor = FakeAgentExecutor(
            {
                "execute_task": [
                    MockRun(messages=[ask_user_question("Which format?", ["CSV", "JSON"])]),
                    MockRun(),
                ],
                "smart_answer": MockRun(result='{"choice": "json", "reasoning": "API clients"}'),
            }
        )
        machine = make_machine(config=config, executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert machine.context.clarifications[0].answer == "JSON"
        smart = executor.calls_of("smart_answer")[0]
        assert smart.permission_mode == PermissionMode.PLAN
        assert "Which format?" in smart.prompt
        assert executor.calls_of("execute_task")[1].prompt.startswith(
            'You asked: "Which format?"\nAnswer: JSON'
        )

    def test_auto_answer_falls_back_to_first_option(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.auto_answer_enabled = True
        executor = FakeAgentExecutor(
            {
                "execute_task": [
                    MockRun(messages=[ask_user_question("Which format?", ["CSV", "JSON"])]),
                    MockRun(),
                ],
                "smart_answer": MockRun(result="I am not sure."),
            }
        )
        machine = make_machine(config=config, executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert machine.context.clarifications[0].answer == "CSV"

    def test_auto_answer_without_options_asks_user(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.auto_answer_enabled = True
        executor = FakeAgentExecutor(
            {"execute_task": MockRun(messages=[ask_user_question("What should it be named?")])}
        )
        machine = make_machine(config=config, executor=executor)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.WAITING_FOR_USER
        assert machine.context.pending_question.question.question == "What should it be named?"


class TestPauseAndStop:
    """Test pause, resume and stop while the agent runs."""

    def test_pause_interrupts_and_resume_repeats_step(self, make_machine, project_dir):
        executor = FakeAgentExecutor({"execute_task": MockRun(wait_for_interrupt=True)})
        machine = make_machine(executor=executor)

        async def scenario():
            run = asyncio.ensure_future(machine.start(project_dir, FEATURE))
            await wait_until(
                lambda: machine.phase == ExecutionPhase.EXECUTING_TASK and executor.is_running
            )
            machine.pause()
            await run

            assert machine.phase == ExecutionPhase.PAUSED
            assert machine.context.phase_before_pause == ExecutionPhase.EXECUTING_TASK
            assert machine.context.can_resume

            executor.responses["execute_task"] = MockRun()
            await machine.resume()

        asyncio.run(scenario())

        assert machine.phase == ExecutionPhase.COMPLETED
        assert executor.interrupt_count == 1
        assert len(executor.calls_of("execute_task")) == 3
        assert "Paused during Executing Task" in log_messages(machine)

    def test_stop_terminates_agent_and_fails_run(self, make_machine, project_dir):
        executor = FakeAgentExecutor({"execute_task": MockRun(wait_for_interrupt=True)})
        runner = FakeBuildRunner()
        machine = make_machine(executor=executor, build_runner=runner)

        async def scenario():
            run = asyncio.ensure_future(machine.start(project_dir, FEATURE))
            await wait_until(
                lambda: machine.phase == ExecutionPhase.EXECUTING_TASK and executor.is_running
            )
            await machine.stop()
            await run

        asyncio.run(scenario())

        context = machine.context
        assert machine.phase == ExecutionPhase.FAILED
        assert executor.terminate_count == 1
        assert runner.terminate_count == 1
        assert context.plan.tasks[0].status == TaskStatus.FAILED
        assert context.errors[-1].message == "Execution stopped by user"
        assert context.errors[-1].is_recoverable is False

    def test_stop_while_paused(self, make_machine, project_dir):
        executor = FakeAgentExecutor({"execute_task": MockRun(wait_for_interrupt=True)})
        machine = make_machine(executor=executor)

        async def scenario():
            run = asyncio.ensure_future(machine.start(project_dir, FEATURE))
            await wait_until(
                lambda: machine.phase == ExecutionPhase.EXECUTING_TASK and executor.is_running
            )
            machine.pause()
            await run
            await machine.stop()

        asyncio.run(scenario())

        assert machine.phase == ExecutionPhase.FAILED


class TestContextHandoff:
    """Test handing off to a new session when the context runs low."""

    def test_handoff_commits_summarizes_and_continues(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.agent.context_window_size = 1000
        executor = FakeAgentExecutor(
            {
                "execute_task": [
                    MockRun(messages=[assistant_text("Working on it", context_tokens=950)]),
                    MockRun(),
                ]
            }
        )
        git = FakeGit()
        machine = make_machine(config=config, executor=executor, git=git)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert git.commits[0] == "WIP: Task 1 - Create export model (context handoff)"
        assert executor.kinds[2:5] == ["execute_task", "continuation_summary", "execute_task"]

        summary_call = executor.calls_of("continuation_summary")[0]
        assert summary_call.session_id == "session-1"
        assert summary_call.permission_mode == PermissionMode.PLAN

        continued = executor.calls_of("execute_task")[1]
        assert continued.session_id is None
        assert continued.prompt.startswith("[CONTINUATION FROM PREVIOUS SESSION]\nTask: 1 - Create export model")
        assert "Model created" in continued.prompt
        assert "- app/models.py" in continued.prompt
        # The summary is used exactly once
        assert not executor.calls_of("review_code")[0].prompt.startswith("[CONTINUATION")
        assert machine.context.is_handoff_in_progress is False

        phases = [transition.to_phase for transition in machine.history]
        assert ExecutionPhase.HANDLING_CONTEXT_EXHAUSTION in phases

    def test_handoff_uses_default_summary_when_agent_fails(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.agent.context_window_size = 1000
        executor = FakeAgentExecutor(
            {
                "execute_task": [
                    MockRun(messages=[assistant_text("Working", context_tokens=990)]),
                    MockRun(),
                ],
                "continuation_summary": MockRun(result="not json"),
            }
        )
        git = FakeGit(changed_files=["src/export.py"])
        machine = make_machine(config=config, executor=executor, git=git)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        continued = executor.calls_of("execute_task")[1]
        assert "- src/export.py" in continued.prompt
        assert "Complete the remaining acceptance criteria" in continued.prompt

    def test_stop_during_handoff_commit_starts_no_agent(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.agent.context_window_size = 1000
        executor = FakeAgentExecutor(
            {"execute_task": MockRun(messages=[assistant_text("Working", context_tokens=950)])}
        )
        git = BlockingCommitGit("WIP:")
        machine = make_machine(config=config, executor=executor, git=git)

        async def scenario():
            run = asyncio.ensure_future(machine.start(project_dir, FEATURE))
            await wait_until(git.blocked.is_set)
            await machine.stop()
            assert machine.phase == ExecutionPhase.FAILED
            git.release.set()
            await run

        asyncio.run(scenario())

        assert machine.phase == ExecutionPhase.FAILED
        assert "continuation_summary" not in executor.kinds
        assert executor.kinds.count("execute_task") == 1


class TestBuildAndTestFixes:
    """Test the build and test fix loops."""

    def test_build_failure_is_fixed(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.run_build_after_commit = True
        config.project.max_build_fix_attempts = 2
        runner = FakeBuildRunner(
            build_results=[
                command_result(success=False, exit_code=2, error_output="error: missing import"),
                command_result(),
            ]
        )
        executor = FakeAgentExecutor()
        machine = make_machine(config=config, executor=executor, build_runner=runner)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert runner.builds == 3
        fixes = executor.calls_of("fix_build")
        assert len(fixes) == 1
        assert "attempt 1 of 2" in fixes[0].prompt
        assert "error: missing import" in fixes[0].prompt
        assert fixes[0].permission_mode == PermissionMode.ACCEPT_EDITS
        assert machine.context.consecutive_command_failures == 0

    def test_build_failing_beyond_fix_attempts_fails_run(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.run_build_after_commit = True
        config.autonomous.consecutive_failures_before_fallback = 10
        config.project.max_build_fix_attempts = 1
        runner = FakeBuildRunner(build_results=[command_result(success=False)])
        executor = FakeAgentExecutor()
        machine = make_machine(config=config, executor=executor, build_runner=runner)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.FAILED
        assert runner.builds == 2
        assert len(executor.calls_of("fix_build")) == 1
        assert machine.context.errors[-1].message == "Build still failing after 1 fix attempt(s)"

    def test_test_failure_is_fixed(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.run_tests_after_commit = True
        runner = FakeBuildRunner(
            test_results=[command_result(success=False, output="1 failed"), command_result()]
        )
        executor = FakeAgentExecutor()
        machine = make_machine(config=config, executor=executor, build_runner=runner)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert runner.test_runs == 3
        assert len(executor.calls_of("fix_tests")) == 1
        assert "1 failed" in executor.calls_of("fix_tests")[0].prompt

    def test_missing_build_command_is_skipped(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.run_build_after_commit = True
        runner = FakeBuildRunner(build_command=None)
        machine = make_machine(config=config, build_runner=runner)

        asyncio.run(machine.start(project_dir, FEATURE))

        assert machine.phase == ExecutionPhase.COMPLETED
        assert runner.builds == 0


class TestFallbackMode:
    """Test switching to manual command execution."""

    def test_consecutive_commit_failures_switch_to_manual(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.consecutive_failures_before_fallback = 2
        git = FakeGit(fail_with=GitOperationError("index.lock exists", exit_code=128))
        machine = make_machine(config=config, git=git)

        async def scenario():
            await machine.start(project_dir, FEATURE)

            context = machine.context
            assert machine.phase == ExecutionPhase.PAUSED
            assert context.is_in_fallback_mode
            assert context.fallback_reason.kind == FallbackReasonKind.CONSECUTIVE_FAILURES
            assert context.phase_before_pause == ExecutionPhase.COMMITTING_TESTS
            assert context.suggested_manual_command == (
                "git add -A && git commit -m 'test: add tests for Create export model'"
            )

            # Resuming counts the manual step as done; task 2 asks again
            await machine.resume()
            assert machine.phase == ExecutionPhase.PAUSED
            assert context.suggested_manual_command == (
                "git add -A && git commit -m 'feat: implement Add export endpoint'"
            )

            git.fail_with = None
            machine.reset_fallback()
            assert not context.is_in_fallback_mode
            await machine.resume()

        asyncio.run(scenario())

        assert machine.phase == ExecutionPhase.COMPLETED
        assert machine.context.suggested_manual_command is None
        assert git.commits == [
            "refactor: code review fixes for Add export endpoint",
            "test: add tests for Add export endpoint",
        ]

    def test_manual_mode_asks_for_build(self, make_machine, project_dir):
        config = AutopilotConfig()
        config.autonomous.run_build_after_commit = True
        runner = FakeBuildRunner(build_command="npm run build")
        git = FakeGit()
        machine = make_machine(config=config, git=git, build_runner=runner)
        plan = parse_plan("## Task 1: Create export model\n")

        async def scenario():
            machine.set_manual_mode(True)
            await machine.start_with_existing_plan(plan, project_dir, FEATURE)
            assert machine.context.suggested_manual_command.startswith("git add -A && git commit")

            await machine.resume()
            assert machine.context.phase_before_pause == ExecutionPhase.RUNNING_BUILD
            assert machine.context.suggested_manual_command == "npm run build"

            machine.set_manual_mode(False)
            await machine.resume()

        asyncio.run(scenario())

        assert machine.phase == ExecutionPhase.COMPLETED
        assert runner.builds == 0
        assert git.commits == [
            "refactor: code review fixes for Create export model",
            "test: add tests for Create export model",
        ]
