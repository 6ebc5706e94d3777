"""Mock utilities for testing."""

from .agent_mocks import (
    SAMPLE_PLAN,
    AgentCall,
    FakeAgentExecutor,
    FakeBuildRunner,
    FakeGit,
    MockRun,
    ask_user_question,
    assistant_text,
    assistant_tool_use,
    classify_prompt,
    command_result,
)

__all__ = [
    "SAMPLE_PLAN",
    "AgentCall",
    "FakeAgentExecutor",
    "FakeBuildRunner",
    "FakeGit",
    "MockRun",
    "ask_user_question",
    "assistant_text",
    "assistant_tool_use",
    "classify_prompt",
    "command_result",
]
