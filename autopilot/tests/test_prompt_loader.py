"""Tests for prompt template loading and rendering."""

import pytest

from autopilot.core.prompt_loader import (
    PromptLoadError,
    PromptLoader,
    PromptRenderError,
    PromptTemplate,
    load_prompt,
)

TASK_VARS = {"task_number": 1, "task_title": "Create export model", "task_description": "Add it"}


@pytest.fixture
def loader():
    return PromptLoader()


class TestPromptLoader:
    """Test loading the bundled templates."""

    def test_list_templates(self, loader):
        assert loader.list_templates() == [
            "continuation_summary",
            "execute_task",
            "fix_build",
            "fix_tests",
            "generate_plan",
            "review_code",
            "rewrite_plan",
            "smart_answer",
            "write_tests",
        ]

    def test_variables_are_discovered(self, loader):
        template = loader.load_template("execute_task")

        assert template.required_variables == ["task_description", "task_number", "task_title"]
        assert template.optional_variables == [
            "clarifications_section",
            "completed_tasks_section",
            "context_section",
            "subtasks_section",
        ]

    def test_templates_are_cached(self, loader):
        first = loader.load_template("review_code")

        assert loader.load_template("review_code") is first
        loader.clear_cache()
        assert loader.load_template("review_code") is not first

    def test_missing_template(self, loader):
        with pytest.raises(PromptLoadError, match="not found"):
            loader.load_template("does_not_exist")

    def test_missing_directory(self, tmp_path):
        with pytest.raises(PromptLoadError, match="Prompts directory not found"):
            PromptLoader(tmp_path / "missing")

    def test_custom_directory(self, tmp_path):
        (tmp_path / "hello.md").write_text("Hello {name}!")

        assert load_prompt("hello", prompts_dir=tmp_path, name="world") == "Hello world!"


class TestRendering:
    """Test variable substitution and optional sections."""

    def test_missing_required_variable(self, loader):
        with pytest.raises(PromptRenderError, match="task_title"):
            loader.render_template("execute_task", {"task_number": 1, "task_description": "x"})

    def test_execute_task_sections(self, loader):
        prompt = loader.render_template(
            "execute_task",
            {
                **TASK_VARS,
                "subtasks": ["Model has a name field"],
                "completed_tasks": ["Task 0: Setup"],
                "context": "Python 3.11 service",
            },
        )

        assert "## Task 1: Create export model" in prompt
        assert "## Acceptance Criteria\n\n- [ ] Model has a name field" in prompt
        assert "## Already Completed\n\n- Task 0: Setup" in prompt
        assert "## Project Context\n\nPython 3.11 service" in prompt
        assert "{" not in prompt

    def test_empty_sections_disappear(self, loader):
        prompt = loader.render_template(
            "execute_task", {**TASK_VARS, "subtasks": [], "clarifications": ""}
        )

        assert "Acceptance Criteria" not in prompt
        assert "Already Completed" not in prompt
        assert "## Clarifications" not in prompt
        assert "\n\n\n" not in prompt

    def test_clarifications_section(self, loader):
        prompt = loader.render_template(
            "review_code", {**TASK_VARS, "clarifications": "Q: Format?\nA: CSV"}
        )

        assert "## Clarifications\n\nQ: Format?\nA: CSV" in prompt

    def test_substituted_braces_are_not_expanded(self):
        template = PromptTemplate(
            name="t", content="Feature: {feature_description}", required_variables=["feature_description"]
        )

        assert template.render({"feature_description": "Use {task_title}"}) == (
            "Feature: Use {task_title}"
        )

    def test_non_placeholder_braces_are_kept(self):
        template = PromptTemplate(name="t", content='Reply {"choice": "{answer}"} {Not_A_Var}')

        assert template.render({"answer": "CSV"}) == 'Reply {"choice": "CSV"} {Not_A_Var}'
