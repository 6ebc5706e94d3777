"""Prompt template loader with variable substitution.

Templates are markdown files in ``autopilot/prompts``. Placeholders are
``{identifier}``; anything else in braces (JSON examples, code) is left
alone. Placeholders ending in ``_section`` are optional: they render as a
headed block when the matching data variable is non-empty and disappear
otherwise.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .exceptions import AutopilotError

_PLACEHOLDER = re.compile(r"\{([a-z_][a-z0-9_]*)\}")


class PromptLoadError(AutopilotError):
    """Raised when prompt template cannot be loaded."""

    pass


class PromptRenderError(AutopilotError):
    """Raised when prompt template cannot be rendered."""

    pass


class PromptTemplate(BaseModel):
    """Represents a loaded prompt template."""

    name: str = Field(description="Template name (e.g., 'execute_task')")
    content: str = Field(description="Raw template content")
    required_variables: List[str] = Field(
        default_factory=list, description="List of required variable names"
    )
    optional_variables: List[str] = Field(
        default_factory=list, description="List of optional section names"
    )

    def render(self, variables: Dict[str, Any]) -> str:
        """Render the template with provided variables.

        Args:
            variables: Dictionary of variable names to values

        Returns:
            Rendered template string

        Raises:
            PromptRenderError: If required variables are missing
        """
        missing = set(self.required_variables) - set(variables.keys())
        if missing:
            raise PromptRenderError(
                f"Missing required variables for template '{self.name}': {sorted(missing)}"
            )

        all_vars = {**variables}
        for opt_var in self.optional_variables:
            data_var = opt_var[: -len("_section")]
            value = variables.get(data_var)
            all_vars[opt_var] = self._format_section(data_var, value) if value else ""

        def replace_var(match: "re.Match[str]") -> str:
            value = all_vars.get(match.group(1))
            return "" if value is None else str(value)

        # Single pass, so braces inside substituted values are never re-expanded
        rendered = _PLACEHOLDER.sub(replace_var, self.content)
        return re.sub(r"\n{3,}", "\n\n", rendered)

    def _format_section(self, section_name: str, value: Any) -> str:
        """Format optional sections based on their type.

        Args:
            section_name: Name of the section (e.g., 'context', 'subtasks')
            value: Value to format

        Returns:
            Formatted section content
        """
        if section_name == "subtasks" and isinstance(value, list):
            items = "\n".join(f"- [ ] {item}" for item in value)
            return f"\n## Acceptance Criteria\n\n{items}\n"

        if section_name == "completed_tasks" and isinstance(value, list):
            items = "\n".join(f"- {item}" for item in value)
            return f"\n## Already Completed\n\n{items}\n"

        if section_name == "context":
            return f"\n## Project Context\n\n{value}\n"

        # Default formatting
        return f"\n## {section_name.replace('_', ' ').title()}\n\n{value}\n"


class PromptLoader:
    """Loads and manages prompt templates."""

    def __init__(self, prompts_dir: Optional[Path] = None):
        """Initialize the prompt loader.

        Args:
            prompts_dir: Directory containing prompt templates.
                        Defaults to the prompts/ directory of the package.
        """
        if prompts_dir is None:
            prompts_dir = Path(__file__).parent.parent / "prompts"

        self.prompts_dir = Path(prompts_dir)
        if not self.prompts_dir.exists():
            raise PromptLoadError(f"Prompts directory not found: {self.prompts_dir}")

        self._templates: Dict[str, PromptTemplate] = {}

    def load_template(self, name: str) -> PromptTemplate:
        """Load a prompt template by name.

        Args:
            name: Template name (e.g., 'generate_plan', 'execute_task')

        Returns:
            Loaded PromptTemplate

        Raises:
            PromptLoadError: If template file not found or unreadable
        """
        if name in self._templates:
            return self._templates[name]

        template_file = self.prompts_dir / f"{name}.md"
        if not template_file.exists():
            raise PromptLoadError(f"Template file not found: {template_file}")

        try:
            content = template_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise PromptLoadError(f"Failed to read template '{name}': {e}") from e

        variables = set(_PLACEHOLDER.findall(content))
        template = PromptTemplate(
            name=name,
            content=content,
            required_variables=sorted(v for v in variables if not v.endswith("_section")),
            optional_variables=sorted(v for v in variables if v.endswith("_section")),
        )

        self._templates[name] = template
        return template

    def render_template(self, name: str, variables: Dict[str, Any]) -> str:
        """Load and render a template in one step.

        Raises:
            PromptLoadError: If template cannot be loaded
            PromptRenderError: If template cannot be rendered
        """
        template = self.load_template(name)
        return template.render(variables)

    def list_templates(self) -> List[str]:
        """List available template names (without .md extension)."""
        return sorted(f.stem for f in self.prompts_dir.glob("*.md") if f.is_file())

    def clear_cache(self) -> None:
        """Clear the template cache."""
        self._templates.clear()


# Convenience function
def load_prompt(name: str, prompts_dir: Optional[Path] = None, **variables) -> str:
    """Load and render a prompt template in one step.

    Example:
        >>> prompt = load_prompt(
        ...     "review_code",
        ...     task_number=1,
        ...     task_title="Add login",
        ...     task_description="OAuth flow",
        ... )
    """
    loader = PromptLoader(prompts_dir=prompts_dir)
    return loader.render_template(name, variables)
