"""Extract structured content from the agent's free-form result text.

The agent is asked for JSON or a markdown plan, but usually wraps the answer
in code fences or surrounds it with explanations.
"""

import json
import re
from typing import Any, Dict

from .exceptions import OutputParseError

_CODE_BLOCK = re.compile(r"```([A-Za-z0-9_-]*)\s*\n([\s\S]*?)\n```")
_ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


class OutputParser:
    """Parse agent result text."""

    @staticmethod
    def extract_json(output: str, strict: bool = True) -> Dict[str, Any]:
        """Extract a JSON object from agent output.

        Args:
            output: Result text from the agent
            strict: If True, raise error if no JSON object found.
                   If False, return empty dict instead.

        Returns:
            Parsed JSON object

        Raises:
            OutputParseError: If no JSON object can be found (when strict=True)
        """
        if not output or not output.strip():
            if strict:
                raise OutputParseError("Output is empty")
            return {}

        # 1. Fenced code blocks
        for _, body in _CODE_BLOCK.findall(output):
            try:
                content = json.loads(body.strip())
            except json.JSONDecodeError:
                continue
            if isinstance(content, dict):
                return content

        # 2. Outermost braces
        start = output.find("{")
        end = output.rfind("}")
        if start != -1 and end > start:
            try:
                content = json.loads(output[start : end + 1])
            except json.JSONDecodeError:
                content = None
            if isinstance(content, dict):
                return content

        # 3. First line that is a complete object on its own
        for line in output.splitlines():
            stripped = line.strip()
            if stripped.startswith("{") and stripped.endswith("}"):
                try:
                    content = json.loads(stripped)
                except json.JSONDecodeError:
                    continue
                if isinstance(content, dict):
                    return content

        if strict:
            raise OutputParseError(
                f"No valid JSON found in output. Output preview: {output[:200]}..."
            )
        return {}

    @staticmethod
    def extract_markdown(output: str) -> str:
        """Unwrap a markdown document the agent returned inside a code fence.

        Returns the body of the first ``markdown``/``md`` (or untagged) fence
        that contains a task header, otherwise the stripped output unchanged.
        """
        for language, body in _CODE_BLOCK.findall(output or ""):
            if language.lower() in ("", "markdown", "md") and "## Task" in body:
                return body.strip() + "\n"
        return (output or "").strip() + "\n"

    @staticmethod
    def sanitize_output(output: str, max_length: int = 10000) -> str:
        """Sanitize output for logging/display.

        Args:
            output: Raw output
            max_length: Maximum length to return

        Returns:
            Sanitized output string
        """
        if not output:
            return ""

        cleaned = _ANSI_ESCAPE.sub("", output)

        if len(cleaned) > max_length:
            cleaned = cleaned[:max_length] + f"\n... (truncated {len(cleaned) - max_length} characters)"

        return cleaned.strip()
