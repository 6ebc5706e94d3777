"""Typed events decoded from the agent's stream-json output.

Every line the agent writes to stdout is one JSON object whose ``type`` field
selects one of four shapes: ``system``, ``assistant``, ``user`` or ``result``.
Tool invocations carry a free-form ``input`` object; the shapes we act on
(currently only AskUserQuestion) are decoded from it on demand and fail soft.
"""

import json
import logging
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
)

from autopilot.core.exceptions import StreamDecodeError

logger = logging.getLogger(__name__)

ASK_USER_QUESTION_TOOL = "AskUserQuestion"


class _StreamModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Usage(_StreamModel):
    """Token usage reported by the agent."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None

    @property
    def context_tokens(self) -> int:
        """Tokens occupying the context window for this turn."""
        return (
            self.input_tokens
            + (self.cache_creation_input_tokens or 0)
            + (self.cache_read_input_tokens or 0)
        )


# Tool input payloads


class QuestionOption(_StreamModel):
    label: str
    description: str = ""


class UserQuestion(_StreamModel):
    question: str
    header: str = ""
    options: List[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(default=False, alias="multiSelect")


class AskUserQuestionInput(_StreamModel):
    """Payload of an AskUserQuestion tool invocation."""

    questions: List[UserQuestion] = Field(min_length=1)


class OpaqueToolInput(_StreamModel):
    """Tool input of a tool we do not interpret."""

    name: str
    payload: Any = Field(default_factory=dict)


ToolInput = Union[AskUserQuestionInput, OpaqueToolInput]


# Content blocks


class TextBlock(_StreamModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(_StreamModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Any = Field(default_factory=dict)

    @property
    def is_ask_user_question(self) -> bool:
        return self.name == ASK_USER_QUESTION_TOOL

    def ask_user_question(self) -> Optional[AskUserQuestionInput]:
        """Decode the AskUserQuestion payload, or None if absent or malformed."""
        if not self.is_ask_user_question:
            return None
        try:
            return AskUserQuestionInput.model_validate(self.input)
        except ValidationError as e:
            logger.debug("Ignoring malformed %s input: %s", self.name, e)
            return None

    def tool_input(self) -> ToolInput:
        """Known tool payload shape, falling back to the raw input."""
        question = self.ask_user_question()
        if question is not None:
            return question
        return OpaqueToolInput(name=self.name, payload=self.input)


class OtherBlock(_StreamModel):
    """Content block of a type we do not interpret (thinking, images, ...)."""

    model_config = ConfigDict(extra="allow")

    type: str


def _content_block_tag(value: Any) -> str:
    block_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return block_type if block_type in ("text", "tool_use") else "other"


ContentBlock = Annotated[
    Union[
        Annotated[TextBlock, Tag("text")],
        Annotated[ToolUseBlock, Tag("tool_use")],
        Annotated[OtherBlock, Tag("other")],
    ],
    Discriminator(_content_block_tag),
]


class AssistantContent(_StreamModel):
    id: Optional[str] = None
    model: Optional[str] = None
    role: str = "assistant"
    content: List[ContentBlock] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: Optional[Usage] = None


class ToolResult(_StreamModel):
    tool_use_id: Optional[str] = None
    type: str = "tool_result"
    content: Any = None
    is_error: Optional[bool] = None


class UserContent(_StreamModel):
    role: str = "user"
    content: Union[List[ToolResult], str] = Field(default_factory=list)


# Messages


class SystemMessage(_StreamModel):
    """Session announcement emitted at the start of a run."""

    type: Literal["system"] = "system"
    subtype: str = ""
    session_id: Optional[str] = None
    cwd: Optional[str] = None
    tools: List[str] = Field(default_factory=list)
    model: Optional[str] = None
    permission_mode: Optional[str] = Field(default=None, alias="permissionMode")
    mcp_servers: List[Any] = Field(default_factory=list)
    slash_commands: List[str] = Field(default_factory=list)
    claude_code_version: Optional[str] = None
    agents: List[str] = Field(default_factory=list)


class AssistantMessage(_StreamModel):
    """Assistant turn: text and tool invocations."""

    type: Literal["assistant"] = "assistant"
    message: AssistantContent
    session_id: Optional[str] = None
    parent_tool_use_id: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(
            block.text for block in self.message.content if isinstance(block, TextBlock)
        )

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [block for block in self.message.content if isinstance(block, ToolUseBlock)]


class UserMessage(_StreamModel):
    """Tool result echo."""

    type: Literal["user"] = "user"
    message: UserContent
    session_id: Optional[str] = None
    parent_tool_use_id: Optional[str] = None
    tool_use_result: Any = None


class ResultMessage(_StreamModel):
    """Terminal outcome of one agent invocation."""

    type: Literal["result"] = "result"
    subtype: str = ""
    is_error: bool = False
    duration_ms: int = 0
    duration_api_ms: int = 0
    num_turns: int = 0
    result: str = ""
    session_id: Optional[str] = None
    total_cost_usd: float = 0.0
    usage: Usage = Field(default_factory=Usage)


StreamMessage = Annotated[
    Union[SystemMessage, AssistantMessage, UserMessage, ResultMessage],
    Field(discriminator="type"),
]

_stream_message_adapter: TypeAdapter = TypeAdapter(StreamMessage)


def decode_message(line: str) -> Union[SystemMessage, AssistantMessage, UserMessage, ResultMessage]:
    """Decode one line of stream-json output.

    Args:
        line: A single line of agent output

    Returns:
        The decoded message

    Raises:
        StreamDecodeError: If the line is not JSON or has an unknown shape
    """
    try:
        return _stream_message_adapter.validate_json(line)
    except ValidationError as e:
        raise StreamDecodeError(f"Cannot decode stream line: {e}") from e


class StreamMessageParser:
    """Lenient line decoder used while streaming.

    Malformed lines are logged and dropped so that stray output from the
    agent never aborts a run.
    """

    def __init__(self):
        self.dropped_lines = 0

    def parse(self, line: str):
        """Decode a line, returning None for blank or undecodable lines."""
        line = line.strip()
        if not line:
            return None
        try:
            return decode_message(line)
        except StreamDecodeError as e:
            self.dropped_lines += 1
            logger.debug("Dropping stream line %r: %s", line[:200], e)
            return None


def encode_message(message: BaseModel) -> str:
    """Serialize a message back to a stream-json line."""
    return json.dumps(message.model_dump(mode="json", by_alias=True, exclude_none=True))
