"""Prompt payloads that combine text with attached images."""

import base64
import json
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

SUPPORTED_IMAGE_TYPES = ("image/png", "image/jpeg", "image/gif", "image/webp")


class ImageAttachment(BaseModel):
    """An image supplied by the user, base64 encoded."""

    data: str = Field(description="Base64 encoded image bytes")
    media_type: str = Field(default="image/png", description="MIME type of the image")
    filename: Optional[str] = None

    @field_validator("media_type")
    @classmethod
    def validate_media_type(cls, v: str) -> str:
        """Validate the image type is one the agent accepts."""
        if v not in SUPPORTED_IMAGE_TYPES:
            raise ValueError(
                f"Unsupported image type: {v}. Must be one of {', '.join(SUPPORTED_IMAGE_TYPES)}"
            )
        return v

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ImageAttachment":
        """Load an image from disk, guessing its type from the extension."""
        path = Path(path)
        media_type, _ = mimetypes.guess_type(path.name)
        return cls(
            data=base64.b64encode(path.read_bytes()).decode("ascii"),
            media_type=media_type or "image/png",
            filename=path.name,
        )

    def to_content_block(self) -> Dict[str, Any]:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }


class PromptContent(BaseModel):
    """Text prompt plus optional images for one agent invocation."""

    text: str
    images: List[ImageAttachment] = Field(default_factory=list)

    @classmethod
    def coerce(cls, prompt: Union[str, "PromptContent"]) -> "PromptContent":
        if isinstance(prompt, PromptContent):
            return prompt
        return cls(text=prompt)

    @property
    def has_images(self) -> bool:
        return bool(self.images)

    def content_blocks(self) -> List[Dict[str, Any]]:
        """Content blocks with images first, then the text."""
        blocks = [image.to_content_block() for image in self.images]
        blocks.append({"type": "text", "text": self.text})
        return blocks

    def stdin_payload(self) -> bytes:
        """One stream-json user message line carrying all content blocks."""
        message = {
            "type": "user",
            "message": {"role": "user", "content": self.content_blocks()},
        }
        return (json.dumps(message) + "\n").encode("utf-8")
