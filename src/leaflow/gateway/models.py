from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Any = None  # str | list[part] | None; shape handled by content.py


class ChatPayload(BaseModel):
    """Structural envelope of a chat-completion request.

    Only used to reject malformed input. The forwarded request is rebuilt from
    the caller's own mapping so unknown fields keep their values and order.
    """

    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    stream: Any = None
