"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class Message:
    """Chat message normalized by the transport adapter."""

    chat_id: str
    user_id: str
    text: str
    timestamp: datetime
    message_id: str | None = None


@dataclass(slots=True)
class UserCredential:
    """Per-user record held by the credential store."""

    user_id: str
    token: str | None = None
    auto_claim_enabled: bool = False
    last_auto_claim_date: str | None = None
    last_auto_claim_at: str | None = None
    last_auto_claim_status: str | None = None


@dataclass(slots=True)
class ToolInvocation:
    """One tool call on behalf of one user."""

    user_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TextPart:
    text: str


@dataclass(slots=True)
class ImageUrlPart:
    url: str


@dataclass(slots=True)
class ImageDataPart:
    data: str
    mime_type: str | None = None


@dataclass(slots=True)
class OtherPart:
    type: str
    raw: dict[str, Any] = field(default_factory=dict)


ContentPart = TextPart | ImageUrlPart | ImageDataPart | OtherPart


@dataclass(slots=True)
class PlainText:
    text: str


@dataclass(slots=True)
class ContentParts:
    parts: list[ContentPart] = field(default_factory=list)


@dataclass(slots=True)
class OpaqueStructured:
    value: Any


ToolResult = PlainText | ContentParts | OpaqueStructured
