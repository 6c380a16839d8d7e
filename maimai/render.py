"""Turn tool results into Telegram-safe HTML chunks."""

from __future__ import annotations

import json
import re

from maimai.models import (
    ContentParts,
    ImageDataPart,
    ImageUrlPart,
    OpaqueStructured,
    PlainText,
    TextPart,
    ToolResult,
)

MAX_MESSAGE_LENGTH = 3500

_CODE_BLOCK_RE = re.compile(r"```(\w+)?\n(.*?)```", re.DOTALL)
_IMG_TAG_RE = re.compile(r"<img[^>]*src=[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE)
_HEADING_RE = re.compile(r"^#{1,6}\s+")
_RULE_RE = re.compile(r"^-{3,}$")
_BULLET_RE = re.compile(r"^(\s*)[-*+]\s+")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_INLINE_CODE_RE = re.compile(r"`([^`]+)`")
_TAG_RE = re.compile(r"<[^>]+>")


def result_to_text(result: ToolResult) -> str:
    """Flatten a ToolResult into plain text (markdown as sent by the server)."""

    if isinstance(result, PlainText):
        return result.text
    if isinstance(result, ContentParts):
        parts: list[str] = []
        for part in result.parts:
            if isinstance(part, TextPart) and part.text:
                parts.append(part.text)
            elif isinstance(part, ImageUrlPart):
                parts.append(part.url)
            elif isinstance(part, ImageDataPart):
                parts.append("[image omitted]")
        return "\n\n".join(parts).strip()
    if isinstance(result, OpaqueStructured):
        try:
            return json.dumps(result.value, indent=2, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(result.value)
    raise TypeError(f"Unsupported tool result: {type(result).__name__}")


def format_tool_result(result: ToolResult) -> str:
    text = result_to_text(result)
    if not text:
        return ""
    return to_telegram_html(text)


def to_telegram_html(text: str) -> str:
    """Convert the markdown subset used by tool output into Telegram HTML."""

    images: list[str] = []

    def _stash_image(match: re.Match[str]) -> str:
        images.append(match.group(1))
        return f"Image: __IMAGE_{len(images) - 1}__"

    code_blocks: list[str] = []

    def _stash_code(match: re.Match[str]) -> str:
        code_blocks.append(f"<pre><code>{escape_html(match.group(2).strip())}</code></pre>")
        return f"__CODE_BLOCK_{len(code_blocks) - 1}__"

    processed = _IMG_TAG_RE.sub(_stash_image, text)
    processed = _CODE_BLOCK_RE.sub(_stash_code, processed)
    processed = escape_html(processed)

    lines = []
    for line in processed.split("\n"):
        trimmed = line.rstrip()
        if _HEADING_RE.match(trimmed):
            lines.append(f"<b>{_HEADING_RE.sub('', trimmed)}</b>")
        elif _RULE_RE.match(trimmed):
            lines.append("────────")
        elif _BULLET_RE.match(trimmed):
            lines.append(_BULLET_RE.sub(r"\1• ", trimmed))
        else:
            lines.append(trimmed)

    processed = "\n".join(lines)
    processed = _BOLD_RE.sub(r"<b>\1</b>", processed)
    processed = _INLINE_CODE_RE.sub(r"<code>\1</code>", processed)

    for index, block in enumerate(code_blocks):
        processed = processed.replace(f"__CODE_BLOCK_{index}__", block)
    for index, url in enumerate(images):
        processed = processed.replace(
            f"__IMAGE_{index}__", f'<a href="{escape_html(url)}">View image</a>'
        )
    return processed


def escape_html(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def strip_html_tags(text: str) -> str:
    return _TAG_RE.sub("", text)


def chunk_text(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split text on line boundaries into chunks of at most max_length characters.

    Lines longer than max_length are hard-split.
    """
    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > max_length and current:
            chunks.append(current)
            candidate = line
        if len(candidate) > max_length:
            remaining = candidate
            while len(remaining) > max_length:
                chunks.append(remaining[:max_length])
                remaining = remaining[max_length:]
            current = remaining
            continue
        current = candidate
    if current:
        chunks.append(current)
    return chunks
