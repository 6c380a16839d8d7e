"""JSON-RPC client for tool calls against the MCP server."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from maimai.errors import AuthenticationFailure, RemoteToolFailure, TransportFailure
from maimai.models import (
    ContentPart,
    ContentParts,
    ImageDataPart,
    ImageUrlPart,
    OpaqueStructured,
    OtherPart,
    PlainText,
    TextPart,
    ToolResult,
)

LOGGER = logging.getLogger(__name__)

_AUTH_STATUS_CODES = {401, 403}


class _RpcError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: int = 0
    message: str = ""
    data: Any = None


class _RpcResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    jsonrpc: str | None = None
    id: str | int | None = None
    result: Any = None
    error: _RpcError | None = None


class RemoteToolClient:
    """Performs one authenticated `tools/call` request per invocation.

    The protocol version is declared on every request instead of negotiated
    through an initialize handshake, so no session state is kept between calls.
    The client never retries and never caches.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        protocol_version: str,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._base_url = base_url
        self._token = token
        self._protocol_version = protocol_version
        self._timeout_seconds = timeout_seconds

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        payload = {
            "jsonrpc": "2.0",
            "id": uuid.uuid4().hex,
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments or {}},
        }
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "MCP-Protocol-Version": self._protocol_version,
        }

        timeout = httpx.Timeout(self._timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout) as client:
            try:
                response = await client.post(self._base_url, headers=headers, json=payload)
            except httpx.TimeoutException as exc:
                raise TransportFailure(f"Request to MCP server timed out calling {name}") from exc
            except httpx.HTTPError as exc:
                raise TransportFailure(f"Request to MCP server failed: {exc}") from exc

        LOGGER.info("MCP tools/call name=%s status=%s", name, response.status_code)

        if response.status_code in _AUTH_STATUS_CODES:
            raise AuthenticationFailure(
                f"MCP server rejected the token (HTTP {response.status_code}). Check or reset it with /token."
            )
        if response.status_code >= 400:
            envelope = _error_envelope(response)
            if envelope is None:
                raise TransportFailure(f"MCP server returned HTTP {response.status_code}")
        else:
            envelope = _parse_envelope(response)

        if envelope.error is not None:
            if envelope.error.code in _AUTH_STATUS_CODES:
                raise AuthenticationFailure(envelope.error.message or "Authentication failed")
            raise RemoteToolFailure(
                envelope.error.message or f"Tool {name} failed",
                code=envelope.error.code,
            )
        if envelope.result is None:
            raise TransportFailure("MCP response contained neither result nor error")

        result = envelope.result
        if isinstance(result, dict) and result.get("isError"):
            raise RemoteToolFailure(_error_text(result) or f"Tool {name} failed")
        return parse_tool_result(result)


def parse_tool_result(raw: Any) -> ToolResult:
    """Convert a raw `result` payload into a ToolResult variant."""

    if isinstance(raw, str):
        return PlainText(raw)
    if isinstance(raw, dict) and isinstance(raw.get("content"), list):
        return ContentParts([_parse_part(item) for item in raw["content"] if isinstance(item, dict)])
    return OpaqueStructured(raw)


def _parse_part(item: dict[str, Any]) -> ContentPart:
    part_type = str(item.get("type") or "")
    if part_type == "text":
        return TextPart(str(item.get("text") or ""))
    if part_type == "image":
        if item.get("url"):
            return ImageUrlPart(str(item["url"]))
        if item.get("data"):
            return ImageDataPart(str(item["data"]), item.get("mimeType"))
    return OtherPart(part_type, item)


def _error_text(result: dict[str, Any]) -> str:
    texts = [
        str(item.get("text"))
        for item in result.get("content") or []
        if isinstance(item, dict) and item.get("type") == "text" and item.get("text")
    ]
    return "\n".join(texts).strip()


def _error_envelope(response: httpx.Response) -> _RpcResponse | None:
    """Return the JSON-RPC error carried by a non-2xx reply, if there is one."""

    try:
        envelope = _parse_envelope(response)
    except TransportFailure:
        return None
    return envelope if envelope.error is not None else None


def _parse_envelope(response: httpx.Response) -> _RpcResponse:
    content_type = response.headers.get("content-type", "")
    try:
        if "text/event-stream" in content_type:
            data = _last_sse_message(response.text)
        else:
            data = response.json()
    except ValueError as exc:
        raise TransportFailure("MCP server returned a malformed response") from exc

    try:
        return _RpcResponse.model_validate(data)
    except ValidationError as exc:
        raise TransportFailure(f"Unexpected MCP response shape: {exc}") from exc


def _last_sse_message(body: str) -> Any:
    """Return the last JSON-RPC message carried in an event-stream body."""

    message: Any = None
    data_lines: list[str] = []
    for line in [*body.splitlines(), ""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].strip())
            continue
        if line.strip() == "" and data_lines:
            message = json.loads("\n".join(data_lines))
            data_lines = []
    if message is None:
        raise ValueError("no data events in stream")
    return message
