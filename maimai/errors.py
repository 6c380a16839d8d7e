"""Failure kinds raised on the path to the remote tool service."""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for every failure surfaced by a tool invocation."""


class MissingCredential(DispatchError):
    """The user has no stored token; nothing was sent to the remote service."""

    def __init__(self, user_id: str) -> None:
        super().__init__("No MCP token saved. Use /token to set one.")
        self.user_id = user_id


class AuthenticationFailure(DispatchError):
    """The remote service rejected the bearer token."""


class RemoteToolFailure(DispatchError):
    """The tool ran remotely but reported a business-level error."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransportFailure(DispatchError):
    """Network error, timeout, or a response that could not be understood."""
