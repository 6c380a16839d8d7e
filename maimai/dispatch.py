"""Single path from a user's tool request to the remote service."""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from maimai.cache import ResultCache, make_cache_key
from maimai.errors import MissingCredential
from maimai.mcp_client import RemoteToolClient
from maimai.models import ToolInvocation, ToolResult, UserCredential

LOGGER = logging.getLogger(__name__)


class CredentialStore(Protocol):
    def get(self, user_id: str) -> UserCredential | None: ...


class ToolClient(Protocol):
    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult: ...


ClientFactory = Callable[[str], ToolClient]


class DispatchFacade:
    """Resolves the user's token, consults the cache, then calls the tool."""

    def __init__(
        self,
        store: CredentialStore,
        cache: ResultCache,
        cacheable_tools: frozenset[str],
        client_factory: ClientFactory,
    ) -> None:
        self._store = store
        self._cache = cache
        self._cacheable_tools = cacheable_tools
        self._client_factory = client_factory

    async def invoke(
        self,
        user_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> ToolResult:
        """Invoke tool_name for user_id and return the result unchanged.

        Raises:
            MissingCredential: the user has no stored token. No remote call is made.
            AuthenticationFailure, RemoteToolFailure, TransportFailure: from the client.
        """
        invocation = ToolInvocation(user_id=user_id, name=tool_name, arguments=dict(arguments or {}))

        credential = self._store.get(user_id)
        if credential is None or not credential.token:
            raise MissingCredential(user_id)

        cache_key = None
        if invocation.name in self._cacheable_tools:
            cache_key = make_cache_key(invocation.name, invocation.arguments)
        if cache_key is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                LOGGER.info("Cache hit: tool=%s user=%s", invocation.name, user_id)
                return cached

        client = self._client_factory(credential.token)
        result = await client.call_tool(invocation.name, invocation.arguments)
        if cache_key is not None:
            self._cache.set(cache_key, result)
        return result


def mcp_client_factory(base_url: str, protocol_version: str, timeout_seconds: float) -> ClientFactory:
    """Return a factory building a RemoteToolClient bound to one token."""

    def _build(token: str) -> RemoteToolClient:
        return RemoteToolClient(
            base_url=base_url,
            token=token,
            protocol_version=protocol_version,
            timeout_seconds=timeout_seconds,
        )

    return _build
