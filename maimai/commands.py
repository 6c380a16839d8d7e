"""Command dispatcher for /-prefixed chat messages.

Each handler returns the reply text (Telegram HTML). An unrecognised
/command returns None and is ignored by the caller.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from maimai.errors import DispatchError
from maimai.models import Message
from maimai.render import escape_html, format_tool_result

if TYPE_CHECKING:
    from maimai.db import Database
    from maimai.dispatch import DispatchFacade

LOGGER = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

NEED_TOKEN = "Please set your MCP token first with /token."
NO_DATA = "No data returned."

WELCOME = "\n".join(
    [
        "Welcome to the MaiMai MCP bot.",
        "",
        "Get your McDonald's MCP token first:",
        "1) Open https://open.mcd.cn/mcp/doc",
        "2) Log in at the top right (phone verification)",
        "3) Open the console and apply for an MCP token",
        "4) Accept the agreement and copy the token",
        "",
        "Then send here:",
        "/token YOUR_MCP_TOKEN",
        "",
        "Commands:",
        "/calendar [YYYY-MM-DD] - campaign calendar",
        "/coupons - coupons available to claim",
        "/claim - claim all available coupons",
        "/mycoupons - my coupons",
        "/time - current time info",
        "/autoclaim on|off - claim coupons automatically every day",
        "/status - account status",
        "/cleartoken - delete the saved token",
    ]
)

# command -> (tool name, label used in failure replies)
_TOOL_COMMANDS: dict[str, tuple[str, str]] = {
    "coupons": ("available-coupons", "Coupon list"),
    "claim": ("auto-bind-coupons", "Coupon claim"),
    "mycoupons": ("my-coupons", "My coupons"),
    "time": ("now-time-info", "Time query"),
}


def parse_command(text: str) -> tuple[str, list[str]] | None:
    """Split a /-prefixed message into (command, args).

    A trailing @botname on the command is dropped, as Telegram appends it in
    group chats.

    Returns:
        A (command, args) tuple where command is lowercased, or None if text
        is not a valid /command.
    """
    text = text.strip()
    if not text.startswith("/"):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    command = parts[0].split("@", 1)[0].lower()
    if not command:
        return None
    return command, parts[1:]


class CommandDispatcher:
    """Routes /commands to credential management and tool calls."""

    def __init__(self, db: Database, dispatcher: DispatchFacade) -> None:
        self._db = db
        self._dispatcher = dispatcher

    async def dispatch(self, message: Message) -> str | None:
        parsed = parse_command(message.text)
        if parsed is None:
            return None
        command, args = parsed
        LOGGER.info("Command dispatch: command=%r user=%s", command, message.user_id)
        user_id = message.user_id

        if command in ("start", "help"):
            return WELCOME
        if command in ("token", "settoken"):
            return self._handle_token(user_id, args)
        if command == "cleartoken":
            return self._handle_cleartoken(user_id)
        if command == "status":
            return self._handle_status(user_id)
        if command == "autoclaim":
            return self._handle_autoclaim(user_id, args)
        if command == "calendar":
            return await self._handle_calendar(user_id, args)
        if command in _TOOL_COMMANDS:
            tool_name, label = _TOOL_COMMANDS[command]
            return await self._call_tool(user_id, tool_name, {}, label)
        return None

    def _handle_token(self, user_id: str, args: list[str]) -> str:
        token = " ".join(args).strip()
        if not token:
            return "Usage: /token YOUR_MCP_TOKEN"
        self._db.upsert(user_id, token=token)
        return "Token saved. You can start using the commands now."

    def _handle_cleartoken(self, user_id: str) -> str:
        if not self._db.delete(user_id):
            return "No saved token found."
        return "Token deleted."

    def _handle_status(self, user_id: str) -> str:
        user = self._db.get(user_id)
        if user is None:
            return "No token saved. Use /token to set one."
        lines = [
            f"Token: {'set' if user.token else 'not set'}",
            f"Auto-claim: {'on' if user.auto_claim_enabled else 'off'}",
            f"Last auto-claim: {user.last_auto_claim_at or 'never'}",
        ]
        if user.last_auto_claim_status:
            lines.append(f"Last result: {escape_html(user.last_auto_claim_status)}")
        return "\n".join(lines)

    def _handle_autoclaim(self, user_id: str, args: list[str]) -> str:
        user = self._db.get(user_id)
        if user is None or not user.token:
            return NEED_TOKEN
        arg = " ".join(args).strip().lower()
        if arg not in ("on", "off"):
            return "Usage: /autoclaim on|off"
        enabled = arg == "on"
        self._db.upsert(user_id, auto_claim_enabled=enabled)
        return f"Auto-claim turned {arg}."

    async def _handle_calendar(self, user_id: str, args: list[str]) -> str:
        raw = " ".join(args).strip()
        arguments: dict[str, Any] = {}
        if raw:
            if not _DATE_RE.match(raw):
                return "Invalid date, use YYYY-MM-DD."
            arguments["specifiedDate"] = raw
        return await self._call_tool(user_id, "campaign-calender", arguments, "Campaign calendar")

    async def _call_tool(
        self,
        user_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        label: str,
    ) -> str:
        user = self._db.get(user_id)
        if user is None or not user.token:
            return NEED_TOKEN
        try:
            result = await self._dispatcher.invoke(user_id, tool_name, arguments)
        except DispatchError as exc:
            LOGGER.warning("Tool %s failed for user %s: %s", tool_name, user_id, exc)
            return f"{label} failed: {escape_html(str(exc))}"
        return format_tool_result(result) or NO_DATA
