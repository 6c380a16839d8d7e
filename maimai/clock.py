"""Wall-clock date and time in a named time zone."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

LOGGER = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LocalClock:
    """Derives local date, hour and timestamp strings for a time zone.

    `now` must return an aware datetime; tests pass a fixed one.
    """

    def __init__(self, now: Callable[[], datetime] = _utc_now) -> None:
        self._now = now

    def _local(self, tz_name: str) -> datetime:
        return self._now().astimezone(ZoneInfo(tz_name))

    def local_date(self, tz_name: str) -> str:
        return self._local(tz_name).strftime("%Y-%m-%d")

    def local_hour(self, tz_name: str) -> int | None:
        """Return the local hour 0-23, or None if the zone cannot be resolved."""
        try:
            return self._local(tz_name).hour
        except (ZoneInfoNotFoundError, ValueError) as exc:
            LOGGER.error("Cannot resolve time zone %r: %s", tz_name, exc)
            return None

    def local_datetime(self, tz_name: str) -> str:
        return self._local(tz_name).strftime("%Y-%m-%d %H:%M:%S")
