"""Daily auto-claim sweep over all opted-in users."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from maimai.models import UserCredential
from maimai.render import escape_html, format_tool_result

if TYPE_CHECKING:
    from maimai.clock import LocalClock
    from maimai.db import Database
    from maimai.dispatch import DispatchFacade

LOGGER = logging.getLogger(__name__)

CLAIM_TOOL = "auto-bind-coupons"
SUCCESS_STATUS = "success"

Notifier = Callable[[str, str], Awaitable[None]]


class ClaimScheduler:
    """Invokes the claim tool once per user per local calendar day.

    A sweep does nothing until the local hour in `timezone` reaches
    `claim_hour`. A failed claim still records today's date, so the user is
    retried on the next calendar day rather than on the next tick.
    """

    def __init__(
        self,
        store: Database,
        dispatcher: DispatchFacade,
        clock: LocalClock,
        notifier: Notifier,
        claim_hour: int,
        timezone: str,
        interval_seconds: float,
        claim_tool: str = CLAIM_TOOL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock
        self._notifier = notifier
        self._claim_hour = claim_hour
        self._timezone = timezone
        self._interval_seconds = interval_seconds
        self._claim_tool = claim_tool
        self._sleep = sleep
        self._in_flight: set[str] = set()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._sweeping = False

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def start(self) -> asyncio.Task[None]:
        """Run one sweep now, then one every interval, in a background task.

        Calling start() after stop() keeps the current loop running, or
        starts a new one if it was cancelled.
        """

        self._stop_event.clear()
        if self._task is None or self._task.done() or self._task.cancelling():
            self._task = asyncio.create_task(self.run_forever(), name="claim-scheduler")
        return self._task

    def stop(self) -> None:
        """Signal the loop to stop.

        An idle loop is cancelled; a sweep in progress is allowed to finish.
        """
        self._stop_event.set()
        if self._task is not None and not self._task.done() and not self._sweeping:
            self._task.cancel()

    async def run_forever(self) -> None:
        await self._safe_sweep()
        if self._interval_seconds <= 0:
            LOGGER.info("Recurring auto-claim sweep disabled")
            return
        while not self._stop_event.is_set():
            await self._sleep(self._interval_seconds)
            if self._stop_event.is_set():
                break
            await self._safe_sweep()

    async def _safe_sweep(self) -> None:
        self._sweeping = True
        try:
            await self.run_sweep()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Auto-claim sweep failed")
        finally:
            self._sweeping = False

    async def run_sweep(self) -> int:
        """Evaluate every stored user once; return the number of claim attempts."""

        hour = self._clock.local_hour(self._timezone)
        if hour is None or hour < self._claim_hour:
            LOGGER.debug("Auto-claim gate closed: hour=%s threshold=%s", hour, self._claim_hour)
            return 0
        today = self._clock.local_date(self._timezone)

        attempts = 0
        for user_id, user in self._store.all_users().items():
            if not _is_eligible(user, today) or not self._try_acquire(user_id):
                continue
            try:
                # The snapshot may predate an overlapping sweep that already claimed.
                current = self._store.get(user_id)
                if current is None or not _is_eligible(current, today):
                    continue
                attempts += 1
                await self._claim_for(user_id, today)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Auto-claim aborted for user %s", user_id)
            finally:
                self._in_flight.discard(user_id)
        return attempts

    def _try_acquire(self, user_id: str) -> bool:
        # No await between the membership test and the insert.
        if user_id in self._in_flight:
            return False
        self._in_flight.add(user_id)
        return True

    async def _claim_for(self, user_id: str, today: str) -> None:
        try:
            result = await self._dispatcher.invoke(user_id, self._claim_tool, {})
        except Exception as exc:  # noqa: BLE001
            detail = str(exc) or type(exc).__name__
            LOGGER.warning("Auto-claim failed for user %s: %s", user_id, detail)
            self._record(user_id, today, f"failed: {detail}")
            await self._notify(user_id, f"Auto-claim failed ({today}): {escape_html(detail)}")
            return

        LOGGER.info("Auto-claim succeeded for user %s", user_id)
        self._record(user_id, today, SUCCESS_STATUS)
        body = format_tool_result(result) or "No data returned."
        await self._notify(user_id, f"Auto-claim result ({today}):\n\n{body}")

    def _record(self, user_id: str, today: str, status: str) -> None:
        self._store.upsert(
            user_id,
            last_auto_claim_date=today,
            last_auto_claim_at=self._clock.local_datetime(self._timezone),
            last_auto_claim_status=status,
        )

    async def _notify(self, user_id: str, text: str) -> None:
        try:
            await self._notifier(user_id, text)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to notify user %s of auto-claim outcome", user_id)


def _is_eligible(user: UserCredential, today: str) -> bool:
    return user.auto_claim_enabled and bool(user.token) and user.last_auto_claim_date != today
