"""Precondition evaluation: may a due notification be sent right now?"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from taskflow.notifications.models import HourWindow, Notification
from taskflow.notifications.providers import DoNotDisturbWindow, UserContext

logger = logging.getLogger(__name__)

DEFAULT_RESCHEDULE_DELAY = timedelta(hours=1)


class PreconditionResult(BaseModel):
    allowed: bool
    reason: str | None = None
    retry_at: datetime | None = None
    # End of the allowed-hours window that opens at retry_at, if any.
    window_closes_at: datetime | None = None


def sunday_based_weekday(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def _minute_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def dnd_active(window: DoNotDisturbWindow, local_now: datetime) -> bool:
    if not window.enabled:
        return False
    if window.weekends_only and sunday_based_weekday(local_now.date()) not in (0, 6):
        return False
    if not (window.start and window.end):
        # Enabled without a window: do not disturb at all.
        return True
    return HourWindow(start=window.start, end=window.end).contains(_minute_of_day(local_now))


class PreconditionEvaluator:
    """Checks time windows and user state for a due notification.

    Any evaluation error (for instance an unknown timezone) is treated as a
    rejection with the default delay so a single malformed record cannot stall
    a sweep.
    """

    def __init__(self, default_delay: timedelta = DEFAULT_RESCHEDULE_DELAY) -> None:
        self._default_delay = default_delay

    def evaluate(
        self,
        notification: Notification,
        context: UserContext,
        now: datetime,
    ) -> PreconditionResult:
        try:
            reason = self._time_rejection(notification, context, now)
            if reason is not None:
                window = self._next_window(notification, context, now)
                if window is not None:
                    opening, closes = window
                    return PreconditionResult(
                        allowed=False, reason=reason, retry_at=opening, window_closes_at=closes
                    )
            else:
                reason = self._user_rejection(notification, context, now)
            if reason is None:
                return PreconditionResult(allowed=True)
            return PreconditionResult(
                allowed=False, reason=reason, retry_at=now + self._default_delay
            )
        except Exception as exc:
            logger.warning(
                "Precondition evaluation failed for %s: %s", notification.id, exc
            )
            return PreconditionResult(
                allowed=False,
                reason=f"precondition evaluation failed: {exc}",
                retry_at=now + self._default_delay,
            )

    def _time_rejection(
        self,
        notification: Notification,
        context: UserContext,
        now: datetime,
    ) -> str | None:
        tc = notification.time_conditions
        if tc is not None and (tc.allowed_hours or tc.allowed_days):
            local = now.astimezone(self._zone(notification, context))
            window = tc.allowed_hours
            if window is not None and not window.contains(_minute_of_day(local)):
                return f"outside allowed hours {window.start}-{window.end}"
            if tc.allowed_days and sunday_based_weekday(local.date()) not in tc.allowed_days:
                return "day not allowed"
        return None

    def _user_rejection(
        self,
        notification: Notification,
        context: UserContext,
        now: datetime,
    ) -> str | None:
        uc = notification.user_conditions
        if uc is None:
            return None
        if uc.respect_do_not_disturb:
            user_local = now.astimezone(ZoneInfo(context.timezone or "UTC"))
            if dnd_active(context.do_not_disturb, user_local):
                return "do not disturb active"
        if uc.skip_if_in_meeting and context.in_meeting:
            return "user in meeting"
        if uc.only_when_active and not context.is_active:
            return "user inactive"
        return None

    def next_attempt(
        self,
        notification: Notification,
        context: UserContext,
        now: datetime,
    ) -> datetime:
        """Next opening of the allowed-hours window, else ``now + default delay``."""
        window = self._next_window(notification, context, now)
        return window[0] if window is not None else now + self._default_delay

    def _next_window(
        self,
        notification: Notification,
        context: UserContext,
        now: datetime,
    ) -> tuple[datetime, datetime] | None:
        """Opening and closing instant of the next allowed window, in UTC.

        Allowed days without allowed hours open for the whole local day.
        """
        tc = notification.time_conditions
        if tc is None or (tc.allowed_hours is None and not tc.allowed_days):
            return None

        zone = self._zone(notification, context)
        local_today = now.astimezone(zone).date()
        start, length = 0, 24 * 60
        if tc.allowed_hours is not None:
            start = tc.allowed_hours.start_minutes
            length = (tc.allowed_hours.end_minutes - start) % (24 * 60) or 24 * 60
        opens_at = time(start // 60 % 24, start % 60)
        for offset in range(8):
            day = local_today + timedelta(days=offset)
            if tc.allowed_days and sunday_based_weekday(day) not in tc.allowed_days:
                continue
            opening = datetime.combine(day, opens_at, tzinfo=zone)
            if opening > now:
                opening = opening.astimezone(timezone.utc)
                return opening, opening + timedelta(minutes=length)
        return None

    @staticmethod
    def _zone(notification: Notification, context: UserContext) -> ZoneInfo:
        tc = notification.time_conditions
        name = (tc.timezone if tc else None) or context.timezone or "UTC"
        return ZoneInfo(name)
