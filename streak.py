"""Daily-activity streak tracking.

The streak only advances when an attempt arrives; its state is a function
of the day delta between the attempt's local date and the last credited
date. No timers are involved.
"""

from datetime import date, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import StreakConfig
from models import StreakState, StreakStatus, as_utc


def local_date(moment: datetime, tz_name: str) -> date:
    """Calendar date of `moment` in the student's timezone."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo("UTC")
    return as_utc(moment).astimezone(tz).date()


def credit_day(
    streak: StreakState, day: date, config: StreakConfig | None = None
) -> StreakState:
    """
    Credit activity on `day` to the streak (mutates and returns it).

    - first activity ever: streak = 1
    - same day, or an earlier day delivered late: no change
    - next day: +1
    - gap bridged by a grace token: +1 and the token is spent
    - anything longer: longest is kept, current resets to 1
    """
    config = config or StreakConfig()

    if streak.last_credited is None:
        streak.current = 1
        streak.longest = max(streak.longest, 1)
        streak.last_credited = day
        streak.in_grace = False
        return streak

    delta = (day - streak.last_credited).days
    if delta <= 0:
        return streak

    if delta == 1:
        streak.current += 1
        streak.in_grace = False
    elif delta - 1 <= config.grace_window_days and streak.grace_tokens > 0:
        streak.grace_tokens -= 1
        streak.current += 1
        streak.in_grace = True
    else:
        streak.longest = max(streak.longest, streak.current)
        streak.current = 1
        streak.in_grace = False

    streak.last_credited = day
    streak.longest = max(streak.longest, streak.current)

    if streak.current % config.token_every_days == 0:
        streak.grace_tokens = min(config.max_grace_tokens, streak.grace_tokens + 1)

    return streak


def status_on(
    streak: StreakState, day: date, config: StreakConfig | None = None
) -> StreakStatus:
    """Where the streak stands on `day` if no further activity happens."""
    config = config or StreakConfig()
    if streak.last_credited is None or streak.current == 0:
        return StreakStatus.INACTIVE

    delta = (day - streak.last_credited).days
    if delta <= 1:
        return StreakStatus.ACTIVE
    if delta - 1 <= config.grace_window_days and streak.grace_tokens > 0:
        return StreakStatus.GRACE
    return StreakStatus.INACTIVE


def new_streak(student_id: str, config: StreakConfig | None = None) -> StreakState:
    config = config or StreakConfig()
    return StreakState(
        student_id=student_id,
        grace_tokens=min(config.initial_grace_tokens, config.max_grace_tokens),
    )
