from __future__ import annotations

from datetime import datetime, timedelta

# Activity after midnight but before this hour belongs to the previous day.
LOGICAL_DAY_START_HOUR = 4


def day_key_from_unix_seconds(ts: int) -> str:
    local = datetime.fromtimestamp(ts) - timedelta(hours=LOGICAL_DAY_START_HOUR)
    return local.strftime("%Y-%m-%d")


def day_window_for_day_key(day_key: str) -> tuple[int, int]:
    day = datetime.strptime(day_key, "%Y-%m-%d")
    start = day.replace(hour=LOGICAL_DAY_START_HOUR)
    following = day + timedelta(days=1)
    end = following.replace(hour=LOGICAL_DAY_START_HOUR)
    return int(start.timestamp()), int(end.timestamp())


def format_clock_ascii(ts: int) -> str:
    local = datetime.fromtimestamp(ts)
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {suffix}"


def format_duration(total_seconds: int) -> str:
    seconds = max(0, int(total_seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"
