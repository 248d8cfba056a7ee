"""Time helpers. All persisted timestamps are naive UTC."""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_unix_seconds(moment: datetime) -> int:
    """Convert a naive-UTC (or aware) datetime to Unix seconds."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def isoformat_z(moment: datetime) -> str:
    """ISO-8601 with an explicit ``Z`` suffix for naive-UTC datetimes."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment.isoformat(timespec="milliseconds") + "Z"
