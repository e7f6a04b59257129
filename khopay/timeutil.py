from datetime import datetime, timedelta, timezone
from typing import Optional

VN_TZ = timezone(timedelta(hours=7), name="Asia/Ho_Chi_Minh")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def vn_timestamp(value: datetime, fmt: str = "%Y%m%d%H%M%S") -> str:
    """Format a timestamp in Vietnam local time (gateways expect GMT+7)."""
    return as_utc(value).astimezone(VN_TZ).strftime(fmt)
