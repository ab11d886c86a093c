from datetime import datetime, timezone


def utcnow() -> datetime:
    # naive UTC, the form every DateTime column stores
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def minute_bucket(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)


def hour_bucket(dt: datetime) -> datetime:
    return dt.replace(minute=0, second=0, microsecond=0)
