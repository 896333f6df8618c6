from datetime import UTC, datetime


def utcnow_naive():
    """Return current UTC timestamp as naive datetime for DB timestamp columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def elapsed_seconds(since, now=None):
    """Whole seconds between ``since`` and ``now`` (never negative)."""
    if since is None:
        return 0
    now = now or utcnow_naive()
    return max(0, int((now - since).total_seconds()))


def format_time(seconds):
    minutes, remaining = divmod(max(0, int(seconds)), 60)
    return f'{minutes:02d}:{remaining:02d}'
