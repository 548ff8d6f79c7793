"""
Timestamp parsing for score submissions.

Converters hand over timestamps in whatever shape their source uses. Everything
is normalized to a naive UTC datetime, the form the database stores.
"""

from datetime import datetime, timezone
from typing import Optional, Union
import math

from scoretracker.utils.score_exceptions import UnparsableTimestampError

TimestampInput = Union[None, int, float, str, datetime]

# Plausible window for epoch-millisecond timestamps
MIN_EPOCH_MS = 0
MAX_EPOCH_MS = 32503680000000  # 3000-01-01

PLAIN_FORMAT = "%Y-%m-%d %H:%M:%S"


def to_naive_utc(value: datetime) -> datetime:
    """Drop tzinfo after converting to UTC. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_score_timestamp(value: TimestampInput) -> Optional[datetime]:
    """
    Parse a score's time_achieved.

    Supported forms:
    - None (the source did not record when the score was set)
    - epoch milliseconds as int or float
    - datetime (naive values are UTC)
    - ISO-8601 string, with or without offset ("Z" accepted)
    - "YYYY-MM-DD HH:MM:SS" (UTC)

    Raises:
        UnparsableTimestampError: for anything else
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return to_naive_utc(value)

    if isinstance(value, bool):
        raise UnparsableTimestampError(value)

    if isinstance(value, (int, float)):
        if math.isnan(value) or math.isinf(value):
            raise UnparsableTimestampError(value)
        if not MIN_EPOCH_MS <= value <= MAX_EPOCH_MS:
            raise UnparsableTimestampError(value)
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise UnparsableTimestampError(value)

        try:
            return to_naive_utc(datetime.strptime(text, PLAIN_FORMAT))
        except ValueError:
            pass

        iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
        try:
            return to_naive_utc(datetime.fromisoformat(iso_text))
        except ValueError:
            raise UnparsableTimestampError(value) from None

    raise UnparsableTimestampError(value)
