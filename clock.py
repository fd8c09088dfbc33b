from datetime import datetime, timezone
from typing import Callable

# Every timestamp in the store is naive UTC
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
