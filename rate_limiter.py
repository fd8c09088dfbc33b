"""Fixed-window request counting backed by the relational store.

Each (identifier, window_start) pair owns one row in ``rate_limits``.
Windows are aligned by flooring the clock to the window size, so every
node computes the same bucket without talking to the others.

The count is moved with two single-statement operations: an insert that
is ignored when the row already exists, then an increment guarded by
``request_count < max_requests``. Neither step reads a value and writes
it back, so concurrent requests cannot push a window past its limit.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import update
from sqlalchemy.orm import Session
from clock import Clock, utcnow
from config import Settings
from database import insert_ignore
from models import RateLimitWindow
from utils import cleanup_old_rate_limits


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after_seconds: Optional[int] = None


def window_start_for(now: datetime, window_minutes: int) -> datetime:
    if window_minutes < 1:
        raise ValueError("window_minutes must be at least 1")
    if window_minutes < 60 and 60 % window_minutes:
        raise ValueError("window_minutes under an hour must divide 60")
    if window_minutes >= 60 and 1440 % window_minutes:
        raise ValueError("window_minutes of an hour or more must divide 1440")
    start = now.replace(second=0, microsecond=0)
    if window_minutes < 60:
        return start.replace(minute=(start.minute // window_minutes) * window_minutes)
    # Windows of an hour or more are aligned to midnight
    midnight = start.replace(hour=0, minute=0)
    elapsed = int((start - midnight).total_seconds() // 60)
    return midnight + timedelta(minutes=(elapsed // window_minutes) * window_minutes)


class RateLimiter:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def check(
        self,
        identifier: str,
        window_minutes: int = Settings.RATE_LIMIT_WINDOW_MINUTES,
        max_requests: int = Settings.RATE_LIMIT_PER_MINUTE,
    ) -> RateLimitResult:
        """Count one request against ``identifier`` and say whether it may proceed."""
        now = self.clock()
        window_start = window_start_for(now, window_minutes)
        reset_at = window_start + timedelta(minutes=window_minutes)

        if max_requests < 1:
            return self._denied(max_requests, now, reset_at)

        inserted = insert_ignore(
            self.db,
            RateLimitWindow,
            {"identifier": identifier, "window_start": window_start, "request_count": 1},
            ["identifier", "window_start"],
        )
        if inserted:
            self.db.commit()
            return RateLimitResult(True, max_requests, max_requests - 1, reset_at)

        result = self.db.execute(
            update(RateLimitWindow)
            .where(
                RateLimitWindow.identifier == identifier,
                RateLimitWindow.window_start == window_start,
                RateLimitWindow.request_count < max_requests,
            )
            .values(request_count=RateLimitWindow.request_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.commit()
            return self._denied(max_requests, now, reset_at)

        count = self.db.query(RateLimitWindow.request_count).filter(
            RateLimitWindow.identifier == identifier,
            RateLimitWindow.window_start == window_start,
        ).scalar()
        self.db.commit()
        return RateLimitResult(True, max_requests, max(max_requests - (count or max_requests), 0), reset_at)

    def cleanup(self, older_than_minutes: int = Settings.RATE_LIMIT_RETENTION_MINUTES) -> int:
        return cleanup_old_rate_limits(self.db, older_than_minutes, now=self.clock())

    @staticmethod
    def _denied(limit: int, now: datetime, reset_at: datetime) -> RateLimitResult:
        retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
        return RateLimitResult(False, limit, 0, reset_at, retry_after)
