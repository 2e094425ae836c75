from __future__ import annotations

from datetime import datetime, timedelta


class RetryPolicy:
    def __init__(self, base_minutes: int = 15, max_delay_minutes: int = 240, max_attempts: int = 3) -> None:
        self.base_minutes = base_minutes
        self.max_delay_minutes = max_delay_minutes
        self.max_attempts = max_attempts

    def delay_for(self, attempts: int) -> timedelta:
        # 15, 30, 60 ... minutes, capped.
        exponent = max(0, int(attempts) - 1)
        minutes = min(self.base_minutes * (2 ** exponent), self.max_delay_minutes)
        return timedelta(minutes=minutes)

    def next_attempt(self, attempts: int, *, now: datetime) -> datetime:
        return now + self.delay_for(attempts)

    def exhausted(self, attempts: int) -> bool:
        return attempts > self.max_attempts
