"""Wall clock used by time-dependent services (scheduler, dedup, manager).

Services take a clock argument so tests can substitute a controllable one.
"""

from datetime import datetime, timezone


class SystemClock:
    """Real UTC wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
