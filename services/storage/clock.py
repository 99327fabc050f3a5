from datetime import datetime, timezone
from typing import Callable, Optional


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MonotonicClock:
    """Naive-UTC timestamp source that never goes backwards.

    Both backends stamp rows from a clock like this one, so ordering by
    timestamp is identical whichever backend is in use.
    """

    def __init__(self, source: Optional[Callable[[], datetime]] = None):
        self._source = source or _utc_now
        self._last: Optional[datetime] = None

    def __call__(self) -> datetime:
        now = self._source()
        if self._last is not None and now < self._last:
            now = self._last
        self._last = now
        return now
