import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path

from .config import DOWNLOAD_LIMIT_PER_DAY, DOWNLOAD_WINDOW_HOURS
from .errors import InternalFailure, QuotaExceeded
from .storage import JsonDocument, format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class RateLimiter:
    """Durable sliding-window download quota, keyed by client identity.

    Attempts are counted at admission time, before the download runs, so a
    failed or timed-out download still uses up one of the client's slots.
    """

    def __init__(self, path: Path, limit: int = DOWNLOAD_LIMIT_PER_DAY,
                 window: timedelta = timedelta(hours=DOWNLOAD_WINDOW_HOURS), clock=utcnow):
        self.limit = limit
        self.window = window
        self.clock = clock
        self._document = JsonDocument(path, 'download limits file')
        self._lock = threading.Lock()
        self._version = 0
        self._table: dict[str, list[datetime]] = self._load()

    def _load(self) -> dict[str, list[datetime]]:
        raw = self._document.load({})
        if not isinstance(raw, dict):
            raise InternalFailure('Could not read download limits file: expected an object')

        window_start = self.clock() - self.window
        table = {}
        for client, values in raw.items():
            try:
                timestamps = sorted(parse_timestamp(value) for value in values)
            except (TypeError, ValueError) as e:
                raise InternalFailure(f'Could not read download limits file: {e}') from e
            timestamps = [ts for ts in timestamps if ts > window_start]
            if timestamps:
                table[client] = timestamps
        return table

    def admit(self, client: str) -> None:
        """Record one attempt for ``client`` or raise QuotaExceeded.

        The pruned table is persisted before returning either way, and a
        rejected attempt is never recorded.
        """
        now = self.clock()
        window_start = now - self.window
        retry_after = None

        with self._lock:
            entries = sorted(ts for ts in self._table.get(client, []) if ts > window_start)

            if len(entries) >= self.limit:
                reset_at = entries[0] + self.window
                retry_after = max(1, int((reset_at - now).total_seconds()))
            else:
                entries.append(now)
                entries.sort()

            if entries:
                self._table[client] = entries
            else:
                self._table.pop(client, None)

            self._version += 1
            version = self._version
            snapshot = self._serialize()

        self._document.write(snapshot, version)

        if retry_after is not None:
            logger.info(f'Daily limit reached for {client}; retry in {retry_after}s')
            raise QuotaExceeded(self.limit, retry_after)

    def attempts(self, client: str) -> list[datetime]:
        with self._lock:
            return list(self._table.get(client, []))

    def _serialize(self) -> dict[str, list[str]]:
        return {
            client: [format_timestamp(ts) for ts in timestamps]
            for client, timestamps in self._table.items()
        }
