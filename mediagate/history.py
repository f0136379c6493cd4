from __future__ import annotations

import uuid
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .config import HISTORY_MAX_ENTRIES, HISTORY_PER_IP_LIMIT
from .errors import InternalFailure
from .storage import JsonDocument, format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'


@dataclass
class HistoryEntry:
    client: str
    url: str
    mode: str
    format: str
    status: str
    title: str | None = None
    thumbnail: str | None = None
    saved_path: str | None = None
    error: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self, include_client: bool = False) -> dict:
        data = {
            'id': self.id,
            'created_at': format_timestamp(self.created_at),
            'url': self.url,
            'title': self.title,
            'thumbnail': self.thumbnail,
            'mode': self.mode,
            'format': self.format,
            'status': self.status,
            'saved_path': self.saved_path,
            'error': self.error,
        }
        if include_client:
            data['client'] = self.client
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'HistoryEntry':
        return cls(
            id=str(data['id']),
            created_at=parse_timestamp(data['created_at']),
            client=data.get('client') or '',
            url=data['url'],
            title=data.get('title'),
            thumbnail=data.get('thumbnail'),
            mode=data['mode'],
            format=data['format'],
            status=data['status'],
            saved_path=data.get('saved_path'),
            error=data.get('error'),
        )


def trim_history_limits(entries: list[HistoryEntry], per_client: int = HISTORY_PER_IP_LIMIT,
                        max_entries: int = HISTORY_MAX_ENTRIES) -> list[HistoryEntry]:
    """Keep the newest ``per_client`` entries of each client, then cap the total."""
    counters: dict[str, int] = {}
    kept = []
    for entry in entries:
        seen = counters.get(entry.client, 0)
        if seen >= per_client:
            continue
        counters[entry.client] = seen + 1
        kept.append(entry)
    return kept[:max_entries]


class HistoryLedger:
    """Newest-first record of download outcomes, scoped per client on read."""

    def __init__(self, path: Path, per_client: int = HISTORY_PER_IP_LIMIT,
                 max_entries: int = HISTORY_MAX_ENTRIES):
        self.per_client = per_client
        self.max_entries = max_entries
        self._document = JsonDocument(path, 'local history')
        self._lock = threading.Lock()
        self._version = 0
        self._entries = self._load()

    def _load(self) -> list[HistoryEntry]:
        raw = self._document.load([])
        if not isinstance(raw, list):
            raise InternalFailure('Could not read local history: expected a list')
        try:
            entries = [HistoryEntry.from_dict(item) for item in raw]
        except (KeyError, TypeError, ValueError) as e:
            raise InternalFailure(f'Could not read local history: {e}') from e
        return trim_history_limits(entries, self.per_client, self.max_entries)

    def record(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._entries.insert(0, entry)
            self._entries = trim_history_limits(self._entries, self.per_client, self.max_entries)
            version, snapshot = self._snapshot()
        self._document.write(snapshot, version)

    def list(self, client: str) -> list[dict]:
        with self._lock:
            mine = [entry for entry in self._entries if entry.client == client]
        return [entry.to_dict() for entry in mine[:self.per_client]]

    def clear(self, client: str) -> int:
        with self._lock:
            before = len(self._entries)
            self._entries = [entry for entry in self._entries if entry.client != client]
            removed = before - len(self._entries)
            version, snapshot = self._snapshot()
        self._document.write(snapshot, version)
        return removed

    def _snapshot(self) -> tuple[int, list[dict]]:
        self._version += 1
        return self._version, [entry.to_dict(include_client=True) for entry in self._entries]
