import os
import json
import logging
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

from .errors import InternalFailure

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_timestamp(value: str) -> datetime:
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JsonDocument:
    """A JSON file that is always rewritten wholesale.

    Writes go to a temporary file in the same directory and are swapped in
    with os.replace, so readers never see a half-written document.
    """

    def __init__(self, path: Path, label: str):
        self.path = Path(path)
        self.label = label
        self._write_lock = threading.Lock()
        self._written_version = -1

    def load(self, default):
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                contents = f.read()
        except FileNotFoundError:
            return default
        except OSError as e:
            raise InternalFailure(f'Could not open {self.label}: {e}') from e

        try:
            return json.loads(contents)
        except json.JSONDecodeError as e:
            raise InternalFailure(f'Could not read {self.label}: {e}') from e

    def write(self, payload, version: int | None = None) -> None:
        """Persist a snapshot.

        ``version`` is a counter taken under the caller's table lock. A
        snapshot older than the last one written is dropped, so a slow
        writer can never overwrite newer state.
        """
        try:
            data = json.dumps(payload, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise InternalFailure(f'Could not serialize {self.label}: {e}') from e

        with self._write_lock:
            if version is not None and version <= self._written_version:
                return
            try:
                fd, tmp_path = tempfile.mkstemp(
                    prefix=f'.{self.path.name}.', suffix='.tmp', dir=self.path.parent
                )
            except OSError as e:
                raise InternalFailure(f'Could not save {self.label}: {e}') from e

            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    f.write(data)
                os.replace(tmp_path, self.path)
            except OSError as e:
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
                raise InternalFailure(f'Could not save {self.label}: {e}') from e

            if version is not None:
                self._written_version = version
