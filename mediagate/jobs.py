import os
import time
import uuid
import shutil
import logging
import threading
from pathlib import Path

from .config import (
    DOWNLOAD_JOB_RETENTION_SECONDS,
    MAX_DOWNLOAD_BYTES,
    STALE_DOWNLOAD_JOB_SECONDS,
    STALE_SWEEP_INTERVAL_SECONDS,
)
from .errors import ClientInputError, InternalFailure
from .extractor import extract_printed_path
from .http_utils import content_type_for_filename

logger = logging.getLogger(__name__)

CHUNK_SIZE = 512 * 1024


def cleanup_download_job(job_dir: Path) -> None:
    """Delete a job workspace. Safe to call more than once."""
    try:
        shutil.rmtree(job_dir)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.info(f'Could not clean temporary folder {job_dir}: {e}')


def cleanup_stale_download_jobs(transfer_dir: Path, older_than_secs: float) -> int:
    """Remove anything in the transfer dir older than ``older_than_secs``.

    Works purely from what is on disk, so it also reclaims workspaces left
    behind by a crash or a cleanup timer that never fired.
    """
    if older_than_secs <= 0:
        return 0

    try:
        entries = list(os.scandir(transfer_dir))
    except FileNotFoundError:
        return 0
    except OSError as e:
        logger.warning(f'Could not open temporary folder for cleanup: {e}')
        return 0

    now = time.time()
    cleaned = 0
    for entry in entries:
        try:
            stat = entry.stat(follow_symlinks=False)
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f'Could not read metadata of {entry.path}: {e}')
            continue

        if now - stat.st_mtime < older_than_secs:
            continue

        try:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.remove(entry.path)
            cleaned += 1
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f'Could not remove stale temporary entry {entry.path}: {e}')

    if cleaned:
        logger.info(f'Cleaned {cleaned} stale download job(s)')
    return cleaned


def _resolve_candidate(canonical_job_dir: Path, candidate: Path) -> Path | None:
    try:
        if not candidate.is_file():
            return None
        resolved = candidate.resolve(strict=True)
    except OSError:
        return None

    if resolved == canonical_job_dir or not resolved.is_relative_to(canonical_job_dir):
        logger.warning(f'Blocked a file outside the expected temporary folder: {resolved}')
        return None
    return resolved


def resolve_downloaded_file(job_dir: Path, printed_path: str | None) -> Path:
    """Find the file a job produced without trusting the extractor's output.

    The printed path is only used when it really lives inside the job
    workspace; otherwise the workspace itself is scanned.
    """
    try:
        canonical_job_dir = job_dir.resolve(strict=True)
    except OSError as e:
        raise InternalFailure(f'Could not resolve temporary folder: {e}') from e

    if printed_path:
        for candidate in (Path(printed_path), job_dir / printed_path):
            found = _resolve_candidate(canonical_job_dir, candidate)
            if found is not None:
                return found

    try:
        names = sorted(os.listdir(job_dir))
    except OSError as e:
        raise InternalFailure(f'Could not open temporary folder: {e}') from e

    for name in names:
        found = _resolve_candidate(canonical_job_dir, job_dir / name)
        if found is not None:
            return found

    raise InternalFailure('Downloaded file not found for transfer to the device.')


class Artifact:
    """A finished download that still holds its job permit.

    The permit is given back by ``release`` (once the response is done
    streaming) or by ``discard``.
    """

    def __init__(self, manager: 'JobSlotManager', path: Path, job_dir: Path, size: int):
        self.manager = manager
        self.path = path
        self.job_dir = job_dir
        self.size = size
        self.filename = path.name or 'download.bin'
        self.content_type = content_type_for_filename(self.filename)
        self._released = False
        self._release_lock = threading.Lock()

    def release(self) -> None:
        with self._release_lock:
            if self._released:
                return
            self._released = True
        self.manager._release_permit()

    def retain(self) -> None:
        self.manager.schedule_cleanup(self.job_dir)

    def discard(self) -> None:
        cleanup_download_job(self.job_dir)
        self.release()

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE):
        with open(self.path, 'rb') as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk


class JobSlotManager:
    """Bounds concurrent downloads and owns each job's workspace."""

    def __init__(self, transfer_dir: Path, extractor, max_concurrent: int,
                 max_bytes: int = MAX_DOWNLOAD_BYTES,
                 retention_seconds: float = DOWNLOAD_JOB_RETENTION_SECONDS,
                 stale_seconds: float = STALE_DOWNLOAD_JOB_SECONDS,
                 timer_factory=threading.Timer):
        self.transfer_dir = Path(transfer_dir)
        self.extractor = extractor
        self.max_concurrent = max_concurrent
        self.max_bytes = max_bytes
        self.retention_seconds = retention_seconds
        self.stale_seconds = stale_seconds
        self.timer_factory = timer_factory
        self._permits = threading.BoundedSemaphore(max_concurrent)
        self._state_lock = threading.Lock()
        self._active = 0
        self._timers: set = set()
        self._sweeper: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def active_jobs(self) -> int:
        with self._state_lock:
            return self._active

    def _acquire_permit(self) -> None:
        self._permits.acquire()
        with self._state_lock:
            self._active += 1

    def _release_permit(self) -> None:
        with self._state_lock:
            self._active -= 1
        self._permits.release()

    def sweep_stale(self) -> int:
        return cleanup_stale_download_jobs(self.transfer_dir, self.stale_seconds)

    def create_workspace(self) -> Path:
        job_dir = self.transfer_dir / str(uuid.uuid4())
        try:
            job_dir.mkdir(parents=True)
        except OSError as e:
            raise InternalFailure(f'Could not prepare the temporary download: {e}') from e
        return job_dir

    def run(self, request) -> Artifact:
        """Run one download and return its artifact, permit still held.

        Blocks until a permit is free. On any failure the workspace is
        removed and the permit returned before the error propagates.
        """
        self._acquire_permit()
        try:
            self.sweep_stale()
            job_dir = self.create_workspace()
            try:
                output = self.extractor.fetch(job_dir, request)
                path = resolve_downloaded_file(job_dir, extract_printed_path(output.stdout))
                try:
                    size = path.stat().st_size
                except OSError as e:
                    raise InternalFailure(f'Could not read temporary file metadata: {e}') from e
                if size > self.max_bytes:
                    max_mb = self.max_bytes // 1_048_576
                    raise ClientInputError(f'The file exceeds the allowed limit of {max_mb} MB.')
            except BaseException:
                cleanup_download_job(job_dir)
                raise
        except BaseException:
            self._release_permit()
            raise

        return Artifact(self, path, job_dir, size)

    def schedule_cleanup(self, job_dir: Path) -> None:
        def _expire():
            cleanup_download_job(job_dir)
            with self._state_lock:
                self._timers.discard(timer)

        timer = self.timer_factory(self.retention_seconds, _expire)
        timer.daemon = True
        with self._state_lock:
            self._timers.add(timer)
        timer.start()

    def start_sweeper(self, interval: float = STALE_SWEEP_INTERVAL_SECONDS) -> None:
        def sweep_worker():
            while not self._stop.wait(interval):
                try:
                    self.sweep_stale()
                except Exception as e:
                    logger.error(f'Cleanup thread error: {e}')

        with self._state_lock:
            if self._sweeper is not None:
                return
            self._sweeper = threading.Thread(target=sweep_worker, name='stale-sweep', daemon=True)
        self._sweeper.start()

    def shutdown(self) -> None:
        """Stop background work. Pending cleanups are left to the stale sweep."""
        self._stop.set()
        with self._state_lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
