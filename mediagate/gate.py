import logging
from dataclasses import dataclass, field

from .antibot import AntiBotEngine, Submission
from .config import Settings, non_empty
from .errors import ApiError, ClientInputError
from .extractor import Extractor
from .history import STATUS_FAILED, STATUS_SUCCESS, HistoryEntry, HistoryLedger
from .http_utils import is_supported_download_url
from .jobs import Artifact, JobSlotManager
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

UNSUPPORTED_URL_MESSAGE = (
    'Unsupported URL. Use a URL from X, Facebook, TikTok, YouTube, Instagram or Bluesky.'
)
DOWNLOAD_MODES = ('video', 'audio')
INTERNAL_ERROR_MESSAGE = 'Internal server error'


def validate_url(value, empty_message: str = 'Enter a valid URL.') -> str:
    url = value.strip() if isinstance(value, str) else ''
    if not url:
        raise ClientInputError(empty_message)
    if not is_supported_download_url(url):
        raise ClientInputError(UNSUPPORTED_URL_MESSAGE)
    return url


@dataclass
class DownloadRequest:
    url: str
    mode: str
    title: str | None = None
    thumbnail: str | None = None
    format_id: str | None = None
    format_label: str | None = None
    has_audio: bool = False
    submission: Submission = field(default_factory=Submission)

    @classmethod
    def from_payload(cls, data) -> 'DownloadRequest':
        if not isinstance(data, dict):
            raise ClientInputError('Invalid request body.')

        url = validate_url(data.get('url'), 'Enter a valid URL before downloading.')
        mode = data.get('mode')
        if mode not in DOWNLOAD_MODES:
            raise ClientInputError("Invalid download mode. Use 'video' or 'audio'.")

        return cls(
            url=url,
            mode=mode,
            title=non_empty(data.get('title')),
            thumbnail=non_empty(data.get('thumbnail')),
            format_id=non_empty(data.get('format_id')),
            format_label=non_empty(data.get('format_label')),
            has_audio=data.get('has_audio') is True,
            submission=Submission.from_payload(data),
        )

    @property
    def selected_format(self) -> str:
        return self.format_label or self.format_id or 'Best automatic quality'


class GateContext:
    """Everything the request handlers share, built once at startup."""

    def __init__(self, settings: Settings, antibot: AntiBotEngine, limiter: RateLimiter,
                 jobs: JobSlotManager, history: HistoryLedger, extractor: Extractor):
        self.settings = settings
        self.antibot = antibot
        self.limiter = limiter
        self.jobs = jobs
        self.history = history
        self.extractor = extractor
        self.gate = RequestGate(antibot, limiter, jobs, history)

    @classmethod
    def from_settings(cls, settings: Settings, extractor: Extractor | None = None,
                      session=None) -> 'GateContext':
        settings.prepare_dirs()
        if extractor is None:
            extractor = Extractor(
                command=settings.ytdlp_command,
                proxy=settings.ytdlp_proxy,
                force_ipv4=settings.ytdlp_force_ipv4,
                cookiefile=settings.materialize_cookiefile(),
            )
        jobs = JobSlotManager(settings.transfer_dir, extractor, settings.max_concurrent_downloads)
        jobs.sweep_stale()
        return cls(
            settings=settings,
            antibot=AntiBotEngine.from_settings(settings, session=session),
            limiter=RateLimiter(settings.rate_limit_path),
            jobs=jobs,
            history=HistoryLedger(settings.history_path),
            extractor=extractor,
        )


class RequestGate:
    """Runs one download through bot check, quota, job slot and history."""

    def __init__(self, antibot: AntiBotEngine, limiter: RateLimiter, jobs: JobSlotManager,
                 history: HistoryLedger):
        self.antibot = antibot
        self.limiter = limiter
        self.jobs = jobs
        self.history = history

    def download(self, client: str, request: DownloadRequest) -> Artifact:
        """Returns an artifact that still holds its job permit.

        The caller must call ``artifact.release()`` once the response is sent.
        """
        self.antibot.verify(client, request.submission)
        self.limiter.admit(client)

        try:
            artifact = self.jobs.run(request)
        except ApiError as e:
            self.history.record(self._entry(client, request, STATUS_FAILED, error=e.message))
            raise
        except Exception as e:
            logger.error(f'Download job failed for {client}: {e}')
            self.history.record(self._entry(client, request, STATUS_FAILED, error=INTERNAL_ERROR_MESSAGE))
            raise

        try:
            self.history.record(self._entry(client, request, STATUS_SUCCESS, saved_path=artifact.filename))
        except BaseException:
            artifact.discard()
            raise

        artifact.retain()
        logger.info(f'Download ready for {client}: {artifact.filename} ({artifact.size} bytes)')
        return artifact

    def _entry(self, client: str, request: DownloadRequest, status: str, **extra) -> HistoryEntry:
        return HistoryEntry(
            client=client,
            url=request.url,
            title=request.title,
            thumbnail=request.thumbnail,
            mode=request.mode,
            format=request.selected_format,
            status=status,
            **extra,
        )
