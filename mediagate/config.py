import os
import base64
import logging
import binascii
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

from .errors import InternalFailure

logger = logging.getLogger(__name__)

# =========================
# Limits
# =========================
DOWNLOAD_LIMIT_PER_DAY = 10
DOWNLOAD_WINDOW_HOURS = 24
ANTIBOT_DIFFICULTY_HEX_PREFIX = 3
ANTIBOT_CHALLENGE_TTL_SECONDS = 5 * 60
ANTIBOT_MIN_ELAPSED_MS = 900
MAX_ANTIBOT_CHALLENGES = 20_000
DEFAULT_MAX_CONCURRENT_DOWNLOADS = 3
YT_DLP_TIMEOUT_SECONDS = 180
MAX_DOWNLOAD_BYTES = 250 * 1024 * 1024
TURNSTILE_TIMEOUT_SECONDS = 10
TURNSTILE_VERIFY_URL = 'https://challenges.cloudflare.com/turnstile/v0/siteverify'
DOWNLOAD_JOB_RETENTION_SECONDS = 20 * 60
STALE_DOWNLOAD_JOB_SECONDS = 2 * 60 * 60
STALE_SWEEP_INTERVAL_SECONDS = 600
HISTORY_PER_IP_LIMIT = 10
HISTORY_MAX_ENTRIES = 2_000

DEFAULT_BIND_ADDR = '127.0.0.1:8787'
DEV_ORIGINS = ['http://127.0.0.1:5173', 'http://localhost:5173']


def parse_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in {'1', 'true', 'yes', 'on'}:
        return True
    if lowered in {'0', 'false', 'no', 'off'}:
        return False
    return None


def read_positive_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def non_empty(value) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def normalize_origin(value: str) -> str | None:
    """Reduce an origin to scheme://host[:port], dropping default ports."""
    try:
        parsed = urlsplit(value.strip())
        port = parsed.port
    except ValueError:
        return None

    default_port = {'http': 80, 'https': 443}.get(parsed.scheme)
    if default_port is None or not parsed.hostname:
        return None
    if parsed.path not in ('', '/') or parsed.query or parsed.fragment:
        return None

    host = parsed.hostname.lower()
    if port is not None and port != default_port:
        return f'{parsed.scheme}://{host}:{port}'
    return f'{parsed.scheme}://{host}'


def resolve_bind_addr(environ=None) -> tuple[str, int]:
    environ = os.environ if environ is None else environ

    configured = non_empty(environ.get('APP_ADDR'))
    if configured:
        host, _, port = configured.rpartition(':')
        try:
            return host or '127.0.0.1', int(port)
        except ValueError:
            logger.warning(f'Ignoring invalid APP_ADDR {configured!r}')

    port = environ.get('PORT')
    if port is not None:
        try:
            return '0.0.0.0', int(port.strip())
        except ValueError:
            logger.warning(f'Ignoring invalid PORT {port!r}')

    host, _, port = DEFAULT_BIND_ADDR.rpartition(':')
    return host, int(port)


def load_allowed_origins(raw: str | None) -> list[str]:
    configured = [origin.strip() for origin in (raw or '').split(',') if origin.strip()]
    if not configured:
        logger.warning('ALLOWED_ORIGINS is not set; falling back to local development origins.')
        configured = list(DEV_ORIGINS)

    normalized = []
    for origin in configured:
        value = normalize_origin(origin)
        if value is None:
            raise InternalFailure(
                f'Invalid origin in ALLOWED_ORIGINS: {origin}. Use values like https://example.com'
            )
        if value not in normalized:
            normalized.append(value)

    logger.info(f'CORS allow-list loaded with {len(normalized)} origin(s): {normalized}')
    return normalized


@dataclass
class Settings:
    data_dir: Path
    transfer_dir: Path
    max_concurrent_downloads: int = DEFAULT_MAX_CONCURRENT_DOWNLOADS
    trust_proxy_headers: bool = False
    turnstile_secret_key: str | None = None
    turnstile_verify_url: str = TURNSTILE_VERIFY_URL
    allowed_origins: list[str] = field(default_factory=lambda: list(DEV_ORIGINS))
    ytdlp_command: list[str] | None = None
    ytdlp_proxy: str | None = None
    ytdlp_force_ipv4: bool = False
    ytdlp_cookies_b64: str | None = None

    @property
    def history_path(self) -> Path:
        return self.data_dir / 'history.json'

    @property
    def rate_limit_path(self) -> Path:
        return self.data_dir / 'rate_limits.json'

    @classmethod
    def from_env(cls, environ=None) -> 'Settings':
        environ = os.environ if environ is None else environ
        cwd = Path.cwd()

        ytdlp_bin = non_empty(environ.get('YTDLP_BIN'))
        return cls(
            data_dir=Path(environ.get('MEDIAGATE_DATA_DIR') or cwd / 'data'),
            transfer_dir=Path(environ.get('MEDIAGATE_TRANSFER_DIR') or cwd / 'temp_downloads'),
            max_concurrent_downloads=(
                read_positive_int(environ.get('MAX_CONCURRENT_DOWNLOADS'))
                or DEFAULT_MAX_CONCURRENT_DOWNLOADS
            ),
            trust_proxy_headers=bool(parse_bool(environ.get('TRUST_PROXY_HEADERS'))),
            turnstile_secret_key=non_empty(environ.get('TURNSTILE_SECRET_KEY')),
            turnstile_verify_url=non_empty(environ.get('TURNSTILE_VERIFY_URL')) or TURNSTILE_VERIFY_URL,
            allowed_origins=load_allowed_origins(environ.get('ALLOWED_ORIGINS')),
            ytdlp_command=ytdlp_bin.split() if ytdlp_bin else None,
            ytdlp_proxy=non_empty(environ.get('YTDLP_PROXY')),
            ytdlp_force_ipv4=bool(parse_bool(environ.get('YTDLP_FORCE_IPV4'))),
            ytdlp_cookies_b64=non_empty(environ.get('YTDLP_COOKIES_B64')),
        )

    def prepare_dirs(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.transfer_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InternalFailure(f'Could not create data directories: {e}') from e

    def materialize_cookiefile(self) -> Path | None:
        """Write YTDLP_COOKIES_B64 out as a Netscape cookies.txt in the data dir."""
        if not self.ytdlp_cookies_b64:
            return None
        try:
            text = base64.b64decode(self.ytdlp_cookies_b64).decode('utf-8', 'ignore')
        except (binascii.Error, ValueError) as e:
            logger.warning(f'Failed to decode cookies b64: {e}')
            return None

        path = self.data_dir / 'cookies.txt'
        try:
            with open(path, 'w', encoding='utf-8', newline='\n') as f:
                f.write(text)
        except OSError as e:
            raise InternalFailure(f'Could not write cookies file: {e}') from e
        return path
