import sys
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .config import YT_DLP_TIMEOUT_SECONDS, non_empty
from .errors import ClientInputError, InternalFailure, UpstreamTimeout

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = [sys.executable, '-m', 'yt_dlp']


@dataclass
class ExtractorOutput:
    stdout: str
    stderr: str


def run_error_message(stderr: str) -> str:
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    message = lines[-1] if lines else 'yt-dlp could not complete the operation'
    lower = message.lower()

    if 'unsupported url' in lower:
        return 'Unsupported or invalid URL for download.'
    if 'nonetype' in lower:
        return 'Could not fetch metadata for the URL. Try the automatic format or retry later.'
    return message


def extract_printed_path(stdout: str) -> str | None:
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    return lines[-1] if lines else None


class Extractor:
    """Runs yt-dlp as a child process with a hard timeout."""

    def __init__(self, command: list[str] | None = None, timeout: float = YT_DLP_TIMEOUT_SECONDS,
                 proxy: str | None = None, force_ipv4: bool = False, cookiefile: Path | None = None):
        self.command = list(command or DEFAULT_COMMAND)
        self.timeout = timeout
        self.proxy = proxy
        self.force_ipv4 = force_ipv4
        self.cookiefile = cookiefile

    def network_args(self) -> list[str]:
        args = []
        if self.force_ipv4:
            args.append('--force-ipv4')
        if self.proxy:
            args += ['--proxy', self.proxy]
        if self.cookiefile:
            args += ['--cookies', str(self.cookiefile)]
        return args

    def run(self, args: list[str]) -> ExtractorOutput:
        cmd = self.command + self.network_args() + args
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                errors='replace',
                timeout=self.timeout,
                shell=False,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f'yt-dlp timed out after {self.timeout}s')
            raise UpstreamTimeout(
                'The download exceeded the time limit. Try another URL or format.'
            ) from e
        except FileNotFoundError as e:
            raise InternalFailure(
                'yt-dlp is not installed on the system. Install yt-dlp and restart the backend.'
            ) from e
        except OSError as e:
            raise InternalFailure(f'Could not run yt-dlp: {e}') from e

        if result.returncode != 0:
            raise ClientInputError(run_error_message(result.stderr or ''))

        return ExtractorOutput(stdout=result.stdout or '', stderr=result.stderr or '')

    def fetch_metadata(self, url: str) -> ExtractorOutput:
        return self.run(['-J', '--no-playlist', '--no-warnings', url])

    def fetch(self, job_dir: Path, request) -> ExtractorOutput:
        return self.run(build_download_args(job_dir, request))


def build_download_args(job_dir: Path, request) -> list[str]:
    """Argument list for fetch mode; yt-dlp prints the final path last."""
    output_template = f'{job_dir}/%(title).140B-%(id)s.%(ext)s'
    args = [
        '--no-playlist',
        '--no-warnings',
        '--newline',
        '--print', 'after_move:filepath',
        '-o', output_template,
    ]

    format_id = non_empty(request.format_id)
    if request.mode == 'audio':
        args += ['-f', format_id or 'bestaudio', '-x', '--audio-format', 'mp3', '--audio-quality', '0']
    else:
        if format_id is None:
            selector = 'bestvideo+bestaudio/best'
        elif request.has_audio:
            selector = format_id
        else:
            selector = f'{format_id}+bestaudio/best'
        args += ['-f', selector]

    args.append(request.url)
    return args
