import json
import logging

from .errors import ApiError
from .http_utils import is_domain_match, url_host

logger = logging.getLogger(__name__)

AUTO_VIDEO_OPTION = {
    'format_id': 'bestvideo+bestaudio/best',
    'label': 'Best automatic quality',
    'resolution': 'Auto',
    'ext': 'mp4',
    'has_audio': True,
}
AUTO_AUDIO_OPTION = {
    'format_id': 'bestaudio',
    'label': 'Best available audio',
    'resolution': None,
    'ext': 'mp3',
    'has_audio': True,
}
FALLBACK_DOMAINS = ('tiktok.com', 'vm.tiktok.com', 'vt.tiktok.com', 'bsky.app')


def _num(value) -> float:
    return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else 0.0


def has_video(fmt: dict) -> bool:
    vcodec = fmt.get('vcodec')
    return bool(vcodec) and vcodec != 'none'


def has_audio(fmt: dict) -> bool:
    acodec = fmt.get('acodec')
    return bool(acodec) and acodec != 'none'


def format_filesize_mb(size: float) -> str:
    mb = size / 1_048_576
    if mb > 1024:
        return f'{mb / 1024:.2f} GB'
    return f'{mb:.1f} MB'


def _size_label(fmt: dict) -> str:
    size = fmt.get('filesize') or fmt.get('filesize_approx')
    return format_filesize_mb(_num(size)) if size else 'variable size'


def _dedupe(options: list[dict]) -> list[dict]:
    seen = set()
    deduped = []
    for option in options:
        if option['format_id'] not in seen:
            seen.add(option['format_id'])
            deduped.append(option)
    return deduped


def build_video_options(formats: list[dict]) -> list[dict]:
    ranked = []
    for fmt in formats:
        if not has_video(fmt):
            continue
        ext = fmt.get('ext') or 'mp4'
        height = fmt.get('height')
        resolution = f'{height}p' if height else (fmt.get('format_note') or 'Video')
        with_audio = has_audio(fmt)
        fps = _num(fmt.get('fps'))
        fps_label = f'{round(fps)}fps' if fps > 0 else 'variable fps'
        label = (
            f"{resolution} · {ext.upper()} · {fps_label} · {_size_label(fmt)} · "
            f"{'with audio' if with_audio else 'without audio'}"
        )
        option = {
            'format_id': str(fmt['format_id']),
            'label': label,
            'resolution': resolution,
            'ext': ext,
            'has_audio': with_audio,
        }
        ranked.append(((_num(height), fps, _num(fmt.get('tbr'))), option))

    ranked.sort(key=lambda item: item[0], reverse=True)
    return _dedupe([option for _, option in ranked])


def build_audio_options(formats: list[dict]) -> list[dict]:
    ranked = []
    for fmt in formats:
        if has_video(fmt) or not has_audio(fmt):
            continue
        ext = fmt.get('ext') or 'm4a'
        abr = _num(fmt.get('abr'))
        tbr = _num(fmt.get('tbr'))
        bitrate = abr if fmt.get('abr') is not None else tbr
        bitrate_label = f'{round(bitrate)} kbps' if bitrate > 0 else 'variable bitrate'
        option = {
            'format_id': str(fmt['format_id']),
            'label': f'Audio · {ext.upper()} · {bitrate_label} · {_size_label(fmt)}',
            'resolution': None,
            'ext': ext,
            'has_audio': True,
        }
        ranked.append(((abr, tbr), option))

    ranked.sort(key=lambda item: item[0], reverse=True)
    return _dedupe([option for _, option in ranked])


def should_use_automatic_fallback(url: str, message: str) -> bool:
    lower = message.lower()
    looks_like_metadata_error = (
        'json object must be str, bytes or bytearray, not nonetype' in lower
        or ('failed to extract' in lower and 'json' in lower)
        or 'unable to extract' in lower
        or 'nonetype' in lower
        or 'could not fetch metadata' in lower
    )
    if not looks_like_metadata_error:
        return False
    return any(is_domain_match(url, domain) for domain in FALLBACK_DOMAINS)


def build_automatic_response(url: str) -> dict:
    source = url_host(url) or 'unknown-source'
    return {
        'title': f'Automatic mode ({source})',
        'thumbnail': None,
        'video_options': [dict(AUTO_VIDEO_OPTION)],
        'audio_options': [dict(AUTO_AUDIO_OPTION)],
    }


def list_formats(extractor, url: str) -> dict:
    """Format listing for the UI, with an automatic fallback for flaky extractors."""
    try:
        output = extractor.fetch_metadata(url)
    except ApiError as e:
        if should_use_automatic_fallback(url, e.message):
            logger.warning(f'yt-dlp failed loading metadata for {url!r}; using automatic fallback: {e.message}')
            return build_automatic_response(url)
        raise

    try:
        info = json.loads(output.stdout)
        formats = info.get('formats') or []
        video_options = build_video_options(formats)
        audio_options = build_audio_options(formats)
    except (ValueError, AttributeError, KeyError, TypeError) as e:
        logger.warning(f'Could not parse yt-dlp JSON for {url!r}; using automatic fallback: {e}')
        return build_automatic_response(url)

    title = info.get('title')
    return {
        'title': title if isinstance(title, str) and title.strip() else 'Untitled',
        'thumbnail': info.get('thumbnail'),
        'video_options': video_options or [dict(AUTO_VIDEO_OPTION)],
        'audio_options': audio_options or [dict(AUTO_AUDIO_OPTION)],
    }
