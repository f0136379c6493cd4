from pathlib import PurePath
from urllib.parse import quote, urlsplit

SUPPORTED_DOMAINS = (
    'youtube.com',
    'youtu.be',
    'x.com',
    'twitter.com',
    'facebook.com',
    'fb.watch',
    'instagram.com',
    'bsky.app',
    'tiktok.com',
    'vm.tiktok.com',
    'vt.tiktok.com',
    'm.youtube.com',
    'music.youtube.com',
    'm.facebook.com',
)

CONTENT_TYPES = {
    'mp4': 'video/mp4',
    'webm': 'video/webm',
    'mkv': 'video/x-matroska',
    'mov': 'video/quicktime',
    'mp3': 'audio/mpeg',
    'm4a': 'audio/mp4',
    'aac': 'audio/aac',
    'wav': 'audio/wav',
    'ogg': 'audio/ogg',
    'opus': 'audio/ogg',
    'flac': 'audio/flac',
}

SAFE_FILENAME_PUNCTUATION = set('.-_ ()')


def url_host(url: str) -> str | None:
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def is_domain_match(url: str, domain: str) -> bool:
    host = url_host(url)
    return bool(host) and (host == domain or host.endswith(f'.{domain}'))


def is_supported_download_url(url: str) -> bool:
    try:
        scheme = urlsplit(url).scheme
    except ValueError:
        return False
    if scheme not in ('http', 'https'):
        return False
    return any(is_domain_match(url, domain) for domain in SUPPORTED_DOMAINS)


def content_type_for_filename(filename: str) -> str:
    extension = PurePath(filename).suffix.lstrip('.').lower()
    return CONTENT_TYPES.get(extension, 'application/octet-stream')


def sanitize_ascii_filename(value: str) -> str:
    sanitized = ''.join(
        ch if (ch.isascii() and ch.isalnum()) or ch in SAFE_FILENAME_PUNCTUATION else '_'
        for ch in value
    )
    return sanitized.strip() or 'download.bin'


def build_content_disposition(filename: str) -> str:
    safe_ascii = sanitize_ascii_filename(filename)
    return f"attachment; filename=\"{safe_ascii}\"; filename*=UTF-8''{quote(filename, safe='')}"


def _first_header(headers, name: str) -> str | None:
    value = (headers.get(name) or '').strip()
    return value or None


def client_identity(headers, remote_addr: str | None, trust_proxy_headers: bool) -> str:
    """Best-effort caller identity: socket address, or proxy headers if trusted."""
    if trust_proxy_headers:
        forwarded = _first_header(headers, 'X-Forwarded-For')
        if forwarded:
            first = forwarded.split(',')[0].strip()
            if first:
                return first
        proxied = _first_header(headers, 'CF-Connecting-IP') or _first_header(headers, 'X-Real-IP')
        if proxied:
            return proxied
    return remote_addr or 'unknown'
