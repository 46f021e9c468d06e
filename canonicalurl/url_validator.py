import re
from urllib.parse import urlsplit

import structlog

logger = structlog.get_logger(__name__)

WEB_SCHEMES = ('http', 'https')

# unreserved / reserved characters of RFC 3986 plus '%' for escapes
_URI_CHARS = re.compile(r"[A-Za-z0-9\-._~:/?#\[\]@!$&'()*+,;=%]+")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def is_web_uri(url) -> bool:
    """True for an absolute, well formed http(s) URI with a host."""
    if not url or not isinstance(url, str):
        return False

    if not _URI_CHARS.fullmatch(url) or _BAD_ESCAPE.search(url):
        logger.debug("invalid_url_characters", url=url)
        return False

    try:
        parsed = urlsplit(url)
        port = parsed.port
    except ValueError as e:
        logger.debug("invalid_url_format", url=url, error=str(e))
        return False

    if parsed.scheme.lower() not in WEB_SCHEMES:
        logger.debug("invalid_url_scheme", url=url, scheme=parsed.scheme)
        return False

    if not parsed.hostname:
        return False

    return port != 0
