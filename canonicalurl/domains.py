"""
Domain lists and the policy built from them.

whitelist: domains allowed as the final destination (HEAD and GET)
shortlist: domains allowed as an origin to probe (HEAD), e.g. url shorteners
"""

from typing import FrozenSet, Iterable, Optional

import structlog
import tldextract

logger = structlog.get_logger(__name__)

# bundled public suffix snapshot only, never fetched over the network
_extract = tldextract.TLDExtract(suffix_list_urls=())


def normalize_domain(domain: Optional[str]) -> Optional[str]:
    if domain is None:
        return None
    domain = domain.lower().strip()
    return domain or None


def registrable_domain(url: Optional[str]) -> Optional[str]:
    """Registrable domain of a URL or host name, e.g. 'bbc.co.uk' for 'https://www.bbc.co.uk/news'."""
    if not url:
        return None
    try:
        ext = _extract(url)
    except ValueError:
        return None
    if not ext.domain or not ext.suffix:
        return None
    return normalize_domain(f"{ext.domain}.{ext.suffix}")


def parse_domain_list(lines: Iterable[str]) -> FrozenSet[str]:
    """Lowercase and trim every line, drop blank and '#' comment lines, collapse duplicates."""
    domains = set()
    for line in lines:
        line = line.lower().strip()
        if not line or line.startswith('#'):
            continue
        domains.add(line)
    return frozenset(domains)


def load_domain_list(path: Optional[str]) -> Optional[FrozenSet[str]]:
    """Load a line delimited domain list; None when the file is missing or unreadable."""
    if not path:
        return None
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return parse_domain_list(f)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("domain_list_unavailable", path=path, error=str(e))
        return None


class DomainPolicy:
    """Answers whether a registrable domain may be probed or fetched.

    Fail-open while no list is configured (both missing or empty); as soon
    as either list has entries only listed domains are permitted.
    """

    def __init__(self, whitelist: Optional[Iterable[str]] = None, shortlist: Optional[Iterable[str]] = None):
        self.whitelist = self._normalized(whitelist)
        self.shortlist = self._normalized(shortlist)

    @staticmethod
    def _normalized(domains: Optional[Iterable[str]]) -> FrozenSet[str]:
        if not domains:
            return frozenset()
        return frozenset(d for d in (normalize_domain(x) for x in domains) if d)

    @classmethod
    def from_files(cls, whitelist_path: Optional[str], shortlist_path: Optional[str]) -> "DomainPolicy":
        whitelist = load_domain_list(whitelist_path)
        if whitelist:
            logger.debug("whitelist_loaded", path=whitelist_path, size=len(whitelist))
        else:
            logger.warning("no_whitelist", path=whitelist_path)

        shortlist = load_domain_list(shortlist_path)
        if shortlist:
            logger.debug("shortlist_loaded", path=shortlist_path, size=len(shortlist))
        else:
            logger.warning("no_shortlist", path=shortlist_path)

        return cls(whitelist=whitelist, shortlist=shortlist)

    @classmethod
    def from_settings(cls, settings) -> "DomainPolicy":
        return cls.from_files(settings.whitelist, settings.shortlist)

    @property
    def configured(self) -> bool:
        return bool(self.whitelist or self.shortlist)

    def permits(self, domain: Optional[str]) -> bool:
        """May this domain be probed as an origin."""
        domain = normalize_domain(domain)
        if domain is None:
            return False
        if not self.configured:
            return True
        return domain in self.shortlist or domain in self.whitelist

    def whitelisted(self, domain: Optional[str]) -> bool:
        """May content be fetched from this domain as the final destination."""
        domain = normalize_domain(domain)
        if domain is None:
            return False
        if not self.configured:
            return True
        return domain in self.whitelist
