"""
Resolves a single URL:
validate → domain check → HEAD → evaluate HEAD → (GET → extract) → reply.

Every path ends in exactly one terminal state; the finalized
ResolutionResult is the reply. Nothing is retried and no failure escapes
resolve().
"""

from typing import Optional

import structlog

from .domains import DomainPolicy, registrable_domain
from .extractor import HTMLParseError, find_canonical, find_opengraph, parse_html
from .fetcher import ContentFetcher, FetchResult, RedirectProbe
from .models import Method, ResolutionRequest, ResolutionResult
from .url_validator import is_web_uri

logger = structlog.get_logger(__name__)


class ResolutionPipeline:
    """Unshortens a URL and, when allowed, extracts its canonical or OpenGraph URL."""

    def __init__(
        self,
        settings,
        policy: DomainPolicy,
        probe: RedirectProbe = None,
        fetcher: ContentFetcher = None,
    ):
        self.settings = settings
        self.policy = policy
        self.probe = probe or RedirectProbe.from_settings(settings)
        self.fetcher = fetcher or ContentFetcher.from_settings(settings)

    async def resolve(self, request: ResolutionRequest) -> ResolutionResult:
        result = ResolutionResult.for_request(request)
        try:
            await self._run(request, result)
        except Exception:
            logger.error("resolution_failed", url=request.url, exc_info=True)
            result.fail("internal error")
        return result.finalize()

    async def _run(self, request: ResolutionRequest, result: ResolutionResult) -> None:
        url = request.url

        if not is_web_uri(url):
            result.advance(Method.URL_VALIDATION)
            self._fail(result, "invalid url")
            return

        # extract the registrable domain e.g. 'bbc.co.uk' and check both lists
        result.tld = registrable_domain(url)
        if not result.tld or not self.policy.permits(result.tld):
            self._fail(result, "domain not in lists")
            return

        head = await self.probe.probe(url)
        if not head.success:
            self._fail(result, head.error)
            return
        logger.debug("head_reply_received", url=url, status_code=head.status_code)

        whitelisted = self._evaluate_head(url, head, result)
        fetch = request.fetch and self.settings.fetch_enabled
        reason = self._head_rejection(result, whitelisted, fetch)
        if reason:
            self._fail(result, reason)
            return

        logger.debug("go_fetch", url=url, url_retrieved=result.url_retrieved)
        await self._fetch_content(result)

    def _evaluate_head(self, url: str, head: FetchResult, result: ResolutionResult) -> bool:
        """Record the HEAD reply; True when the final domain is whitelisted."""
        result.advance(Method.ORIGINAL)
        result.code = head.status_code
        result.ctype = head.content_type
        result.size = head.content_length

        if head.redirected:
            self._record_redirect(result, head.final_url)
        else:
            # final domain is the origin domain, already validated
            result.url_retrieved = url
            result.tld_retrieved = result.tld

        return self.policy.whitelisted(result.tld_retrieved)

    def _head_rejection(self, result: ResolutionResult, whitelisted: bool, fetch: bool) -> Optional[str]:
        """First failing check, in priority order."""
        if result.code >= 400:
            return f"HTTP error: {result.code}"
        if result.ctype and 'text/html' not in result.ctype:
            return f"bad content type: {result.ctype}"
        if not result.ctype:
            return "no content type"
        if result.size > self.settings.maxsize:
            return f"content to big: {result.size}"
        if not whitelisted:
            return "domain not in whitelist"
        if not fetch:
            return "content fetching disabled"
        return None

    async def _fetch_content(self, result: ResolutionResult) -> None:
        result.get_attempt = True

        page = await self.fetcher.fetch(result.url_retrieved)
        if not page.success:
            self._fail(result, page.error)
            return

        try:
            doc = parse_html(page.content)
        except HTMLParseError as e:
            logger.debug("html_parse_failed", url=page.final_url, error=str(e))
            self._fail(result, "html parsing failed")
            return

        result.error = False

        # the GET may have been redirected somewhere the HEAD was not
        if page.redirected:
            self._record_redirect(result, page.final_url)
            if not self.policy.whitelisted(result.tld_retrieved):
                self._fail(result, "domain not in whitelist")
                return

        canonical_url = find_canonical(doc)
        if canonical_url:
            self._found(result, Method.CANONICAL, canonical_url)
            return

        og_url = find_opengraph(doc)
        if og_url:
            self._found(result, Method.OPENGRAPH, og_url)
            return

        # no canonical metadata is still a successful resolution
        self._finish(result, "no canonical")

    def _record_redirect(self, result: ResolutionResult, final_url: str) -> None:
        result.advance(Method.REDIRECT)
        result.url_retrieved = final_url
        result.tld_retrieved = registrable_domain(final_url)
        logger.debug("got_redirected", url=result.url, url_retrieved=final_url, tld_retrieved=result.tld_retrieved)

    def _found(self, result: ResolutionResult, method: Method, url: str) -> None:
        result.advance(method)
        result.url_retrieved = url
        result.canonical = True
        self._finish(result, method.value)

    def _fail(self, result: ResolutionResult, reason: str) -> None:
        result.fail(reason)
        logger.debug("resolution_reply", url=result.url, reason=reason, error=True)

    def _finish(self, result: ResolutionResult, reason: str) -> None:
        result.finish(reason)
        logger.debug("resolution_reply", url=result.url, reason=reason, error=result.error)
