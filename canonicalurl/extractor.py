from typing import Optional

from lxml import etree, html


class HTMLParseError(Exception):
    """The fetched body could not be parsed as an HTML document."""


def parse_html(content: bytes):
    # an empty page is still a page, just one without metadata
    if not content or not content.strip():
        return html.document_fromstring("<html><head></head><body></body></html>")
    try:
        doc = html.fromstring(content)
    except (etree.LxmlError, ValueError) as e:
        raise HTMLParseError(str(e)) from e
    if doc is None:
        raise HTMLParseError("no root element")
    return doc


def _first_value(doc, xpath: str) -> Optional[str]:
    # only the first matching element counts
    values = doc.xpath(xpath)
    if not values:
        return None
    return str(values[0]).strip() or None


def find_canonical(doc) -> Optional[str]:
    """href of the first <link rel="canonical">."""
    return _first_value(doc, '(//link[@rel="canonical"])[1]/@href')


def find_opengraph(doc) -> Optional[str]:
    """content of the first <meta property="og:url">."""
    return _first_value(doc, '(//meta[@property="og:url"])[1]/@content')
