"""
Web Adapter
===========

Fetches a URL with requests and reduces the HTML to readable text with
BeautifulSoup (script/style/noscript and comments removed, block elements
on their own lines).
"""

import logging
import re
from typing import List, Optional, Tuple

import requests
from bs4 import BeautifulSoup, Comment

from ..errors import AdapterError
from ..models import IngestionSource, SourceType
from .base import ExtractedContent, SourceAdapter, clean_text, detect_language, read_text_input

logger = logging.getLogger(__name__)


STRIP_TAGS = ("script", "style", "noscript", "template", "svg")


def html_to_text(html: str) -> Tuple[Optional[str], str]:
    """
    Convert an HTML document to plain text.

    Returns:
        (title or None, text)
    """
    soup = BeautifulSoup(html, "lxml")

    for tag in soup(STRIP_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip() or None
    if soup.head:
        soup.head.decompose()

    text = soup.get_text(separator="\n")
    lines = [re.sub(r"\s+", " ", line).strip() for line in text.splitlines()]
    text = "\n".join(line for line in lines if line)
    return title, clean_text(text)


class WebAdapter(SourceAdapter):
    """Web pages by URL."""

    source_types = (SourceType.WEB,)

    def __init__(self, timeout: float = 20.0, user_agent: str = "ragvault/1.0"):
        self.timeout = timeout
        self.user_agent = user_agent
        self._requests_made = 0

    def fetch(self, url: str) -> Tuple[str, str]:
        """
        GET a page.

        Returns:
            (body text, content type)
        """
        response = requests.get(
            url,
            headers={"User-Agent": self.user_agent, "Accept": "text/html,text/plain;q=0.9,*/*;q=0.5"},
            timeout=self.timeout,
        )
        self._requests_made += 1

        if response.status_code != 200:
            raise AdapterError(
                f"Fetch of {url} failed: {response.status_code} - {response.text[:200]}",
                source=url,
            )

        content_type = response.headers.get("Content-Type", "text/html").split(";")[0].strip()
        return response.text, content_type

    def extract_sync(self, source: IngestionSource) -> List[ExtractedContent]:
        url = source.location
        if not url.startswith(("http://", "https://")):
            raise AdapterError(f"Not an http(s) URL: {url}", source=url)

        body = read_text_input(source)
        content_type = "text/html"
        if body is None:
            body, content_type = self.fetch(url)

        if content_type == "text/html" or "<html" in body[:1000].lower():
            title, text = html_to_text(body)
            content_type = "text/html"
        else:
            title, text = None, clean_text(body)

        logger.debug(f"Fetched {url}: {len(text)} chars")

        metadata = self.build_metadata(
            source,
            title=title or url,
            source_path=url,
            mime_type=content_type,
            language=detect_language(text),
            charCount=len(text),
        )
        return [ExtractedContent(content=text, metadata=metadata, source_type=SourceType.WEB)]

    @property
    def requests_made(self) -> int:
        return self._requests_made
