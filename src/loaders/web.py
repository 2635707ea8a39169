from __future__ import annotations

"""Web page fetching, main-content extraction and Markdown conversion."""

import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any
from urllib.parse import urlparse

import anyio
import httpx
from bs4 import BeautifulSoup, Tag
from markdownify import ATX, MarkdownConverter

from src.rag.types import ExtractedDocument

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
DEFAULT_ACCEPT_LANGUAGE = "zh-CN,zh;q=0.9,en;q=0.8"

_ALLOWED_SCHEMES = {"http", "https"}
_HTML_CONTENT_TYPES = ("text/html", "application/xhtml")

NOISE_SELECTOR = ", ".join(
    [
        "script",
        "style",
        "nav",
        "footer",
        "header",
        "aside",
        "iframe",
        "noscript",
        ".nav",
        ".navigation",
        ".menu",
        ".sidebar",
        ".footer",
        ".header",
        ".ad",
        ".advertisement",
        ".comments",
        ".comment",
        ".social",
        ".share",
        ".related",
        ".recommend",
    ]
)
MAIN_CONTENT_SELECTORS: tuple[str, ...] = (
    "article",
    "main",
    '[role="main"]',
    ".article",
    ".post",
    ".content",
    ".entry-content",
    ".post-content",
    ".article-content",
    "#content",
    "#main-content",
)
MIN_MAIN_CONTENT_CHARS = 200
CONVERSION_STRIPPED_TAGS = ("script", "style", "nav", "footer", "header", "aside", "iframe")

_EXCESS_BLANK_LINES_RE = re.compile(r"\n{3,}")


class WebLoaderError(RuntimeError):
    """Raised when a web resource cannot be loaded."""
    pass


class InvalidURLError(WebLoaderError):
    """Raised for URLs that are malformed or not HTTP(S)."""
    pass


class FetchError(WebLoaderError):
    """Raised on non-2xx responses or transport failures."""
    def __init__(self, status: int | None, status_text: str) -> None:
        self.status = status
        self.status_text = status_text
        if status is None:
            super().__init__(f"Request failed: {status_text}")
        else:
            super().__init__(f"HTTP error: {status} {status_text}")


class UnsupportedContentTypeError(WebLoaderError):
    """Raised when the response is not an HTML document."""
    def __init__(self, content_type: str) -> None:
        self.content_type = content_type
        super().__init__(f"Unsupported content type: {content_type or '<missing>'}")


class FetchTimeoutError(WebLoaderError):
    """Raised when the request deadline expires."""
    def __init__(self, elapsed_ms: int) -> None:
        self.elapsed_ms = elapsed_ms
        super().__init__(f"Request timeout after {elapsed_ms}ms")


@dataclass(frozen=True)
class FetchOptions:
    """Per-request fetch and extraction options."""
    timeout: float = 30.0
    extract_main_content: bool = True
    convert_to_markdown: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE
    max_bytes: int = 10 * 1024 * 1024


@dataclass(frozen=True)
class ConversionResult:
    """Outcome of HTML to Markdown conversion."""
    text: str
    ok: bool
    error: str | None = None


def is_valid_url(url: str) -> bool:
    """Return True for syntactically valid http(s) URLs."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme.lower() in _ALLOWED_SCHEMES and bool(parsed.netloc)


def clean_content(content: str) -> str:
    """Trim every line, collapse blank-line runs and trim the result."""
    lines = [line.strip() for line in content.replace("\r\n", "\n").split("\n")]
    return _EXCESS_BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


@dataclass
class ContentExtractor:
    """Fetch web pages and turn their salient HTML into clean text."""
    options: FetchOptions = field(default_factory=FetchOptions)
    client: httpx.AsyncClient | None = None

    def __post_init__(self) -> None:
        # markdownify renders <pre> as fenced code blocks.
        self._converter = MarkdownConverter(heading_style=ATX, bullets="-")

    def resolve_options(self, **overrides: Any) -> FetchOptions:
        """Merge non-None overrides into the default options."""
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self.options, **values) if values else self.options

    def is_valid_url(self, url: str) -> bool:
        return is_valid_url(url)

    async def fetch_url(self, url: str, options: FetchOptions | None = None) -> ExtractedDocument:
        """Fetch an HTML page and extract its content."""
        opts = options or self.options
        if not is_valid_url(url):
            raise InvalidURLError(f"Only HTTP and HTTPS URLs are supported: {url!r}")

        logger.info("web_fetch_started", extra={"url": url})
        headers = {
            "User-Agent": opts.user_agent,
            "Accept": DEFAULT_ACCEPT,
            "Accept-Language": opts.accept_language,
        }
        owns_client = self.client is None
        client = self.client or httpx.AsyncClient(timeout=opts.timeout, follow_redirects=True)
        started = time.monotonic()
        try:
            with anyio.fail_after(opts.timeout):
                response = await client.get(url, headers=headers)
        except (TimeoutError, httpx.TimeoutException) as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.warning("web_fetch_timeout", extra={"url": url, "elapsed_ms": elapsed_ms})
            raise FetchTimeoutError(elapsed_ms) from exc
        except httpx.HTTPError as exc:
            logger.error("web_fetch_failed", extra={"url": url, "detail": str(exc)})
            raise FetchError(None, str(exc)) from exc
        finally:
            if owns_client:
                await client.aclose()

        if not response.is_success:
            raise FetchError(response.status_code, response.reason_phrase)
        content_type = response.headers.get("content-type", "")
        if not any(kind in content_type.lower() for kind in _HTML_CONTENT_TYPES):
            raise UnsupportedContentTypeError(content_type)
        if opts.max_bytes and len(response.content) > opts.max_bytes:
            raise WebLoaderError("Response exceeds maximum size limit")

        document = self.parse_html(response.text, str(response.url), opts)
        logger.info(
            "web_fetch_completed",
            extra={
                "url": url,
                "status": response.status_code,
                "content_length": len(document.content),
            },
        )
        return document

    def parse_html(
        self, html: str, url: str, options: FetchOptions | None = None
    ) -> ExtractedDocument:
        """Extract title, description and normalized content from HTML."""
        opts = options or self.options
        soup = BeautifulSoup(html, "html.parser")

        title = _element_text(soup.find("title")) or _element_text(soup.find("h1"))
        description = _meta_content(soup, name="description") or _meta_content(
            soup, property="og:description"
        )

        selector: str | None = None
        if opts.extract_main_content:
            fragment, selector = self._extract_main_content(soup)
        else:
            fragment = _body_html(soup)

        converted = False
        if opts.convert_to_markdown:
            result = self.convert_to_markdown(fragment)
            content = result.text
            converted = result.ok
        else:
            content = BeautifulSoup(fragment, "html.parser").get_text()

        return ExtractedDocument(
            content=clean_content(content),
            source_url=url,
            mime_type="text/html",
            title=title or None,
            description=description or None,
            metadata={
                "original_length": len(html),
                "main_content_selector": selector,
                "converted": converted,
            },
        )

    def convert_to_markdown(self, html: str) -> ConversionResult:
        """Convert HTML to Markdown, degrading to plain text on failure."""
        try:
            soup = BeautifulSoup(html, "html.parser")
            for tag in soup(list(CONVERSION_STRIPPED_TAGS)):
                tag.decompose()
            return ConversionResult(text=self._converter.convert_soup(soup), ok=True)
        except Exception as exc:
            logger.warning("markdown_conversion_failed", extra={"detail": str(exc)})
            return ConversionResult(
                text=BeautifulSoup(html, "html.parser").get_text(),
                ok=False,
                error=str(exc),
            )

    def html_to_markdown(self, html: str) -> str:
        return self.convert_to_markdown(html).text

    def _extract_main_content(self, soup: BeautifulSoup) -> tuple[str, str | None]:
        """Drop boilerplate and return the first substantial content region."""
        for element in soup.select(NOISE_SELECTOR):
            if not element.decomposed:
                element.decompose()
        for selector in MAIN_CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is not None and len(element.get_text().strip()) > MIN_MAIN_CONTENT_CHARS:
                return element.decode_contents(), selector
        return _body_html(soup), None


def _element_text(element: Any) -> str:
    if not isinstance(element, Tag):
        return ""
    return element.get_text().strip()


def _meta_content(soup: BeautifulSoup, **attrs: str) -> str | None:
    element = soup.find("meta", attrs=attrs)
    if not isinstance(element, Tag):
        return None
    value = element.get("content")
    if isinstance(value, list):
        value = " ".join(value)
    return value.strip() if value else None


def _body_html(soup: BeautifulSoup) -> str:
    body = soup.body
    if body is None:
        return soup.decode_contents()
    return body.decode_contents()
