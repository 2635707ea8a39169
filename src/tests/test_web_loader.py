from __future__ import annotations

"""Web extraction tests with mocked HTTP transport."""

import anyio
import httpx
import pytest

from src.loaders.web import (
    ContentExtractor,
    FetchError,
    FetchOptions,
    FetchTimeoutError,
    InvalidURLError,
    UnsupportedContentTypeError,
    clean_content,
    is_valid_url,
)

BODY = (
    "Semantic search splits long documents into chunks, embeds every chunk and "
    "stores the vectors per notebook. Queries are embedded the same way and "
    "compared with cosine distance so that the closest passages come first."
)
ARTICLE_HTML = f"""<html><head><title>Vector Search Guide</title>
<meta name="description" content="How notebooks index content.">
</head><body>
<header><h1>Site Header</h1></header>
<nav><a href="/">Home</a></nav>
<div class="ad">Buy now</div>
<article>
<h2>Chunking</h2>
<p>{BODY}</p>
<ul><li>First point</li><li>Second point</li></ul>
<pre><code>print("hi")</code></pre>
</article>
<footer>Copyright</footer>
<script>var tracking = 1;</script>
</body></html>"""


def html_response(html: str = ARTICLE_HTML, status: int = 200) -> httpx.Response:
    return httpx.Response(
        status,
        headers={"Content-Type": "text/html; charset=utf-8"},
        content=html.encode("utf-8"),
    )


def test_parse_html_extracts_main_article_as_markdown() -> None:
    document = ContentExtractor().parse_html(ARTICLE_HTML, "https://example.com/guide")

    assert document.title == "Vector Search Guide"
    assert document.description == "How notebooks index content."
    assert document.source_url == "https://example.com/guide"
    assert document.mime_type == "text/html"
    assert "## Chunking" in document.content
    assert "- First point" in document.content
    assert "```" in document.content
    assert 'print("hi")' in document.content
    for noise in ("Buy now", "Copyright", "Site Header", "tracking", "Home"):
        assert noise not in document.content
    assert document.metadata["main_content_selector"] == "article"
    assert document.metadata["converted"] is True
    assert document.metadata["original_length"] == len(ARTICLE_HTML)


def test_parse_html_title_and_description_fallbacks() -> None:
    html = (
        '<html><head><meta property="og:description" content="OG summary"></head>'
        "<body><h1>Only Heading</h1><p>Some text.</p></body></html>"
    )
    document = ContentExtractor().parse_html(html, "https://example.com")

    assert document.title == "Only Heading"
    assert document.description == "OG summary"


def test_parse_html_falls_back_to_body_for_short_containers() -> None:
    html = "<html><body><article>Tiny</article><p>Body paragraph.</p></body></html>"
    document = ContentExtractor().parse_html(html, "https://example.com")

    assert document.metadata["main_content_selector"] is None
    assert "Tiny" in document.content
    assert "Body paragraph." in document.content
    assert document.title is None
    assert document.description is None


def test_parse_html_plain_text_mode() -> None:
    options = FetchOptions(convert_to_markdown=False)
    document = ContentExtractor().parse_html(ARTICLE_HTML, "https://example.com", options)

    assert "Chunking" in document.content
    assert "##" not in document.content
    assert document.metadata["converted"] is False


def test_conversion_failure_degrades_to_plain_text(monkeypatch: pytest.MonkeyPatch) -> None:
    extractor = ContentExtractor()

    def explode(soup):
        raise RuntimeError("converter crashed")

    monkeypatch.setattr(extractor._converter, "convert_soup", explode)
    result = extractor.convert_to_markdown("<p>Hello <b>there</b></p>")

    assert result.ok is False
    assert result.error == "converter crashed"
    assert result.text == "Hello there"
    assert extractor.html_to_markdown("<p>Hello</p>") == "Hello"


def test_clean_content_collapses_blank_lines() -> None:
    assert clean_content("  a  \n\n\n\n   b  \n  \n\n \n c \n") == "a\n\nb\n\nc"


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://example.com/page", True),
        ("http://example.com", True),
        ("ftp://example.com/file", False),
        ("file:///etc/passwd", False),
        ("not a url", False),
        ("https://", False),
    ],
)
def test_is_valid_url(url: str, expected: bool) -> None:
    assert is_valid_url(url) is expected
    assert ContentExtractor().is_valid_url(url) is expected


@pytest.mark.anyio
async def test_fetch_url_sends_headers_and_parses() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return html_response()

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        extractor = ContentExtractor(
            options=FetchOptions(user_agent="notebook-test/1.0", accept_language="en-GB"),
            client=client,
        )
        document = await extractor.fetch_url("https://example.com/guide")

    assert len(seen) == 1
    assert seen[0].method == "GET"
    assert seen[0].headers["User-Agent"] == "notebook-test/1.0"
    assert seen[0].headers["Accept-Language"] == "en-GB"
    assert "text/html" in seen[0].headers["Accept"]
    assert document.title == "Vector Search Guide"
    assert document.source_url == "https://example.com/guide"


@pytest.mark.anyio
async def test_fetch_url_rejects_non_http_scheme_without_network() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return html_response()

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        extractor = ContentExtractor(client=client)
        with pytest.raises(InvalidURLError):
            await extractor.fetch_url("ftp://example.com/file.html")

    assert calls == []


@pytest.mark.anyio
async def test_fetch_url_reports_http_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return html_response("<p>missing</p>", status=404)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(FetchError) as excinfo:
            await ContentExtractor(client=client).fetch_url("https://example.com/missing")

    assert excinfo.value.status == 404
    assert excinfo.value.status_text == "Not Found"


@pytest.mark.anyio
async def test_fetch_url_rejects_non_html_content() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"Content-Type": "application/pdf"}, content=b"%PDF")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UnsupportedContentTypeError) as excinfo:
            await ContentExtractor(client=client).fetch_url("https://example.com/file.pdf")

    assert excinfo.value.content_type == "application/pdf"


@pytest.mark.anyio
async def test_fetch_url_times_out_and_cancels() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await anyio.sleep(5)
        return html_response()

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        extractor = ContentExtractor(options=FetchOptions(timeout=0.05), client=client)
        with pytest.raises(FetchTimeoutError) as excinfo:
            await extractor.fetch_url("https://example.com/slow")

    assert excinfo.value.elapsed_ms < 5000


@pytest.mark.anyio
async def test_fetch_url_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(FetchError) as excinfo:
            await ContentExtractor(client=client).fetch_url("https://example.com")

    assert excinfo.value.status is None
