"""Fetch URL tool: retrieves web content as plain text, markdown, or raw HTML."""

import html
import html.parser
import json
import re
import urllib.error
import urllib.parse
import urllib.request

from .security import describe, validate_url
from .tools import ToolResult

MAX_RESPONSE_SIZE = 5 * 1024 * 1024  # 5 MB raw download cap
MAX_CONTENT_CHARS = 50_000
MAX_REDIRECTS = 10
DEFAULT_TIMEOUT = 30
MAX_TIMEOUT = 120

HEADERS = {
    "User-Agent": "skiff/0.1 (+https://pypi.org/project/skiff/)",
    "Accept": "text/html,text/plain,application/json,text/markdown,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

_TEXT_MIMES = (
    "application/json",
    "application/xml",
    "application/xhtml+xml",
    "application/javascript",
    "application/ecmascript",
    "application/rss+xml",
    "application/atom+xml",
)

# Block elements that should produce line breaks in text extraction
_BLOCK_TAGS = frozenset(
    {
        "p",
        "div",
        "br",
        "h1",
        "h2",
        "h3",
        "h4",
        "h5",
        "h6",
        "li",
        "tr",
        "blockquote",
        "pre",
        "hr",
        "dt",
        "dd",
        "section",
        "article",
        "header",
        "footer",
        "nav",
        "main",
        "table",
    }
)

# Tags whose content should be skipped entirely
_SKIP_TAGS = frozenset({"script", "style", "noscript", "svg"})


class _RedirectError(Exception):
    def __init__(self, url: str, code: int):
        self.url = url
        self.code = code


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _RedirectError(newurl, code)


class _TextExtractor(html.parser.HTMLParser):
    """Extract readable text from HTML, skipping script/style/svg/noscript."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs):
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._parts.append("\n")

    def handle_endtag(self, tag: str):
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._parts.append("\n")

    def handle_data(self, data: str):
        if self._skip_depth == 0:
            self._parts.append(data)

    def get_text(self) -> str:
        text = "".join(self._parts)
        text = re.sub(r"[^\S\n]+", " ", text)
        text = re.sub(r" *\n *", "\n", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()


def _html_to_text(body: str) -> str:
    """Convert HTML to plain text."""
    parser = _TextExtractor()
    parser.feed(body)
    parser.close()
    return html.unescape(parser.get_text())


def _decode_response(data: bytes, content_type: str | None) -> str:
    """Decode response bytes using the Content-Type charset, then UTF-8, then latin-1."""
    charset = None
    if content_type:
        for part in content_type.split(";"):
            part = part.strip()
            if part.lower().startswith("charset="):
                charset = part.split("=", 1)[1].strip().strip("\"'")
                break

    for encoding in [charset, "utf-8"]:
        if encoding is None:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def _render(body: str, mime: str, format: str) -> str:
    """Turn a decoded body into the requested output format."""
    if mime == "application/json" or mime.endswith("+json"):
        try:
            return json.dumps(json.loads(body), indent=2, ensure_ascii=False)
        except json.JSONDecodeError:
            return body
    if mime not in ("text/html", "application/xhtml+xml") or format == "html":
        return body
    if format == "markdown":
        from html_to_markdown import convert

        return convert(body)
    return _html_to_text(body)


def _truncate(content: str) -> str:
    if len(content) > MAX_CONTENT_CHARS:
        return content[:MAX_CONTENT_CHARS] + "\n\n... (truncated)"
    return content


def fetch_url(url: str, format: str = "text", timeout: int = DEFAULT_TIMEOUT) -> ToolResult:
    """Fetch a URL. Every hop of a redirect chain is checked with validate_url()."""
    if format not in ("text", "markdown", "html"):
        return ToolResult.failure(
            f"invalid format {format!r}, must be 'text', 'markdown', or 'html'"
        )
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        return ToolResult.failure(
            f"timeout must be a number, got {type(timeout).__name__}"
        )
    timeout = max(1, min(int(timeout), MAX_TIMEOUT))

    current_url = url
    opener = urllib.request.build_opener(_NoRedirectHandler)

    for _ in range(MAX_REDIRECTS + 1):
        verdict = validate_url(current_url)
        if not verdict.allowed:
            return ToolResult.failure(f"Security: {describe(verdict)}")

        req = urllib.request.Request(current_url, headers=HEADERS)
        try:
            resp = opener.open(req, timeout=timeout)
            break
        except _RedirectError as r:
            current_url = urllib.parse.urljoin(current_url, r.url)
        except urllib.error.HTTPError as e:
            try:
                body = _decode_response(
                    e.read(MAX_RESPONSE_SIZE), e.headers.get("Content-Type")
                )
            except (OSError, AttributeError):
                body = ""
            return ToolResult(
                success=False, output=_truncate(body), error=f"HTTP {e.code}: {e.reason}"
            )
        except urllib.error.URLError as e:
            reason = str(e.reason)
            if "timed out" in reason.lower():
                return ToolResult.failure(f"request timed out after {timeout} seconds")
            host = urllib.parse.urlparse(current_url).hostname
            return ToolResult.failure(f"could not connect to {host}: {reason}")
        except TimeoutError:
            return ToolResult.failure(f"request timed out after {timeout} seconds")
        except OSError as e:
            host = urllib.parse.urlparse(current_url).hostname
            return ToolResult.failure(f"could not connect to {host}: {e}")
    else:
        return ToolResult.failure(f"too many redirects (limit is {MAX_REDIRECTS})")

    try:
        content_type = resp.headers.get("Content-Type", "") or ""
        mime = content_type.split(";")[0].strip().lower()
        if mime and not mime.startswith("text/") and mime not in _TEXT_MIMES:
            return ToolResult.failure(
                f"binary content (content-type: {mime}), cannot display as text"
            )

        try:
            data = resp.read(MAX_RESPONSE_SIZE + 1)
        except TimeoutError:
            return ToolResult.failure(f"request timed out after {timeout} seconds")
        except OSError as e:
            return ToolResult.failure(f"failed to read response: {e}")

        if len(data) > MAX_RESPONSE_SIZE:
            return ToolResult.failure(
                f"response too large (more than {MAX_RESPONSE_SIZE} bytes)"
            )
        if b"\x00" in data[:8192]:
            return ToolResult.failure(
                "binary content detected (null bytes found), cannot display as text"
            )

        body = _decode_response(data, content_type)
        status = getattr(resp, "status", 200)
        reason = getattr(resp, "reason", "") or ""
    finally:
        resp.close()

    try:
        content = _render(body, mime, format)
    except Exception as e:
        return ToolResult.failure(f"failed to convert HTML to markdown: {e}")

    header = f"Status: {status} {reason}".rstrip() + f"\nContent-Type: {content_type}"
    return ToolResult.ok(f"{header}\n\n{_truncate(content)}")
