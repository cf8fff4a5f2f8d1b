"""Web tools: web_search and parse_link, plus their default backends.

BraveSearchExecutor and HttpLinkParser are the stock implementations of
the WebSearchExecutor and LinkParser collaborators. Both use an httpx
client owned by the caller (NOT a provider client carrying credentials).
"""

from __future__ import annotations

import hashlib
import html as html_module
import ipaddress
import logging
import re
import socket
import time
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from confab.api.tools import ToolDescriptor, ToolSet
from confab.chat.capabilities import BlobStore, LinkParser, WebSearchExecutor
from confab.chat.cancellation import CancellationSignal
from confab.chat.schemas import SearchResultItem
from confab.config import Settings
from confab.errors import ConfigurationError

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"

DEFAULT_PARSE_LINK_MAX_CHARS = 12_000
_PARSE_LINK_MIN_CHARS = 500
_PARSE_LINK_MAX_CHARS = 50_000

# Rate limit state (in-memory, resets on restart)
_rate_limit: dict[str, Any] = {"date": "", "count": 0}

# Blocked IP ranges for SSRF protection
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),       # Loopback
    ipaddress.ip_network("10.0.0.0/8"),         # RFC1918
    ipaddress.ip_network("172.16.0.0/12"),      # RFC1918
    ipaddress.ip_network("192.168.0.0/16"),     # RFC1918
    ipaddress.ip_network("169.254.0.0/16"),     # Link-local
    ipaddress.ip_network("::1/128"),            # IPv6 loopback
    ipaddress.ip_network("fc00::/7"),           # IPv6 unique local
    ipaddress.ip_network("fe80::/10"),          # IPv6 link-local
]

_BLOCKED_HOSTNAMES = {"localhost", "0.0.0.0"}

WEB_TOOLSET_DESCRIPTION = """
Use these tools to search the web and extract content from URLs.

## web_search
Search the web for current information. Use short, concise queries (English preferred).

## parse_link
Extract readable content from a URL. Use when you need detailed information from a specific webpage.
"""


class WritableBlobStore(BlobStore, Protocol):
    async def set_blob(self, key: str, value: str) -> None: ...


def _is_url_safe(url: str) -> tuple[bool, str]:
    """Check if URL is safe from SSRF attacks.

    Resolves hostname to IP and checks against blocked ranges.
    Returns (is_safe, error_message).
    """
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname

        if not hostname:
            return False, "Could not parse hostname from URL"

        if hostname.lower() in _BLOCKED_HOSTNAMES:
            return False, f"Blocked hostname: {hostname}"

        try:
            addr_infos = socket.getaddrinfo(hostname, None)
        except socket.gaierror:
            return False, f"Could not resolve hostname: {hostname}"

        for addr_info in addr_infos:
            ip = ipaddress.ip_address(addr_info[4][0])
            for network in _BLOCKED_NETWORKS:
                if ip in network:
                    return False, f"URL resolves to blocked IP range ({network})"

        return True, ""
    except Exception as e:
        return False, f"URL validation error: {e}"


def _check_rate_limit(settings: Settings) -> str | None:
    """Check and increment daily rate limit.

    Returns error message if limit exceeded, None if OK.
    """
    today = time.strftime("%Y-%m-%d")

    if _rate_limit["date"] != today:
        _rate_limit["date"] = today
        _rate_limit["count"] = 0

    limit = settings.web_search_daily_limit
    current = _rate_limit["count"]

    if current >= limit:
        return f"Daily web search limit reached ({limit}). Resets tomorrow."

    _rate_limit["count"] = current + 1

    if current >= int(limit * 0.8):
        logger.warning("Web search rate limit at %d/%d (%.0f%%)", current + 1, limit, (current + 1) / limit * 100)

    return None


def _extract_readable(html: str) -> str:
    """Extract readable text from HTML using stdlib."""
    text = re.sub(
        r'<(script|style|noscript|nav|header|footer)[^>]*>.*?</\1>',
        '', html, flags=re.DOTALL | re.IGNORECASE
    )
    text = re.sub(r'<!--.*?-->', '', text, flags=re.DOTALL)
    text = re.sub(r'<[^>]+>', ' ', text)
    text = html_module.unescape(text)
    text = re.sub(r'\s+', ' ', text).strip()
    return text


def _extract_title(html: str) -> str:
    match = re.search(r"<title[^>]*>(.*?)</title>", html, flags=re.DOTALL | re.IGNORECASE)
    if not match:
        return ""
    return html_module.unescape(re.sub(r"\s+", " ", match.group(1))).strip()


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class BraveSearchExecutor:
    """WebSearchExecutor backed by the Brave Search API."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http

    async def search(
        self, query: str, *, signal: CancellationSignal | None = None
    ) -> list[SearchResultItem]:
        if not self._settings.brave_search_api_key:
            raise ConfigurationError(
                "web_search_not_configured",
                "BRAVE_SEARCH_API_KEY not configured. Set this environment variable to enable web search.",
            )
        if signal is not None and signal.aborted:
            return []

        rate_error = _check_rate_limit(self._settings)
        if rate_error:
            raise RuntimeError(rate_error)

        count = min(self._settings.web_search_result_count, 10)
        try:
            response = await self._http.get(
                BRAVE_SEARCH_URL,
                params={"q": query, "count": count},
                headers={
                    "Accept": "application/json",
                    "Accept-Encoding": "gzip",
                    "X-Subscription-Token": self._settings.brave_search_api_key,
                },
                timeout=10,
            )
        except httpx.TimeoutException as e:
            raise RuntimeError(f"Web search timed out: {e}") from e

        if response.status_code != 200:
            raise RuntimeError(
                f"Search failed (HTTP {response.status_code}). Check BRAVE_SEARCH_API_KEY if 401."
            )

        data = response.json()
        return [
            SearchResultItem(
                title=item.get("title", ""),
                link=item.get("url", ""),
                snippet=item.get("description", ""),
            )
            for item in data.get("web", {}).get("results", [])[:count]
        ]


@dataclass
class ParsedLinkResult:
    title: str
    storage_key: str


class HttpLinkParser:
    """LinkParser that fetches a page, extracts readable text and stores it."""

    max_redirects = 5

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient,
        blob_store: WritableBlobStore,
    ) -> None:
        self._settings = settings
        self._http = http
        self._blob_store = blob_store

    async def parse(self, url: str) -> ParsedLinkResult:
        if not url.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")

        is_safe, error = _is_url_safe(url)
        if not is_safe:
            raise ValueError(f"Blocked: {error}")

        # Manual redirect following with SSRF check on each hop
        current_url = url
        response = None
        for _ in range(self.max_redirects + 1):
            response = await self._http.get(
                current_url,
                headers={"User-Agent": "confab/0.1 (link parser)"},
                follow_redirects=False,
                timeout=15,
            )
            if response.status_code not in (301, 302, 303, 307, 308):
                break
            redirect_url = response.headers.get("location", "")
            if not redirect_url:
                break
            if redirect_url.startswith("/"):
                parsed_current = urlparse(current_url)
                redirect_url = f"{parsed_current.scheme}://{parsed_current.netloc}{redirect_url}"
            redirect_safe, redirect_error = _is_url_safe(redirect_url)
            if not redirect_safe:
                raise ValueError(f"Blocked redirect to unsafe URL: {redirect_error}")
            current_url = redirect_url
        else:
            raise ValueError(f"Too many redirects (max {self.max_redirects})")

        if response is None:
            raise RuntimeError("No response received")
        if response.status_code >= 400:
            raise RuntimeError(f"Fetch failed (HTTP {response.status_code}) for {url}")

        content_type = response.headers.get("content-type", "")
        is_text = any(t in content_type for t in ["text/", "application/json", "application/xml", "application/xhtml"])
        if content_type and not is_text:
            raise ValueError(f"Cannot extract text from binary content (content-type: {content_type})")

        title = ""
        if "html" in content_type or "xhtml" in content_type:
            title = _extract_title(response.text)
            text = _extract_readable(response.text)
        else:
            text = response.text
        text = text[: self._settings.web_fetch_max_chars]

        storage_key = "parseUrl-" + hashlib.sha256(url.encode()).hexdigest()[:32]
        await self._blob_store.set_blob(storage_key, text)
        return ParsedLinkResult(title=title or url, storage_key=storage_key)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


_WEB_SEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "the search query"},
    },
    "required": ["query"],
}

_PARSE_LINK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "url": {
            "type": "string",
            "description": "The URL to parse. Always include the schema, e.g. https://example.com",
        },
        "max_length": {
            "type": "integer",
            "minimum": _PARSE_LINK_MIN_CHARS,
            "maximum": _PARSE_LINK_MAX_CHARS,
            "description": "Optional maximum number of characters to return from the parsed content.",
        },
    },
    "required": ["url"],
}


def create_web_search_tool(executor: WebSearchExecutor) -> ToolDescriptor:
    async def web_search(query: str) -> dict[str, Any]:
        items = await executor.search(query)
        return {
            "query": query,
            "search_results": [item.model_dump() for item in items],
        }

    return ToolDescriptor(
        name="web_search",
        description=(
            "Search the web for current events and real-time information. "
            "Use short, concise queries (English preferred)."
        ),
        input_schema=_WEB_SEARCH_SCHEMA,
        execute=web_search,
    )


def create_parse_link_tool(
    link_parser: LinkParser,
    blob_store: BlobStore,
    settings: Settings,
) -> ToolDescriptor:
    async def parse_link(url: str, max_length: int | None = None) -> dict[str, Any]:
        if not settings.license_key:
            raise ConfigurationError("license_key_required", "A license key is required to parse links.")

        parsed = await link_parser.parse(url)
        content = ((await blob_store.get_blob(parsed.storage_key)) or "").strip()

        limit = max_length if max_length is not None else settings.parse_link_max_chars
        limit = min(max(limit, _PARSE_LINK_MIN_CHARS), _PARSE_LINK_MAX_CHARS)
        truncated = content[:limit]
        return {
            "url": url,
            "title": parsed.title,
            "content": truncated,
            "original_length": len(content),
            "truncated": len(content) > len(truncated),
        }

    return ToolDescriptor(
        name="parse_link",
        description=(
            "Parses the readable content of a web page. Use this when you need to extract "
            "detailed information from a specific URL shared by the user."
        ),
        input_schema=_PARSE_LINK_SCHEMA,
        execute=parse_link,
    )


def create_web_toolset(
    executor: WebSearchExecutor,
    settings: Settings,
    link_parser: LinkParser | None = None,
    blob_store: BlobStore | None = None,
) -> ToolSet:
    """web_search always; parse_link only for licensed users with a parser."""
    toolset = ToolSet(description=WEB_TOOLSET_DESCRIPTION)
    toolset.register(create_web_search_tool(executor))
    if settings.is_pro and link_parser is not None and blob_store is not None:
        toolset.register(create_parse_link_tool(link_parser, blob_store, settings))
    return toolset
