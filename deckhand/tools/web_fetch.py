"""Web fetch tool for retrieving web page content."""

import re
from typing import Any
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
import httpx

from deckhand import __version__
from deckhand.config import get_config
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolResult, UrlCheck

log = get_logger(__name__)

MAX_REDIRECTS = 10


class WebFetchTool(Tool):
    """Fetch web page content."""

    name = "web_fetch"
    description = "Fetch a URL and return its readable text content."
    mutating = True
    parameters = {
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "http(s) URL to fetch",
            },
            "max_chars": {
                "type": "integer",
                "description": "Maximum characters to return (default from config)",
            },
        },
        "required": ["url"],
    }

    def __init__(self):
        cfg = get_config()
        self.timeout_seconds = float(cfg.tools.web_fetch.timeout) + 5.0
        self.client = httpx.AsyncClient(
            timeout=cfg.tools.web_fetch.timeout,
            follow_redirects=False,
            headers={
                "User-Agent": f"Deckhand/{__version__} (Web Fetch Tool)",
            },
        )

    async def execute(
        self,
        url: str,
        max_chars: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Fetch a web page and extract readable text via BeautifulSoup.

        Args:
            url: URL to fetch
            max_chars: Max characters to return

        Returns:
            ToolResult with extracted readable text
        """
        url = str(url or "").strip()
        if urlsplit(url).scheme not in ("http", "https"):
            return ToolResult(success=False, error=f"Only http(s) URLs can be fetched: {url}")

        try:
            log.info("Fetching URL", url=url)
            configured_max = int(get_config().tools.web_fetch.max_chars)
            effective_max_chars = configured_max if max_chars is None else int(max_chars)
            effective_max_chars = max(1, effective_max_chars)

            response = await self._get_following_redirects(url, kwargs.get("_url_check"))
            if isinstance(response, ToolResult):
                return response
            response.raise_for_status()

            content_type = response.headers.get("content-type", "")
            if "html" in content_type or not content_type:
                content = self._extract_readable_text(response.text, base_url=str(response.url))
            else:
                content = response.text

            if len(content) > effective_max_chars:
                content = content[:effective_max_chars] + "\n... [truncated]"

            output = f"[URL: {response.url}]\n"
            output += f"[Status: {response.status_code}]\n"
            output += f"[Size: {len(response.text)} chars]\n\n"
            output += content

            return ToolResult(success=True, content=output)

        except httpx.HTTPError as e:
            log.error("HTTP fetch failed", url=url, error=str(e))
            return ToolResult(success=False, error=f"HTTP error: {e}")
        except ValueError as e:
            log.error("Fetch failed", url=url, error=str(e))
            return ToolResult(success=False, error=str(e))

    async def _get_following_redirects(
        self,
        url: str,
        url_check: UrlCheck | None,
    ) -> httpx.Response | ToolResult:
        """GET *url*, vetting every redirect target before following it."""
        response = await self.client.get(url, follow_redirects=False)
        redirects = 0
        while response.is_redirect and response.next_request is not None:
            if redirects >= MAX_REDIRECTS:
                return ToolResult(success=False, error=f"Too many redirects fetching {url}")
            redirects += 1
            next_request = response.next_request
            target = str(next_request.url)
            if next_request.url.scheme not in ("http", "https"):
                return ToolResult(success=False, error=f"Redirect to a non-http(s) URL refused: {target}")
            reason = url_check(target) if url_check is not None else None
            if reason:
                log.warning("Redirect blocked", url=url, target=target, reason=reason)
                return ToolResult(success=False, error=f"Redirect to {target} blocked: {reason}")
            response = await self.client.send(next_request, follow_redirects=False)
        return response

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    def _extract_readable_text(self, html: str, base_url: str | None = None) -> str:
        """Extract human-readable text from raw HTML."""
        soup = BeautifulSoup(html, "html.parser")

        for tag in soup(["script", "style", "noscript", "template", "svg", "canvas"]):
            tag.decompose()

        # Keep link targets so later turns can cite or fetch them
        for anchor in soup.find_all("a"):
            href = (anchor.get("href") or "").strip()
            label = anchor.get_text(" ", strip=True)
            if not href:
                continue
            absolute = urljoin(base_url, href) if base_url else href
            anchor.replace_with(f"{label} ({absolute})" if label else absolute)

        title = ""
        if soup.title and soup.title.string:
            title = soup.title.string.strip()

        lines = [
            cleaned
            for line in soup.get_text(separator="\n").splitlines()
            if (cleaned := re.sub(r"\s+", " ", line).strip())
        ]

        text = "\n".join(lines)
        if title and not text.startswith(title):
            return f"{title}\n\n{text}" if text else title
        return text
