"""Keyless web scraping: plain requests with browser-like headers.

HTML responses are reduced to title, readable text and links.
"""

import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from protocolos.kernel.models import ContentCategory, Credentials, KeylessScraperConfig, LogLevel, ProtocolType
from protocolos.protocols.base import (
    AuthResult,
    ConfigValidation,
    OutgoingRequest,
    ProtocolHandler,
    RequestCall,
    TransportResponse,
    classify_content_type,
    merge_headers,
)
from protocolos.tools import curl

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Tags whose content is never readable text
REMOVE_TAGS = ["script", "style", "noscript", "template", "svg"]

_BOT_MARKERS = ("bot", "crawler", "spider")


def build_browser_headers(user_agent: Optional[str] = None) -> Dict[str, str]:
    return {
        "User-Agent": user_agent or DEFAULT_USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
        "Accept-Encoding": "gzip, deflate",
        "Connection": "keep-alive",
    }


def _normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def extract_page(html: str, base_url: Optional[str] = None) -> Dict[str, Any]:
    """Title, readable text and unique links of an HTML document.

    Relative links are made absolute when ``base_url`` is given.
    """
    soup = BeautifulSoup(html, "html.parser")

    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip()

    links: List[str] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "javascript:", "mailto:")):
            continue
        if base_url and not href.startswith(("http://", "https://")):
            href = urljoin(base_url, href)
        if href not in links:
            links.append(href)

    for tag in soup.find_all(REMOVE_TAGS):
        tag.decompose()
    body = soup.body or soup
    return {"title": title, "text": _normalize_whitespace(body.get_text(separator=" ")), "links": links}


class KeylessScraperHandler(ProtocolHandler):
    """Web scraping without API keys."""

    protocol_type = ProtocolType.KEYLESS_SCRAPER
    config_model = KeylessScraperConfig
    display_name = "Keyless Scraper"
    description = "Web scraping without API keys"

    def required_fields(self) -> List[str]:
        return []

    def optional_fields(self) -> List[str]:
        return ["user_agent", "default_headers", "follow_redirects", "extract_text"]

    def check_configuration(self, config: KeylessScraperConfig, validation: ConfigValidation) -> None:
        validation.warnings.extend(
            [
                "Ensure you have permission to scrape the target website",
                "Respect robots.txt and rate limits",
            ]
        )
        if config.user_agent and any(marker in config.user_agent.lower() for marker in _BOT_MARKERS):
            validation.warnings.append("User-Agent identifies as a bot - some sites may block this")

    async def authenticate(self, config: KeylessScraperConfig) -> AuthResult:
        return AuthResult(success=True, credentials=Credentials(token_type=""))

    async def build_request(
        self, call: RequestCall, config: KeylessScraperConfig, credentials: Credentials
    ) -> OutgoingRequest:
        parsed = self.prepare_command(call)
        options = curl.to_request_options(parsed)
        headers = merge_headers(build_browser_headers(config.user_agent), config.default_headers, options.headers)
        call.log(LogLevel.INFO, f"{options.method} {options.url}")
        return OutgoingRequest(options.method, options.url, headers, options.body)

    def postprocess(
        self, call: RequestCall, config: KeylessScraperConfig, response: TransportResponse, body: Any
    ) -> Tuple[Any, Optional[str]]:
        category = classify_content_type(response.header("content-type"), response.body)
        if not config.extract_text or category != ContentCategory.HTML:
            return body, None
        page = extract_page(response.text, base_url=response.url or call.url)
        call.log(LogLevel.INFO, f"Extracted {len(page['text'])} chars and {len(page['links'])} links")
        return page, None

    def generate_sample_curl(self, config: KeylessScraperConfig) -> str:
        headers = build_browser_headers(config.user_agent)
        return curl.stringify(
            curl.ParsedCommand(
                url="https://example.com/page",
                headers={k: headers[k] for k in ("User-Agent", "Accept", "Accept-Language")},
            )
        )
