"""Page fetcher: retrieve a website's HTML for scoring.

Makes a single GET with the FoundIndex bot user agent. When the page looks
like an empty client-rendered shell, falls back to a render-as-text proxy.
No retries: the first failure is terminal for the request.
"""

import logging
import re
import threading

import requests
from bs4 import BeautifulSoup

from config import (
    FETCH_TIMEOUT_SECONDS,
    JS_RENDERED_TEXT_CHARS,
    MIN_ANALYZABLE_TEXT_CHARS,
    MIN_BODY_CHARS,
    RENDER_PROXY_TIMEOUT_SECONDS,
    RENDER_PROXY_URL,
    USER_AGENT,
)
from errors import AnalysisCancelled, FetchError, FetchErrorKind
from models import FetchedPage

logger = logging.getLogger(__name__)

_REQUEST_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

SPA_MARKERS = ('id="root"', 'id="app"', "__NEXT_DATA__", "window.__NUXT__", "ng-version", "data-reactroot")

BOT_BLOCK_STATUSES = {401, 403, 429, 503}
BOT_CHALLENGE_MARKERS = (
    "cf-challenge",
    "challenge-platform",
    "cf-browser-verification",
    "just a moment...",
    "attention required! | cloudflare",
    "px-captcha",
)


def extract_text(html: str) -> str:
    """Visible text of an HTML document, whitespace-collapsed."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style", "noscript", "template"]):
        tag.decompose()
    text = soup.get_text(separator=" ", strip=True)
    return re.sub(r"\s+", " ", text).strip()


def looks_js_rendered(html: str, text: str) -> bool:
    has_marker = any(marker in html for marker in SPA_MARKERS)
    return has_marker and len(text) < JS_RENDERED_TEXT_CHARS


def _looks_bot_blocked(status: int, html: str) -> bool:
    if status in BOT_BLOCK_STATUSES:
        return True
    # App shells go to the render proxy even when they load a captcha widget.
    if any(marker in html for marker in SPA_MARKERS):
        return False
    head = html[:5000].lower()
    return len(extract_text(html)) < JS_RENDERED_TEXT_CHARS and any(m in head for m in BOT_CHALLENGE_MARKERS)


def _check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise AnalysisCancelled()


def fetch_rendered_text(url: str) -> str:
    """Ask the rendering proxy for the page as plain text. Empty on failure."""
    try:
        response = requests.get(
            f"{RENDER_PROXY_URL}{url}",
            headers={"Accept": "text/plain", "User-Agent": USER_AGENT},
            timeout=RENDER_PROXY_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Render proxy failed for %s: %s", url, e)
        return ""
    return (response.text or "").strip()


def fetch_page(url: str, cancel: threading.Event | None = None) -> FetchedPage:
    """
    Fetch ``url`` and return its HTML and extracted text.
    Raises FetchError on any failure; never retries.
    """
    _check_cancelled(cancel)

    try:
        response = requests.get(
            url,
            headers=_REQUEST_HEADERS,
            timeout=FETCH_TIMEOUT_SECONDS,
            allow_redirects=True,
        )
    except requests.Timeout as e:
        raise FetchError(FetchErrorKind.TIMEOUT, f"Timed out fetching {url}: {e}") from e
    except requests.RequestException as e:
        raise FetchError(
            FetchErrorKind.UNREACHABLE,
            f"Could not load content from {url}. {e}",
        ) from e

    if not response.encoding or response.encoding.lower() == "iso-8859-1":
        response.encoding = response.apparent_encoding or "utf-8"
    html = response.text or ""

    if _looks_bot_blocked(response.status_code, html):
        raise FetchError(
            FetchErrorKind.BOT_BLOCKED,
            f"{url} answered {response.status_code} with a bot challenge or block.",
        )
    if not response.ok:
        raise FetchError(FetchErrorKind.UNREACHABLE, f"{url} answered HTTP {response.status_code}.")
    if len(html) < MIN_BODY_CHARS:
        raise FetchError(FetchErrorKind.UNREACHABLE, f"{url} returned only {len(html)} characters.")

    text = extract_text(html)
    logger.info("Fetched %s: %d chars html, %d chars text", url, len(html), len(text))

    if not looks_js_rendered(html, text):
        return {"html": html, "text": text, "rendered_via_proxy": False}

    _check_cancelled(cancel)
    logger.info("%s looks JS-rendered, trying render proxy", url)
    rendered = fetch_rendered_text(url)
    via_proxy = len(rendered) > len(text)
    if via_proxy:
        logger.info("Render proxy returned %d chars for %s", len(rendered), url)
        text = rendered

    if len(text) < MIN_ANALYZABLE_TEXT_CHARS:
        raise FetchError(
            FetchErrorKind.INSUFFICIENT_CONTENT,
            f"{url} renders its content with JavaScript and exposed {len(text)} characters of text.",
        )
    return {"html": html, "text": text, "rendered_via_proxy": via_proxy}
