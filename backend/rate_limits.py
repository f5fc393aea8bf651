"""Server-side usage limits.

Two checks run before an analysis does any network work:
- URL cooldown: the same normalized website is analyzed at most once per
  URL_COOLDOWN_DAYS; inside the window the previous result is offered.
- Blog quota: BLOG_TESTS_LIMIT blog analyses per client IP per rolling
  BLOG_WINDOW_DAYS. Homepage analyses have no IP limit.

Both read the result store. A store failure allows the request.
"""

import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import database
from config import (
    BLOG_TESTS_LIMIT,
    BLOG_WINDOW_DAYS,
    COOLDOWN_BYPASS_DOMAINS,
    DEFAULT_INDUSTRY_AVERAGE,
    RATE_LIMITS_ENABLED,
    URL_COOLDOWN_DAYS,
)
from errors import BlogQuotaExceeded, UrlCooldownActive
from models import TestRecord

logger = logging.getLogger(__name__)

INDUSTRY_WINDOW_DAYS = 30
INDUSTRY_MIN_SAMPLES = 5


@dataclass(frozen=True)
class BlogUsage:
    used: int
    remaining: int
    reset_at: datetime | None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_date_for_user(when: datetime) -> str:
    return when.astimezone(timezone.utc).strftime("%B %d, %Y").replace(" 0", " ") + " (UTC)"


def client_ip(headers: Mapping[str, str], peer: str | None = None) -> str:
    """First X-Forwarded-For hop, else X-Real-IP, else the socket peer."""
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer or "unknown"


def is_cooldown_bypassed(website: str) -> bool:
    host = website.lower().strip()
    for prefix in ("https://", "http://"):
        if host.startswith(prefix):
            host = host[len(prefix):]
    host = host.split("/", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    return any(host == d or host.endswith("." + d) for d in COOLDOWN_BYPASS_DOMAINS)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _parse_ts(value: str) -> datetime:
    return _as_aware(datetime.fromisoformat(value))


def recent_test(website: str, now: datetime | None = None) -> TestRecord | None:
    """Latest stored test of ``website`` still inside the cooldown window."""
    if is_cooldown_bypassed(website):
        logger.info("[rate-limit] Allowlisted domain, bypassing cooldown for %s", website)
        return None
    now = now or utcnow()
    try:
        latest = database.latest_test_for_website(website)
    except sqlite3.Error as e:
        logger.warning("[rate-limit] Cooldown lookup failed for %s: %s", website, e)
        return None
    if latest is None:
        return None
    if now - _parse_ts(latest["createdAt"]) < timedelta(days=URL_COOLDOWN_DAYS):
        return latest
    return None


def retest_available_at(record: TestRecord) -> datetime:
    return _parse_ts(record["createdAt"]) + timedelta(days=URL_COOLDOWN_DAYS)


def check_url_cooldown(website: str, now: datetime | None = None) -> None:
    """Raise UrlCooldownActive when ``website`` was analyzed recently."""
    if not RATE_LIMITS_ENABLED:
        return
    cached = recent_test(website, now)
    if cached is None:
        return
    tested_at = _parse_ts(cached["createdAt"])
    retest_at = retest_available_at(cached)
    logger.info("[rate-limit] %s in cooldown, returning cached test %s", website, cached["testId"])
    raise UrlCooldownActive(
        f"This URL was tested on {format_date_for_user(tested_at)}. "
        f"Same URL can be retested on {format_date_for_user(retest_at)}.",
        cached_test_id=cached["testId"],
        cached_score=cached["score"],
        cached_created_at=cached["createdAt"],
        next_available_time=retest_at.isoformat(),
    )


def blog_usage(ip_address: str, now: datetime | None = None) -> BlogUsage:
    now = now or utcnow()
    window = timedelta(days=BLOG_WINDOW_DAYS)
    times = database.blog_test_times_since(ip_address, now - window)
    reset_at = _as_aware(times[0]) + window if times else None
    used = len(times)
    return BlogUsage(used=used, remaining=max(0, BLOG_TESTS_LIMIT - used), reset_at=reset_at)


def check_blog_quota(ip_address: str, now: datetime | None = None) -> None:
    """Raise BlogQuotaExceeded when the IP has used up its blog analyses."""
    if not RATE_LIMITS_ENABLED:
        return
    try:
        usage = blog_usage(ip_address, now)
    except sqlite3.Error as e:
        logger.warning("[rate-limit] Blog quota lookup failed for %s: %s", ip_address, e)
        return

    if usage.remaining > 0:
        logger.info("[rate-limit] IP %s has %d/%d blog tests remaining", ip_address, usage.remaining, BLOG_TESTS_LIMIT)
        return

    logger.info("[rate-limit] IP %s exceeded blog limit: %d in %d days", ip_address, usage.used, BLOG_WINDOW_DAYS)
    reset_at = usage.reset_at or (now or utcnow())
    raise BlogQuotaExceeded(
        f"You've tested {BLOG_TESTS_LIMIT} blog posts in the last {BLOG_WINDOW_DAYS} days. "
        f"You can test more blog posts on {format_date_for_user(reset_at)}. Homepage tests are unlimited!",
        next_available_time=reset_at.isoformat(),
        technical_details=f"IP: {ip_address}, Blog posts in window: {usage.used}",
    )


def industry_average(test_type: str, now: datetime | None = None) -> int:
    """Mean recent score for ``test_type``, or the default on thin data."""
    now = now or utcnow()
    try:
        scores = database.recent_scores(test_type, now - timedelta(days=INDUSTRY_WINDOW_DAYS))
    except sqlite3.Error as e:
        logger.warning("Could not calculate industry average: %s", e)
        return DEFAULT_INDUSTRY_AVERAGE
    if len(scores) <= INDUSTRY_MIN_SAMPLES:
        return DEFAULT_INDUSTRY_AVERAGE
    return int(sum(scores) / len(scores) + 0.5)
