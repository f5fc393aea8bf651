"""Local, per-device usage tracking for the analysis client.

Advisory only: state lives in client-side key/value storage that the user
can clear at will. The server limiter in rate_limits.py is the real gate.

Storage keys (versioned; a format change needs a new suffix):
- fi_test_counter_v2: {"testsUsed": int, "resetDate": iso datetime}
- fi_blog_tests_v2:   {"tests": [epoch ms, ...]}
- fi_url_history_v2:  {url: {"testId": str, "score": int, "testedAt": epoch ms}}

Several trackers sharing one storage (browser tabs, processes) stay in step
through change notifications; the last writer wins.
"""

import json
import logging
import math
import os
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

COUNTER_KEY = "fi_test_counter_v2"
BLOG_TESTS_KEY = "fi_blog_tests_v2"
URL_HISTORY_KEY = "fi_url_history_v2"

QuotaKind = Literal["primary", "secondary"]
Listener = Callable[[str], None]


class DenialReason(str, Enum):
    PERIOD_LIMIT = "PERIOD_LIMIT"
    URL_COOLDOWN = "URL_COOLDOWN"


@dataclass(frozen=True)
class CachedResult:
    test_id: str
    score: int


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: DenialReason | None = None
    retry_at: datetime | None = None
    cached_result: CachedResult | None = None


def _to_ms(when: datetime) -> int:
    return int(when.timestamp() * 1000)


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _from_ms(ms: object) -> datetime | None:
    """Epoch milliseconds as an aware datetime; None for anything else."""
    if not _is_number(ms):
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _aware_datetime(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else None


# --- storage substrates ---


class MemoryStorage:
    """In-process key/value store. Share one instance to model several tabs."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            listeners = list(self._listeners)
        for listener in listeners:
            listener(key)

    def remove(self, key: str) -> None:
        with self._lock:
            existed = self._data.pop(key, None) is not None
            listeners = list(self._listeners)
        if existed:
            for listener in listeners:
                listener(key)

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)


class JsonFileStorage:
    """
    One JSON file per key in ``directory``.

    Other processes see writes on disk; call ``poll()`` to notice them and
    notify subscribers.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._listeners: list[Listener] = []
        self._seen: dict[str, int] = self._snapshot()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _snapshot(self) -> dict[str, int]:
        return {p.stem: p.stat().st_mtime_ns for p in self.directory.glob("*.json")}

    def get(self, key: str) -> str | None:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(value)
        os.replace(tmp, self._path(key))
        self._seen[key] = self._path(key).stat().st_mtime_ns

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return
        self._seen.pop(key, None)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def poll(self) -> list[str]:
        """Notify subscribers of keys changed on disk since the last poll."""
        current = self._snapshot()
        changed = sorted(
            key for key in set(current) | set(self._seen) if current.get(key) != self._seen.get(key)
        )
        self._seen = current
        for key in changed:
            for listener in list(self._listeners):
                listener(key)
        return changed


# --- policies ---


class CalendarPeriodQuota:
    """N tests per calendar month; resets on the 1st of the next month."""

    def __init__(self, limit: int = 3) -> None:
        self.limit = limit

    @staticmethod
    def next_period_start(now: datetime) -> datetime:
        year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
        return now.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)

    def fresh(self, now: datetime) -> dict:
        return {"testsUsed": 0, "resetDate": self.next_period_start(now).isoformat()}

    def current(self, state: dict | None, now: datetime) -> dict:
        """``state`` with a lapsed period rolled over. Malformed state counts as absent."""
        if not isinstance(state, dict):
            return self.fresh(now)
        reset_at = _aware_datetime(state.get("resetDate"))
        used = state.get("testsUsed", 0)
        if reset_at is None or not isinstance(used, int) or isinstance(used, bool) or used < 0:
            return self.fresh(now)
        if now >= reset_at:
            return self.fresh(now)
        return state

    def retry_at(self, state: dict) -> datetime | None:
        if int(state.get("testsUsed", 0)) >= self.limit:
            return _aware_datetime(state["resetDate"])
        return None

    def remaining(self, state: dict) -> int:
        return max(0, self.limit - int(state.get("testsUsed", 0)))

    def record(self, state: dict, now: datetime) -> dict:
        return {**state, "testsUsed": int(state.get("testsUsed", 0)) + 1}


class RollingWindowQuota:
    """N tests per trailing window; a slot frees when the oldest test ages out."""

    def __init__(self, limit: int = 3, window: timedelta = timedelta(days=7)) -> None:
        self.limit = limit
        self.window = window

    def current(self, state: dict | None, now: datetime) -> dict:
        cutoff = _to_ms(now - self.window)
        tests = state.get("tests") if isinstance(state, dict) else None
        if not isinstance(tests, list):
            tests = []
        return {"tests": sorted(t for t in tests if _from_ms(t) is not None and t > cutoff)}

    def retry_at(self, state: dict) -> datetime | None:
        tests = state["tests"]
        if len(tests) >= self.limit:
            return _from_ms(tests[0]) + self.window
        return None

    def remaining(self, state: dict) -> int:
        return max(0, self.limit - len(state["tests"]))

    def record(self, state: dict, now: datetime) -> dict:
        return {"tests": state["tests"] + [_to_ms(now)]}


class UrlCooldown:
    """Minimum gap between two analyses of the same URL."""

    def __init__(self, duration: timedelta = timedelta(days=7)) -> None:
        self.duration = duration

    def active_entry(self, history: dict, url: str, now: datetime) -> dict | None:
        entry = history.get(url)
        if not isinstance(entry, dict):
            return None
        tested_at = _from_ms(entry.get("testedAt"))
        if tested_at is None or not isinstance(entry.get("testId"), str) or not _is_number(entry.get("score")):
            return None
        if now - tested_at < self.duration:
            return entry
        return None

    def retry_at(self, entry: dict) -> datetime:
        return _from_ms(entry["testedAt"]) + self.duration

    def prune(self, history: dict, now: datetime) -> dict:
        return {url: e for url, e in history.items() if self.active_entry(history, url, now)}

    def record(self, history: dict, url: str, test_id: str, score: int, now: datetime) -> dict:
        pruned = self.prune(history, now)
        pruned[url] = {"testId": test_id, "score": score, "testedAt": _to_ms(now)}
        return pruned


# --- tracker ---


class LocalQuotaTracker:
    """
    Per-device quota and cooldown gate.

    ``kind="primary"`` uses the calendar-month allowance and
    ``kind="secondary"`` the rolling-window allowance. The URL cooldown
    applies to both and is checked first.
    """

    def __init__(
        self,
        storage: MemoryStorage | JsonFileStorage | None = None,
        clock: Callable[[], datetime] | None = None,
        primary: CalendarPeriodQuota | None = None,
        secondary: RollingWindowQuota | None = None,
        cooldown: UrlCooldown | None = None,
    ) -> None:
        self.storage = storage if storage is not None else MemoryStorage()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.primary = primary or CalendarPeriodQuota()
        self.secondary = secondary or RollingWindowQuota()
        self.cooldown = cooldown or UrlCooldown()
        self._cache: dict[str, dict | None] = {}
        for key in (COUNTER_KEY, BLOG_TESTS_KEY, URL_HISTORY_KEY):
            self._reload(key)
        self.storage.subscribe(self._on_storage_change)

    def _reload(self, key: str) -> None:
        raw = self.storage.get(key)
        if raw is None:
            self._cache[key] = None
            return
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable quota state under %s", key)
            parsed = None
        self._cache[key] = parsed if isinstance(parsed, dict) else None

    def _on_storage_change(self, key: str) -> None:
        if key in self._cache:
            self._reload(key)

    def _write(self, key: str, value: dict) -> None:
        self._cache[key] = value
        self.storage.set(key, json.dumps(value))

    def _policy(self, kind: QuotaKind) -> tuple[str, CalendarPeriodQuota | RollingWindowQuota]:
        if kind == "primary":
            return COUNTER_KEY, self.primary
        if kind == "secondary":
            return BLOG_TESTS_KEY, self.secondary
        raise ValueError(f"Unknown quota kind: {kind!r}")

    def _period_state(self, kind: QuotaKind, now: datetime) -> dict:
        key, policy = self._policy(kind)
        stored = self._cache.get(key)
        state = policy.current(stored, now)
        # Persist rollovers and pruning only; first use stays lazy.
        if stored is not None and state != stored:
            self._write(key, state)
        return state

    def check_quota(self, url: object, kind: QuotaKind = "primary") -> QuotaDecision:
        now = self.clock()
        entry = self.cooldown.active_entry(self._cache.get(URL_HISTORY_KEY) or {}, str(url), now)
        if entry is not None:
            return QuotaDecision(
                allowed=False,
                reason=DenialReason.URL_COOLDOWN,
                retry_at=self.cooldown.retry_at(entry),
                cached_result=CachedResult(test_id=str(entry.get("testId", "")), score=int(entry.get("score", 0))),
            )

        _, policy = self._policy(kind)
        retry_at = policy.retry_at(self._period_state(kind, now))
        if retry_at is not None:
            return QuotaDecision(allowed=False, reason=DenialReason.PERIOD_LIMIT, retry_at=retry_at)
        return QuotaDecision(allowed=True)

    def record_success(self, url: object, test_id: str, score: int, kind: QuotaKind = "primary") -> None:
        now = self.clock()
        key, policy = self._policy(kind)
        self._write(key, policy.record(self._period_state(kind, now), now))
        history = self._cache.get(URL_HISTORY_KEY) or {}
        self._write(URL_HISTORY_KEY, self.cooldown.record(history, str(url), test_id, score, now))

    def remaining(self, kind: QuotaKind = "primary") -> int:
        _, policy = self._policy(kind)
        return policy.remaining(self._period_state(kind, self.clock()))
