"""Client for the analysis API.

Runs one submission through validate -> local quota -> POST and turns
the result into an outcome a UI can present: an inline field message, a
modal, a toast, or navigation to the results page.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from urllib.parse import quote

import requests

from errors import ErrorType, InvalidTestIdError, ResultNotFoundError, UrlValidationError
from quota import DenialReason, LocalQuotaTracker, QuotaDecision
from url_validation import error_message, normalize_url

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120
RETEST_FALLBACK = timedelta(days=7)


class SubmissionState(str, Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    QUOTA_CHECK = "QUOTA_CHECK"
    SUBMITTING = "SUBMITTING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Presentation(str, Enum):
    INLINE = "INLINE"
    MODAL = "MODAL"
    TOAST = "TOAST"
    NAVIGATE = "NAVIGATE"


@dataclass(frozen=True)
class SubmissionOutcome:
    state: SubmissionState
    presentation: Presentation
    title: str
    message: str
    error_type: ErrorType | None = None
    suggestion: str | None = None
    test_id: str | None = None
    score: int | None = None
    results_path: str | None = None
    retry_at: datetime | None = None
    cached_test_id: str | None = None
    cached_score: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)


# Title and fallback message per structured error type.
ERROR_MESSAGES: dict[ErrorType, tuple[str, str]] = {
    ErrorType.RATE_LIMIT_IP: ("Test limit reached", "You've reached the testing limit from this network. Try again later."),
    ErrorType.RATE_LIMIT_URL: ("Recently tested", "This URL was tested recently. You can view the previous results."),
    ErrorType.SITE_UNREACHABLE: (
        "Website not reachable",
        "We couldn't reach that site. Check the URL or try again later.",
    ),
    ErrorType.BOT_BLOCKED: (
        "Website blocked our analyzer",
        "The site refused automated access. Try a different page or allow our bot.",
    ),
    ErrorType.TIMEOUT: ("Request timed out", "The site took too long to respond. Try again later."),
    ErrorType.API_QUOTA: (
        "Service temporarily unavailable",
        "We're temporarily out of capacity. Try again shortly.",
    ),
    ErrorType.GENERAL_ERROR: ("Analysis failed", "Unable to analyze this website. Please try again."),
}


def is_structured_error(data: object) -> bool:
    return isinstance(data, dict) and "error_type" in data and "user_message" in data


def results_path(test_id: str, url: str) -> str:
    return f"/results?testId={test_id}&url={quote(url, safe='')}"


def _parse_time(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _error_type(value: object) -> ErrorType:
    try:
        return ErrorType(value)
    except ValueError:
        return ErrorType.GENERAL_ERROR


def outcome_for_error(payload: dict, website: str) -> SubmissionOutcome:
    """Map a ``success: false`` response body to what the user sees."""
    if not is_structured_error(payload):
        return SubmissionOutcome(
            state=SubmissionState.FAILED,
            presentation=Presentation.TOAST,
            title="Analysis failed",
            message=str(payload.get("error") or "Unable to analyze this website"),
            error_type=ErrorType.GENERAL_ERROR,
            payload=payload,
        )

    error_type = _error_type(payload.get("error_type"))
    title, fallback = ERROR_MESSAGES[error_type]
    message = str(payload.get("user_message") or fallback)

    if error_type is ErrorType.RATE_LIMIT_URL:
        cached_id = payload.get("cached_test_id") or payload.get("test_id")
        tested_at = _parse_time(payload.get("cached_created_at") or payload.get("testedAt"))
        retry_at = _parse_time(payload.get("next_available_time") or payload.get("canRetestAt"))
        if retry_at is None:
            retry_at = (tested_at or datetime.now(timezone.utc)) + RETEST_FALLBACK
        return SubmissionOutcome(
            state=SubmissionState.FAILED,
            presentation=Presentation.MODAL,
            title=title,
            message=message,
            error_type=error_type,
            retry_at=retry_at,
            cached_test_id=cached_id,
            cached_score=payload.get("cached_score"),
            results_path=results_path(cached_id, website) if cached_id else None,
            payload=payload,
        )

    return SubmissionOutcome(
        state=SubmissionState.FAILED,
        presentation=Presentation.TOAST,
        title=title,
        message=message,
        error_type=error_type,
        retry_at=_parse_time(payload.get("next_available_time")),
        payload=payload,
    )


def outcome_for_denial(decision: QuotaDecision, website: str, kind: str) -> SubmissionOutcome:
    if decision.reason is DenialReason.URL_COOLDOWN:
        cached = decision.cached_result
        return SubmissionOutcome(
            state=SubmissionState.FAILED,
            presentation=Presentation.MODAL,
            title="Recently tested",
            message="You tested this URL recently. View the previous results or retest after the cooldown.",
            retry_at=decision.retry_at,
            cached_test_id=cached.test_id if cached else None,
            cached_score=cached.score if cached else None,
            results_path=results_path(cached.test_id, website) if cached else None,
        )
    label = "monthly test" if kind == "primary" else "blog test"
    return SubmissionOutcome(
        state=SubmissionState.FAILED,
        presentation=Presentation.MODAL,
        title="Test limit reached",
        message=f"You've used all of your {label}s. More become available when the limit resets.",
        retry_at=decision.retry_at,
    )


class AnalysisClient:
    """
    Submits analyses to the FoundIndex API.

    One submission per input at a time: a second ``submit`` for a URL that
    is already in flight returns a "test in progress" outcome immediately.
    """

    def __init__(
        self,
        base_url: str,
        tracker: LocalQuotaTracker | None = None,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        on_state_change: Callable[[SubmissionState], None] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.tracker = tracker or LocalQuotaTracker()
        self.session = session or requests.Session()
        self.timeout = timeout
        self.on_state_change = on_state_change
        self.state = SubmissionState.IDLE
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def _set_state(self, state: SubmissionState) -> None:
        self.state = state
        logger.debug("Submission state -> %s", state.value)
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _finish(self, outcome: SubmissionOutcome) -> SubmissionOutcome:
        self._set_state(outcome.state)
        self._set_state(SubmissionState.IDLE)
        return outcome

    def submit(self, raw_input: str, test_type: str = "homepage") -> SubmissionOutcome:
        kind = "secondary" if test_type == "blog" else "primary"

        self._set_state(SubmissionState.VALIDATING)
        try:
            url = normalize_url(raw_input)
        except UrlValidationError as e:
            text = error_message(e)
            return self._finish(
                SubmissionOutcome(
                    state=SubmissionState.FAILED,
                    presentation=Presentation.INLINE,
                    title=text["title"],
                    message=text["description"],
                    suggestion=e.suggestion,
                )
            )
        website = str(url)

        with self._lock:
            if website in self._in_flight:
                return SubmissionOutcome(
                    state=SubmissionState.FAILED,
                    presentation=Presentation.TOAST,
                    title="Test in progress",
                    message=f"An analysis of {url.display} is already running. Please wait for it to finish.",
                )
            self._in_flight.add(website)

        try:
            self._set_state(SubmissionState.QUOTA_CHECK)
            decision = self.tracker.check_quota(website, kind)
            if not decision.allowed:
                return self._finish(outcome_for_denial(decision, website, kind))

            self._set_state(SubmissionState.SUBMITTING)
            return self._finish(self._post_analysis(website, test_type, kind))
        finally:
            with self._lock:
                self._in_flight.discard(website)

    def _post_analysis(self, website: str, test_type: str, kind: str) -> SubmissionOutcome:
        try:
            response = self.session.post(
                f"{self.base_url}/analyze-website",
                json={"website": website, "testType": test_type},
                timeout=self.timeout,
            )
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Analysis request for %s failed: %s", website, e)
            return SubmissionOutcome(
                state=SubmissionState.FAILED,
                presentation=Presentation.TOAST,
                title="Unable to analyze website",
                message="Please check the URL and try again. If it keeps failing, contact us.",
                error_type=ErrorType.GENERAL_ERROR,
            )

        if not isinstance(data, dict):
            data = {}
        if data.get("success") is False or not response.ok:
            return outcome_for_error(data, website)

        test_id = data.get("testId")
        if not test_id:
            return outcome_for_error({"error": "No test ID returned"}, website)

        score = int(data.get("score") or 0)
        self.tracker.record_success(website, test_id, score, kind)
        return SubmissionOutcome(
            state=SubmissionState.SUCCESS,
            presentation=Presentation.NAVIGATE,
            title="Analysis complete!",
            message="Loading your results...",
            test_id=test_id,
            score=score,
            results_path=results_path(test_id, website),
            payload=data,
        )

    def fetch_results(self, test_id: str) -> dict:
        response = self.session.post(
            f"{self.base_url}/fetch-results",
            json={"testId": test_id},
            timeout=self.timeout,
        )
        if response.status_code == 400:
            raise InvalidTestIdError(response.json().get("error", "Invalid test ID format"))
        if response.status_code == 404:
            raise ResultNotFoundError(response.json().get("error", "Test not found"))
        response.raise_for_status()
        return response.json()

    def submit_feedback(self, test_id: str, feedback: str) -> bool:
        response = self.session.post(
            f"{self.base_url}/submit-ai-feedback",
            json={"testId": test_id, "feedback": feedback},
            timeout=self.timeout,
        )
        if response.status_code == 400:
            raise ValueError(response.json().get("error", "Invalid feedback"))
        if response.status_code == 404:
            raise ResultNotFoundError(response.json().get("error", "AI interpretation not found"))
        response.raise_for_status()
        return bool(response.json().get("success"))
