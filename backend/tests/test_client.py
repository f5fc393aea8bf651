"""client tests: submission state machine and response handling."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from client import (
    AnalysisClient,
    Presentation,
    SubmissionState,
    is_structured_error,
    outcome_for_error,
    results_path,
)
from errors import ErrorType, InvalidTestIdError, ResultNotFoundError
from quota import LocalQuotaTracker, MemoryStorage

NOW = datetime(2026, 5, 12, 9, 0, tzinfo=timezone.utc)
TEST_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"


def _response(body: dict, status: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 400
    response.json.return_value = body
    return response


def _client(*responses, states=None) -> AnalysisClient:
    session = MagicMock()
    session.post.side_effect = list(responses)
    tracker = LocalQuotaTracker(MemoryStorage(), clock=lambda: NOW)
    on_change = states.append if states is not None else None
    return AnalysisClient("https://api.foundindex.test/", tracker=tracker, session=session, on_state_change=on_change)


class TestSubmit:
    def test_success_navigates_and_records_quota(self):
        states = []
        client = _client(_response({"success": True, "testId": TEST_ID, "score": 77}), states=states)

        outcome = client.submit("slack.com")

        assert outcome.state is SubmissionState.SUCCESS
        assert outcome.presentation is Presentation.NAVIGATE
        assert outcome.results_path == f"/results?testId={TEST_ID}&url=https%3A%2F%2Fslack.com%2F"
        assert states == [
            SubmissionState.VALIDATING,
            SubmissionState.QUOTA_CHECK,
            SubmissionState.SUBMITTING,
            SubmissionState.SUCCESS,
            SubmissionState.IDLE,
        ]
        client.session.post.assert_called_once_with(
            "https://api.foundindex.test/analyze-website",
            json={"website": "https://slack.com/", "testType": "homepage"},
            timeout=client.timeout,
        )
        assert client.tracker.remaining() == 2

    def test_invalid_input_fails_inline_without_network(self):
        states = []
        client = _client(states=states)

        outcome = client.submit("my site .com")

        assert outcome.presentation is Presentation.INLINE
        assert outcome.suggestion == "mysite.com"
        assert states == [SubmissionState.VALIDATING, SubmissionState.FAILED, SubmissionState.IDLE]
        client.session.post.assert_not_called()

    def test_local_cooldown_shows_modal_with_cached_result(self):
        client = _client(_response({"success": True, "testId": TEST_ID, "score": 77}))
        client.submit("slack.com")

        outcome = client.submit("https://slack.com/")

        assert outcome.presentation is Presentation.MODAL
        assert outcome.cached_test_id == TEST_ID
        assert outcome.cached_score == 77
        assert outcome.retry_at == NOW + timedelta(days=7)
        assert client.session.post.call_count == 1

    def test_local_period_limit_shows_modal(self):
        client = _client()
        for n in range(3):
            client.tracker.record_success(f"https://site{n}.com/", f"id-{n}", 50)

        outcome = client.submit("another.com")

        assert outcome.presentation is Presentation.MODAL
        assert outcome.title == "Test limit reached"
        assert outcome.retry_at == datetime(2026, 6, 1, tzinfo=timezone.utc)
        client.session.post.assert_not_called()

    def test_blog_uses_secondary_quota(self):
        client = _client(_response({"success": True, "testId": TEST_ID, "score": 64}))

        client.submit("acme.com", test_type="blog")

        assert client.tracker.remaining("secondary") == 2
        assert client.tracker.remaining("primary") == 3

    def test_second_submit_while_in_flight(self):
        client = _client()
        nested = []

        def post(*args, **kwargs):
            nested.append(client.submit("slack.com"))
            return _response({"success": True, "testId": TEST_ID, "score": 77})

        client.session.post.side_effect = post

        outcome = client.submit("slack.com")

        assert outcome.state is SubmissionState.SUCCESS
        assert nested[0].title == "Test in progress"
        assert nested[0].presentation is Presentation.TOAST
        assert client.session.post.call_count == 1

    def test_network_error_is_toast(self):
        client = _client(requests.ConnectionError("offline"))

        outcome = client.submit("slack.com")

        assert outcome.presentation is Presentation.TOAST
        assert outcome.state is SubmissionState.FAILED
        assert client.tracker.remaining() == 3

    def test_missing_test_id_is_failure(self):
        client = _client(_response({"success": True}))
        assert client.submit("slack.com").state is SubmissionState.FAILED


class TestServerErrors:
    def test_rate_limit_url_opens_modal(self):
        payload = {
            "success": False,
            "error_type": "RATE_LIMIT_URL",
            "error_code": "RATE_LIMIT_URL_1",
            "user_message": "This URL was tested on May 10, 2026 (UTC).",
            "suggested_action": "View previous results",
            "cached_test_id": TEST_ID,
            "cached_score": 61,
            "cached_created_at": "2026-05-10T08:00:00+00:00",
            "next_available_time": "2026-05-17T08:00:00+00:00",
        }
        client = _client(_response(payload))

        outcome = client.submit("slack.com")

        assert outcome.presentation is Presentation.MODAL
        assert outcome.error_type is ErrorType.RATE_LIMIT_URL
        assert outcome.cached_test_id == TEST_ID
        assert outcome.retry_at == datetime(2026, 5, 17, 8, tzinfo=timezone.utc)
        assert outcome.message == payload["user_message"]

    def test_rate_limit_url_without_retest_time(self):
        outcome = outcome_for_error(
            {"error_type": "RATE_LIMIT_URL", "user_message": "", "testedAt": "2026-05-10T08:00:00Z", "test_id": TEST_ID},
            "https://slack.com/",
        )
        assert outcome.retry_at == datetime(2026, 5, 17, 8, tzinfo=timezone.utc)
        assert outcome.cached_test_id == TEST_ID
        assert outcome.message.startswith("This URL was tested recently")

    @pytest.mark.parametrize(
        "error_type, title",
        [
            ("RATE_LIMIT_IP", "Test limit reached"),
            ("SITE_UNREACHABLE", "Website not reachable"),
            ("BOT_BLOCKED", "Website blocked our analyzer"),
            ("TIMEOUT", "Request timed out"),
            ("API_QUOTA", "Service temporarily unavailable"),
            ("GENERAL_ERROR", "Analysis failed"),
            ("SOMETHING_NEW", "Analysis failed"),
        ],
    )
    def test_other_types_are_toasts(self, error_type, title):
        outcome = outcome_for_error({"error_type": error_type, "user_message": "msg"}, "https://slack.com/")
        assert outcome.presentation is Presentation.TOAST
        assert outcome.title == title
        assert outcome.message == "msg"

    def test_legacy_shape(self):
        outcome = outcome_for_error({"success": False, "error": "Website could not be fetched"}, "https://x.com/")
        assert outcome.presentation is Presentation.TOAST
        assert outcome.message == "Website could not be fetched"

    def test_server_error_status_with_body(self):
        client = _client(_response({"success": False, "error": "Internal server error"}, status=500))
        outcome = client.submit("slack.com")
        assert outcome.message == "Internal server error"

    def test_is_structured_error(self):
        assert is_structured_error({"error_type": "TIMEOUT", "user_message": "slow"})
        assert not is_structured_error({"error": "x"})
        assert not is_structured_error("TIMEOUT")


class TestResultsAndFeedback:
    def test_results_path_encodes_url(self):
        assert results_path("abc", "https://a.com/") == "/results?testId=abc&url=https%3A%2F%2Fa.com%2F"

    def test_fetch_results(self):
        client = _client(_response({"testId": TEST_ID, "score": 77}))
        assert client.fetch_results(TEST_ID)["score"] == 77

    def test_fetch_results_not_found(self):
        client = _client(_response({"error": "Test not found"}, status=404))
        with pytest.raises(ResultNotFoundError):
            client.fetch_results(TEST_ID)

    def test_fetch_results_bad_id(self):
        client = _client(_response({"error": "Invalid test ID format"}, status=400))
        with pytest.raises(InvalidTestIdError):
            client.fetch_results("nope")

    def test_submit_feedback(self):
        client = _client(_response({"success": True}))
        assert client.submit_feedback(TEST_ID, "accurate") is True
        client.session.post.assert_called_once_with(
            "https://api.foundindex.test/submit-ai-feedback",
            json={"testId": TEST_ID, "feedback": "accurate"},
            timeout=client.timeout,
        )
