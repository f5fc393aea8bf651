"""Analysis pipeline: limits -> fetch -> score -> persist.

Steps run strictly in order for one request. Every log line carries the
generated test id so a request can be followed through the logs.
"""

import logging
import re
import sqlite3
import threading
import uuid
from datetime import datetime, timezone

import database
import rate_limits
from ai_service import interpret_homepage, score_page
from errors import (
    AnalysisCancelled,
    InvalidTestIdError,
    PersistError,
    ResultNotFoundError,
)
from models import AIInterpretation, TestRecord, TestType
from scraper import fetch_page

logger = logging.getLogger(__name__)

TEST_ID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
FEEDBACK_VALUES = ("accurate", "close", "wrong")


def _checkpoint(cancel: threading.Event | None, test_id: str, step: str) -> None:
    if cancel is not None and cancel.is_set():
        logger.info("[%s] Cancelled before %s", test_id, step)
        raise AnalysisCancelled(step)


def run_analysis(
    website: str,
    test_type: TestType,
    client_ip: str,
    cancel: threading.Event | None = None,
) -> dict:
    """
    Analyze ``website`` (already normalized) and persist the result.

    Returns the success payload. Raises AnalysisError subclasses for
    expected failures and AnalysisCancelled when ``cancel`` is set.
    """
    test_id = str(uuid.uuid4())
    logger.info("[%s] Analyzing %s as %s for %s", test_id, website, test_type, client_ip)

    if test_type == "blog":
        rate_limits.check_blog_quota(client_ip)
    rate_limits.check_url_cooldown(website)

    _checkpoint(cancel, test_id, "fetch")
    page = fetch_page(website, cancel)

    # The model reads rendered text when the proxy produced it, raw HTML otherwise.
    content = page["text"] if page["rendered_via_proxy"] else page["html"]

    _checkpoint(cancel, test_id, "scoring")
    rendered = page["text"] if page["rendered_via_proxy"] else None
    scored = score_page(website, content, page["html"], test_type, rendered_text=rendered)
    logger.info("[%s] Score %d (%s), detected %s", test_id, scored["score"], scored["grade"], scored["detectedType"])

    interpretation: AIInterpretation | None = None
    if test_type == "homepage":
        _checkpoint(cancel, test_id, "interpretation")
        interpretation = interpret_homepage(website, page["html"])

    _checkpoint(cancel, test_id, "persist")
    record: TestRecord = {
        "testId": test_id,
        "website": website,
        "testType": test_type,
        "detectedType": scored["detectedType"],
        "score": scored["score"],
        "grade": scored["grade"],
        "categories": scored["categories"],
        "recommendations": scored["recommendations"],
        "createdAt": database.to_timestamp(datetime.now(timezone.utc)),
    }
    try:
        database.insert_test(record, client_ip)
    except sqlite3.Error as e:
        logger.error("[%s] Could not save test: %s", test_id, e)
        raise PersistError(technical_details=str(e)) from e

    if interpretation is not None:
        try:
            database.insert_interpretation(test_id, interpretation)
        except sqlite3.Error as e:
            logger.warning("[%s] Could not save AI interpretation: %s", test_id, e)
            interpretation = None

    average = rate_limits.industry_average(scored["detectedType"])
    logger.info("[%s] Saved", test_id)

    payload = {
        "success": True,
        "testId": test_id,
        "score": scored["score"],
        "grade": scored["grade"],
        "detectedType": scored["detectedType"],
        "requestedType": scored["requestedType"],
        "categories": scored["categories"],
        "recommendations": scored["recommendations"],
        "industryAverage": average,
    }
    if interpretation is not None:
        payload["aiInterpretation"] = interpretation
    return payload


def validate_test_id(test_id: str) -> str:
    test_id = (test_id or "").strip()
    if not TEST_ID_PATTERN.match(test_id):
        raise InvalidTestIdError("Invalid test ID format")
    return test_id


def load_test_result(test_id: str) -> dict:
    """Stored record for ``test_id`` plus its interpretation when one exists."""
    test_id = validate_test_id(test_id)
    record = database.get_test(test_id)
    if record is None:
        raise ResultNotFoundError("Test not found")

    result: dict = dict(record)
    try:
        interpretation = database.get_interpretation(test_id)
    except sqlite3.Error as e:
        logger.warning("[%s] AI interpretation lookup failed: %s", test_id, e)
        interpretation = None
    if interpretation is not None:
        result["aiInterpretation"] = interpretation
    return result


def submit_feedback(test_id: str, feedback: str) -> None:
    test_id = validate_test_id(test_id)
    if feedback not in FEEDBACK_VALUES:
        raise ValueError(f"Feedback must be one of: {', '.join(FEEDBACK_VALUES)}")
    if not database.update_interpretation_feedback(test_id, feedback):
        raise ResultNotFoundError("AI interpretation not found")
    logger.info("[%s] Feedback recorded: %s", test_id, feedback)
