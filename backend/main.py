"""FoundIndex API: FastAPI app and endpoints."""

import asyncio
import logging
import os
import sqlite3
import threading
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

import rate_limits
from analysis_service import load_test_result, run_analysis, submit_feedback
from config import APP_VERSION, BLOG_TESTS_LIMIT, BLOG_WINDOW_DAYS, cors_allow_origins, setup_logging
from database import init_db, ping
from errors import AnalysisCancelled, AnalysisError, InvalidTestIdError, ResultNotFoundError, UrlValidationError
from schemas import (
    AnalyzeWebsiteRequest,
    BlogTestCountResponse,
    CheckExistingTestRequest,
    CheckExistingTestResponse,
    FetchResultsRequest,
    HealthResponse,
    SubmitFeedbackRequest,
)
from url_validation import normalize_url

logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.5

app = FastAPI(
    title="FoundIndex API",
    description="AI search visibility scoring",
    version=APP_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup() -> None:
    setup_logging()
    init_db()


def _legacy_error(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    body: dict = {"success": False, "error": error}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    details = "; ".join(f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in errors)
    return _legacy_error(400, "Invalid request", details or None)


def _client_ip(request: Request) -> str:
    peer = request.client.host if request.client else None
    return rate_limits.client_ip(request.headers, peer)


async def _watch_disconnect(request: Request, cancel: threading.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected, cancelling analysis")
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@app.post("/analyze-website")
async def analyze_website(body: AnalyzeWebsiteRequest, request: Request):
    """
    Pipeline: limits -> fetch page -> Claude scoring -> store -> return result.
    Expected failures come back as 200 with success=false.
    """
    try:
        url = normalize_url(body.website)
    except UrlValidationError as e:
        return _legacy_error(400, "Invalid website URL", e.message)

    cancel = threading.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        return await run_in_threadpool(run_analysis, str(url), body.testType, _client_ip(request), cancel)
    except AnalysisError as e:
        logger.warning("Analysis of %s failed: %s %s", url, e.error_type.value, e.technical_details or "")
        return JSONResponse(content=e.to_payload())
    except AnalysisCancelled:
        return _legacy_error(499, "Request cancelled")
    except Exception as e:
        logger.exception("Unexpected error analyzing %s", url)
        return _legacy_error(500, "Internal server error", str(e))
    finally:
        cancel.set()
        watcher.cancel()


@app.post("/fetch-results")
def fetch_results(body: FetchResultsRequest):
    """Return the stored test and its optional AI interpretation."""
    try:
        return load_test_result(body.testId)
    except InvalidTestIdError:
        return JSONResponse(status_code=400, content={"error": "Invalid test ID format"})
    except ResultNotFoundError:
        return JSONResponse(status_code=404, content={"error": "Test not found"})


@app.post("/submit-ai-feedback")
def submit_ai_feedback(body: SubmitFeedbackRequest):
    try:
        submit_feedback(body.testId, body.feedback)
    except InvalidTestIdError as e:
        return _legacy_error(400, str(e))
    except ValueError as e:
        return _legacy_error(400, "Invalid feedback value", str(e))
    except ResultNotFoundError as e:
        return _legacy_error(404, str(e))
    return {"success": True}


@app.post("/check-existing-test", response_model=CheckExistingTestResponse)
def check_existing_test(body: CheckExistingTestRequest):
    try:
        url = normalize_url(body.website)
    except UrlValidationError as e:
        return _legacy_error(400, "Invalid website URL", e.message)

    cached = rate_limits.recent_test(str(url))
    if cached is None:
        return CheckExistingTestResponse(exists=False)
    return CheckExistingTestResponse(
        exists=True,
        testId=cached["testId"],
        score=cached["score"],
        createdAt=cached["createdAt"],
        canRetestAt=rate_limits.retest_available_at(cached).isoformat(),
    )


@app.get("/blog-test-count", response_model=BlogTestCountResponse)
def blog_test_count(request: Request) -> BlogTestCountResponse:
    """Blog quota usage for the calling IP."""
    if not rate_limits.RATE_LIMITS_ENABLED:
        return BlogTestCountResponse(
            testsUsed=0, testsRemaining=999, resetDate=None, limit=999, windowDays=BLOG_WINDOW_DAYS
        )

    ip_address = _client_ip(request)
    try:
        usage = rate_limits.blog_usage(ip_address)
    except sqlite3.Error as e:
        logger.warning("Blog test count lookup failed for %s: %s", ip_address, e)
        usage = rate_limits.BlogUsage(used=0, remaining=BLOG_TESTS_LIMIT, reset_at=None)

    return BlogTestCountResponse(
        testsUsed=usage.used,
        testsRemaining=usage.remaining,
        resetDate=usage.reset_at.isoformat() if usage.reset_at else None,
        limit=BLOG_TESTS_LIMIT,
        windowDays=BLOG_WINDOW_DAYS,
    )


@app.get("/health", response_model=HealthResponse)
def health():
    """Health check for deployment."""
    checks = {
        "database": ping(),
        "anthropic_api_key": bool(os.getenv("ANTHROPIC_API_KEY")),
    }
    result = HealthResponse(
        status="ok" if all(checks.values()) else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=APP_VERSION,
        checks=checks,
    )
    if result.status == "degraded":
        return JSONResponse(status_code=503, content=result.model_dump())
    return result


if __name__ == "__main__":
    uvicorn.run("main:app", host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
