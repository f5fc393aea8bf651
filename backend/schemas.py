"""Pydantic schemas for API request/response."""

from typing import Literal

from pydantic import BaseModel, field_validator


class AnalyzeWebsiteRequest(BaseModel):
    """Request body for POST /analyze-website."""

    website: str
    testType: Literal["homepage", "blog"]

    @field_validator("website", mode="before")
    @classmethod
    def normalize_website(cls, value: object) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("website is required")
        return text


class FetchResultsRequest(BaseModel):
    """Request body for POST /fetch-results."""

    testId: str = ""

    @field_validator("testId", mode="before")
    @classmethod
    def strip_test_id(cls, value: object) -> str:
        return str(value or "").strip()


class SubmitFeedbackRequest(BaseModel):
    testId: str = ""
    feedback: str = ""

    @field_validator("testId", "feedback", mode="before")
    @classmethod
    def strip_text(cls, value: object) -> str:
        return str(value or "").strip()


class CheckExistingTestRequest(BaseModel):
    website: str

    @field_validator("website", mode="before")
    @classmethod
    def normalize_website(cls, value: object) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("website is required")
        return text


class CheckExistingTestResponse(BaseModel):
    exists: bool
    testId: str | None = None
    score: int | None = None
    createdAt: str | None = None
    canRetestAt: str | None = None


class BlogTestCountResponse(BaseModel):
    success: bool = True
    testsUsed: int
    testsRemaining: int
    resetDate: str | None
    limit: int
    windowDays: int


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    timestamp: str
    version: str
    checks: dict[str, bool]
