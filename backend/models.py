"""Data models and types used across the backend.

Database table definitions are in database.py.
Types for fetched pages, scored analyses and stored records live here.
"""

from typing import Literal, NotRequired, TypedDict

TestType = Literal["homepage", "blog"]
Grade = Literal["A", "B", "C", "D", "F"]
Priority = Literal["critical", "medium", "good"]
Feedback = Literal["accurate", "close", "wrong"]


class FetchedPage(TypedDict):
    """Output of the page fetcher."""

    html: str
    text: str
    rendered_via_proxy: bool


class CategoryScore(TypedDict):
    score: int
    max: int
    percentage: int


class Recommendation(TypedDict):
    id: str
    priority: Priority
    title: str
    pointsLost: int
    problem: str
    howToFix: list[str]
    codeExample: str
    expectedImprovement: str


class SchemaCheck(TypedDict):
    """One expected JSON-LD type and how much of it the page provides."""

    name: str
    found: bool
    earned: float
    max_points: float
    missing_fields: list[str]
    details: str


class SchemaResult(TypedDict):
    score: float
    types: list[str]
    checks: list[SchemaCheck]


class ScoredAnalysis(TypedDict):
    """Output of the scoring engine for one page."""

    score: int
    grade: Grade
    detectedType: TestType
    requestedType: TestType
    categories: dict[str, CategoryScore]
    recommendations: list[Recommendation]


class ConfidenceBreakdown(TypedDict):
    hasAudience: bool
    hasProblem: bool
    hasSolution: bool
    isSpecific: bool


class AIInterpretation(TypedDict):
    interpretation: str
    industry: str
    audience: str
    problem: str
    solution: str
    confidenceScore: int
    confidenceBreakdown: ConfidenceBreakdown
    userFeedback: NotRequired[Feedback | None]


class TestRecord(TypedDict):
    """Canonical stored result of one completed analysis."""

    testId: str
    website: str
    testType: TestType
    detectedType: TestType
    score: int
    grade: Grade
    categories: dict[str, CategoryScore]
    recommendations: list[Recommendation]
    createdAt: str
