"""
Scoring engine: measured categories, rubric prompts, Claude call, score aggregation.

Claude API key must be defined in a .env file in the backend root:

ANTHROPIC_API_KEY=your_real_key_here

Each analysis makes exactly one model call. A failed call or unparseable
reply is terminal for the request.
"""

import json
import logging
import math
import os
import re
from urllib.parse import urlsplit

import anthropic
from anthropic import Anthropic
from bs4 import BeautifulSoup

from config import (
    CLAUDE_MAX_TOKENS,
    CLAUDE_MODEL,
    CLAUDE_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    MAX_PROMPT_CHARS,
)
from errors import ScoringError, ScoringErrorKind
from models import AIInterpretation, CategoryScore, Grade, Recommendation, ScoredAnalysis, TestType
from page_checks import (
    IMAGES_MAX,
    SCHEMA_MAX,
    SEMANTIC_MAX,
    TECHNICAL_MAX,
    analyze_images,
    analyze_schema,
    analyze_semantic,
    analyze_technical,
    schema_recommendations,
)

logger = logging.getLogger(__name__)

GRADE_THRESHOLDS: list[tuple[int, Grade]] = [(90, "A"), (80, "B"), (70, "C"), (60, "D")]
PRIORITY_ORDER = {"critical": 0, "medium": 1, "good": 2}

# Each rubric has exactly 5 categories summing to 100 points.
RUBRICS: dict[str, dict[str, tuple[int, str]]] = {
    "homepage": {
        "contentClarity": (
            25,
            'Does the page clearly answer "what is this business, who is it for, what problem does it solve?"',
        ),
        "answerStructure": (
            20,
            "Are key answers front-loaded? Can AI extract the core value proposition in the first 200 words?",
        ),
        "authoritySignals": (15, "Credentials, testimonials, data, specific claims with evidence?"),
        "schemaMarkup": (
            20,
            "Is there JSON-LD structured data (Organization, WebSite, WebPage) in the static HTML with complete fields?",
        ),
        "technicalFoundation": (
            20,
            "HTTPS, title, meta description, canonical, Open Graph, viewport, lang attribute, semantic HTML tags.",
        ),
    },
    "blog": {
        "answerStructure": (
            25,
            "Does it answer the title question directly in the first 150 words? AI needs upfront answers.",
        ),
        "scannability": (20, "Clear subheadings every 300 words? Bullet points for lists? Short paragraphs?"),
        "expertiseSignals": (15, "Author credentials visible? Citations? Specific data? Original insights?"),
        "schemaMarkup": (
            20,
            "Is there BlogPosting/Article, BreadcrumbList and Person JSON-LD with headline, datePublished and author?",
        ),
        "imageAccessibility": (20, "Do images have descriptive alt text? Are they relevant to the content?"),
    },
}

SYSTEM_MESSAGE = """You are an expert in AI search visibility (how ChatGPT, Perplexity and Google AI read websites).
Return ONLY valid raw JSON that matches the schema exactly.
Do not include markdown, code fences, or text outside JSON."""

SCORING_TEMPLATE = """Analyze this {subject} for AI search visibility.

URL: {url}
CONTENT: {content}

Score these 5 categories (100 points total):

{rubric}

For each issue, provide:
- priority: "critical" | "medium" | "good"
- title: Short issue name (sentence case)
- pointsLost: Negative number
- problem: What's wrong
- howToFix: Array of specific steps
- codeExample: HTML snippet if applicable
- expectedImprovement: Point gain estimate

Return ONLY valid JSON:
{{
  "categories": {{
{example}
  }},
  "recommendations": [...]
}}"""

INTERPRETATION_TEMPLATE = """Analyze this homepage and extract what an AI system would understand about this business.

{content}

Extract:
1. Industry/category (be specific, not generic like "technology")
2. Primary target audience (who are they helping?)
3. Core problem they solve (what pain point?)
4. How they solve it (their method/approach)

Also calculate a confidence score (0-100) based on clarity:
- Start at 100%
- Minus 10% if no clear audience mentioned or it's too vague
- Minus 10% if no clear problem mentioned
- Minus 10% if no solution method mentioned
- Minus 15% if opening content is too generic or unclear
- Minimum score is 50%

Return ONLY valid JSON:
{{
  "industry": "specific industry/category",
  "audience": "specific target audience",
  "problem": "the problem they solve",
  "solution": "how they solve it",
  "confidenceScore": number,
  "confidenceBreakdown": {{
    "hasAudience": boolean,
    "hasProblem": boolean,
    "hasSolution": boolean,
    "isSpecific": boolean
  }}
}}"""

BLOG_URL_PATTERNS = ("/blog/", "/post/", "/article/", "/news/", "/posts/", "/articles/")
BLOG_HTML_PATTERNS = (
    'type="article"',
    "blogposting",
    "newsarticle",
    "article:published",
    'class="post"',
    'class="article"',
    'class="blog-post"',
)


def grade_for(score: int) -> Grade:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def percentage(score: int, max_points: int) -> int:
    if max_points <= 0:
        return 0
    # Half-up rounding, not banker's rounding.
    return int(score * 100 / max_points + 0.5)


def detect_page_type(url: str, html: str, requested: TestType) -> TestType:
    """Guess homepage vs blog post from the URL path and HTML markers."""
    url_lower = url.lower()
    html_lower = (html or "").lower()
    if urlsplit(url).path in ("", "/") and requested == "homepage":
        return "homepage"
    if any(p in url_lower for p in BLOG_URL_PATTERNS) or any(p in html_lower for p in BLOG_HTML_PATTERNS):
        return "blog"
    return requested


def measure_page(
    url: str, html: str, test_type: TestType, rendered_text: str | None = None
) -> tuple[dict[str, CategoryScore], list[Recommendation]]:
    """
    Score the categories that can be read off the HTML without the model,
    scaled onto their rubric weights, plus schema recommendations.
    """
    schema = analyze_schema(html, test_type)
    raw: dict[str, tuple[float, int]] = {"schemaMarkup": (schema["score"], SCHEMA_MAX)}
    if test_type == "homepage":
        points = analyze_technical(url, html) + analyze_semantic(html, rendered_text)
        raw["technicalFoundation"] = (points, TECHNICAL_MAX + SEMANTIC_MAX)
    else:
        raw["imageAccessibility"] = (analyze_images(html), IMAGES_MAX)

    categories: dict[str, CategoryScore] = {}
    for key, (points, out_of) in raw.items():
        max_points = RUBRICS[test_type][key][0]
        score = min(max_points, int(points * max_points / out_of + 0.5))
        categories[key] = {"score": score, "max": max_points, "percentage": percentage(score, max_points)}
    return categories, schema_recommendations(schema, test_type)


def build_scoring_prompt(
    url: str, content: str, test_type: TestType, measured: dict[str, CategoryScore] | None = None
) -> str:
    rubric = RUBRICS[test_type]
    measured = measured or {}
    lines = []
    examples = []
    for idx, (key, (max_points, question)) in enumerate(rubric.items(), start=1):
        label = re.sub(r"(?<!^)(?=[A-Z])", " ", key).upper()
        if key in measured:
            score = measured[key]["score"]
            lines.append(
                f"{idx}. {label} (max {max_points} points): already measured from the HTML as "
                f"{score}/{max_points}. Report it unchanged and add no recommendations for it."
            )
            examples.append(f'    "{key}": {{ "score": {score}, "max": {max_points} }}')
            continue
        lines.append(f"{idx}. {label} (max {max_points} points): {question}")
        examples.append(f'    "{key}": {{ "score": 0, "max": {max_points} }}')
    return SCORING_TEMPLATE.format(
        subject="business homepage" if test_type == "homepage" else "blog post",
        url=url,
        content=content[:MAX_PROMPT_CHARS],
        rubric="\n".join(lines),
        example=",\n".join(examples),
    )


def _extract_json(text: str) -> dict | None:
    if not text:
        return None

    text = text.strip()
    if text.startswith("```"):
        text = text.replace("```json", "").replace("```", "").strip()

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1:
        return None

    json_str = (
        text[start : end + 1]
        .replace("“", '"')
        .replace("”", '"')
        .replace("‘", "'")
        .replace("’", "'")
    )
    try:
        parsed = json.loads(json_str)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _extract_response_text(response: object) -> str:
    content = ""
    for block in getattr(response, "content", []) or []:
        text = getattr(block, "text", None)
        if text:
            content += text
    return content.strip()


def _as_int(value: object) -> int | None:
    """Round a model-supplied number; None for booleans, junk, NaN and infinities."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value if isinstance(value, (int, float)) else str(value))
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return int(round(number))


def build_categories(raw: object, test_type: TestType | None = None) -> dict[str, CategoryScore]:
    """
    Turn the model's ``categories`` object into clamped integer scores.
    Falls back to the rubric max when the model omits one.
    """
    if not isinstance(raw, dict):
        return {}
    rubric = RUBRICS.get(test_type or "", {})
    out: dict[str, CategoryScore] = {}
    for key, value in raw.items():
        if not isinstance(value, dict):
            continue
        max_points = _as_int(value.get("max"))
        if max_points is None or max_points <= 0:
            max_points = rubric.get(key, (0, ""))[0]
        if max_points <= 0:
            continue
        raw_score = value.get("score")
        score = _as_int(raw_score)
        if score is None and raw_score is not None:
            raise ScoringError(ScoringErrorKind.MODEL_FAILURE, f"Category {key!r} has unusable score {raw_score!r}.")
        score = max(0, min(max_points, score if score is not None else 0))
        out[str(key)] = {"score": score, "max": max_points, "percentage": percentage(score, max_points)}
    return out


def _str_list(value: object) -> list[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [str(x).strip() for x in value if x is not None and str(x).strip()]


def normalize_recommendations(raw: object) -> list[Recommendation]:
    if not isinstance(raw, list):
        return []
    out: list[Recommendation] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            continue
        priority = str(item.get("priority") or "medium").strip().lower()
        if priority not in PRIORITY_ORDER:
            priority = "medium"
        out.append(
            {
                "id": str(item.get("id") or f"rec-{idx}"),
                "priority": priority,
                "title": str(item.get("title") or "Recommendation"),
                "pointsLost": _as_int(item.get("pointsLost")) or 0,
                "problem": str(item.get("problem") or ""),
                "howToFix": _str_list(item.get("howToFix")),
                "codeExample": str(item.get("codeExample") or ""),
                "expectedImprovement": str(item.get("expectedImprovement") or ""),
            }
        )
    out.sort(key=lambda r: PRIORITY_ORDER[r["priority"]])
    return out


def aggregate(parsed: dict, test_type: TestType, url: str, html: str) -> ScoredAnalysis:
    """Build the scored analysis from the model's parsed JSON."""
    categories = build_categories(parsed.get("categories"), test_type)
    if not categories:
        raise ScoringError(ScoringErrorKind.MODEL_FAILURE, "Model returned no usable categories.")

    total = sum(c["score"] for c in categories.values())
    if total > 100:
        raise ScoringError(ScoringErrorKind.MODEL_FAILURE, f"Category scores sum to {total}, above 100.")

    return {
        "score": total,
        "grade": grade_for(total),
        "detectedType": detect_page_type(url, html, test_type),
        "requestedType": test_type,
        "categories": categories,
        "recommendations": normalize_recommendations(parsed.get("recommendations")),
    }


def _client() -> Anthropic:
    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        raise ScoringError(ScoringErrorKind.MODEL_FAILURE, "ANTHROPIC_API_KEY not found in environment.")
    return Anthropic(api_key=api_key, timeout=LLM_TIMEOUT_SECONDS, max_retries=0)


def _call_claude(client: Anthropic, user_message: str, temperature: float = CLAUDE_TEMPERATURE) -> str:
    try:
        response = client.messages.create(
            model=CLAUDE_MODEL,
            max_tokens=CLAUDE_MAX_TOKENS,
            system=SYSTEM_MESSAGE,
            messages=[{"role": "user", "content": user_message}],
            temperature=temperature,
        )
    except anthropic.APITimeoutError as e:
        raise ScoringError(ScoringErrorKind.TIMEOUT, str(e)) from e
    except anthropic.RateLimitError as e:
        raise ScoringError(ScoringErrorKind.QUOTA, str(e)) from e
    except anthropic.APIStatusError as e:
        kind = ScoringErrorKind.QUOTA if e.status_code in (429, 529) else ScoringErrorKind.MODEL_FAILURE
        raise ScoringError(kind, f"Claude API error {e.status_code}: {e.message}") from e
    except anthropic.APIError as e:
        raise ScoringError(ScoringErrorKind.MODEL_FAILURE, str(e)) from e

    if getattr(response, "stop_reason", None) == "max_tokens":
        logger.warning("Claude output hit max_tokens for model=%s", CLAUDE_MODEL)
    return _extract_response_text(response)


def score_page(
    url: str, content: str, html: str, test_type: TestType, rendered_text: str | None = None
) -> ScoredAnalysis:
    """
    Score one page against the rubric for ``test_type``.

    ``content`` is what the model reads (HTML or proxy-rendered text);
    ``html`` is the original markup, used for the measured categories and
    page type detection; ``rendered_text`` is the proxy output, if any.
    The model scores the remaining categories. Raises ScoringError; never retries.
    """
    client = _client()
    measured, schema_recs = measure_page(url, html, test_type, rendered_text)
    logger.info("Measured categories for %s: %s", url, {k: v["score"] for k, v in measured.items()})

    raw = _call_claude(client, build_scoring_prompt(url, content, test_type, measured))
    parsed = _extract_json(raw)
    if parsed is None:
        logger.error("Claude returned unparseable JSON for %s: %.500s", url, raw)
        raise ScoringError(ScoringErrorKind.MODEL_FAILURE, "Model response was not valid JSON.")

    model_categories = build_categories(parsed.get("categories"), test_type)
    for key in measured:
        model_categories.pop(key, None)
    if not model_categories:
        raise ScoringError(ScoringErrorKind.MODEL_FAILURE, "Model returned no usable categories.")

    model_recs = parsed.get("recommendations")
    merged = {
        "categories": {**model_categories, **measured},
        "recommendations": schema_recs + (model_recs if isinstance(model_recs, list) else []),
    }
    return aggregate(merged, test_type, url, html)


def _interpretation_content(url: str, html: str) -> str:
    soup = BeautifulSoup(html or "", "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    meta = soup.find("meta", attrs={"name": re.compile(r"^description$", re.I)})
    meta_description = (meta.get("content") or "").strip() if meta else ""
    h1 = soup.find("h1")
    h1_text = h1.get_text(" ", strip=True) if h1 else ""

    for tag in soup.find_all(["script", "style", "nav", "header", "footer", "aside"]):
        tag.decompose()
    paragraphs = [p.get_text(" ", strip=True) for p in soup.find_all("p")[:3]]
    first_paragraphs = " ".join(p for p in paragraphs if len(p) > 20)[:500]

    hero = soup.find(class_=re.compile(r"hero|banner|jumbotron", re.I))
    hero_text = re.sub(r"\s+", " ", hero.get_text(" ", strip=True))[:500] if hero else ""

    return (
        f"URL: {url}\n"
        f"Title: {title}\n"
        f"Meta Description: {meta_description}\n"
        f"H1: {h1_text}\n"
        f"First Paragraphs: {first_paragraphs}\n"
        f"Hero Content: {hero_text}"
    )


def interpret_homepage(url: str, html: str) -> AIInterpretation | None:
    """
    Ask Claude what business it thinks the homepage describes.
    Best-effort: returns None on any failure.
    """
    try:
        client = _client()
        raw = _call_claude(client, INTERPRETATION_TEMPLATE.format(content=_interpretation_content(url, html)))
    except ScoringError as e:
        logger.warning("AI interpretation failed for %s: %s", url, e.technical_details or e)
        return None

    parsed = _extract_json(raw)
    if parsed is None:
        logger.warning("AI interpretation returned unparseable JSON for %s", url)
        return None

    def text(key: str) -> str:
        return str(parsed.get(key) or "").strip() or "Unknown"

    breakdown = parsed.get("confidenceBreakdown")
    if not isinstance(breakdown, dict):
        breakdown = {}
    confidence = _as_int(parsed.get("confidenceScore")) or 50

    industry, audience, problem, solution = text("industry"), text("audience"), text("problem"), text("solution")
    return {
        "interpretation": (
            f"AI reads your site as: A {industry} company helping {audience} solve {problem} by {solution}."
        ),
        "industry": industry,
        "audience": audience,
        "problem": problem,
        "solution": solution,
        "confidenceScore": max(50, min(100, confidence)),
        "confidenceBreakdown": {
            "hasAudience": bool(breakdown.get("hasAudience", False)),
            "hasProblem": bool(breakdown.get("hasProblem", False)),
            "hasSolution": bool(breakdown.get("hasSolution", False)),
            "isSpecific": bool(breakdown.get("isSpecific", False)),
        },
    }
