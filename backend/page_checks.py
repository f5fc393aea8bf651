"""Measured page checks: structured data, technical tags, semantic markup
and image alt text, read straight from the fetched HTML.

Each check returns raw points out of its own maximum. ai_service scales
them onto the rubric categories the model is not asked to score.
"""

import json
import re

from bs4 import BeautifulSoup

from models import Recommendation, SchemaCheck, SchemaResult, TestType

SCHEMA_MAX = 20
SCHEMA_STATIC_BASE = 18
TECHNICAL_MAX = 8
SEMANTIC_MAX = 12
IMAGES_MAX = 8

DESCRIPTIVE_ALT_CHARS = 10
SEMANTIC_TAGS = ("header", "nav", "main", "article", "section", "footer")
MAX_SCHEMA_RECOMMENDATIONS = 3

# name, bonus points, required fields, accepted @type values
EXPECTED_SCHEMAS: dict[str, list[tuple[str, float, tuple[str, ...], tuple[str, ...]]]] = {
    "homepage": [
        ("Organization", 1, ("name", "url", "logo"), ("Organization",)),
        ("WebSite", 0.5, ("name", "url"), ("WebSite",)),
        ("WebPage", 0.5, ("name", "description"), ("WebPage",)),
    ],
    "blog": [
        (
            "BlogPosting",
            1,
            ("headline", "datePublished", "author"),
            ("BlogPosting", "Article", "NewsArticle", "TechArticle"),
        ),
        ("BreadcrumbList", 0.5, ("itemListElement",), ("BreadcrumbList",)),
        ("Person", 0.5, ("name",), ("Person", "Author")),
    ],
}

STRUCTURED_DATA = "StructuredData"


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


# --- structured data ---


def extract_json_ld(html: str) -> list[dict]:
    """All JSON-LD objects on the page. Arrays and @graph are flattened; invalid blocks are skipped."""
    items: list[dict] = []
    for script_tag in _soup(html).find_all("script", attrs={"type": re.compile(r"^\s*application/ld\+json\s*$", re.I)}):
        try:
            ld = json.loads(script_tag.get_text() or "")
        except (json.JSONDecodeError, RecursionError):
            continue
        if isinstance(ld, dict) and isinstance(ld.get("@graph"), list):
            ld = ld["@graph"]
        for item in ld if isinstance(ld, list) else [ld]:
            if isinstance(item, dict):
                items.append(item)
    return items


def _schema_types(item: dict) -> list[str]:
    sd_type = item.get("@type")
    if isinstance(sd_type, list):
        return [str(t) for t in sd_type if t]
    return [str(sd_type)] if sd_type else []


def analyze_schema(html: str, test_type: TestType) -> SchemaResult:
    """
    Score JSON-LD in the static HTML out of SCHEMA_MAX.

    Any valid schema earns the static base; each expected type for the
    page kind adds a bonus scaled by how many required fields it fills.
    """
    schemas = extract_json_ld(html)
    expected = EXPECTED_SCHEMAS[test_type]
    types = [", ".join(_schema_types(s)) or "Unknown" for s in schemas]

    if not schemas:
        return {
            "score": 0.0,
            "types": [],
            "checks": [
                {
                    "name": STRUCTURED_DATA,
                    "found": False,
                    "earned": 0.0,
                    "max_points": float(SCHEMA_MAX),
                    "missing_fields": [name for name, *_ in expected],
                    "details": "No JSON-LD schema markup detected. Add schema.org structured data.",
                }
            ],
        }

    score = float(SCHEMA_STATIC_BASE)
    checks: list[SchemaCheck] = []
    for name, bonus, fields, accepted in expected:
        match = next((s for s in schemas if any(t in accepted for t in _schema_types(s))), None)
        if match is None:
            checks.append(
                {
                    "name": name,
                    "found": False,
                    "earned": 0.0,
                    "max_points": bonus,
                    "missing_fields": list(fields),
                    "details": f"{name} schema not found.",
                }
            )
            continue

        missing = [f for f in fields if not match.get(f)]
        earned = bonus * (1 - len(missing) / len(fields))
        score = min(SCHEMA_MAX, score + earned)
        checks.append(
            {
                "name": name,
                "found": True,
                "earned": earned,
                "max_points": bonus,
                "missing_fields": missing,
                "details": f"{name} found but missing: {', '.join(missing)}." if missing else f"{name} complete.",
            }
        )

    return {"score": round(score, 1), "types": types, "checks": checks}


def _code_example(name: str, fields: list[str]) -> str:
    body = {"@context": "https://schema.org", "@type": name, **{f: "..." for f in fields}}
    return f'<script type="application/ld+json">\n{json.dumps(body, indent=2)}\n</script>'


def schema_recommendations(result: SchemaResult, test_type: TestType) -> list[Recommendation]:
    """Fix-it items for missing or incomplete schema, worst first, at most three."""
    recs: list[Recommendation] = []
    gaps = [c for c in result["checks"] if not c["found"] or c["missing_fields"]]
    for idx, check in enumerate(gaps[:MAX_SCHEMA_RECOMMENDATIONS]):
        lost = round(check["max_points"] - check["earned"], 1)
        name = check["name"]
        if name == STRUCTURED_DATA:
            primary, _, fields, _ = EXPECTED_SCHEMAS[test_type][0]
            title = "Add JSON-LD structured data"
            how_to_fix = [
                f"Add {', '.join(check['missing_fields'])} schema in a JSON-LD script tag",
                "Put it in the static HTML so crawlers that skip JavaScript can read it",
            ]
            code = _code_example(primary, list(fields))
        elif check["found"]:
            title = f"Complete your {name} schema"
            how_to_fix = [f"Add missing fields: {', '.join(check['missing_fields'])}"]
            code = ""
        else:
            title = f"Add {name} schema markup"
            how_to_fix = [
                f"Add {name} schema to your page",
                "Use JSON-LD format",
                f"Include: {', '.join(check['missing_fields'])}",
            ]
            code = _code_example(name, check["missing_fields"])

        recs.append(
            {
                "id": f"schema-{idx}",
                "priority": "medium" if check["found"] else "critical",
                "title": title,
                "pointsLost": -max(1, int(lost + 0.5)),
                "problem": check["details"],
                "howToFix": how_to_fix,
                "codeExample": code,
                "expectedImprovement": f"+{lost:g} points",
            }
        )
    return recs


# --- technical tags ---


def analyze_technical(url: str, html: str) -> float:
    """HTTPS (2), then viewport, description, title, canonical, Open Graph and lang (1 each)."""
    soup = _soup(html)
    score = 2.0 if url.lower().startswith("https://") else 0.0
    title = soup.title.get_text(strip=True) if soup.title else ""
    checks = [
        soup.find("meta", attrs={"name": re.compile(r"^viewport$", re.I)}) is not None,
        soup.find("meta", attrs={"name": re.compile(r"^description$", re.I)}) is not None,
        bool(title),
        soup.find("link", attrs={"rel": "canonical"}) is not None,
        soup.find("meta", attrs={"property": re.compile(r"^og:", re.I)}) is not None,
        bool(soup.html and soup.html.get("lang")),
    ]
    score += sum(1 for passed in checks if passed)
    return min(score, TECHNICAL_MAX)


# --- semantic structure ---


def _static_text(soup: BeautifulSoup) -> str:
    for tag in soup.find_all(["script", "style"]):
        tag.decompose()
    return re.sub(r"\s+", " ", soup.get_text(" ", strip=True)).strip()


def _semantic_from_markdown(text: str) -> float:
    score = 0.0
    if re.search(r"^.+\n={3,}", text, re.M) or re.search(r"^# [^\n]+", text, re.M):
        score += 3

    has_h2 = bool(re.search(r"^.+\n-{3,}", text, re.M) or re.search(r"^## [^\n]+", text, re.M))
    has_h3 = bool(re.search(r"^### [^\n]+", text, re.M))
    score += 3 if has_h2 and has_h3 else 1.5 if has_h2 or has_h3 else 0

    sections = len(re.findall(r"^#{1,3} ", text, re.M)) + len(re.findall(r"^.+\n[=-]{3,}", text, re.M))
    score += 3 if sections >= 4 else 1.5 if sections >= 2 else 0

    if re.search(r"^[-*•] ", text, re.M) or re.search(r"^\d+\. ", text, re.M) or re.search(r"^\|.*\|", text, re.M):
        score += 3
    return score


def analyze_semantic(html: str, rendered_text: str | None = None) -> float:
    """
    Heading, landmark and list structure out of SEMANTIC_MAX (3 points each).
    A client-rendered shell is judged from the proxy's rendered markdown.
    """
    soup = _soup(html)
    has_h1 = soup.find("h1") is not None
    has_h2 = soup.find("h2") is not None
    has_h3 = soup.find("h3") is not None
    landmarks = sum(1 for tag in SEMANTIC_TAGS if soup.find(tag) is not None)
    has_lists = soup.find(["ul", "ol"]) is not None

    if rendered_text and len(rendered_text) > 500 and len(_static_text(soup)) < 500:
        return _semantic_from_markdown(rendered_text)

    score = 3.0 if has_h1 else 0.0
    score += 3 if has_h2 and has_h3 else 1.5 if has_h2 or has_h3 else 0
    score += 3 if landmarks >= 4 else 1.5 if landmarks >= 2 else 0
    score += 3 if has_lists else 0
    return score


# --- images ---


def analyze_images(html: str) -> float:
    """Alt coverage (4) and descriptive alt text (4). A page without images scores 0."""
    images = _soup(html).find_all("img")
    if not images:
        return 0.0

    alts = [img.get("alt") for img in images]
    with_alt = sum(1 for alt in alts if alt is not None)
    descriptive = sum(1 for alt in alts if alt is not None and len(alt) > DESCRIPTIVE_ALT_CHARS)
    alt_share = with_alt / len(images)
    descriptive_share = descriptive / len(images)

    score = 4.0 if alt_share == 1 else 2.0 if alt_share >= 0.75 else 0.0
    score += 4 if descriptive_share >= 0.75 else 2 if descriptive_share >= 0.5 else 0
    return min(score, IMAGES_MAX)
