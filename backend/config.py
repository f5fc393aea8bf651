"""Environment configuration and logging setup.

Settings live in a .env file in the backend root and are loaded with
python-dotenv. The Claude key itself is read at call time:

ANTHROPIC_API_KEY=your_real_key_here
"""

import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).resolve().parent
load_dotenv(dotenv_path=BACKEND_DIR / ".env")


def _env_flag(name: str, default: str = "1") -> bool:
    return os.getenv(name, default).strip().lower() not in {"0", "false", "no", "off"}


# --- Claude ---
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "").strip() or "claude-3-5-sonnet-latest"
CLAUDE_MAX_TOKENS = int(os.getenv("CLAUDE_MAX_TOKENS", "3200"))
CLAUDE_TEMPERATURE = float(os.getenv("CLAUDE_TEMPERATURE", "0.2"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

# --- Page fetching ---
FETCH_TIMEOUT_SECONDS = float(os.getenv("FETCH_TIMEOUT_SECONDS", "30"))
RENDER_PROXY_URL = os.getenv("RENDER_PROXY_URL", "https://r.jina.ai/").strip()
RENDER_PROXY_TIMEOUT_SECONDS = float(os.getenv("RENDER_PROXY_TIMEOUT_SECONDS", "30"))
USER_AGENT = "Mozilla/5.0 (compatible; FoundIndex-Bot/1.0; +https://foundindex.com)"

# Content thresholds, in characters. Product-tuned, not derived.
MIN_BODY_CHARS = 100
JS_RENDERED_TEXT_CHARS = 500
MIN_ANALYZABLE_TEXT_CHARS = 200
MAX_PROMPT_CHARS = 50_000

# --- Storage ---
DB_PATH = Path(os.getenv("FOUNDINDEX_DB_PATH", "").strip() or BACKEND_DIR / "foundindex.db")

# --- Rate limiting ---
RATE_LIMITS_ENABLED = _env_flag("RATE_LIMITS_ENABLED")
URL_COOLDOWN_DAYS = 7
BLOG_TESTS_LIMIT = 3
BLOG_WINDOW_DAYS = 7
COOLDOWN_BYPASS_DOMAINS = ("foundindex.com", "foundmvp.com", "foundcandidate.com")

# --- HTTP ---
APP_VERSION = "1.0.0"
DEFAULT_INDUSTRY_AVERAGE = 58


def cors_allow_origins() -> list[str]:
    raw = os.getenv("FOUNDINDEX_CORS_ORIGINS", "").strip()
    if not raw:
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def setup_logging() -> None:
    """Configure root logging once for the API process."""
    level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
