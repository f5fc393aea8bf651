"""Website URL validation and normalization.

Runs before anything touches the network: free-form user input is reduced
to ``scheme://hostname/`` or rejected with a suggested correction.
"""

import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from errors import UrlValidationError, ValidationErrorKind

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z\d+.-]*://")
_HOSTNAME_RE = re.compile(r"^[a-z0-9_-]+(\.[a-z0-9_-]+)+$")


@dataclass(frozen=True)
class NormalizedUrl:
    """An absolute website URL reduced to its origin."""

    scheme: str
    hostname: str
    path: str = "/"

    def __str__(self) -> str:
        return f"{self.scheme}://{self.hostname}{self.path}"

    @property
    def display(self) -> str:
        return self.hostname


def _malformed(trimmed: str) -> UrlValidationError:
    suggestion = f"{trimmed}.com" if "." not in trimmed else None
    return UrlValidationError(
        ValidationErrorKind.MALFORMED,
        "Please enter a valid website URL (e.g., example.com)",
        suggestion,
    )


def normalize_url(raw: str) -> NormalizedUrl:
    """Return the canonical origin for ``raw`` or raise ``UrlValidationError``."""
    if not raw or not raw.strip():
        raise UrlValidationError(ValidationErrorKind.EMPTY, "Please enter a website URL")

    trimmed = raw.strip()
    if re.search(r"\s", trimmed):
        raise UrlValidationError(
            ValidationErrorKind.SPACES,
            "Website URLs cannot contain spaces",
            re.sub(r"\s+", "", raw),
        )

    url = trimmed.lstrip(".")
    if _SCHEME_RE.match(url):
        if not url.lower().startswith(("http://", "https://")):
            raise _malformed(trimmed)
    else:
        url = "https://" + url

    try:
        parts = urlsplit(url)
        hostname = parts.hostname or ""
        # Accessing .port validates it.
        parts.port
    except ValueError:
        raise _malformed(trimmed) from None

    if hostname.endswith(".") and not hostname.endswith(".."):
        hostname = hostname[:-1]
    if not hostname:
        raise _malformed(trimmed)

    if "." not in hostname:
        raise UrlValidationError(
            ValidationErrorKind.MISSING_TLD,
            "Invalid domain format. Did you forget .com?",
            hostname + ".com",
        )

    if ".." in hostname:
        raise UrlValidationError(
            ValidationErrorKind.DOUBLE_DOT,
            "Invalid URL format - double dots detected",
            re.sub(r"\.{2,}", ".", hostname).strip("."),
        )

    try:
        ascii_host = hostname.encode("idna").decode("ascii").lower()
    except UnicodeError:
        raise _malformed(trimmed) from None
    if not _HOSTNAME_RE.match(ascii_host):
        raise _malformed(trimmed)

    return NormalizedUrl(scheme=parts.scheme.lower(), hostname=ascii_host)


def error_message(error: UrlValidationError) -> dict[str, str]:
    """Inline title/description for a validation failure."""
    if error.kind is ValidationErrorKind.SPACES:
        return {
            "title": "Spaces in URL",
            "description": f'URLs cannot contain spaces. Did you mean "{error.suggestion}"?',
        }
    if error.kind is ValidationErrorKind.MISSING_TLD:
        return {
            "title": "Missing domain extension",
            "description": f'Did you mean "{error.suggestion}"?',
        }
    if error.kind is ValidationErrorKind.DOUBLE_DOT:
        return {"title": "Invalid URL format", "description": error.message}
    if error.kind is ValidationErrorKind.EMPTY:
        return {"title": "Website required", "description": error.message}
    return {"title": "Invalid URL", "description": error.message}
