"""url_validation tests."""

import pytest

from errors import UrlValidationError, ValidationErrorKind
from url_validation import error_message, normalize_url


def _error(raw: str) -> UrlValidationError:
    with pytest.raises(UrlValidationError) as exc_info:
        normalize_url(raw)
    return exc_info.value


class TestNormalizeUrl:
    def test_bare_domain_gets_https_and_root_path(self):
        assert str(normalize_url("slack.com")) == "https://slack.com/"

    def test_keeps_http_scheme(self):
        assert str(normalize_url("http://example.com")) == "http://example.com/"

    def test_strips_path_query_and_case(self):
        url = normalize_url("HTTPS://Example.COM/pricing?plan=pro#top")
        assert str(url) == "https://example.com/"
        assert url.hostname == "example.com"
        assert url.path == "/"

    def test_strips_leading_dots(self):
        assert str(normalize_url("..example.com")) == "https://example.com/"

    def test_trims_surrounding_whitespace(self):
        assert str(normalize_url("  example.org  ")) == "https://example.org/"

    @pytest.mark.parametrize(
        "raw",
        ["slack.com", "http://blog.example.co.uk/post/1", "HTTPS://WWW.EXAMPLE.COM", "sub-domain.example.io/"],
    )
    def test_idempotent(self, raw):
        first = normalize_url(raw)
        assert normalize_url(str(first)) == first


class TestValidationErrors:
    @pytest.mark.parametrize("raw", ["", "   ", "\t\n"])
    def test_empty(self, raw):
        assert _error(raw).kind is ValidationErrorKind.EMPTY

    def test_spaces_suggestion_removes_all_whitespace(self):
        err = _error("my site .com")
        assert err.kind is ValidationErrorKind.SPACES
        assert err.suggestion == "mysite.com"

    def test_tab_counts_as_space(self):
        err = _error("my\tsite.com")
        assert err.kind is ValidationErrorKind.SPACES
        assert err.suggestion == "mysite.com"

    def test_missing_tld(self):
        err = _error("localhost")
        assert err.kind is ValidationErrorKind.MISSING_TLD
        assert err.suggestion == "localhost.com"

    def test_double_dot(self):
        err = _error("example..com")
        assert err.kind is ValidationErrorKind.DOUBLE_DOT
        assert err.suggestion == "example.com"

    def test_unsupported_scheme_is_malformed(self):
        err = _error("ftp://example.com")
        assert err.kind is ValidationErrorKind.MALFORMED
        assert err.suggestion is None

    def test_bad_port_is_malformed(self):
        assert _error("example.com:99999").kind is ValidationErrorKind.MALFORMED

    def test_illegal_characters_are_malformed(self):
        assert _error("exa$mple.com").kind is ValidationErrorKind.MALFORMED


class TestErrorMessage:
    def test_spaces_message_offers_suggestion(self):
        message = error_message(_error("my site.com"))
        assert message["title"] == "Spaces in URL"
        assert '"mysite.com"' in message["description"]

    def test_missing_tld_message(self):
        message = error_message(_error("foundindex"))
        assert message["description"] == 'Did you mean "foundindex.com"?'
