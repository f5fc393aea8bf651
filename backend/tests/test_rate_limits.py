"""rate_limits tests: client IP, cooldown, blog quota, industry average."""

import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

import rate_limits
from errors import BlogQuotaExceeded, ErrorType, UrlCooldownActive


class TestClientIp:
    def test_first_forwarded_hop(self):
        headers = {"x-forwarded-for": "203.0.113.9, 10.0.0.1", "x-real-ip": "10.0.0.2"}
        assert rate_limits.client_ip(headers, "127.0.0.1") == "203.0.113.9"

    def test_real_ip(self):
        assert rate_limits.client_ip({"x-real-ip": "198.51.100.4"}, "127.0.0.1") == "198.51.100.4"

    def test_peer_then_unknown(self):
        assert rate_limits.client_ip({}, "127.0.0.1") == "127.0.0.1"
        assert rate_limits.client_ip({}) == "unknown"


class TestCooldownBypass:
    @pytest.mark.parametrize(
        "website", ["https://foundindex.com/", "https://www.foundmvp.com/", "https://app.foundcandidate.com/"]
    )
    def test_owned_domains(self, website):
        assert rate_limits.is_cooldown_bypassed(website)

    def test_lookalike_not_bypassed(self):
        assert not rate_limits.is_cooldown_bypassed("https://notfoundindex.com/")


class TestUrlCooldown:
    def test_recent_test_raises_with_cached_result(self, db, make_record):
        record = make_record(age=timedelta(days=2), score=64)
        db.insert_test(record, "ip")

        with pytest.raises(UrlCooldownActive) as exc_info:
            rate_limits.check_url_cooldown("https://example.com/")

        payload = exc_info.value.to_payload()
        assert payload["error_type"] == ErrorType.RATE_LIMIT_URL.value
        assert payload["cached_test_id"] == record["testId"]
        assert payload["cached_score"] == 64
        assert payload["cached_created_at"] == record["createdAt"]
        expected_retest = datetime.fromisoformat(record["createdAt"]) + timedelta(days=7)
        assert payload["next_available_time"] == expected_retest.isoformat()
        assert payload["canRetestAt"] == payload["next_available_time"]
        assert payload["attempts_exhausted"] is False

    def test_old_test_allows(self, db, make_record):
        db.insert_test(make_record(age=timedelta(days=8)), "ip")
        rate_limits.check_url_cooldown("https://example.com/")

    def test_owned_domain_allows(self, db, make_record):
        db.insert_test(make_record(website="https://foundindex.com/"), "ip")
        rate_limits.check_url_cooldown("https://foundindex.com/")

    def test_store_failure_fails_open(self, db):
        with patch("database.latest_test_for_website", side_effect=sqlite3.OperationalError("locked")):
            rate_limits.check_url_cooldown("https://example.com/")

    def test_disabled(self, db, make_record):
        db.insert_test(make_record(), "ip")
        with patch("rate_limits.RATE_LIMITS_ENABLED", False):
            rate_limits.check_url_cooldown("https://example.com/")


class TestBlogQuota:
    IP = "198.51.100.7"

    def _fill(self, db, make_record, ages):
        records = [make_record(website=f"https://blog{i}.com/", test_type="blog", age=age) for i, age in enumerate(ages)]
        for record in records:
            db.insert_test(record, self.IP)
        return records

    def test_under_limit_allows(self, db, make_record):
        self._fill(db, make_record, [timedelta(days=1), timedelta(days=2)])
        rate_limits.check_blog_quota(self.IP)

    def test_limit_reached_resets_when_oldest_ages_out(self, db, make_record):
        records = self._fill(db, make_record, [timedelta(days=6), timedelta(days=3), timedelta(days=1)])

        with pytest.raises(BlogQuotaExceeded) as exc_info:
            rate_limits.check_blog_quota(self.IP)

        oldest = datetime.fromisoformat(records[0]["createdAt"])
        payload = exc_info.value.to_payload()
        assert payload["error_type"] == "RATE_LIMIT_IP"
        assert payload["next_available_time"] == (oldest + timedelta(days=7)).isoformat()
        assert "Homepage tests are unlimited" in payload["user_message"]

    def test_homepage_tests_do_not_count(self, db, make_record):
        for i in range(4):
            db.insert_test(make_record(website=f"https://home{i}.com/"), self.IP)
        rate_limits.check_blog_quota(self.IP)

    def test_other_ip_not_affected(self, db, make_record):
        self._fill(db, make_record, [timedelta(hours=1)] * 3)
        rate_limits.check_blog_quota("203.0.113.200")

    def test_usage(self, db, make_record):
        self._fill(db, make_record, [timedelta(days=2)])
        usage = rate_limits.blog_usage(self.IP)
        assert usage.used == 1
        assert usage.remaining == 2
        assert usage.reset_at is not None


class TestIndustryAverage:
    def test_default_with_few_samples(self, db, make_record):
        for score in (10, 20, 30, 40, 50):
            db.insert_test(make_record(score=score), "ip")
        assert rate_limits.industry_average("homepage") == 58

    def test_mean_with_enough_samples(self, db, make_record):
        for score in (60, 61, 62, 63, 64, 66):
            db.insert_test(make_record(score=score), "ip")
        assert rate_limits.industry_average("homepage") == 63

    def test_store_failure_uses_default(self):
        with patch("database.recent_scores", side_effect=sqlite3.OperationalError("no such table")):
            assert rate_limits.industry_average("blog") == 58

    def test_format_date_for_user(self):
        when = datetime(2026, 10, 5, 12, tzinfo=timezone.utc)
        assert rate_limits.format_date_for_user(when) == "October 5, 2026 (UTC)"
