"""database tests against a temporary SQLite file."""

from datetime import datetime, timedelta, timezone

INTERPRETATION = {
    "interpretation": "AI reads your site as: A payroll company helping founders solve payroll by automation.",
    "industry": "payroll",
    "audience": "founders",
    "problem": "payroll",
    "solution": "automation",
    "confidenceScore": 80,
    "confidenceBreakdown": {"hasAudience": True, "hasProblem": True, "hasSolution": True, "isSpecific": False},
}


class TestTestHistory:
    def test_insert_and_get(self, db, make_record):
        record = make_record(score=72, grade="C")
        db.insert_test(record, "203.0.113.5")

        assert db.get_test(record["testId"]) == record

    def test_get_missing(self, db):
        assert db.get_test("00000000-0000-0000-0000-000000000000") is None

    def test_latest_for_website(self, db, make_record):
        older = make_record(age=timedelta(days=3), score=40)
        newer = make_record(age=timedelta(hours=1), score=65)
        other = make_record(website="https://other.com/")
        for record in (older, newer, other):
            db.insert_test(record, "203.0.113.5")

        assert db.latest_test_for_website("https://example.com/")["testId"] == newer["testId"]
        assert db.latest_test_for_website("https://unknown.com/") is None

    def test_recent_scores_by_detected_type(self, db, make_record):
        db.insert_test(make_record(score=40), "ip")
        db.insert_test(make_record(score=90, age=timedelta(days=45)), "ip")
        db.insert_test(make_record(score=70, test_type="blog"), "ip")

        since = datetime.now(timezone.utc) - timedelta(days=30)
        assert db.recent_scores("homepage", since) == [40]

    def test_whole_second_timestamp_inside_window(self, db, make_record):
        db.insert_test(make_record(score=77, createdAt="2026-05-10T08:00:00+00:00"), "ip")

        since = datetime(2026, 5, 10, 7, 59, 59, 900000, tzinfo=timezone.utc)
        assert db.recent_scores("homepage", since) == [77]

    def test_timestamps_stored_in_utc_with_microseconds(self, db, make_record):
        record = make_record(createdAt="2026-05-10T10:00:00+02:00")
        db.insert_test(record, "ip")

        assert db.get_test(record["testId"])["createdAt"] == "2026-05-10T08:00:00.000000+00:00"

    def test_to_timestamp_is_fixed_width(self, db):
        assert db.to_timestamp(datetime(2026, 5, 10, 8, tzinfo=timezone.utc)) == "2026-05-10T08:00:00.000000+00:00"
        assert db.to_timestamp(datetime(2026, 5, 10, 8, 0, 0, 5)) == "2026-05-10T08:00:00.000005+00:00"


class TestSubmissions:
    def test_blog_times_filter_ip_type_and_window(self, db, make_record):
        now = datetime.now(timezone.utc)
        db.insert_test(make_record(test_type="blog", age=timedelta(days=2)), "198.51.100.1")
        db.insert_test(make_record(test_type="blog", age=timedelta(days=10)), "198.51.100.1")
        db.insert_test(make_record(test_type="homepage"), "198.51.100.1")
        db.insert_test(make_record(test_type="blog"), "198.51.100.2")

        times = db.blog_test_times_since("198.51.100.1", now - timedelta(days=7))

        assert len(times) == 1
        assert now - times[0] > timedelta(days=1)

    def test_blog_window_edge_with_whole_second(self, db, make_record):
        db.insert_test(make_record(test_type="blog", createdAt="2026-05-10T08:00:00+00:00"), "198.51.100.9")

        times = db.blog_test_times_since("198.51.100.9", datetime(2026, 5, 10, 7, 59, 59, 500000, tzinfo=timezone.utc))

        assert times == [datetime(2026, 5, 10, 8, tzinfo=timezone.utc)]


class TestInterpretations:
    def test_roundtrip_and_feedback(self, db, make_record):
        record = make_record()
        db.insert_test(record, "ip")
        db.insert_interpretation(record["testId"], INTERPRETATION)

        stored = db.get_interpretation(record["testId"])
        assert stored["confidenceScore"] == 80
        assert stored["userFeedback"] is None

        assert db.update_interpretation_feedback(record["testId"], "close") is True
        assert db.get_interpretation(record["testId"])["userFeedback"] == "close"

    def test_feedback_without_interpretation(self, db):
        assert db.update_interpretation_feedback("00000000-0000-0000-0000-000000000000", "wrong") is False


class TestPing:
    def test_ping(self, db):
        assert db.ping() is True
