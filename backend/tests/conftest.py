"""Shared fixtures: a throwaway SQLite store per test."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

import database


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_PATH", tmp_path / "foundindex-test.db")
    database.init_db()
    return database


@pytest.fixture
def make_record():
    """Build a stored-test dict; ``age`` backdates createdAt."""

    def _make(website="https://example.com/", test_type="homepage", score=58, age=timedelta(0), **overrides):
        record = {
            "testId": str(uuid.uuid4()),
            "website": website,
            "testType": test_type,
            "detectedType": test_type,
            "score": score,
            "grade": "F",
            "categories": {"contentClarity": {"score": score, "max": 100, "percentage": score}},
            "recommendations": [],
            "createdAt": (datetime.now(timezone.utc) - age).isoformat(timespec="microseconds"),
        }
        record.update(overrides)
        return record

    return _make
