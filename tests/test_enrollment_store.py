"""
Tests for the Enrollment Store module.

This test suite verifies:
- Save/load of the single enrolled template
- Overwrite on re-enrollment
- Consistency of the enrolled flag with the descriptor
- Corrupt stored data is treated as absent

Run with: pytest tests/test_enrollment_store.py -v
"""

import json
import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceid.enrollment_store import EnrollmentStore
from faceid.repository import (
    DESCRIPTOR_KEY,
    ENROLLED_AT_KEY,
    ENROLLED_FLAG_KEY,
    InMemoryAuthRepository,
)
from fakes import BASE_TIME, MutableClock, make_descriptor


@pytest.fixture
def repo():
    return InMemoryAuthRepository()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def store(repo, clock):
    return EnrollmentStore(repo, clock=clock)


class TestEnrollmentStore:
    """Tests for EnrollmentStore."""

    def test_empty_store(self, store):
        assert not store.exists()
        assert store.load() is None
        assert store.enrolled_at() is None

    def test_save_and_load(self, store):
        """Test that a saved descriptor loads back with its timestamp."""
        template = store.save(make_descriptor())

        assert template.enrolled_at == BASE_TIME
        assert store.exists()

        loaded = store.load()
        assert loaded is not None
        assert loaded.descriptor == make_descriptor()
        assert loaded.enrolled_at == BASE_TIME

    def test_save_writes_all_keys_together(self, repo, store):
        store.save(make_descriptor())
        data = repo.snapshot()

        assert data[ENROLLED_FLAG_KEY] == "true"
        assert data[ENROLLED_AT_KEY] == BASE_TIME.isoformat()
        assert json.loads(data[DESCRIPTOR_KEY]) == make_descriptor().to_list()

    def test_reenrollment_overwrites(self, store, clock):
        store.save(make_descriptor())
        clock.advance(minutes=10)
        store.save(make_descriptor(offset=50.0))

        loaded = store.load()
        assert loaded.descriptor == make_descriptor(offset=50.0)
        assert loaded.enrolled_at == clock.now

    def test_clear(self, store):
        store.save(make_descriptor())
        store.clear()

        assert not store.exists()
        assert store.load() is None

    def test_flag_without_descriptor_is_not_enrolled(self, repo, store):
        repo.set(ENROLLED_FLAG_KEY, "true")
        assert not store.exists()
        assert store.load() is None

    def test_descriptor_without_flag_is_not_enrolled(self, repo, store):
        repo.set(DESCRIPTOR_KEY, json.dumps(make_descriptor().to_list()))
        assert not store.exists()
        assert store.load() is None

    def test_corrupt_descriptor_loads_as_none(self, repo, store):
        store.save(make_descriptor())
        repo.set(DESCRIPTOR_KEY, "{not json")
        assert store.load() is None

    def test_wrong_shape_loads_as_none(self, repo, store):
        store.save(make_descriptor())
        repo.set(DESCRIPTOR_KEY, json.dumps([[1.0, 2.0]]))
        assert store.load() is None

    def test_bad_timestamp_keeps_descriptor(self, repo, store):
        store.save(make_descriptor())
        repo.set(ENROLLED_AT_KEY, "yesterday")

        loaded = store.load()
        assert loaded is not None
        assert loaded.descriptor == make_descriptor()
