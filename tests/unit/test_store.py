"""Unit tests for src/leaselock/store.py."""

import pytest

from leaselock.errors import DuplicateKeyError, StoreError
from leaselock.store import InMemoryStore, apply_update, matches, validate_query, validate_update


DOC = {"name": "jobs", "code": "abc", "expire": 2000, "inserted": 1000}


class TestMatches:
    def test_equality(self):
        assert matches(DOC, {"name": "jobs"}) is True
        assert matches(DOC, {"name": "other"}) is False

    def test_equality_on_missing_field(self):
        assert matches(DOC, {"expired": 5}) is False

    def test_lt_gt_are_strict(self):
        assert matches(DOC, {"expire": {"$lt": 2001}}) is True
        assert matches(DOC, {"expire": {"$lt": 2000}}) is False
        assert matches(DOC, {"expire": {"$gt": 1999}}) is True
        assert matches(DOC, {"expire": {"$gt": 2000}}) is False

    def test_range_on_missing_field(self):
        assert matches(DOC, {"expired": {"$lt": 10}}) is False

    def test_exists(self):
        assert matches(DOC, {"expired": {"$exists": False}}) is True
        assert matches(DOC, {"code": {"$exists": True}}) is True
        assert matches(DOC, {"code": {"$exists": False}}) is False

    def test_all_terms_must_hold(self):
        query = {"name": "jobs", "code": "abc", "expire": {"$gt": 1500}}
        assert matches(DOC, query) is True
        assert matches(DOC, dict(query, code="xyz")) is False


class TestApplyUpdate:
    def test_set_and_inc(self):
        updated = apply_update(DOC, {"$set": {"name": "jobs:5"}, "$inc": {"expire": 500}})
        assert updated["name"] == "jobs:5"
        assert updated["expire"] == 2500
        # original untouched
        assert DOC["name"] == "jobs"

    def test_inc_missing_field_starts_at_zero(self):
        assert apply_update(DOC, {"$inc": {"count": 2}})["count"] == 2


class TestValidation:
    @pytest.mark.parametrize("query", [{}, None, {"expire": {"$lte": 1}}, {"expire": {}}])
    def test_bad_query(self, query):
        with pytest.raises(StoreError):
            validate_query(query)

    @pytest.mark.parametrize("update", [{}, {"$unset": {"a": 1}}, {"$set": {}}, {"$set": 5}])
    def test_bad_update(self, update):
        with pytest.raises(StoreError):
            validate_update(update)


class TestInMemoryStore:
    def test_insert_and_find(self):
        store = InMemoryStore()
        store.insert(dict(DOC))
        assert store.find({"name": "jobs"}) == [DOC]

    def test_returns_copies(self):
        store = InMemoryStore()
        store.insert(dict(DOC))
        store.find({"name": "jobs"})[0]["code"] = "mutated"
        assert store.find({"name": "jobs"})[0]["code"] == "abc"

    def test_no_uniqueness_without_index(self):
        store = InMemoryStore()
        store.insert(dict(DOC))
        store.insert(dict(DOC))
        assert len(store.find({"name": "jobs"})) == 2

    def test_unique_index_rejects_duplicate(self):
        store = InMemoryStore()
        store.ensure_unique_index("name")
        store.insert(dict(DOC))
        with pytest.raises(DuplicateKeyError):
            store.insert(dict(DOC, code="other"))
        assert len(store.find({"name": "jobs"})) == 1

    def test_ensure_index_idempotent(self):
        store = InMemoryStore()
        store.insert(dict(DOC))
        store.ensure_unique_index("name")
        store.ensure_unique_index("name")
        with pytest.raises(DuplicateKeyError):
            store.insert(dict(DOC))

    def test_ensure_index_fails_on_existing_duplicates(self):
        store = InMemoryStore()
        store.insert(dict(DOC))
        store.insert(dict(DOC))
        with pytest.raises(StoreError):
            store.ensure_unique_index("name")

    def test_find_one_and_update_returns_old_document(self):
        store = InMemoryStore()
        store.insert(dict(DOC))
        old = store.find_one_and_update({"code": "abc"}, {"$inc": {"expire": 100}})
        assert old == DOC
        assert store.find({"code": "abc"})[0]["expire"] == 2100

    def test_find_one_and_update_no_match(self):
        store = InMemoryStore()
        store.insert(dict(DOC))
        assert store.find_one_and_update({"code": "nope"}, {"$inc": {"expire": 100}}) is None
        assert store.find({"code": "abc"}) == [DOC]

    def test_rename_into_taken_key_is_rejected(self):
        store = InMemoryStore()
        store.ensure_unique_index("name")
        store.insert(dict(DOC))
        store.insert(dict(DOC, name="jobs:1", code="old"))
        with pytest.raises(DuplicateKeyError):
            store.find_one_and_update({"code": "abc"}, {"$set": {"name": "jobs:1"}})
        assert store.find({"code": "abc"})[0]["name"] == "jobs"

    def test_rename_frees_key(self):
        store = InMemoryStore()
        store.ensure_unique_index("name")
        store.insert(dict(DOC))
        store.find_one_and_update({"name": "jobs"}, {"$set": {"name": "jobs:1", "expired": 1}})
        store.insert(dict(DOC, code="new"))
        assert [d["code"] for d in store.find({"name": "jobs"})] == ["new"]

    def test_malformed_query(self):
        store = InMemoryStore()
        with pytest.raises(StoreError):
            store.find_one_and_update({"expire": {"$regex": "x"}}, {"$set": {"a": 1}})
