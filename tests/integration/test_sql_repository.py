"""
Integration test: SQLAlchemy document repository on a file-backed SQLite database.
"""
from __future__ import annotations

import pytest

from packages.db.database import build_engine, build_session_factory, normalize_database_url
from packages.db.field_ops import ArrayUnion, Increment
from packages.db.sql_repository import SqlDocumentRepository
from packages.shared.errors import PersistenceFailure, RecordNotFound, TransactionConflict


def _factory(tmp_path, create_tables=True):
    return build_session_factory(build_engine(f"sqlite:///{tmp_path / 'docs.db'}"), create_tables=create_tables)


def test_postgres_scheme_is_rewritten():
    assert normalize_database_url("postgres://u:p@db/x") == "postgresql://u:p@db/x"
    assert normalize_database_url("sqlite:///a.db") == "sqlite:///a.db"


@pytest.fixture
def repo(tmp_path):
    return SqlDocumentRepository(session_factory=_factory(tmp_path), backoff_seconds=0)


class TestDocuments:

    def test_set_get_roundtrip_keeps_unicode(self, repo):
        repo.set("patients", "c1_NP_王小明", {"name": "王小明", "visits": [{"amount": 100}]})
        assert repo.get("patients", "c1_NP_王小明") == {"name": "王小明", "visits": [{"amount": 100}]}

    def test_merge_applies_field_ops(self, repo):
        repo.set("patients", "p", {"total": 1000, "tags": ["a"]})
        repo.set("patients", "p", {"total": Increment(500), "tags": ArrayUnion("a", "b")}, merge=True)
        assert repo.get("patients", "p") == {"total": 1500, "tags": ["a", "b"]}

    def test_update_missing_document(self, repo):
        with pytest.raises(RecordNotFound):
            repo.update("patients", "missing", {"x": 1})

    def test_delete(self, repo):
        repo.set("patients", "p", {"x": 1})
        repo.delete("patients", "p")
        assert repo.get("patients", "p") is None

    def test_range_query_orders_by_key(self, repo):
        for day in ("2024-05-10", "2024-05-02", "2024-06-01"):
            repo.set("daily_accounting", f"c1_{day}", {"date": day})
        repo.set("daily_accounting", "c1_2024-05-05", {"date": "2024-05-05"})
        keys = [k for k, _ in repo.range_query("daily_accounting", "c1_2024-05-01", "c1_2024-05-31")]
        assert keys == ["c1_2024-05-02", "c1_2024-05-05", "c1_2024-05-10"]

    def test_failed_transaction_writes_nothing(self, repo):
        def _fn(txn):
            txn.set("docs", "a", {"v": 1})
            raise ValueError("boom")

        with pytest.raises(ValueError):
            repo.run_transaction(_fn)
        assert repo.get("docs", "a") is None


class TestConcurrency:

    def test_conflicting_write_reruns_transaction(self, repo):
        repo.set("docs", "a", {"v": 1})
        seen = []

        def _fn(txn):
            doc = txn.get("docs", "a")
            seen.append(doc["v"])
            if len(seen) == 1:
                # Another writer lands between our read and our commit.
                repo.set("docs", "a", {"v": 10})
            txn.set("docs", "a", {"v": doc["v"] + 1})

        repo.run_transaction(_fn)

        assert seen == [1, 10]
        assert repo.get("docs", "a") == {"v": 11}

    def test_conflicts_give_up_after_max_attempts(self, repo):
        repo.set("docs", "a", {"v": 0})

        def _fn(txn):
            doc = txn.get("docs", "a")
            repo.set("docs", "a", {"v": doc["v"] + 100})
            txn.set("docs", "a", {"v": -1})

        with pytest.raises(TransactionConflict):
            repo.run_transaction(_fn, max_attempts=2)
        assert repo.get("docs", "a") == {"v": 200}

    def test_concurrent_create_conflicts(self, repo):
        seen = []

        def _fn(txn):
            created = txn.create("docs", "new", {"owner": "second"})
            seen.append(created)
            if len(seen) == 1:
                repo.set("docs", "new", {"owner": "first"})

        repo.run_transaction(_fn)

        assert seen == [True, False]
        assert repo.get("docs", "new") == {"owner": "first"}


def test_missing_table_surfaces_persistence_failure(tmp_path):
    repo = SqlDocumentRepository(session_factory=_factory(tmp_path, create_tables=False),
                                 retry_attempts=2, backoff_seconds=0)
    with pytest.raises(PersistenceFailure) as exc:
        repo.get("docs", "a")
    assert exc.value.collection == "docs"
