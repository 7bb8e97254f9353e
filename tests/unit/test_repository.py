"""
Unit tests for the in-memory document repository.
"""
import pytest

from packages.db.repository import InMemoryRepository
from packages.shared.errors import RecordNotFound


@pytest.fixture
def repo():
    return InMemoryRepository()


class TestBasicOperations:

    def test_get_missing_returns_none(self, repo):
        assert repo.get("docs", "k") is None

    def test_set_and_get_are_isolated_copies(self, repo):
        data = {"rows": [1]}
        repo.set("docs", "k", data)
        data["rows"].append(2)
        fetched = repo.get("docs", "k")
        fetched["rows"].append(3)
        assert repo.get("docs", "k") == {"rows": [1]}

    def test_update_requires_existing_document(self, repo):
        with pytest.raises(RecordNotFound):
            repo.update("docs", "k", {"a": 1})

    def test_increment_and_union_append(self, repo):
        repo.increment("docs", "k", "total", 100)
        repo.increment("docs", "k", "total", 50)
        repo.union_append("docs", "k", "tags", ["a", "b"])
        repo.union_append("docs", "k", "tags", ["b", "c"])
        assert repo.get("docs", "k") == {"total": 150, "tags": ["a", "b", "c"]}

    def test_delete(self, repo):
        repo.set("docs", "k", {"a": 1})
        repo.delete("docs", "k")
        assert repo.get("docs", "k") is None


class TestQueries:

    def test_range_query_is_inclusive_and_ordered(self, repo):
        for day in ("2024-05-03", "2024-05-01", "2024-05-31", "2024-06-01"):
            repo.set("ledgers", f"c1_{day}", {"date": day})
        keys = [k for k, _ in repo.range_query("ledgers", "c1_2024-05-01", "c1_2024-05-31")]
        assert keys == ["c1_2024-05-01", "c1_2024-05-03", "c1_2024-05-31"]

    def test_query_prefix(self, repo):
        repo.set("patients", "c1_NP_A", {})
        repo.set("patients", "c1_1234_B", {})
        repo.set("patients", "c2_NP_A", {})
        keys = [k for k, _ in repo.query_prefix("patients", "c1_")]
        assert keys == ["c1_1234_B", "c1_NP_A"]


class TestTransactions:

    def test_writes_commit_together(self, repo):
        def _fn(txn):
            txn.set("docs", "a", {"v": 1})
            txn.set("docs", "b", {"v": 2})
            return "done"

        assert repo.run_transaction(_fn) == "done"
        assert repo.keys("docs") == ["a", "b"]

    def test_failure_discards_staged_writes(self, repo):
        def _fn(txn):
            txn.set("docs", "a", {"v": 1})
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            repo.run_transaction(_fn)
        assert repo.get("docs", "a") is None

    def test_reads_see_staged_writes(self, repo):
        def _fn(txn):
            txn.set("docs", "a", {"v": 1})
            txn.set("docs", "a", {"w": 2}, merge=True)
            txn.delete("docs", "b")
            return txn.get("docs", "a"), txn.get("docs", "b")

        repo.set("docs", "b", {"v": 0})
        staged, deleted = repo.run_transaction(_fn)
        assert staged == {"v": 1, "w": 2}
        assert deleted is None
        assert repo.get("docs", "b") is None

    def test_create_only_when_absent(self, repo):
        assert repo.run_transaction(lambda txn: txn.create("docs", "a", {"v": 1})) is True
        assert repo.run_transaction(lambda txn: txn.create("docs", "a", {"v": 2})) is False
        assert repo.get("docs", "a") == {"v": 1}
