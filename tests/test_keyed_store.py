"""
Tests for the keyed stores and the store manager.
"""
import pytest

from conftest import make_report
from report_graph.keyed_store import InMemoryStore, ShelveStore, StoreManager


class TestInMemoryStore:
    def test_put_get_remove(self):
        store = InMemoryStore()
        store.put(1, "a")
        store.put(2, "b")
        assert store.get(1) == "a"
        assert store.get(3) is None
        assert store.get(3, "x") == "x"
        assert store.keys() == {1, 2}
        assert 2 in store and len(store) == 2
        assert store.remove(1)
        assert not store.remove(1)
        assert store.get_all([1, 2]) == {2: "b"}

    def test_remove_all(self):
        store = InMemoryStore()
        for i in range(5):
            store.put(i, i)
        store.remove_all()
        assert len(store) == 0

    def test_values_are_live_references(self):
        store = InMemoryStore()
        report = make_report(1)
        store.put(1, report)
        report.cluster_id = 4
        assert store.get(1).cluster_id == 4


class TestShelveStore:
    def test_values_survive_reopen(self, tmp_path):
        path = str(tmp_path / "reports.db")
        store = ShelveStore("reports", path)
        store.put(10, make_report(10, category="graffiti"))
        store.put(11, make_report(11))
        store.close()

        reopened = ShelveStore("reports", path)
        assert reopened.keys() == {10, 11}
        assert reopened.get(10).category == "graffiti"
        assert reopened.remove(11)
        assert 11 not in reopened
        reopened.close()

    def test_mutation_needs_put(self, tmp_path):
        store = ShelveStore("reports", str(tmp_path / "reports.db"))
        store.put(1, make_report(1))
        report = store.get(1)
        report.cluster_id = 9
        assert store.get(1).cluster_id == -1
        store.put(1, report)
        assert store.get(1).cluster_id == 9
        store.close()


class TestStoreManager:
    def test_memory_manager(self):
        manager = StoreManager()
        store = manager.get_store("reports")
        assert manager.get_store("reports") is store
        assert isinstance(store, InMemoryStore)
        assert manager.store_exists("reports")
        assert not manager.store_exists("clusters")

    def test_missing_store_without_create(self, tmp_path):
        manager = StoreManager(str(tmp_path))
        with pytest.raises(KeyError):
            manager.get_store("nothing", create=False)

    def test_existing_store_is_found_on_disk(self, tmp_path):
        manager = StoreManager(str(tmp_path))
        manager.get_store("reports").put(1, "x")
        manager.close()

        reopened = StoreManager(str(tmp_path))
        assert "reports" in reopened.store_names()
        assert reopened.get_store("reports", create=False).get(1) == "x"
        reopened.close()

    def test_remove_all_stores(self, tmp_path):
        manager = StoreManager(str(tmp_path))
        manager.get_store("reports").put(1, "x")
        manager.get_store("clusters").put(2, "y")
        manager.remove_all_stores()
        assert manager.store_names() == []
        assert not manager.store_exists("reports")
