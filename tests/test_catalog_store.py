"""Tests for the catalog store and record validation."""

import numpy as np
import pytest

from shelf_search.catalog_store import CatalogStore, CatalogUnavailableError
from shelf_search.models import CatalogItem, InvalidRecordError, SCHEMA_VERSION
from shelf_search.vector_index import IndexMaintenanceCursor

from conftest import TEST_DIM


def _record(item_id="a1", **overrides):
    record = {
        "schemaVersion": SCHEMA_VERSION,
        "id": item_id,
        "type": "beer_photo",
        "filename": "black_horizon.jpg",
        "name": "Black Horizon Ale",
        "brand": "Horizon",
        "packSize": "12-pack",
        "dateAdded": "2025-07-23T10:00:00Z",
    }
    record.update(overrides)
    return record


class TestCatalogItemRecords:
    """Record validation at the store boundary."""

    def test_round_trip(self):
        item = CatalogItem.from_record(_record(), embedding=np.ones(TEST_DIM), dim=TEST_DIM)
        again = CatalogItem.from_record(item.to_record(), dim=TEST_DIM)
        assert again == item
        assert again.date_added.tzinfo is not None

    def test_missing_version_reads_as_current(self):
        record = _record()
        del record["schemaVersion"]
        assert CatalogItem.from_record(record, dim=TEST_DIM).name == "Black Horizon Ale"

    @pytest.mark.parametrize("overrides", [
        {"schemaVersion": 99},
        {"name": ""},
        {"brand": None},
        {"packSize": 12},
        {"dateAdded": "yesterday"},
        {"embedding": [1.0, 2.0]},
        {"embedding": [float("nan")] * TEST_DIM},
    ])
    def test_malformed_records_raise(self, overrides):
        with pytest.raises(InvalidRecordError):
            CatalogItem.from_record(_record(**overrides), dim=TEST_DIM)

    def test_non_dict_raises(self):
        with pytest.raises(InvalidRecordError):
            CatalogItem.from_record(["not", "a", "record"], dim=TEST_DIM)


class TestCatalogStore:
    """Tests for writes, change notification and pending listing."""

    def test_put_and_get(self, store, make_item):
        item = make_item()
        store.put(item, b"payload")
        assert store.get(item.item_id) == item
        assert store.payload(item.item_id) == b"payload"
        assert len(store) == 1

    def test_revisions_increase(self, store, make_item):
        item = make_item()
        first = store.put(item)
        second = store.put(item)
        assert second > first
        assert store.revision(item.item_id) == second

    def test_put_keeps_existing_payload(self, store, make_item):
        item = make_item()
        store.put(item, b"photo")
        store.put(item)
        assert store.payload(item.item_id) == b"photo"

    def test_wrong_dimension_rejected(self, store, make_item):
        with pytest.raises(ValueError, match="dimension"):
            store.put(make_item(embedding=np.ones(TEST_DIM + 1)))

    def test_listeners_notified(self, store, make_item):
        events = []
        store.add_listener(lambda change: events.append((change.kind, change.item_id)))
        item = make_item()
        store.put(item)
        store.delete(item.item_id)
        assert events == [("put", item.item_id), ("delete", item.item_id)]

    def test_failing_listener_does_not_break_writes(self, store, make_item):
        def broken(change):
            raise RuntimeError("listener bug")
        store.add_listener(broken)
        item = make_item()
        store.put(item)
        assert item.item_id in store

    def test_delete_missing_returns_false(self, store):
        assert store.delete("nope") is False

    def test_load_records_skips_malformed(self, store):
        accepted = store.load_records([_record("a1"), _record("a2", name=""), "garbage", _record("a3")])
        assert accepted == 2
        assert "a2" not in store
        assert {i.item_id for i in store.list_items()} == {"a1", "a3"}

    def test_list_items_by_type(self, store, make_item):
        store.put(make_item(name="Beer"))
        store.put(make_item(name="Cider", item_type="cider_photo"))
        assert [i.name for i in store.list_items("cider_photo")] == ["Cider"]

    def test_list_pending_respects_cursor(self, store, make_item):
        items = [make_item(name=f"Pack {i}") for i in range(5)]
        for item in items:
            store.put(item)
        cursor = IndexMaintenanceCursor()
        first = store.list_pending(3, cursor)
        assert [e.item.item_id for e in first] == [i.item_id for i in items[:3]]

        for entry in first:
            cursor.advance(entry.item.item_id, entry.revision, indexed=True)
        rest = store.list_pending(3, cursor)
        assert [e.item.item_id for e in rest] == [i.item_id for i in items[3:]]

    def test_re_put_makes_item_pending_again(self, store, make_item):
        item = make_item()
        store.put(item)
        cursor = IndexMaintenanceCursor()
        entry = store.list_pending(1, cursor)[0]
        cursor.advance(item.item_id, entry.revision, indexed=False)
        assert store.list_pending(1, cursor) == []
        store.put(item)
        assert len(store.list_pending(1, cursor)) == 1

    def test_closed_store_is_unavailable(self, store, make_item):
        store.close()
        with pytest.raises(CatalogUnavailableError):
            store.put(make_item())
        with pytest.raises(CatalogUnavailableError):
            store.get("anything")


class TestCatalogPersistence:

    def test_save_and_load(self, store, make_item, tmp_path):
        with_vector = make_item(name="Aether Brew", embedding=np.arange(TEST_DIM))
        without_vector = make_item(name="Black Horizon Ale")
        store.put(with_vector, b"\x89PNG fake")
        store.put(without_vector)
        store.save(str(tmp_path))

        loaded = CatalogStore.load(str(tmp_path))
        assert loaded.dim == TEST_DIM
        assert loaded.get(with_vector.item_id) == with_vector
        np.testing.assert_array_equal(loaded.get(with_vector.item_id).embedding, np.arange(TEST_DIM))
        assert loaded.get(without_vector.item_id).embedding is None
        assert loaded.payload(with_vector.item_id) == b"\x89PNG fake"
        assert loaded.revision(with_vector.item_id) == store.revision(with_vector.item_id)
        assert loaded.put(make_item()) > store.revision(without_vector.item_id)
