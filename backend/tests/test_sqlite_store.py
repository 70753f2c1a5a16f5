import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from conftest import MANILA, business_doc, point
from pettapp.db.base import GeoNear
from pettapp.db.sqlite_store import SqliteDocumentStore
from pettapp.errors import (
    ConflictError,
    GeoIndexMissingError,
    InvalidDocumentError,
    InvalidQueryError,
    StoreUnavailableError,
)

GEO_KEY = "address.coordinates"


def _near(latitude, longitude, radius_m):
    return GeoNear(key=GEO_KEY, near=point(latitude, longitude), max_distance_m=radius_m)


def test_insert_find_update_roundtrip(store):
    doc_id = store.insert_document("businesses", business_doc("Vet One", MANILA))
    loaded = store.find_document("businesses", doc_id)
    assert loaded["_id"] == doc_id
    assert loaded["address"]["coordinates"] == point(*MANILA)
    assert loaded["createdAt"].year == 2024

    assert store.update_document("businesses", doc_id, set_fields={"isVerified": False}, unset_fields=[GEO_KEY])
    loaded = store.find_document("businesses", doc_id)
    assert loaded["isVerified"] is False
    assert "coordinates" not in loaded["address"]
    assert store.update_document("businesses", "missing", set_fields={"x": 1}) is False
    assert store.find_document("businesses", "missing") is None


def test_duplicate_id_conflicts(store):
    store.insert_document("businesses", business_doc("Vet One", _id="b1"))
    with pytest.raises(ConflictError):
        store.insert_document("businesses", business_doc("Vet Two", _id="b1"))


def test_geo_search_requires_index(store):
    store.insert_document("businesses", business_doc("Vet One", MANILA))
    with pytest.raises(GeoIndexMissingError):
        store.geo_near_page("businesses", _near(*MANILA, 1000), {}, 0, 10)


def test_geo_search_rejects_invalid_center(indexed_store):
    bad = GeoNear(key=GEO_KEY, near={"type": "Point", "coordinates": [14.5995, 120.9842]}, max_distance_m=1000)
    with pytest.raises(InvalidQueryError):
        indexed_store.geo_near_page("businesses", bad, {}, 0, 10)


def test_geo_search_orders_by_distance_then_id(indexed_store):
    near_id = indexed_store.insert_document("businesses", business_doc("Near", (14.6085, 120.9842), _id="b-near"))
    indexed_store.insert_document("businesses", business_doc("Tie B", (14.6175, 120.9842), _id="tie-b"))
    indexed_store.insert_document("businesses", business_doc("Tie A", (14.6175, 120.9842), _id="tie-a"))
    indexed_store.insert_document("businesses", business_doc("Far", (14.7795, 120.9842), _id="far"))
    indexed_store.insert_document("businesses", business_doc("Nowhere", _id="nowhere"))

    documents, total = indexed_store.geo_near_page("businesses", _near(*MANILA, 5000), {}, 0, 10)
    assert total == 3
    assert [doc["_id"] for doc in documents] == [near_id, "tie-a", "tie-b"]
    assert documents[0]["distance"] == pytest.approx(1000.7, abs=5)

    page_two, total = indexed_store.geo_near_page("businesses", _near(*MANILA, 5000), {}, 2, 2)
    assert total == 3
    assert [doc["_id"] for doc in page_two] == ["tie-b"]


def test_geo_search_applies_filter(indexed_store):
    indexed_store.insert_document("businesses", business_doc("Groomer", MANILA, businessType="grooming"))
    vet_id = indexed_store.insert_document("businesses", business_doc("Vet", MANILA))
    documents, total = indexed_store.geo_near_page(
        "businesses", _near(*MANILA, 100), {"businessType": "veterinary"}, 0, 10
    )
    assert total == 1
    assert documents[0]["_id"] == vet_id
    assert documents[0]["distance"] == 0


def test_sparse_index_skips_missing_but_rejects_malformed(store):
    store.insert_document("businesses", business_doc("No location"))
    store.insert_document("businesses", business_doc("Legacy", address={"city": "Manila", "coordinates": {"latitude": 1, "longitude": 2}}))
    with pytest.raises(InvalidDocumentError):
        store.create_geo_index("businesses", GEO_KEY)
    assert not any(index.is_geo for index in store.list_indexes("businesses"))


def test_writes_of_malformed_points_are_rejected_while_indexed(indexed_store):
    doc_id = indexed_store.insert_document("businesses", business_doc("No location"))
    with pytest.raises(InvalidDocumentError):
        indexed_store.insert_document("businesses", business_doc("Zero", address={"coordinates": None}))
    with pytest.raises(InvalidDocumentError):
        indexed_store.update_document("businesses", doc_id, set_fields={GEO_KEY: {"latitude": 1, "longitude": 2}})
    assert "coordinates" not in indexed_store.find_document("businesses", doc_id)["address"]


def test_index_catalog(store):
    assert [index.name for index in store.list_indexes("businesses")] == ["_id_"]
    assert store.create_geo_index("businesses", GEO_KEY) == "address.coordinates_2dsphere"
    # Same definition again is a no-op.
    assert store.create_geo_index("businesses", GEO_KEY) == "address.coordinates_2dsphere"
    with pytest.raises(ConflictError):
        store.create_geo_index("businesses", GEO_KEY, sparse=False)

    geo = [index for index in store.list_indexes("businesses") if index.is_geo]
    assert len(geo) == 1
    assert geo[0].key == ((GEO_KEY, "2dsphere"),)
    assert geo[0].sparse is True

    assert store.drop_index("businesses", "address.coordinates_2dsphere") is True
    assert store.drop_index("businesses", "address.coordinates_2dsphere") is False
    with pytest.raises(ConflictError):
        store.drop_index("businesses", "_id_")


def test_maintenance_locks(store):
    assert store.acquire_lock("geo-migration:businesses", "host-a") is True
    assert store.acquire_lock("geo-migration:businesses", "host-b") is False
    store.release_lock("geo-migration:businesses", "host-b")
    assert store.acquire_lock("geo-migration:businesses", "host-b") is False
    store.release_lock("geo-migration:businesses", "host-a")
    assert store.acquire_lock("geo-migration:businesses", "host-b") is True


def test_find_page_and_count(store):
    for minutes in range(5):
        store.insert_document("businesses", business_doc(f"Vet {minutes}", minutes=minutes, _id=f"b{minutes}"))
    page = store.find_page("businesses", {"isActive": True}, [("createdAt", -1), ("_id", 1)], 1, 2)
    assert [doc["_id"] for doc in page] == ["b3", "b2"]
    assert store.count_documents("businesses", {"isActive": True}) == 5


def test_closed_store_is_unavailable(tmp_path):
    store = SqliteDocumentStore(db_path=str(tmp_path / "closed.sqlite3"))
    store.ping()
    store.close()
    with pytest.raises(StoreUnavailableError):
        store.ping()
    with pytest.raises(StoreUnavailableError):
        store.find_document("businesses", "b1")


def test_context_manager_closes(tmp_path):
    with SqliteDocumentStore(db_path=str(tmp_path / "scoped.sqlite3")) as store:
        store.insert_document("services", {"name": "Bath"})
    with pytest.raises(StoreUnavailableError):
        store.count_documents("services")


def test_expired_lock_is_taken_over_and_break_lock_clears_live_one(store):
    assert store.acquire_lock("geo-migration:services", "dead-host", ttl_seconds=0) is True
    assert store.acquire_lock("geo-migration:services", "host-a") is True
    assert store.acquire_lock("geo-migration:services", "host-b") is False

    assert store.break_lock("geo-migration:services") is True
    assert store.break_lock("geo-migration:services") is False
    assert store.acquire_lock("geo-migration:services", "host-b") is True
