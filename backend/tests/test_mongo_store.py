import os
import sys
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from pymongo import errors as mongo_errors

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from pettapp.db.base import GeoNear, IndexInfo
from pettapp.db.mongo_store import MongoDocumentStore, build_geo_near_pipeline
from pettapp.errors import ConflictError, GeoIndexMissingError, InvalidDocumentError, StoreUnavailableError
from pettapp.services.directory import Directory
from pettapp.services.geo_query import BUSINESS, build_search_query

OID = "65a1b2c3d4e5f60718293a4b"
GEO = GeoNear(
    key="address.coordinates",
    near={"type": "Point", "coordinates": [120.9842, 14.5995]},
    max_distance_m=5000,
)


def _store():
    client = MagicMock()
    collection = client.__getitem__.return_value.__getitem__.return_value
    return MongoDocumentStore(client, "pettapp-test"), client, collection


def test_geo_near_pipeline_shape():
    pipeline = build_geo_near_pipeline(GEO, {"isActive": True}, skip=24, limit=12)
    assert pipeline[0] == {
        "$geoNear": {
            "near": {"type": "Point", "coordinates": [120.9842, 14.5995]},
            "key": "address.coordinates",
            "distanceField": "distance",
            "maxDistance": 5000,
            "spherical": True,
            "query": {"isActive": True},
        }
    }
    assert pipeline[1] == {"$sort": {"distance": 1, "_id": 1}}
    assert pipeline[2]["$facet"]["data"] == [{"$skip": 24}, {"$limit": 12}]
    assert pipeline[2]["$facet"]["total"] == [{"$count": "count"}]


def test_directory_sends_longitude_first_and_meters():
    store, _, collection = _store()
    collection.aggregate.return_value = [{"data": [], "total": []}]
    query = build_search_query(BUSINESS, latitude=14.5995, longitude=120.9842, radius=5)
    page = Directory(store).search_businesses(query)
    assert page.items == []
    assert page.total == 0
    stage = collection.aggregate.call_args[0][0][0]["$geoNear"]
    assert stage["near"]["coordinates"] == [120.9842, 14.5995]
    assert stage["maxDistance"] == 5000
    assert stage["query"]["isVerified"] is True


def test_geo_near_page_reads_facet():
    store, _, collection = _store()
    collection.aggregate.return_value = [
        {"data": [{"_id": ObjectId(OID), "businessName": "Vet", "distance": 12.5}], "total": [{"count": 31}]}
    ]
    documents, total = store.geo_near_page("businesses", GEO, {}, 0, 12)
    assert total == 31
    assert documents == [{"_id": OID, "businessName": "Vet", "distance": 12.5}]


def test_geo_near_page_without_index_raises():
    store, _, collection = _store()
    collection.aggregate.side_effect = mongo_errors.OperationFailure(
        "$geoNear requires a 2d or 2dsphere index, but none were found", code=291
    )
    with pytest.raises(GeoIndexMissingError):
        store.geo_near_page("businesses", GEO, {}, 0, 12)


def test_connection_failures_are_unavailable():
    store, _, collection = _store()
    collection.find.side_effect = mongo_errors.ServerSelectionTimeoutError("localhost:27017: connection refused")
    with pytest.raises(StoreUnavailableError):
        store.find_page("businesses", {}, [("createdAt", -1)], 0, 12)
    collection.count_documents.side_effect = mongo_errors.AutoReconnect("reset")
    with pytest.raises(StoreUnavailableError):
        store.count_documents("businesses", {})


def test_ping_uses_admin_command():
    store, client, _ = _store()
    store.ping()
    client.admin.command.assert_called_once_with("ping")
    client.admin.command.side_effect = mongo_errors.NetworkTimeout("timed out")
    with pytest.raises(StoreUnavailableError):
        store.ping()


def test_find_document_converts_object_ids():
    store, _, collection = _store()
    collection.find_one.return_value = {"_id": ObjectId(OID), "name": "Bath"}
    assert store.find_document("services", OID) == {"_id": OID, "name": "Bath"}
    collection.find_one.assert_called_once_with({"_id": ObjectId(OID)})

    collection.find_one.return_value = None
    assert store.find_document("services", "not-an-object-id") is None
    collection.find_one.assert_called_with({"_id": "not-an-object-id"})


def test_update_document_builds_set_and_unset():
    store, _, collection = _store()
    collection.update_one.return_value.matched_count = 1
    assert store.update_document(
        "services",
        OID,
        set_fields={"location.coordinates": {"type": "Point", "coordinates": [121.0, 14.6]}},
        unset_fields=["location.latitude", "location.longitude"],
    )
    collection.update_one.assert_called_once_with(
        {"_id": ObjectId(OID)},
        {
            "$set": {"location.coordinates": {"type": "Point", "coordinates": [121.0, 14.6]}},
            "$unset": {"location.latitude": "", "location.longitude": ""},
        },
    )
    collection.update_one.return_value.matched_count = 0
    assert store.update_document("services", OID, set_fields={"isActive": False}) is False


def test_geo_key_write_errors_are_invalid_documents():
    store, _, collection = _store()
    collection.insert_one.side_effect = mongo_errors.WriteError("Can't extract geo keys", code=16755)
    with pytest.raises(InvalidDocumentError):
        store.insert_document("businesses", {"address": {"coordinates": None}})


def test_list_indexes_parses_index_information():
    store, _, collection = _store()
    collection.index_information.return_value = {
        "_id_": {"key": [("_id", 1)], "v": 2},
        "address.coordinates_2dsphere": {"key": [("address.coordinates", "2dsphere")], "sparse": True},
    }
    indexes = store.list_indexes("businesses")
    assert indexes == [
        IndexInfo(name="_id_", key=(("_id", 1),), sparse=False),
        IndexInfo(name="address.coordinates_2dsphere", key=(("address.coordinates", "2dsphere"),), sparse=True),
    ]
    assert indexes[1].is_geo_on("address.coordinates")


def test_drop_index_treats_not_found_as_absent():
    store, _, collection = _store()
    assert store.drop_index("businesses", "address.coordinates_2dsphere") is True
    collection.drop_index.side_effect = mongo_errors.OperationFailure("index not found with name", code=27)
    assert store.drop_index("businesses", "address.coordinates_2dsphere") is False
    collection.drop_index.side_effect = mongo_errors.OperationFailure("not authorized", code=13)
    with pytest.raises(StoreUnavailableError):
        store.drop_index("businesses", "address.coordinates_2dsphere")


def test_create_geo_index_is_sparse_2dsphere():
    store, _, collection = _store()
    collection.create_index.return_value = "address.coordinates_2dsphere"
    assert store.create_geo_index("businesses", "address.coordinates") == "address.coordinates_2dsphere"
    collection.create_index.assert_called_once_with(
        [("address.coordinates", "2dsphere")],
        sparse=True,
        name="address.coordinates_2dsphere",
    )


def test_create_geo_index_errors():
    store, _, collection = _store()
    collection.create_index.side_effect = mongo_errors.OperationFailure("Index already exists", code=85)
    with pytest.raises(ConflictError):
        store.create_geo_index("businesses", "address.coordinates")
    collection.create_index.side_effect = mongo_errors.OperationFailure("Can't extract geo keys", code=16755)
    with pytest.raises(InvalidDocumentError):
        store.create_geo_index("businesses", "address.coordinates")


def test_locks_use_unique_ids():
    store, _, collection = _store()
    collection.find_one_and_delete.return_value = None
    assert store.acquire_lock("geo-migration:businesses", "host-a", ttl_seconds=60) is True
    inserted = collection.insert_one.call_args[0][0]
    assert inserted["_id"] == "geo-migration:businesses"
    assert inserted["holder"] == "host-a"
    assert (inserted["expiresAt"] - inserted["acquiredAt"]).total_seconds() == 60
    stale_filter = collection.find_one_and_delete.call_args[0][0]
    assert stale_filter["_id"] == "geo-migration:businesses"
    assert stale_filter["expiresAt"] == {"$lte": inserted["acquiredAt"]}

    collection.insert_one.side_effect = mongo_errors.DuplicateKeyError("duplicate key", code=11000)
    assert store.acquire_lock("geo-migration:businesses", "host-b") is False

    store.release_lock("geo-migration:businesses", "host-a")
    collection.delete_one.assert_called_once_with({"_id": "geo-migration:businesses", "holder": "host-a"})


def test_close_releases_client():
    store, client, _ = _store()
    with store:
        pass
    client.close.assert_called_once_with()


def test_break_lock_ignores_holder():
    store, _, collection = _store()
    collection.delete_one.return_value.deleted_count = 1
    assert store.break_lock("geo-migration:services") is True
    collection.delete_one.assert_called_once_with({"_id": "geo-migration:services"})

    collection.delete_one.return_value.deleted_count = 0
    assert store.break_lock("geo-migration:services") is False
