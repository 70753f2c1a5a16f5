import os
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from pettapp.config import Settings
from pettapp.db.sqlite_store import SqliteDocumentStore
from pettapp.main import create_app

MANILA = (14.5995, 120.9842)
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def point(latitude, longitude):
    return {"type": "Point", "coordinates": [longitude, latitude]}


def business_doc(name, location=None, minutes=0, **overrides):
    doc = {
        "ownerId": "owner_1",
        "businessName": name,
        "businessType": "veterinary",
        "description": f"{name} description",
        "contactInfo": {"email": "hello@example.com", "phone": "+63 900 000 0000"},
        "address": {"street": "1 Rizal Ave", "city": "Manila", "state": "NCR", "zipCode": "1000", "country": "Philippines"},
        "ratings": {"averageRating": 4.5, "totalReviews": 10},
        "isVerified": True,
        "isActive": True,
        "createdAt": BASE_TIME + timedelta(minutes=minutes),
        "updatedAt": BASE_TIME + timedelta(minutes=minutes),
    }
    if location is not None:
        doc["address"]["coordinates"] = point(*location)
    doc.update(overrides)
    return doc


def service_doc(name, business_id, location=None, minutes=0, **overrides):
    doc = {
        "businessId": business_id,
        "name": name,
        "category": "grooming",
        "description": f"{name} description",
        "duration": 60,
        "price": {"amount": 500.0, "currency": "PHP"},
        "availability": {"days": ["monday"], "timeSlots": [{"start": "09:00", "end": "17:00"}]},
        "requirements": {"petTypes": ["dog"], "healthRequirements": []},
        "isActive": True,
        "createdAt": BASE_TIME + timedelta(minutes=minutes),
        "updatedAt": BASE_TIME + timedelta(minutes=minutes),
    }
    if location is not None:
        doc["location"] = {"coordinates": point(*location)}
    doc.update(overrides)
    return doc


@pytest.fixture
def settings():
    return Settings(store_backend="sqlite")


@pytest.fixture
def store(tmp_path):
    with SqliteDocumentStore(db_path=str(tmp_path / "pettapp.sqlite3")) as handle:
        yield handle


@pytest.fixture
def indexed_store(store):
    store.create_geo_index("businesses", "address.coordinates", sparse=True)
    store.create_geo_index("services", "location.coordinates", sparse=True)
    return store


@pytest.fixture
def client(indexed_store, settings):
    app = create_app(store=indexed_store, settings=settings)
    with TestClient(app) as test_client:
        yield test_client
