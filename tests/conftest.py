from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import create_token
from database import ensure_indexes, get_db
from identity import resolve_identity
from main import app


@pytest.fixture()
def mongo_db():
    mongo_client = mongomock.MongoClient()
    database = mongo_client["marketplace_test"]
    ensure_indexes(database)
    yield database
    mongo_client.close()


@pytest.fixture()
def client(mongo_db) -> TestClient:
    app.dependency_overrides[get_db] = lambda: mongo_db
    yield TestClient(app)
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def seller_id() -> str:
    return str(ObjectId())


@pytest.fixture()
def owner(seller_id):
    return resolve_identity(seller_id)


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_token({'sub': user_id})}"}


@pytest.fixture()
def headers(seller_id) -> dict:
    return auth_headers(seller_id)


def minutes_ago(minutes: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)
