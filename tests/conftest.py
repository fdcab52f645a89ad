"""Shared fixtures for the memorial service tests."""

import os
import tempfile
from pathlib import Path
from typing import Optional

import pytest

# Point settings at throwaway storage BEFORE importing application modules;
# config.settings, db.engine and the /media mount are built at import time.
_TMP = Path(tempfile.mkdtemp(prefix="memorial-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["MEDIA_DIR"] = str(_TMP / "media")
os.environ["MEDIA_BASE_URL"] = "/media"
os.environ["MAPBOX_ACCESS_TOKEN"] = "test-token"
os.environ["FRONTEND_ORIGIN"] = "http://localhost:3000"

from fastapi import Header  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
from auth import CurrentUser, get_current_user, get_optional_user  # noqa: E402
from db import Base, SessionLocal, engine  # noqa: E402
from errors import AuthError, ServiceError  # noqa: E402
from location import Place  # noqa: E402
from picker import registry  # noqa: E402
from storage import LocalBlobStore  # noqa: E402


class FakeGeocoder:
    """Stands in for the Mapbox geocoder; records every call."""

    def __init__(self, addresses=None, places=None, fail=False):
        self.addresses = addresses or {}
        self.places = places or {}
        self.fail = fail
        self.reverse_calls = []
        self.forward_calls = []

    def reverse(self, latitude, longitude):
        self.reverse_calls.append((latitude, longitude))
        if self.fail:
            raise ServiceError("Geocoding service is unavailable")
        return self.addresses.get((latitude, longitude))

    def forward(self, text):
        self.forward_calls.append(text)
        if self.fail:
            raise ServiceError("Geocoding service is unavailable")
        return list(self.places.get(text, []))


class SpyStore(LocalBlobStore):
    """Local blob store that remembers what it was asked to do."""

    def __init__(self, root, base_url="/media"):
        super().__init__(root=root, base_url=base_url)
        self.uploaded = []
        self.deleted = []

    def upload(self, path, data):
        url = super().upload(path, data)
        self.uploaded.append(url)
        return url

    def delete(self, url):
        self.deleted.append(url)
        super().delete(url)


@pytest.fixture(autouse=True)
def clean_state():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    registry._pickers.clear()
    yield
    registry._pickers.clear()


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(tmp_path):
    return SpyStore(root=tmp_path / "media")


@pytest.fixture
def geocoder():
    return FakeGeocoder(
        addresses={(40.7128, -74.006): "New York, New York, United States"},
        places={
            "Central Park": [
                Place(name="Central Park", address="Central Park, New York, United States",
                      latitude=40.7829, longitude=-73.9654),
            ],
        },
    )


@pytest.fixture
def alice():
    return CurrentUser(uid="alice", email="alice@example.com", display_name="Alice")


@pytest.fixture
def bob():
    return CurrentUser(uid="bob", email="bob.smith@example.com")


def _fake_user(authorization: Optional[str] = Header(default=None)):
    if not authorization or " " not in authorization:
        raise AuthError("You must be signed in.")
    uid = authorization.split(" ", 1)[1]
    return CurrentUser(uid=uid, email=f"{uid}@example.com", display_name=uid.title())


def _fake_optional_user(authorization: Optional[str] = Header(default=None)):
    if not authorization:
        return None
    return _fake_user(authorization)


@pytest.fixture
def client(geocoder, store):
    main.app.dependency_overrides[get_current_user] = _fake_user
    main.app.dependency_overrides[get_optional_user] = _fake_optional_user
    main.app.dependency_overrides[main.get_geocoder] = lambda: geocoder
    main.app.dependency_overrides[main.get_store] = lambda: store
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


