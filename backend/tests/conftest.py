"""
Pytest fixtures: the real FastAPI app wired to an in-memory MongoDB double.
"""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from config import Settings
from enrichment import EnrichmentService
from errors import NotFound
from server import AppServices, create_app
from storage import Storage


class InMemoryFileStore:
    """Stands in for the GridFS-backed FileStore."""

    def __init__(self):
        self.files = {}

    async def put(self, filename, content, content_type, owner_id):
        self.files[filename] = (content, content_type)
        return f"/api/files/{filename}"

    async def get(self, filename):
        if filename not in self.files:
            raise NotFound("File not found")
        return self.files[filename]


@pytest.fixture
def settings():
    # No provider credentials: enrichment runs its fallback path
    return Settings()


@pytest.fixture
def mongo_db():
    return AsyncMongoMockClient()["reminisce_test"]


@pytest.fixture
def services(settings, mongo_db):
    storage = Storage(mongo_db, InMemoryFileStore(), timedelta(days=settings.session_ttl_days))
    return AppServices(settings, storage, EnrichmentService(settings))


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def register(client):
    """Register an account; returns (account json, bearer auth headers)."""
    def _register(username, role, password="password123", **extra):
        payload = {"username": username, "password": password, "role": role, **extra}
        response = client.post("/api/register", json=payload)
        assert response.status_code == 201, response.text
        token = response.cookies.get("session_token")
        assert token
        # Tests switch between users with bearer headers, not the shared cookie jar
        client.cookies.clear()
        return response.json(), {"Authorization": f"Bearer {token}"}
    return _register


@pytest.fixture
def care_team(register):
    """alice cares for bob; carol cares for dave."""
    alice, alice_headers = register("alice", "caretaker", phoneNumber="(555) 010-2030")
    bob, bob_headers = register("bob", "patient", caretakerUsername="alice")
    carol, carol_headers = register("carol", "caretaker")
    dave, dave_headers = register("dave", "patient", caretakerUsername="carol")
    return {
        "alice": (alice, alice_headers),
        "bob": (bob, bob_headers),
        "carol": (carol, carol_headers),
        "dave": (dave, dave_headers),
    }
