import fakeredis
import pytest
from fastapi.testclient import TestClient

from app import app
from backend import RedisBackend, get_redis_backend


@pytest.fixture
def fake_redis():
    """In-memory Redis shared by the backend and the assertions of a test"""
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def backend(fake_redis):
    return RedisBackend(fake_redis)


@pytest.fixture
def client(backend):
    app.dependency_overrides[get_redis_backend] = lambda: backend
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def create_user(client):
    def _create(username):
        response = client.post("/api/chat-rooms?action=createUser", json={"username": username})
        assert response.status_code == 201
        return response.json()["user"]
    return _create


@pytest.fixture
def create_room(client):
    def _create(name):
        response = client.post("/api/chat-rooms?action=createRoom", json={"name": name})
        assert response.status_code == 201
        return response.json()["room"]
    return _create
