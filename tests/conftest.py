import pytest
from fastapi.testclient import TestClient

from storage import JSONStorage

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"


@pytest.fixture
def env(monkeypatch, tmp_path):
    """Isolated environment: fresh storage dir and a known signing secret."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", TEST_SECRET)
    monkeypatch.setenv("STORAGE_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("ALLOW_ADMIN_REGISTRATION", "true")
    monkeypatch.delenv("JWT_EXPIRES_IN", raising=False)
    monkeypatch.delenv("JWT_ALGORITHM", raising=False)
    return tmp_path


@pytest.fixture
def client(env):
    from main import app

    # entering the context runs the lifespan (settings + storage)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def storage(tmp_path):
    s = JSONStorage(tmp_path / "store").open()
    yield s
    s.close()


@pytest.fixture
def make_user(client):
    def _make_user(username="alice", email=None, password="secret123", role="user"):
        response = client.post("/api/register", json={
            "username": username,
            "email": email or f"{username}@example.com",
            "password": password,
            "role": role,
        })
        assert response.status_code == 201, response.text
        return response.json()

    return _make_user


@pytest.fixture
def auth_headers(make_user):
    token = make_user("alice")["token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(make_user):
    token = make_user("root", role="admin")["token"]
    return {"Authorization": f"Bearer {token}"}
