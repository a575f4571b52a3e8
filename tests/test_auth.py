import asyncio
import base64
import json
import uuid
from datetime import timedelta

import httpx
import pytest
from jose import jwt

from auth import (
    ExpiredTokenError,
    InvalidTokenError,
    create_access_token,
    get_password_hash,
    require_role,
    validate_token,
    verify_password,
)
from errors import ForbiddenError
from models import User

from .conftest import TEST_SECRET


class TestCredentials:
    def test_hash_verifies_original_password_only(self):
        hashed = get_password_hash("s3cret-pass")
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong-pass", hashed)

    def test_hashes_are_salted(self):
        assert get_password_hash("same") != get_password_hash("same")

    def test_verify_against_garbage_hash_is_false(self):
        assert not verify_password("anything", "not-a-bcrypt-hash")

    def test_token_yields_subject(self):
        token = create_access_token("user-1", TEST_SECRET)
        assert validate_token(token, TEST_SECRET) == "user-1"

    def test_expired_token(self):
        token = create_access_token("user-1", TEST_SECRET, expires_delta=timedelta(seconds=-5))
        with pytest.raises(ExpiredTokenError):
            validate_token(token, TEST_SECRET)

    def test_token_signed_with_other_secret(self):
        token = create_access_token("user-1", "some-other-secret")
        with pytest.raises(InvalidTokenError):
            validate_token(token, TEST_SECRET)

    def test_tampered_payload(self):
        header, _, signature = create_access_token("user-1", TEST_SECRET).split(".")
        forged = base64.urlsafe_b64encode(json.dumps({"sub": "admin-id"}).encode()).rstrip(b"=")
        with pytest.raises(InvalidTokenError):
            validate_token(f"{header}.{forged.decode()}.{signature}", TEST_SECRET)

    def test_token_without_subject(self):
        token = jwt.encode({"foo": "bar"}, TEST_SECRET, algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            validate_token(token, TEST_SECRET)

    def test_malformed_token(self):
        with pytest.raises(InvalidTokenError):
            validate_token("not-a-token", TEST_SECRET)


class TestRequireRole:
    def test_rejects_other_role(self):
        checker = require_role("admin")
        user = User(id="u1", username="bob", email="bob@example.com", role="user")
        with pytest.raises(ForbiddenError) as exc_info:
            asyncio.run(checker(current_user=user))
        assert exc_info.value.status_code == 403

    def test_accepts_matching_role(self):
        checker = require_role("admin")
        user = User(id="u1", username="root", email="root@example.com", role="admin")
        assert asyncio.run(checker(current_user=user)) is user


class TestRegisterAndLogin:
    def test_register_returns_token_for_created_user(self, client, make_user):
        body = make_user("alice")
        assert body["success"] is True
        assert body["user"]["username"] == "alice"
        assert body["user"]["role"] == "user"
        assert "password" not in body["user"] and "hashedPassword" not in body["user"]
        assert validate_token(body["token"], TEST_SECRET) == body["user"]["id"]

        me = client.get("/api/users/me", headers={"Authorization": f"Bearer {body['token']}"})
        assert me.status_code == 200
        assert me.json()["id"] == body["user"]["id"]
        assert "hashedPassword" not in me.json()

    def test_duplicate_email_conflicts(self, client, make_user):
        make_user("alice", email="shared@example.com")
        response = client.post("/api/register", json={
            "username": "another", "email": "shared@example.com", "password": "secret123",
        })
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_duplicate_username_conflicts(self, client, make_user):
        make_user("alice")
        response = client.post("/api/register", json={
            "username": "alice", "email": "other@example.com", "password": "secret123",
        })
        assert response.status_code == 400
        assert "already registered" in response.json()["message"]

    def test_concurrent_duplicate_registrations(self, client):
        payload = {"username": "dup", "email": "dup@example.com", "password": "secret123"}

        async def register_many():
            transport = httpx.ASGITransport(app=client.app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
                return await asyncio.gather(*(ac.post("/api/register", json=payload) for _ in range(5)))

        responses = asyncio.run(register_many())
        assert sorted(r.status_code for r in responses) == [201, 400, 400, 400, 400]
        assert client.app.state.storage.count("users", {"email": "dup@example.com"}) == 1

    def test_admin_role_rejected_when_disabled(self, client, monkeypatch):
        monkeypatch.setattr(client.app.state.settings, "allow_admin_registration", False)
        response = client.post("/api/register", json={
            "username": "mallory", "email": "mallory@example.com", "password": "secret123", "role": "admin",
        })
        assert response.status_code == 403
        assert response.json() == {"success": False, "message": "Admin registration is disabled."}
        assert client.app.state.storage.find_one("users", {"username": "mallory"}) is None

    def test_register_validates_input(self, client):
        response = client.post("/api/register", json={
            "username": "al", "email": "not-an-email", "password": "123",
        })
        assert response.status_code == 400
        fields = {e["field"] for e in response.json()["errors"]}
        assert {"username", "email", "password"} <= fields

    def test_login(self, client, make_user):
        user = make_user("alice", password="secret123")
        response = client.post("/api/login", json={"email": "alice@example.com", "password": "secret123"})
        assert response.status_code == 200
        assert validate_token(response.json()["token"], TEST_SECRET) == user["user"]["id"]

    @pytest.mark.parametrize("email,password", [
        ("alice@example.com", "wrong-password"),
        ("nobody@example.com", "secret123"),
    ])
    def test_login_rejects_bad_credentials(self, client, make_user, email, password):
        make_user("alice", password="secret123")
        response = client.post("/api/login", json={"email": email, "password": password})
        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Invalid email or password."}


class TestMiddleware:
    def test_missing_header(self, client):
        response = client.get("/api/users/me")
        assert response.status_code == 401
        assert response.json()["message"] == "Access denied. No token provided."
        assert response.headers["www-authenticate"] == "Bearer"

    def test_non_bearer_scheme(self, client):
        response = client.get("/api/users/me", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert response.status_code == 401
        assert response.json()["message"] == "Access denied. No token provided."

    def test_invalid_token(self, client):
        response = client.get("/api/users/me", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token."

    def test_expired_token(self, client, make_user):
        user_id = make_user("alice")["user"]["id"]
        token = create_access_token(user_id, TEST_SECRET, expires_delta=timedelta(seconds=-5))
        response = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["message"].startswith("Token expired")

    def test_unknown_subject(self, client):
        token = create_access_token(str(uuid.uuid4()), TEST_SECRET)
        response = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["message"] == "User not found or invalid token."

    def test_admin_route_forbidden_for_user(self, client, auth_headers):
        response = client.get("/api/admin/tasks", headers=auth_headers)
        assert response.status_code == 403
        assert response.json()["success"] is False

    def test_admin_route_allowed_for_admin(self, client, admin_headers):
        response = client.get("/api/admin/tasks", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"success": True, "count": 0, "tasks": []}
