"""
tests/test_api_routes.py -- Integration tests for the /auth and /user routes.

These tests exercise the full stack: FastAPI routing -> session gate ->
registration / account handlers -> UserStore -> response serialization.

Coverage:
  - Gate: 401 without a token, 401 with a bad token, 403 for non-owners
  - Login: token in body and cookie, no-store header, uniform failure
  - Registration: bootstrap owner, invite-gated users, camelCase bodies
  - Invites: create, list, delete, claimed invite protected
  - Account: password change, rename with token reissue, self-delete, avatar
  - Errors use the {"error": {...}} envelope
  - Passwords over 72 bytes are a 422 when set and a 401 at login
  - Tokens from before a rename or deletion are refused

Fixtures used (from conftest.py):
  - client: empty database, follow_redirects=False
  - owner_client: (client, token) for the bootstrap owner "owner" / "ownerpass123"
"""

from __future__ import annotations

from fastapi.testclient import TestClient

_PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _invite(client: TestClient, owner_token: str) -> str:
    resp = client.post("/api/v1/auth/new_invite", headers=_auth(owner_token))
    assert resp.status_code == 200, resp.text
    return resp.json()["token"]


def _register_user(client: TestClient, owner_token: str, username: str, password: str) -> str:
    """Register username through an invite and return its login token."""
    invite = _invite(client, owner_token)
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": username, "password": password, "invite_token": invite},
    )
    assert resp.status_code == 200, resp.text
    resp = client.post("/api/v1/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return resp.json()["token"]


class TestGate:
    def test_whoami_without_token(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/whoami")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"

    def test_whoami_with_garbage_token(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/whoami", headers=_auth("not-a-token"))
        assert resp.status_code == 401

    def test_owner_routes_refuse_plain_users(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        user_token = _register_user(client, owner_token, "bob", "bobpass123")
        assert client.get("/api/v1/auth/invites", headers=_auth(user_token)).status_code == 403
        assert client.post("/api/v1/auth/new_invite", headers=_auth(user_token)).status_code == 403
        resp = client.delete("/api/v1/auth/token/whatever", headers=_auth(user_token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_cookie_is_accepted(self, owner_client: tuple[TestClient, str]) -> None:
        client, _ = owner_client
        client.post("/api/v1/auth/login", json={"username": "owner", "password": "ownerpass123"})
        resp = client.get("/api/v1/auth/whoami")
        assert resp.status_code == 200
        assert resp.json()["username"] == "owner"


class TestLogin:
    def test_login_returns_token_and_cookie(self, owner_client: tuple[TestClient, str]) -> None:
        client, _ = owner_client
        resp = client.post("/api/v1/auth/login", json={"username": "owner", "password": "ownerpass123"})
        assert resp.status_code == 200
        assert resp.json()["token"]
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.cookies.get("token") == resp.json()["token"]
        set_cookie = resp.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie

    def test_wrong_password_and_unknown_user_look_the_same(self, owner_client: tuple[TestClient, str]) -> None:
        client, _ = owner_client
        wrong_pw = client.post("/api/v1/auth/login", json={"username": "owner", "password": "nope"})
        no_user = client.post("/api/v1/auth/login", json={"username": "ghost", "password": "nope"})
        assert wrong_pw.status_code == no_user.status_code == 401
        assert wrong_pw.json() == no_user.json()
        assert wrong_pw.json()["error"]["code"] == "invalid_credentials"
        assert wrong_pw.headers["Cache-Control"] == "no-store"

    def test_logout_clears_cookie(self, owner_client: tuple[TestClient, str]) -> None:
        client, _ = owner_client
        client.post("/api/v1/auth/login", json={"username": "owner", "password": "ownerpass123"})
        assert client.cookies.get("token")
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert not client.cookies.get("token")
        assert client.get("/api/v1/auth/whoami").status_code == 401

    def test_missing_fields_are_validation_errors(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/login", json={"username": "owner"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestRegistration:
    def test_admin_exists_flips_after_bootstrap(self, client: TestClient) -> None:
        assert client.get("/api/v1/auth/admin_exists").json() == {"exists": False}
        resp = client.post("/api/v1/auth/register", json={"username": "first", "password": "pw123456"})
        assert resp.status_code == 200
        assert resp.json() == {"username": "first"}
        assert client.get("/api/v1/auth/admin_exists").json() == {"exists": True}

    def test_bootstrap_owner_roles(self, owner_client: tuple[TestClient, str]) -> None:
        client, token = owner_client
        resp = client.get("/api/v1/auth/whoami", headers=_auth(token))
        assert resp.json() == {"username": "owner", "roles": ["owner"], "picture": None}

    def test_register_without_invite_is_refused(self, owner_client: tuple[TestClient, str]) -> None:
        client, _ = owner_client
        resp = client.post("/api/v1/auth/register", json={"username": "bob", "password": "bobpass123"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "no_token"

    def test_register_with_camel_case_invite(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        invite = _invite(client, owner_token)
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": "bob", "password": "bobpass123", "inviteToken": invite},
        )
        assert resp.status_code == 200, resp.text

    def test_invite_cannot_be_reused(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        invite = _invite(client, owner_token)
        body = {"password": "pw123456", "invite_token": invite}
        assert client.post("/api/v1/auth/register", json={"username": "bob", **body}).status_code == 200
        resp = client.post("/api/v1/auth/register", json={"username": "carol", **body})
        assert resp.status_code == 403

    def test_duplicate_username(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        invite = _invite(client, owner_token)
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": "owner", "password": "pw123456", "invite_token": invite},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "username_not_available"


class TestInvites:
    def test_list_shows_open_and_claimed(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        _register_user(client, owner_token, "bob", "bobpass123")
        open_invite = _invite(client, owner_token)

        rows = client.get("/api/v1/auth/invites", headers=_auth(owner_token)).json()
        by_id = {r["id"]: r for r in rows}
        assert by_id[open_invite]["claimed_by"] is None
        assert sorted(r["claimed_by"] for r in rows if r["claimed_by"]) == ["bob", "owner"]
        # Open invites are listed before claimed ones.
        assert rows[0]["id"] == open_invite

    def test_delete_open_invite(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        invite = _invite(client, owner_token)
        resp = client.delete(f"/api/v1/auth/token/{invite}", headers=_auth(owner_token))
        assert resp.status_code == 200
        ids = [r["id"] for r in client.get("/api/v1/auth/invites", headers=_auth(owner_token)).json()]
        assert invite not in ids

    def test_delete_unknown_invite(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        resp = client.delete("/api/v1/auth/token/no-such-invite", headers=_auth(owner_token))
        assert resp.status_code == 404

    def test_delete_claimed_invite_refused(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        invite = _invite(client, owner_token)
        client.post("/api/v1/auth/register", json={"username": "bob", "password": "pw123456", "invite_token": invite})
        resp = client.delete(f"/api/v1/auth/token/{invite}", headers=_auth(owner_token))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "invite_claimed"


class TestAccountChanges:
    def test_change_password(self, owner_client: tuple[TestClient, str]) -> None:
        client, token = owner_client
        resp = client.patch(
            "/api/v1/auth/password",
            json={"oldPassword": "ownerpass123", "newPassword": "newpass456"},
            headers=_auth(token),
        )
        assert resp.status_code == 200, resp.text
        assert client.post("/api/v1/auth/login", json={"username": "owner", "password": "newpass456"}).status_code == 200
        client.cookies.clear()
        assert (
            client.post("/api/v1/auth/login", json={"username": "owner", "password": "ownerpass123"}).status_code
            == 401
        )

    def test_change_password_wrong_old(self, owner_client: tuple[TestClient, str]) -> None:
        client, token = owner_client
        resp = client.patch(
            "/api/v1/auth/password",
            json={"old_password": "wrong", "new_password": "newpass456"},
            headers=_auth(token),
        )
        assert resp.status_code == 401

    def test_change_username_reissues_token(self, owner_client: tuple[TestClient, str]) -> None:
        client, token = owner_client
        resp = client.patch("/api/v1/auth/username", json={"newUsername": "boss"}, headers=_auth(token))
        assert resp.status_code == 200, resp.text
        new_token = resp.json()["token"]
        client.cookies.clear()
        whoami = client.get("/api/v1/auth/whoami", headers=_auth(new_token)).json()
        assert whoami["username"] == "boss"
        assert whoami["roles"] == ["owner"]
        assert client.get("/api/v1/auth/whoami", headers=_auth(token)).status_code == 401

    def test_change_username_to_taken(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        _register_user(client, owner_token, "bob", "bobpass123")
        resp = client.patch("/api/v1/auth/username", json={"new_username": "bob"}, headers=_auth(owner_token))
        assert resp.status_code == 409

    def test_delete_requires_password(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        user_token = _register_user(client, owner_token, "bob", "bobpass123")
        resp = client.request("DELETE", "/api/v1/user/delete", json={"password": "wrong"}, headers=_auth(user_token))
        assert resp.status_code == 401
        assert client.post("/api/v1/auth/login", json={"username": "bob", "password": "bobpass123"}).status_code == 200

    def test_delete_self(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        user_token = _register_user(client, owner_token, "bob", "bobpass123")
        resp = client.request(
            "DELETE", "/api/v1/user/delete", json={"password": "bobpass123"}, headers=_auth(user_token)
        )
        assert resp.status_code == 200, resp.text
        assert client.post("/api/v1/auth/login", json={"username": "bob", "password": "bobpass123"}).status_code == 401
        claimed = [r["claimed_by"] for r in client.get("/api/v1/auth/invites", headers=_auth(owner_token)).json()]
        assert "bob" not in claimed

    def test_avatar_upload(self, owner_client: tuple[TestClient, str]) -> None:
        client, token = owner_client
        resp = client.post(
            "/api/v1/user/avatar",
            files={"file": ("me.png", _PNG, "image/png")},
            headers=_auth(token),
        )
        assert resp.status_code == 200, resp.text
        picture = resp.json()["picture"]
        assert picture.startswith("/images/") and picture.endswith(".png")
        assert client.get("/api/v1/auth/whoami", headers=_auth(token)).json()["picture"] == picture

    def test_avatar_wrong_type(self, owner_client: tuple[TestClient, str]) -> None:
        client, token = owner_client
        resp = client.post(
            "/api/v1/user/avatar",
            files={"file": ("me.gif", b"GIF89a", "image/gif")},
            headers=_auth(token),
        )
        assert resp.status_code == 415
        assert resp.json()["error"]["code"] == "unsupported_file"

    def test_avatar_requires_auth(self, client: TestClient) -> None:
        resp = client.post("/api/v1/user/avatar", files={"file": ("me.png", _PNG, "image/png")})
        assert resp.status_code == 401


class TestPasswordLength:
    def test_register_rejects_password_over_72_bytes(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/register", json={"username": "alice", "password": "p" * 100})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert client.get("/api/v1/auth/admin_exists").json() == {"exists": False}

    def test_register_accepts_72_byte_password(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/register", json={"username": "alice", "password": "p" * 72})
        assert resp.status_code == 200, resp.text
        resp = client.post("/api/v1/auth/login", json={"username": "alice", "password": "p" * 72})
        assert resp.status_code == 200

    def test_password_change_rejects_new_password_over_72_bytes(self, owner_client: tuple[TestClient, str]) -> None:
        client, token = owner_client
        resp = client.patch(
            "/api/v1/auth/password",
            json={"old_password": "ownerpass123", "new_password": "p" * 100},
            headers=_auth(token),
        )
        assert resp.status_code == 422
        client.cookies.clear()
        assert client.post("/api/v1/auth/login", json={"username": "owner", "password": "ownerpass123"}).status_code == 200

    def test_login_with_long_password_is_plain_failure(self, owner_client: tuple[TestClient, str]) -> None:
        client, _ = owner_client
        resp = client.post("/api/v1/auth/login", json={"username": "owner", "password": "p" * 100})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"


class TestStaleTokens:
    def test_old_token_cannot_act_on_new_holder_of_the_name(self, owner_client: tuple[TestClient, str]) -> None:
        client, old_token = owner_client
        resp = client.patch("/api/v1/auth/username", json={"new_username": "boss"}, headers=_auth(old_token))
        assert resp.status_code == 200, resp.text
        boss_token = resp.json()["token"]
        client.cookies.clear()

        invite = _invite(client, boss_token)
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": "owner", "password": "otherpass123", "invite_token": invite},
        )
        assert resp.status_code == 200, resp.text

        resp = client.patch("/api/v1/auth/username", json={"new_username": "hijacked"}, headers=_auth(old_token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"
        assert client.get("/api/v1/auth/whoami", headers=_auth(old_token)).status_code == 401
        assert client.post("/api/v1/auth/new_invite", headers=_auth(old_token)).status_code == 401

        store = client.app.state.user_store
        assert store.get_by_username("owner") is not None
        assert store.get_by_username("hijacked") is None
        assert client.get("/api/v1/auth/whoami", headers=_auth(boss_token)).json()["username"] == "boss"

    def test_token_of_deleted_account_is_refused(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        user_token = _register_user(client, owner_token, "bob", "bobpass123")
        resp = client.request(
            "DELETE", "/api/v1/user/delete", json={"password": "bobpass123"}, headers=_auth(user_token)
        )
        assert resp.status_code == 200, resp.text
        assert client.get("/api/v1/auth/whoami", headers=_auth(user_token)).status_code == 401

    def test_delete_removes_avatar_file(self, owner_client: tuple[TestClient, str]) -> None:
        client, owner_token = owner_client
        user_token = _register_user(client, owner_token, "bob", "bobpass123")
        resp = client.post(
            "/api/v1/user/avatar",
            files={"file": ("me.png", _PNG, "image/png")},
            headers=_auth(user_token),
        )
        assert resp.status_code == 200, resp.text
        metadata_path = client.app.state.metadata_path
        assert len(list(metadata_path.iterdir())) == 1

        resp = client.request(
            "DELETE", "/api/v1/user/delete", json={"password": "bobpass123"}, headers=_auth(user_token)
        )
        assert resp.status_code == 200, resp.text
        assert list(metadata_path.iterdir()) == []
