import pytest
from fastapi.testclient import TestClient

from tourney.config import settings
from tourney.core.encryption import is_encrypted
from tourney.core.security import hash_token
from tourney.models.security import RefreshToken
from tourney.models.user import User
from tourney.services.token_service import token_service

from conftest import PASSWORD, make_user

API = "/api/v1"


@pytest.fixture
def client(app_with_db):
    return TestClient(app_with_db)


@pytest.fixture
def player(db):
    return make_user(db, email="player@example.com", username="player1")


@pytest.fixture
def owner(db):
    return make_user(db, email="owner@example.com", username="owner1", role="owner", email_verified=True)


def _login(client, email="player@example.com", remember_me=False):
    response = client.post(
        f"{API}/auth/login",
        json={"email": email, "password": PASSWORD, "remember_me": remember_me},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def test_login_sets_session_cookies(client, player):
    response = client.post(f"{API}/auth/login", json={"email": "Player@Example.com ", "password": PASSWORD})
    assert response.status_code == 200

    body = response.json()
    assert body["success"] is True
    assert body["data"]["user"] == {
        "id": player.id,
        "username": "player1",
        "email": "player@example.com",
        "is_host": False,
        "role": "player",
    }
    assert body["data"]["csrf_token"]

    set_cookies = {header.split("=", 1)[0]: header for header in response.headers.get_list("set-cookie")}
    assert set(set_cookies) == {"auth_token", "refresh_token", "csrf_token"}
    assert "httponly" in set_cookies["auth_token"].lower()
    assert "httponly" in set_cookies["refresh_token"].lower()
    assert "httponly" not in set_cookies["csrf_token"].lower()
    assert "samesite=lax" in set_cookies["auth_token"].lower()
    assert response.headers["cache-control"] == "no-store"


def test_remember_me_sets_long_lived_refresh_cookie(client, player):
    response = client.post(
        f"{API}/auth/login",
        json={"email": "player@example.com", "password": PASSWORD, "remember_me": True},
    )
    refresh_cookie = [h for h in response.headers.get_list("set-cookie") if h.startswith("refresh_token=")][0]
    assert f"Max-Age={30 * 24 * 60 * 60}" in refresh_cookie


def test_login_with_wrong_password_fails(client, player):
    response = client.post(f"{API}/auth/login", json={"email": "player@example.com", "password": "nope"})
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid credentials"
    assert "auth_token" not in response.cookies


def test_repeated_failures_lock_the_account(client, player):
    for _ in range(5):
        client.post(f"{API}/auth/login", json={"email": "player@example.com", "password": "nope"})
    response = client.post(f"{API}/auth/login", json={"email": "player@example.com", "password": PASSWORD})
    assert response.status_code == 401
    assert "locked" in response.json()["error"]


def test_me_requires_a_valid_access_token(client, player):
    response = client.get(f"{API}/auth/me")
    assert response.status_code == 401
    assert response.json()["error"] == "Authentication required"

    client.cookies.set("auth_token", "garbage")
    assert client.get(f"{API}/auth/me").json()["error"] == "Authentication required"


def test_bearer_header_is_accepted(client, player):
    _login(client)
    token = client.cookies.get("auth_token")
    bare = TestClient(client.app)
    response = bare.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["id"] == player.id


def test_state_change_without_csrf_header_is_forbidden(client, player):
    _login(client)
    response = client.patch(f"{API}/users/profile", json={"phone_number": "+15551234567"})
    assert response.status_code == 403
    assert response.json()["error"] == "CSRF token required"


def test_csrf_token_of_another_user_is_rejected(client, player, owner):
    owner_client = TestClient(client.app)
    owner_csrf = _login(owner_client, email="owner@example.com")["csrf_token"]
    _login(client)

    response = client.patch(
        f"{API}/users/profile",
        json={"phone_number": "+15551234567"},
        headers={"X-CSRF-Token": owner_csrf},
    )
    assert response.status_code == 403
    assert response.json()["error"] == "Invalid CSRF token"


def test_valid_csrf_does_not_replace_authentication(client, player):
    csrf = _login(client)["csrf_token"]
    bare = TestClient(client.app)
    response = bare.patch(f"{API}/users/profile", json={}, headers={"X-CSRF-Token": csrf})
    assert response.status_code == 401


def test_profile_update_stores_pii_encrypted(client, player, db):
    csrf = _login(client)["csrf_token"]
    response = client.patch(
        f"{API}/users/profile",
        json={"phone_number": "+15551234567", "in_game_ids": {"valorant": "Ace#EUW"}},
        headers={"X-CSRF-Token": csrf},
    )
    assert response.status_code == 200
    assert response.json()["phone_number"] == "+15551234567"
    assert response.json()["in_game_ids"] == {"valorant": "Ace#EUW"}

    db.expire_all()
    row = db.query(User).filter(User.id == player.id).one()
    assert is_encrypted(row.phone_number)
    assert "+15551234567" not in row.phone_number
    assert is_encrypted(row.in_game_ids["valorant"])

    profile = client.get(f"{API}/users/profile").json()
    assert profile["phone_number"] == "+15551234567"


def test_refresh_rotates_cookies(client, player):
    first = _login(client)
    old_refresh = client.cookies.get("refresh_token")

    response = client.post(f"{API}/auth/refresh")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["user"]["id"] == player.id
    assert body["data"]["csrf_token"]
    assert client.cookies.get("refresh_token") != old_refresh
    assert client.get(f"{API}/auth/me").status_code == 200
    assert first["user"] == body["data"]["user"]


def test_refresh_replay_revokes_the_session(client, player, db):
    _login(client)
    stolen = client.cookies.get("refresh_token")
    assert client.post(f"{API}/auth/refresh").status_code == 200

    attacker = TestClient(client.app)
    attacker.cookies.set("refresh_token", stolen)
    replay = attacker.post(f"{API}/auth/refresh")
    assert replay.status_code == 401
    assert replay.json() == {"success": False, "error": "Authentication required"}

    # The legitimate holder is logged out too.
    assert client.post(f"{API}/auth/refresh").status_code == 401
    record = db.query(RefreshToken).filter(RefreshToken.token_hash == hash_token(stolen)).one()
    assert record.revoked is True


def test_failed_refresh_clears_every_session_cookie(client, player, db):
    _login(client)
    assert client.cookies.get("csrf_token")
    token_service.revoke_all_for_user(db, player.id)

    response = client.post(f"{API}/auth/refresh")
    assert response.status_code == 401
    cleared = {header.split("=", 1)[0] for header in response.headers.get_list("set-cookie")}
    assert cleared == {"auth_token", "refresh_token", "csrf_token"}
    assert client.cookies.get("csrf_token") is None


def test_refresh_rate_limit_sets_retry_after(client, monkeypatch):
    monkeypatch.setattr(settings, "REFRESH_RATE_LIMIT_PER_MINUTE", 1)
    assert client.post(f"{API}/auth/refresh").status_code == 401

    response = client.post(f"{API}/auth/refresh")
    assert response.status_code == 429
    assert 1 <= int(response.headers["retry-after"]) <= 60


def test_login_rate_limit_sets_retry_after(client, player, monkeypatch):
    monkeypatch.setattr(settings, "LOGIN_RATE_LIMIT_PER_MINUTE", 2)
    for _ in range(2):
        client.post(f"{API}/auth/login", json={"email": "player@example.com", "password": "nope"})

    response = client.post(f"{API}/auth/login", json={"email": "player@example.com", "password": PASSWORD})
    assert response.status_code == 429
    assert response.headers["retry-after"].isdigit()


def test_refresh_without_cookie_is_unauthorized(client):
    response = client.post(f"{API}/auth/refresh")
    assert response.status_code == 401


def test_logout_revokes_refresh_token_and_is_idempotent(client, player):
    _login(client)
    refresh = client.cookies.get("refresh_token")

    response = client.post(f"{API}/auth/logout")
    assert response.status_code == 200
    assert response.json()["refresh_token_revoked"] is True
    assert client.cookies.get("auth_token") is None

    again = client.post(f"{API}/auth/logout")
    assert again.status_code == 200
    assert again.json()["success"] is True

    replay = TestClient(client.app)
    replay.cookies.set("refresh_token", refresh)
    assert replay.post(f"{API}/auth/refresh").status_code == 401


def test_csrf_endpoint_issues_token_for_current_user(client, player):
    _login(client)
    response = client.get(f"{API}/auth/csrf")
    assert response.status_code == 200
    assert response.json()["data"]["csrf_token"]


def test_owner_only_routes(client, player, owner):
    _login(client)
    assert client.get(f"{API}/users/").status_code == 403

    owner_client = TestClient(client.app)
    _login(owner_client, email="owner@example.com")
    response = owner_client.get(f"{API}/users/")
    assert response.status_code == 200
    assert {user["username"] for user in response.json()} == {"player1", "owner1"}


def test_owner_can_revoke_sessions(client, player, owner):
    _login(client)
    owner_client = TestClient(client.app)
    owner_csrf = _login(owner_client, email="owner@example.com")["csrf_token"]

    response = owner_client.post(
        f"{API}/users/{player.id}/revoke-sessions",
        headers={"X-CSRF-Token": owner_csrf},
    )
    assert response.status_code == 200
    assert response.json()["revoked"] == 1
    assert client.post(f"{API}/auth/refresh").status_code == 401


def test_health_reports_encryption_readiness(client):
    body = client.get("/health").json()
    assert body["readiness"]["pii_encryption"] is True


def test_owner_creates_users_only_with_verified_email(client, db):
    make_user(db, email="boss@example.com", username="boss", role="owner", email_verified=False)
    csrf = _login(client, email="boss@example.com")["csrf_token"]
    new_user = {"email": "new@example.com", "username": "newbie", "password": "long-enough-pw"}

    response = client.post(f"{API}/users/", json=new_user, headers={"X-CSRF-Token": csrf})
    assert response.status_code == 403
    assert response.json()["error"] == "Email verification required"


def test_owner_creates_user(client, owner):
    owner_csrf = _login(client, email="owner@example.com")["csrf_token"]
    new_user = {"email": "New@Example.com", "username": "newbie", "password": "long-enough-pw", "role": "organizer"}

    response = client.post(f"{API}/users/", json=new_user, headers={"X-CSRF-Token": owner_csrf})
    assert response.status_code == 201
    assert response.json()["email"] == "new@example.com"
    assert response.json()["role"] == "organizer"

    duplicate = client.post(f"{API}/users/", json=new_user, headers={"X-CSRF-Token": owner_csrf})
    assert duplicate.status_code == 409
