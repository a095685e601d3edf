"""End-to-end tests for the /auth endpoints through the FastAPI app."""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from cinematch import app as app_module
from cinematch.service.email import EmailService
from cinematch.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "Password123!"


class Outbox(EmailService):
    def __init__(self):
        super().__init__()
        self.verifications = []
        self.resets = []

    def send_email_verification(self, to_email: str, link: str, ttl_hours: int = 24) -> bool:
        self.verifications.append((to_email, link))
        return True

    def send_password_reset(self, to_email: str, link: str, ttl_minutes: int = 30) -> bool:
        self.resets.append((to_email, link))
        return True


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def outbox():
    mailer = Outbox()
    get_runtime().auth.email = mailer
    return mailer


def _register(client, email="a@x.com", password=PASSWORD):
    return client.post("/auth/register", json={"email": email, "password": password})


def _register_verified(client, email="a@x.com", password=PASSWORD):
    user_id = _register(client, email, password).json()["userId"]
    get_runtime().store.set_email_verified(user_id, True)
    return user_id


def _login(client, email="a@x.com", password=PASSWORD):
    client.cookies.clear()
    return client.post("/auth/login", json={"email": email, "password": password})


def _refresh(client, token):
    client.cookies.clear()
    return client.post("/auth/refresh", headers={"Cookie": f"rt={token}"})


def _link_params(link):
    query = parse_qs(urlparse(link).query)
    return query["token"][0], query["u"][0]


def test_register_creates_unverified_account_and_blocks_login(client, outbox):
    response = _register(client)

    assert response.status_code == 201
    body = response.json()
    assert body["ok"] is True
    assert body["email"] == "a@x.com"
    assert get_runtime().store.get_user(body["userId"]).email_verified is False
    assert [to for to, _ in outbox.verifications] == ["a@x.com"]

    login = _login(client)
    assert login.status_code == 403
    assert login.json()["needsVerification"] is True
    assert "set-cookie" not in login.headers


def test_register_then_verify_then_login(client, outbox):
    _register(client, email="  A@X.com ")
    token, user_id = _link_params(outbox.verifications[0][1])
    assert outbox.verifications[0][1].startswith("http://localhost:5050/api/auth/verify-email?")

    verify = client.get(
        "/auth/verify-email", params={"token": token, "u": user_id}, follow_redirects=False
    )
    assert verify.status_code == 302
    assert verify.headers["location"] == "http://localhost:5173/verify-success"

    login = _login(client)
    assert login.status_code == 200
    body = login.json()
    assert body["accessToken"]
    assert body["user"] == {"id": user_id, "email": "a@x.com", "displayName": "a"}

    # the link is single use
    again = client.get(
        "/auth/verify-email", params={"token": token, "u": user_id}, follow_redirects=False
    )
    assert again.status_code == 400


def test_verify_email_rejects_bad_links(client, outbox):
    _register(client)
    _token, user_id = _link_params(outbox.verifications[0][1])

    missing = client.get("/auth/verify-email", follow_redirects=False)
    wrong = client.get(
        "/auth/verify-email", params={"token": "nope", "u": user_id}, follow_redirects=False
    )

    assert missing.status_code == 400
    assert wrong.status_code == 400
    assert wrong.json()["code"] == "validation_error"
    assert get_runtime().store.get_user(user_id).email_verified is False


@pytest.mark.parametrize(
    "payload",
    [{}, {"email": "a@x.com"}, {"password": PASSWORD}, {"email": "   ", "password": PASSWORD}],
)
def test_register_requires_email_and_password(client, payload):
    response = client.post("/auth/register", json=payload)

    assert response.status_code == 400
    assert "error" in response.json()


def test_duplicate_registration_ignores_case(client):
    assert _register(client, email="dup@x.com").status_code == 201

    second = _register(client, email="DUP@X.com")

    assert second.status_code == 409
    assert second.json()["code"] == "conflict"


def test_login_sets_http_only_refresh_cookie(client):
    _register_verified(client)

    response = _login(client)

    cookie = response.headers["set-cookie"]
    assert cookie.startswith("rt=")
    assert "HttpOnly" in cookie
    assert "Path=/auth" in cookie
    assert "Max-Age=2592000" in cookie
    assert "SameSite=strict" in cookie
    assert "; Secure" not in cookie


def test_production_cookie_is_secure_and_cross_site(client, monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    reset_runtime_for_tests()
    _register_verified(client)

    cookie = _login(client).headers["set-cookie"]

    assert "; Secure" in cookie
    assert "SameSite=none" in cookie


def test_login_rejects_bad_credentials_generically(client):
    _register_verified(client)

    wrong_password = _login(client, password="wrong-password")
    unknown_user = _login(client, email="ghost@x.com")

    assert wrong_password.status_code == 401
    assert unknown_user.status_code == 401
    assert wrong_password.json() == unknown_user.json()


def test_refresh_rotates_and_rejects_replay(client):
    _register_verified(client)
    original = _login(client).cookies.get("rt")

    rotated = _refresh(client, original)
    assert rotated.status_code == 200
    assert rotated.json()["accessToken"]
    new_token = rotated.cookies.get("rt")
    assert new_token and new_token != original

    replay = _refresh(client, original)
    assert replay.status_code == 401

    assert _refresh(client, new_token).status_code == 200


def test_refresh_without_cookie(client):
    client.cookies.clear()

    response = client.post("/auth/refresh")

    assert response.status_code == 401
    assert "refresh" in response.json()["error"].lower()


def test_access_token_is_not_a_refresh_token(client):
    _register_verified(client)
    access = _login(client).json()["accessToken"]

    assert _refresh(client, access).status_code == 401


def test_concurrent_sessions_are_independent(client):
    user_id = _register_verified(client)
    first = _login(client).cookies.get("rt")
    second = _login(client).cookies.get("rt")

    assert first != second
    assert len(get_runtime().store.list_refresh_tokens(user_id)) == 2

    client.cookies.clear()
    logout = client.post("/auth/logout", headers={"Cookie": f"rt={first}"})
    assert logout.status_code == 200
    assert logout.json() == {"ok": True}

    assert _refresh(client, first).status_code == 401
    assert _refresh(client, second).status_code == 200


def test_logout_always_succeeds(client):
    client.cookies.clear()

    assert client.post("/auth/logout").json() == {"ok": True}
    garbage = client.post("/auth/logout", headers={"Cookie": "rt=not-a-token"})
    assert garbage.status_code == 200
    assert 'rt=""' in garbage.headers["set-cookie"] or "rt=;" in garbage.headers["set-cookie"]


def test_forgot_is_indistinguishable(client, outbox):
    _register_verified(client, email="known@x.com")

    known = client.post("/auth/forgot", json={"email": "known@x.com"})
    unknown = client.post("/auth/forgot", json={"email": "nobody@x.com"})
    empty = client.post("/auth/forgot")

    assert known.status_code == unknown.status_code == empty.status_code == 200
    assert known.content == unknown.content == empty.content
    assert known.json() == {"ok": True}
    assert [to for to, _ in outbox.resets] == ["known@x.com"]


@pytest.mark.parametrize(
    "raw",
    [
        b'{"email": 12345}',
        b'{"email": ["a@x.com"]}',
        b'{"email": "' + b"a" * 300 + b'@x.com"}',
        b'["a@x.com"]',
        b"{oops",
    ],
)
def test_forgot_answers_ok_for_any_body(client, outbox, raw):
    _register_verified(client)

    response = client.post(
        "/auth/forgot", content=raw, headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert outbox.resets == []


def test_forgot_skips_unverified_accounts(client, outbox):
    _register(client, email="pending@x.com")

    response = client.post("/auth/forgot", json={"email": "pending@x.com"})

    assert response.json() == {"ok": True}
    assert outbox.resets == []


def test_reset_changes_password_and_revokes_sessions(client, outbox):
    _register_verified(client)
    old_refresh = _login(client).cookies.get("rt")
    client.post("/auth/forgot", json={"email": "a@x.com"})
    to_email, link = outbox.resets[0]
    assert link.startswith("http://localhost:5173/reset-password?")
    token, user_id = _link_params(link)

    reset = client.post(
        "/auth/reset", json={"token": token, "u": user_id, "password": "N3w-Password!"}
    )

    assert reset.status_code == 200
    assert reset.json() == {"ok": True}
    assert _refresh(client, old_refresh).status_code == 401
    assert _login(client).status_code == 401
    assert _login(client, password="N3w-Password!").status_code == 200

    reused = client.post(
        "/auth/reset", json={"token": token, "u": user_id, "password": "Another-1!"}
    )
    assert reused.status_code == 400


def test_reset_rejects_incomplete_requests(client):
    response = client.post("/auth/reset", json={"token": "abc"})

    assert response.status_code == 400


def test_resend_verification(client, outbox):
    _register(client, email="later@x.com")

    missing = client.post("/auth/resend-verification", json={})
    assert missing.status_code == 400

    response = client.post("/auth/resend-verification", json={"email": "later@x.com"})
    unknown = client.post("/auth/resend-verification", json={"email": "ghost@x.com"})

    assert response.json() == unknown.json() == {"ok": True}
    assert [to for to, _ in outbox.verifications] == ["later@x.com", "later@x.com"]
    # only the newest link stays valid
    stale_token, user_id = _link_params(outbox.verifications[0][1])
    fresh_token, _ = _link_params(outbox.verifications[1][1])
    stale = client.get(
        "/auth/verify-email", params={"token": stale_token, "u": user_id}, follow_redirects=False
    )
    fresh = client.get(
        "/auth/verify-email", params={"token": fresh_token, "u": user_id}, follow_redirects=False
    )
    assert stale.status_code == 400
    assert fresh.status_code == 302


def test_login_attempts_are_rate_limited_per_email(client):
    _register_verified(client)
    points = get_runtime().settings.email_rate_limit_points

    for _ in range(points):
        assert _login(client, password="wrong-password").status_code == 401

    blocked = _login(client)

    assert blocked.status_code == 429
    assert int(blocked.headers["Retry-After"]) > 0
    assert blocked.json()["code"] == "rate_limited"


def test_successful_login_resets_email_budget(client):
    _register_verified(client)
    points = get_runtime().settings.email_rate_limit_points

    for _ in range(points - 1):
        _login(client, password="wrong-password")
    assert _login(client).status_code == 200

    for _ in range(points - 1):
        assert _login(client, password="wrong-password").status_code == 401


def test_malformed_json_is_400(client):
    response = client.post(
        "/auth/login", content=b"{oops", headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_health_and_common_headers(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "no-store" in response.headers["Cache-Control"]


def test_unknown_route_uses_error_shape(client):
    response = client.get("/auth/nothing-here")

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"
