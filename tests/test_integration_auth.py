"""Integration tests for the HTTP auth flow.

Covers registration, email verification, login, refresh rotation, logout,
password reset, two-factor login, session management and admin actions.
"""

import importlib.util
import re
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from estatevault import app as app_module
from estatevault.service.runtime import get_runtime
from estatevault.service.two_factor import totp_at
from estatevault.storage.models import AccountStatus, Role, utcnow

_TOKEN_RE = re.compile(r"token=([A-Za-z0-9]+)")
_CODE_RE = re.compile(r"^(\d{6})$", re.MULTILINE)


def _bootstrap_module():
    path = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
    spec = importlib.util.spec_from_file_location("bootstrap_admin", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _load_bootstrap():
    return _bootstrap_module().bootstrap_admin


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing mail from the runtime's EmailService."""
    sent = []
    runtime = get_runtime()

    def _capture(to_email, subject, html_body, text_body=None):
        sent.append({"to": to_email, "subject": subject, "text": text_body or ""})
        return True

    monkeypatch.setattr(runtime.email, "_send_email", _capture)
    return sent


def _last_token(outbox):
    return _TOKEN_RE.search(outbox[-1]["text"]).group(1)


def _register(client, email="buyer@example.com", password="Str0ng-Pass!", **extra):
    return client.post("/v1/auth/register", json={"email": email, "password": password, **extra})


def _register_verified(client, outbox, email="buyer@example.com", password="Str0ng-Pass!"):
    response = _register(client, email, password)
    assert response.status_code == 201
    verified = client.post("/v1/auth/verify-email", json={"token": _last_token(outbox)})
    assert verified.status_code == 200
    return response.json()["data"]["account"]


def _login(client, email="buyer@example.com", password="Str0ng-Pass!", **extra):
    response = client.post("/v1/auth/login", json={"email": email, "password": password, **extra})
    assert response.status_code == 200, response.json()
    return response.json()["data"]


def _bearer(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestRegistrationFlow:
    def test_register_then_verify(self, client, outbox):
        response = _register(client, first_name="Ana")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["account"]["status"] == "pending_activation"
        assert data["email_verification_required"] is True
        assert "Verify your" in outbox[-1]["subject"]

        blocked = client.post(
            "/v1/auth/login", json={"email": "buyer@example.com", "password": "Str0ng-Pass!"}
        )
        assert blocked.status_code == 403

        verified = client.post("/v1/auth/verify-email", json={"token": _last_token(outbox)})
        assert verified.json()["data"]["account"]["status"] == "active"
        assert _login(client)["requires_two_factor"] is False

    def test_duplicate_email_is_conflict(self, client, outbox):
        _register(client)
        response = _register(client, email="BUYER@example.com")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_admin_role_is_not_accepted(self, client):
        response = _register(client, role="admin")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_weak_password_lists_requirements(self, client):
        response = _register(client, password="alllowercase")
        assert response.status_code == 400
        assert "an uppercase letter" in response.json()["error"]["details"]["requirements"]

    def test_invalid_email_is_rejected(self, client):
        assert _register(client, email="not-an-email").status_code == 400

    def test_resend_verification_for_unknown_email_is_ok(self, client):
        response = client.post("/v1/auth/resend-verification", json={"email": "ghost@example.com"})
        assert response.status_code == 200

    def test_resend_verification_does_not_reveal_verified_accounts(self, client, outbox):
        _register_verified(client, outbox)
        sent = len(outbox)
        known = client.post("/v1/auth/resend-verification", json={"email": "buyer@example.com"})
        ghost = client.post("/v1/auth/resend-verification", json={"email": "ghost@example.com"})
        assert known.status_code == ghost.status_code == 200
        assert known.json()["data"] == ghost.json()["data"]
        assert len(outbox) == sent


class TestLoginFlow:
    def test_login_refresh_logout(self, client, outbox):
        _register_verified(client, outbox)
        tokens = _login(client)
        me = client.get("/v1/me", headers=_bearer(tokens))
        assert me.json()["data"]["email"] == "buyer@example.com"

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()["data"]
        assert new_tokens["session_id"] == tokens["session_id"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401

        assert client.post("/v1/auth/logout", headers=_bearer(new_tokens)).status_code == 200
        after = client.get("/v1/me", headers=_bearer(new_tokens))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "unauthorized"

    def test_missing_bearer_is_unauthorized(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401

    def test_lockout_returns_423_with_retry_after(self, client, outbox):
        _register_verified(client, outbox)
        for _ in range(4):
            response = client.post(
                "/v1/auth/login", json={"email": "buyer@example.com", "password": "Wrong-Pass-1!"}
            )
            assert response.status_code == 401
        locked = client.post(
            "/v1/auth/login", json={"email": "buyer@example.com", "password": "Wrong-Pass-1!"}
        )
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "locked"
        assert locked.headers["Retry-After"] == str(30 * 60)
        assert any(mail["subject"] == "Security alert: Account locked" for mail in outbox)

    def test_sessions_and_history(self, client, outbox):
        _register_verified(client, outbox)
        first = _login(client)
        second = _login(client)

        sessions = client.get("/v1/auth/sessions", headers=_bearer(second)).json()["data"]["sessions"]
        assert len(sessions) == 2
        assert {s["session_id"] for s in sessions if s["is_current"]} == {second["session_id"]}

        revoke = client.delete(f"/v1/auth/sessions/{first['session_id']}", headers=_bearer(second))
        assert revoke.status_code == 200
        assert client.get("/v1/me", headers=_bearer(first)).status_code == 401
        missing = client.delete("/v1/auth/sessions/not-a-session", headers=_bearer(second))
        assert missing.status_code == 404

        history = client.get("/v1/auth/login-history", headers=_bearer(second)).json()["data"]["logins"]
        assert len(history) == 2 and all(entry["success"] for entry in history)

    def test_revoke_all_sessions(self, client, outbox):
        _register_verified(client, outbox)
        other = _login(client)
        current = _login(client)
        response = client.post(
            "/v1/auth/sessions/revoke-all",
            json={"password": "Str0ng-Pass!"},
            headers=_bearer(current),
        )
        assert response.json()["data"]["sessions_revoked"] == 1
        assert client.get("/v1/me", headers=_bearer(other)).status_code == 401
        assert client.get("/v1/me", headers=_bearer(current)).status_code == 200


class TestPasswordFlows:
    def test_forgot_and_reset(self, client, outbox):
        _register_verified(client, outbox)
        tokens = _login(client)
        response = client.post("/v1/auth/password/forgot", json={"email": "buyer@example.com"})
        assert response.status_code == 200
        reset_token = _last_token(outbox)

        reset = client.post(
            "/v1/auth/password/reset", json={"token": reset_token, "new_password": "Brand-New-Pass-2"}
        )
        assert reset.status_code == 200
        assert client.get("/v1/me", headers=_bearer(tokens)).status_code == 401
        _login(client, password="Brand-New-Pass-2")

        reused = client.post(
            "/v1/auth/password/reset", json={"token": reset_token, "new_password": "Other-New-Pass-3"}
        )
        assert reused.status_code == 401

    def test_forgot_unknown_email_looks_the_same(self, client, outbox):
        response = client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert outbox == []

    def test_change_password(self, client, outbox):
        _register_verified(client, outbox)
        tokens = _login(client)
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": "Str0ng-Pass!", "new_password": "Brand-New-Pass-2"},
            headers=_bearer(tokens),
        )
        assert response.status_code == 200
        assert client.get("/v1/me", headers=_bearer(tokens)).status_code == 200
        _login(client, password="Brand-New-Pass-2")


class TestTwoFactorFlow:
    def test_authenticator_enrolment_and_login(self, client, outbox):
        _register_verified(client, outbox)
        tokens = _login(client)
        setup = client.post(
            "/v1/auth/2fa/setup", json={"method": "authenticator"}, headers=_bearer(tokens)
        ).json()["data"]
        secret = setup["secret"]
        assert setup["provisioning_uri"].startswith("otpauth://totp/")

        enabled = client.post(
            "/v1/auth/2fa/enable",
            json={"code": totp_at(secret, utcnow().timestamp())},
            headers=_bearer(tokens),
        )
        assert enabled.status_code == 200
        backup_codes = enabled.json()["data"]["backup_codes"]
        assert len(backup_codes) == 10

        challenge = _login(client)
        assert challenge["requires_two_factor"] is True
        result = client.post(
            "/v1/auth/2fa/verify",
            json={"challenge_token": challenge["challenge_token"], "code": backup_codes[0]},
        )
        assert result.status_code == 200
        assert "access_token" in result.json()["data"]

        status = client.get("/v1/auth/2fa/status", headers=_bearer(tokens)).json()["data"]
        assert status["enabled"] is True
        assert status["backup_codes_remaining"] == 9

    def test_email_code_login(self, client, outbox):
        _register_verified(client, outbox)
        tokens = _login(client)
        client.post("/v1/auth/2fa/setup", json={"method": "email"}, headers=_bearer(tokens))
        setup_code = _CODE_RE.search(outbox[-1]["text"]).group(1)
        enabled = client.post("/v1/auth/2fa/enable", json={"code": setup_code}, headers=_bearer(tokens))
        assert enabled.status_code == 200

        challenge = _login(client)
        assert challenge["code_sent"] is True
        login_code = _CODE_RE.search(outbox[-1]["text"]).group(1)
        wrong_code = str((int(login_code) + 1) % 1000000).zfill(6)
        wrong = client.post(
            "/v1/auth/2fa/verify",
            json={"challenge_token": challenge["challenge_token"], "code": wrong_code},
        )
        assert wrong.status_code == 401
        result = client.post(
            "/v1/auth/2fa/verify",
            json={"challenge_token": challenge["challenge_token"], "code": login_code},
        )
        assert result.status_code == 200


class TestAdminFlow:
    def _admin_tokens(self, client):
        runtime = get_runtime()
        bootstrap_admin = _load_bootstrap()
        result = bootstrap_admin(runtime, "root@example.com", "Admin-Passw0rd!")
        assert result["status"] == "created"
        return _login(client, email="root@example.com", password="Admin-Passw0rd!")

    def test_non_admin_is_forbidden(self, client, outbox):
        account = _register_verified(client, outbox)
        tokens = _login(client)
        response = client.post(
            f"/v1/admin/accounts/{account['id']}/suspend",
            json={"reason": "test"},
            headers=_bearer(tokens),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_suspend_and_unsuspend(self, client, outbox):
        account = _register_verified(client, outbox)
        user_tokens = _login(client)
        admin = self._admin_tokens(client)

        response = client.post(
            f"/v1/admin/accounts/{account['id']}/suspend",
            json={"reason": "chargeback"},
            headers=_bearer(admin),
        )
        assert response.json()["data"]["account"]["status"] == "suspended"
        assert client.get("/v1/me", headers=_bearer(user_tokens)).status_code == 401
        refused = client.post(
            "/v1/auth/login", json={"email": "buyer@example.com", "password": "Str0ng-Pass!"}
        )
        assert refused.status_code == 403

        client.post(f"/v1/admin/accounts/{account['id']}/unsuspend", headers=_bearer(admin))
        _login(client)

    def test_activate_representative(self, client, outbox):
        response = _register(
            client, email="rep@example.com", role="local_representative", region="Madeira"
        )
        account = response.json()["data"]["account"]
        client.post("/v1/auth/verify-email", json={"token": _last_token(outbox)})
        assert get_runtime().store.get_account(account["id"]).status == AccountStatus.PENDING_ACTIVATION

        admin = self._admin_tokens(client)
        activated = client.post(f"/v1/admin/accounts/{account['id']}/activate", headers=_bearer(admin))
        assert activated.json()["data"]["account"]["status"] == "active"
        _login(client, email="rep@example.com")

    def test_unknown_account_is_404(self, client):
        admin = self._admin_tokens(client)
        response = client.post("/v1/admin/accounts/missing/unlock", headers=_bearer(admin))
        assert response.status_code == 404


def test_bootstrap_promotes_existing_account(outbox):
    bootstrap_admin = _load_bootstrap()
    runtime = get_runtime()
    client = TestClient(app_module.app)
    account = _register_verified(client, outbox)
    result = bootstrap_admin(runtime, "buyer@example.com", "ignored")
    assert result["status"] == "promoted"
    assert runtime.store.get_account(account["id"]).role == Role.ADMIN
    assert bootstrap_admin(runtime, "buyer@example.com", "ignored")["status"] == "already_admin"


def test_bootstrap_cli_requires_credentials(monkeypatch):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    with pytest.raises(SystemExit) as excinfo:
        _bootstrap_module().main(["--email", "root@example.com"])
    assert excinfo.value.code == 2
