import pytest
from pydantic import ValidationError

from estatevault.config import Settings, _persisted_secret


def test_generated_secret_is_persisted_and_reused(tmp_path):
    first = _persisted_secret(tmp_path / "secrets")
    assert len(first) >= 32
    assert (tmp_path / "secrets" / ".jwt_secret").read_text() == first
    assert _persisted_secret(tmp_path / "secrets") == first
    assert not list((tmp_path / "secrets").glob(".jwt_secret_*.tmp"))


def test_short_persisted_secret_is_replaced(tmp_path):
    (tmp_path / ".jwt_secret").write_text("short")
    assert _persisted_secret(tmp_path) != "short"


def test_environment_overrides_defaults(monkeypatch):
    monkeypatch.setenv("MAX_FAILED_LOGINS", "7")
    monkeypatch.setenv("ADMIN_ALERT_EMAILS", "ops@example.com, ,sec@example.com")
    monkeypatch.setenv("REDIS_URL", "")
    settings = Settings.from_env()
    assert settings.max_failed_logins == 7
    assert settings.admin_alert_recipients == ["ops@example.com", "sec@example.com"]
    assert settings.redis_url is None


def test_non_positive_thresholds_are_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, lockout_minutes=0)
