"""MemoryStore persistence, constraints and atomic counters."""

import json
from datetime import timedelta

import pytest

from estatevault.storage.common import SecretCipher, check_account_fields
from estatevault.storage.errors import ConstraintViolation
from estatevault.storage.memory import MemoryStore
from estatevault.storage.models import (
    Account,
    BlacklistEntry,
    BlacklistReason,
    LedgerToken,
    Role,
    TokenKind,
    TokenType,
    TwoFactorConfig,
    TwoFactorMethod,
    utcnow,
)


def _store(root, key="store-key"):
    return MemoryStore(str(root), encryption_key=key)


def test_state_survives_reload(tmp_path):
    store = _store(tmp_path)
    account = store.create_account(Account.new("Owner@Example.com", Role.PROPERTY_OWNER))
    token = LedgerToken.new(
        account.id, TokenType.REFRESH, "d" * 64, timedelta(days=7), session_id="s1", meta={"remember_me": True}
    )
    store.insert_token(token)
    store.add_blacklist_entry(
        BlacklistEntry("e" * 64, TokenKind.ACCESS, account.id, BlacklistReason.LOGOUT, utcnow())
    )

    reloaded = _store(tmp_path)
    restored = reloaded.get_account_by_email("owner@example.com")
    assert restored.id == account.id
    assert restored.role == Role.PROPERTY_OWNER
    assert restored.created_at == account.created_at
    assert reloaded.get_token(TokenType.REFRESH, "d" * 64).meta == {"remember_me": True}
    assert reloaded.get_blacklist_entry("e" * 64).reason == BlacklistReason.LOGOUT


def test_two_factor_secret_is_encrypted_on_disk(tmp_path):
    store = _store(tmp_path)
    account = store.create_account(Account.new("a@example.com", Role.INVESTOR))
    store.save_two_factor(
        TwoFactorConfig(account.id, TwoFactorMethod.AUTHENTICATOR, secret="JBSWY3DPEHPK3PXP")
    )
    raw = (tmp_path / "state" / "auth_store.json").read_text()
    assert "JBSWY3DPEHPK3PXP" not in raw
    assert json.loads(raw)["two_factor"][0]["secret"]
    assert _store(tmp_path).get_two_factor(account.id).secret == "JBSWY3DPEHPK3PXP"


def test_wrong_key_cannot_read_secret(tmp_path):
    store = _store(tmp_path)
    account = store.create_account(Account.new("a@example.com", Role.INVESTOR))
    store.save_two_factor(TwoFactorConfig(account.id, TwoFactorMethod.AUTHENTICATOR, secret="SECRET"))
    assert _store(tmp_path, key="other-key").get_two_factor(account.id).secret is None


def test_cipher_requires_key_material():
    with pytest.raises(RuntimeError):
        SecretCipher("")


def test_duplicate_email_violates_constraint(tmp_path):
    store = _store(tmp_path)
    store.create_account(Account.new("a@example.com", Role.INVESTOR))
    with pytest.raises(ConstraintViolation):
        store.create_account(Account.new(" A@example.com", Role.INVESTOR))


def test_update_rejects_unknown_fields(tmp_path):
    store = _store(tmp_path)
    account = store.create_account(Account.new("a@example.com", Role.INVESTOR))
    with pytest.raises(ValueError, match="password_hash"):
        store.update_account(account.id, password_hash="x")
    with pytest.raises(ValueError):
        check_account_fields({"id": "new"})


def test_returned_accounts_are_copies(tmp_path):
    store = _store(tmp_path)
    account = store.create_account(Account.new("a@example.com", Role.INVESTOR))
    fetched = store.get_account(account.id)
    fetched.status = "mutated"
    assert store.get_account(account.id).status != "mutated"


def test_login_failure_counter_locks_once(tmp_path):
    store = _store(tmp_path)
    account = store.create_account(Account.new("a@example.com", Role.INVESTOR))
    now = utcnow()
    states = [store.record_login_failure(account.id, 3, timedelta(minutes=30), now) for _ in range(4)]
    assert [s.failed_count for s in states] == [1, 2, 3, 4]
    assert [s.just_locked for s in states] == [False, False, True, False]
    assert states[-1].locked_until == now + timedelta(minutes=30)

    later = now + timedelta(minutes=31)
    assert store.record_login_failure(account.id, 3, timedelta(minutes=30), later).failed_count == 1


def test_backup_code_consumed_once(tmp_path):
    store = _store(tmp_path)
    account = store.create_account(Account.new("a@example.com", Role.INVESTOR))
    store.save_two_factor(
        TwoFactorConfig(account.id, TwoFactorMethod.EMAIL, backup_codes=["h1", "h2"], is_enabled=True)
    )
    assert store.consume_backup_code(account.id, "h1")
    assert not store.consume_backup_code(account.id, "h1")
    assert store.get_two_factor(account.id).backup_codes == ["h2"]


def test_totp_steps_only_move_forward(tmp_path):
    store = _store(tmp_path)
    account = store.create_account(Account.new("a@example.com", Role.INVESTOR))
    store.save_two_factor(
        TwoFactorConfig(account.id, TwoFactorMethod.AUTHENTICATOR, is_enabled=True, last_used_step=100)
    )
    now = utcnow()
    assert not store.claim_totp_step(account.id, 100, now)
    assert not store.claim_totp_step(account.id, 99, now)
    assert store.claim_totp_step(account.id, 101, now)
    assert _store(tmp_path).get_two_factor(account.id).last_used_step == 101
    assert not store.claim_totp_step("missing", 5, now)


def test_corrupt_snapshot_starts_empty(tmp_path):
    state = tmp_path / "state"
    state.mkdir()
    (state / "auth_store.json").write_text("{not json")
    assert _store(tmp_path).list_accounts() == []
