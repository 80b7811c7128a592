"""Password policy, hashing and reuse history."""

import pytest
from argon2 import PasswordHasher, Type

from estatevault.service.credentials import PASSWORD_ALGO, check_password_strength
from estatevault.service.errors import AuthErrorKind
from estatevault.storage.models import PasswordChangeReason


class TestPasswordStrength:
    @pytest.mark.parametrize(
        "candidate",
        ["short1!A", "Correct-Horse-9", "Ümlaut-Pässwort-1"],
    )
    def test_accepts_strong_passwords(self, candidate):
        assert check_password_strength(candidate) is None

    def test_lists_every_unmet_rule(self):
        problem = check_password_strength("abc")
        assert problem.kind == AuthErrorKind.PASSWORD_TOO_WEAK
        requirements = problem.details["requirements"]
        assert "at least 8 characters" in requirements
        assert "an uppercase letter" in requirements
        assert "a digit" in requirements
        assert "a symbol" in requirements
        assert "a lowercase letter" not in requirements

    def test_rejects_overlong_password(self):
        problem = check_password_strength("Aa1!" * 40)
        assert "at most 128 characters" in problem.details["requirements"]


class CountingHasher(PasswordHasher):
    def __init__(self):
        super().__init__(type=Type.ID)
        self.verified = []

    def verify(self, hash, password):
        self.verified.append(hash)
        return super().verify(hash, password)


class TestCredentialStore:
    def test_hash_is_argon2id_and_verifies(self, make_account, auth_service, password):
        account = make_account()
        assert account.password_algo == PASSWORD_ALGO
        assert account.password_hash.startswith("$argon2id$")
        assert auth_service.credentials.verify_password(account, password)
        assert not auth_service.credentials.verify_password(account, "Wrong-Horse-9")

    def test_unknown_algorithm_never_verifies(self, make_account, auth_service, password):
        account = make_account()
        account.password_algo = "bcrypt"
        assert not auth_service.credentials.verify_password(account, password)

    def test_recent_passwords_cannot_be_reused(self, make_account, auth_service, password):
        account = make_account()
        credentials = auth_service.credentials
        problem = credentials.set_password(account, password, PasswordChangeReason.USER_CHANGE)
        assert problem.kind == AuthErrorKind.PASSWORD_REUSED

    def test_history_depth_bounds_reuse_window(self, make_account, auth_service, store, password):
        account = make_account()
        credentials = auth_service.credentials
        credentials.history_depth = 2
        for idx in range(2):
            assert (
                credentials.set_password(
                    account, f"Rotated-Pass-{idx}!", PasswordChangeReason.USER_CHANGE
                )
                is None
            )
        # The first password has aged out of a two-entry history.
        assert credentials.set_password(account, password, PasswordChangeReason.USER_CHANGE) is None
        assert len(store.list_password_history(account.id, 10)) == 2

    def test_default_history_covers_last_five_passwords(self, make_account, auth_service, password):
        account = make_account()
        credentials = auth_service.credentials
        assert credentials.history_depth == 5
        generations = [password] + [f"Rotated-Pass-{idx}!" for idx in range(1, 5)]
        for candidate in generations[1:]:
            assert credentials.set_password(account, candidate, PasswordChangeReason.USER_CHANGE) is None

        for candidate in generations:
            problem = credentials.set_password(account, candidate, PasswordChangeReason.USER_CHANGE)
            assert problem.kind == AuthErrorKind.PASSWORD_REUSED

        assert credentials.set_password(account, "Rotated-Pass-5!", PasswordChangeReason.USER_CHANGE) is None
        # The original password is now six generations old.
        assert credentials.set_password(account, password, PasswordChangeReason.USER_CHANGE) is None

    def test_history_records_reason_and_actor(self, make_account, auth_service, store):
        account = make_account()
        auth_service.credentials.set_password(
            account, "Admin-Chosen-7!", PasswordChangeReason.ADMIN_RESET, changed_by="admin-1"
        )
        latest = store.list_password_history(account.id, 1)[0]
        assert latest.reason == PasswordChangeReason.ADMIN_RESET
        assert latest.changed_by == "admin-1"

    def test_weak_password_leaves_hash_untouched(self, make_account, auth_service, store):
        account = make_account()
        before = account.password_hash
        problem = auth_service.credentials.set_password(account, "weak", PasswordChangeReason.USER_CHANGE)
        assert problem.kind == AuthErrorKind.PASSWORD_TOO_WEAK
        assert store.get_account(account.id).password_hash == before


async def test_unknown_email_login_still_runs_argon2(auth_service, ctx):
    hasher = CountingHasher()
    auth_service.credentials._hasher = hasher
    for _ in range(2):
        result = await auth_service.login("ghost@example.com", "Some-Pass-1!", ctx)
        assert result.kind == AuthErrorKind.INVALID_CREDENTIALS
    assert len(hasher.verified) == 2
    assert hasher.verified[0] == hasher.verified[1]
