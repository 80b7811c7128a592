from __future__ import annotations

import secrets
import string
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from estatevault.logging import get_logger
from estatevault.service.errors import AuthErrorKind, AuthFailure, failure
from estatevault.storage.common import AuthStore
from estatevault.storage.models import Account, PasswordChangeReason, PasswordHistoryEntry

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def check_password_strength(password: str) -> Optional[AuthFailure]:
    """Return a ``password_too_weak`` failure listing unmet rules, or ``None``."""
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"at most {MAX_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in password):
        problems.append("an uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("a lowercase letter")
    if not any(c in string.digits for c in password):
        problems.append("a digit")
    if not any(not c.isalnum() and not c.isspace() for c in password):
        problems.append("a symbol")
    if not problems:
        return None
    return failure(
        AuthErrorKind.PASSWORD_TOO_WEAK,
        "Password must contain " + ", ".join(problems),
        requirements=problems,
    )


class CredentialStore:
    """Password hashing, verification and reuse history for accounts."""

    def __init__(
        self,
        store: AuthStore,
        *,
        history_depth: int = 5,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.history_depth = history_depth
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._decoy_hash: Optional[str] = None

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def _matches(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_password(self, account: Account, password: str) -> bool:
        if not account.password_hash:
            logger.warning("password_record_missing", account_id=account.id)
            return False
        if account.password_algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", account_id=account.id, algo=account.password_algo)
            return False
        return self._matches(account.password_hash, password)

    def verify_decoy(self, password: str) -> bool:
        """Spend one argon2 verification on a throwaway hash.

        Used when there is no account to check so the response takes as long
        as a real password check.
        """
        if self._decoy_hash is None:
            self._decoy_hash = self.hash_password(secrets.token_urlsafe(24))
        self._matches(self._decoy_hash, password)
        return False

    def is_reused(self, account: Account, password: str) -> bool:
        history = self.store.list_password_history(account.id, self.history_depth)
        return any(self._matches(entry.password_hash, password) for entry in history)

    def scramble(self, account: Account) -> None:
        """Replace the password with a random one nobody knows.

        The placeholder is not a chosen password, so it stays out of the
        reuse history.
        """
        password_hash = self.hash_password(secrets.token_urlsafe(32))
        self.store.save_password(account.id, password_hash, PASSWORD_ALGO)
        account.password_hash = password_hash
        account.password_algo = PASSWORD_ALGO
        logger.info("password_scrambled", account_id=account.id)

    def set_password(
        self,
        account: Account,
        password: str,
        reason: PasswordChangeReason,
        changed_by: Optional[str] = None,
    ) -> Optional[AuthFailure]:
        """Hash and persist a new password, appending it to the history.

        Does not revoke sessions; callers compose that explicitly.
        """
        weak = check_password_strength(password)
        if weak:
            return weak
        if self.is_reused(account, password):
            return failure(
                AuthErrorKind.PASSWORD_REUSED,
                f"Password must differ from your last {self.history_depth} passwords",
            )
        password_hash = self.hash_password(password)
        self.store.save_password(account.id, password_hash, PASSWORD_ALGO)
        self.store.append_password_history(
            PasswordHistoryEntry(
                account_id=account.id,
                password_hash=password_hash,
                reason=reason,
                changed_by=changed_by,
            ),
            keep=self.history_depth,
        )
        account.password_hash = password_hash
        account.password_algo = PASSWORD_ALGO
        logger.info("password_set", account_id=account.id, reason=reason.value)
        return None
