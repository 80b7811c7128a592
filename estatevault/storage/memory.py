from __future__ import annotations

import json
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from estatevault.logging import get_logger
from estatevault.storage.common import (
    SecretCipher,
    check_account_fields,
    normalize_email,
)
from estatevault.storage.errors import ConstraintViolation
from estatevault.storage.models import (
    Account,
    AccountStatus,
    AuditAction,
    AuditEvent,
    BlacklistEntry,
    BlacklistReason,
    LedgerToken,
    LockoutState,
    LoginRecord,
    PasswordChangeReason,
    PasswordHistoryEntry,
    Role,
    Severity,
    TokenKind,
    TokenType,
    TwoFactorConfig,
    TwoFactorMethod,
)

# Field name -> enum type, used when reloading persisted state
_ENUM_FIELDS: Dict[str, type] = {
    "role": Role,
    "status": AccountStatus,
    "token_type": TokenType,
    "kind": TokenKind,
    "reason": None,  # resolved per record type
    "method": TwoFactorMethod,
    "action": AuditAction,
    "severity": Severity,
}


def _encode(record: Any) -> dict:
    out = {}
    for key, value in asdict(record).items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out


def _decode(cls: type, data: dict, *, reason_enum: Optional[type] = None) -> Any:
    names = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in data.items():
        if key not in names:
            continue
        enum_type = reason_enum if key == "reason" else _ENUM_FIELDS.get(key)
        if enum_type is not None and value is not None:
            value = enum_type(value)
        elif isinstance(value, str) and (key.endswith("_at") or key.endswith("_until")):
            value = datetime.fromisoformat(value)
        kwargs[key] = value
    return cls(**kwargs)


class MemoryStore:
    """In-process store persisted to a JSON snapshot under ``fs_root/state``.

    A single re-entrant lock guards every operation, which is what makes the
    compound operations (take, rotate, failure counters) atomic here.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/estatevault",
        *,
        encryption_key: str,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        # (token_type, digest) -> token
        self.tokens: Dict[tuple[TokenType, str], LedgerToken] = {}
        self.blacklist: Dict[str, BlacklistEntry] = {}
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        self.audit_events: List[AuditEvent] = []
        self.login_records: List[LoginRecord] = []
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(encryption_key)
        self._persist = persist
        self.fs_root = Path(fs_root)
        if self._persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    # -- accounts -----------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            email = normalize_email(account.email)
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(account, email=email, profile=dict(account.profile))
            self.accounts[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        target = normalize_email(email)
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == target:
                    return replace(account)
        return None

    def update_account(self, account_id: str, **changes: Any) -> Optional[Account]:
        check_account_fields(changes)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if "email" in changes:
                changes["email"] = normalize_email(changes["email"])
            updated = replace(account, **changes)
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

    def list_accounts(self, role: Optional[Role] = None, limit: int = 100) -> List[Account]:
        with self._data_lock:
            matches = [
                replace(a)
                for a in self.accounts.values()
                if role is None or a.role == role
            ]
        matches.sort(key=lambda a: a.created_at)
        return matches[:limit]

    # -- credentials --------------------------------------------------------

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.accounts[account_id] = replace(
                account, password_hash=password_hash, password_algo=password_algo
            )
            self._persist_state()

    def append_password_history(self, entry: PasswordHistoryEntry, keep: int) -> None:
        with self._data_lock:
            history = self.password_history.setdefault(entry.account_id, [])
            history.append(entry)
            history.sort(key=lambda e: e.created_at)
            del history[:-keep]
            self._persist_state()

    def list_password_history(self, account_id: str, limit: int) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            history = list(self.password_history.get(account_id, []))
        history.reverse()
        return history[:limit]

    # -- lockout ------------------------------------------------------------

    def record_login_failure(
        self, account_id: str, threshold: int, lock_for: timedelta, now: datetime
    ) -> LockoutState:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return LockoutState(failed_count=0)
            expired = account.locked_until is not None and account.locked_until <= now
            count = 1 if expired else account.failed_login_count + 1
            locked_until = None if expired else account.locked_until
            just_locked = False
            if count >= threshold and not account.is_locked(now):
                locked_until = now + lock_for
                just_locked = True
            self.accounts[account_id] = replace(
                account, failed_login_count=count, locked_until=locked_until
            )
            self._persist_state()
            return LockoutState(
                failed_count=count, locked_until=locked_until, just_locked=just_locked
            )

    def reset_login_failures(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            self.accounts[account_id] = replace(
                account, failed_login_count=0, locked_until=None
            )
            self._persist_state()

    # -- ledger -------------------------------------------------------------

    def insert_token(self, token: LedgerToken) -> LedgerToken:
        with self._data_lock:
            key = (token.token_type, token.digest)
            if key in self.tokens:
                raise ConstraintViolation("token already exists", {"type": token.token_type.value})
            self.tokens[key] = replace(token, meta=dict(token.meta))
            self._persist_state()
            return token

    def get_token(self, token_type: TokenType, digest: str) -> Optional[LedgerToken]:
        with self._data_lock:
            token = self.tokens.get((token_type, digest))
            return replace(token) if token else None

    def take_token(self, token_type: TokenType, digest: str) -> Optional[LedgerToken]:
        with self._data_lock:
            token = self.tokens.pop((token_type, digest), None)
            if token is not None:
                self._persist_state()
            return token

    def rotate_token(
        self, token_type: TokenType, old_digest: str, replacement: LedgerToken
    ) -> Optional[LedgerToken]:
        with self._data_lock:
            old = self.tokens.pop((token_type, old_digest), None)
            if old is None:
                return None
            self.tokens[(replacement.token_type, replacement.digest)] = replacement
            self._persist_state()
            return old

    def list_tokens(
        self, account_id: str, token_type: TokenType, now: Optional[datetime] = None
    ) -> List[LedgerToken]:
        with self._data_lock:
            matches = [
                replace(t)
                for t in self.tokens.values()
                if t.account_id == account_id
                and t.token_type == token_type
                and (now is None or not t.is_expired(now))
            ]
        matches.sort(key=lambda t: t.created_at, reverse=True)
        return matches

    def delete_tokens(
        self,
        account_id: str,
        token_type: TokenType,
        *,
        session_id: Optional[str] = None,
        except_session_id: Optional[str] = None,
    ) -> List[LedgerToken]:
        with self._data_lock:
            removed = []
            for key, token in list(self.tokens.items()):
                if token.account_id != account_id or token.token_type != token_type:
                    continue
                if session_id is not None and token.session_id != session_id:
                    continue
                if except_session_id is not None and token.session_id == except_session_id:
                    continue
                removed.append(self.tokens.pop(key))
            if removed:
                self._persist_state()
            return removed

    def purge_expired_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [key for key, t in self.tokens.items() if t.is_expired(now)]
            for key in expired:
                del self.tokens[key]
            if expired:
                self._persist_state()
            return len(expired)

    # -- blacklist ----------------------------------------------------------

    def add_blacklist_entry(self, entry: BlacklistEntry) -> bool:
        with self._data_lock:
            if entry.digest in self.blacklist:
                return False
            self.blacklist[entry.digest] = entry
            self._persist_state()
            return True

    def get_blacklist_entry(self, digest: str) -> Optional[BlacklistEntry]:
        with self._data_lock:
            return self.blacklist.get(digest)

    def purge_blacklist(self, before: datetime) -> int:
        with self._data_lock:
            stale = [d for d, e in self.blacklist.items() if e.expires_at < before]
            for digest in stale:
                del self.blacklist[digest]
            if stale:
                self._persist_state()
            return len(stale)

    # -- two-factor ---------------------------------------------------------

    def get_two_factor(self, account_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            cfg = self.two_factor.get(account_id)
            if not cfg:
                return None
            return replace(
                cfg,
                secret=self._cipher.decrypt(cfg.secret),
                temp_secret=self._cipher.decrypt(cfg.temp_secret),
                backup_codes=list(cfg.backup_codes),
            )

    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig:
        with self._data_lock:
            if config.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for two-factor", {"account_id": config.account_id}
                )
            self.two_factor[config.account_id] = replace(
                config,
                secret=self._cipher.encrypt(config.secret),
                temp_secret=self._cipher.encrypt(config.temp_secret),
                backup_codes=list(config.backup_codes),
            )
            self._persist_state()
            return config

    def consume_backup_code(self, account_id: str, code_digest: str) -> bool:
        with self._data_lock:
            cfg = self.two_factor.get(account_id)
            if not cfg or code_digest not in cfg.backup_codes:
                return False
            cfg.backup_codes.remove(code_digest)
            self._persist_state()
            return True

    def record_two_factor_failure(
        self, account_id: str, threshold: int, lock_for: timedelta, now: datetime
    ) -> LockoutState:
        with self._data_lock:
            cfg = self.two_factor.get(account_id)
            if not cfg:
                return LockoutState(failed_count=0)
            if cfg.locked_until and cfg.locked_until <= now:
                cfg.failed_attempts = 0
                cfg.locked_until = None
            cfg.failed_attempts += 1
            just_locked = False
            if cfg.failed_attempts >= threshold and not (
                cfg.locked_until and cfg.locked_until > now
            ):
                cfg.locked_until = now + lock_for
                just_locked = True
            self._persist_state()
            return LockoutState(
                failed_count=cfg.failed_attempts,
                locked_until=cfg.locked_until,
                just_locked=just_locked,
            )

    def reset_two_factor_failures(self, account_id: str) -> None:
        with self._data_lock:
            cfg = self.two_factor.get(account_id)
            if cfg and (cfg.failed_attempts or cfg.locked_until):
                cfg.failed_attempts = 0
                cfg.locked_until = None
                self._persist_state()

    def claim_totp_step(self, account_id: str, step: int, used_at: datetime) -> bool:
        """Record ``step`` as used unless it is not newer than the last one."""
        with self._data_lock:
            cfg = self.two_factor.get(account_id)
            if not cfg or (cfg.last_used_step is not None and step <= cfg.last_used_step):
                return False
            cfg.last_used_step = step
            cfg.last_used_at = used_at
            self._persist_state()
            return True

    # -- audit --------------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()

    def list_audit_events(
        self,
        account_id: Optional[str] = None,
        *,
        actions: Optional[Sequence[AuditAction]] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        wanted = set(actions) if actions else None
        with self._data_lock:
            matches = [
                e
                for e in self.audit_events
                if (account_id is None or e.account_id == account_id)
                and (wanted is None or e.action in wanted)
                and (since is None or e.created_at >= since)
            ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return matches[:limit]

    def purge_audit_events(self, before: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.audit_events if e.created_at >= before]
            removed = len(self.audit_events) - len(kept)
            if removed:
                self.audit_events = kept
                self._persist_state()
            return removed

    def record_login(self, record: LoginRecord) -> None:
        with self._data_lock:
            self.login_records.append(record)
            self._persist_state()

    def list_login_records(
        self, account_id: str, since: Optional[datetime] = None, limit: int = 100
    ) -> List[LoginRecord]:
        with self._data_lock:
            matches = [
                r
                for r in self.login_records
                if r.account_id == account_id and (since is None or r.created_at >= since)
            ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return matches[:limit]

    def check_health(self) -> bool:
        return True

    # -- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        if not self._persist:
            return
        state = {
            "accounts": [_encode(a) for a in self.accounts.values()],
            "password_history": [
                _encode(e) for entries in self.password_history.values() for e in entries
            ],
            "tokens": [_encode(t) for t in self.tokens.values()],
            "blacklist": [_encode(e) for e in self.blacklist.values()],
            "two_factor": [_encode(cfg) for cfg in self.two_factor.values()],
            "audit_events": [_encode(e) for e in self.audit_events],
            "login_records": [_encode(r) for r in self.login_records],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except ValueError as exc:
            self.logger.error("memory_store_state_corrupt", error=str(exc), path=str(path))
            return False
        self.accounts = {
            a["id"]: _decode(Account, a) for a in data.get("accounts", [])
        }
        self.password_history = {}
        for raw in data.get("password_history", []):
            entry = _decode(PasswordHistoryEntry, raw, reason_enum=PasswordChangeReason)
            self.password_history.setdefault(entry.account_id, []).append(entry)
        self.tokens = {}
        for raw in data.get("tokens", []):
            token = _decode(LedgerToken, raw)
            self.tokens[(token.token_type, token.digest)] = token
        self.blacklist = {
            raw["digest"]: _decode(BlacklistEntry, raw, reason_enum=BlacklistReason)
            for raw in data.get("blacklist", [])
        }
        self.two_factor = {
            raw["account_id"]: _decode(TwoFactorConfig, raw)
            for raw in data.get("two_factor", [])
        }
        self.audit_events = [_decode(AuditEvent, raw) for raw in data.get("audit_events", [])]
        self.login_records = [_decode(LoginRecord, raw) for raw in data.get("login_records", [])]
        self.logger.info("memory_store_state_loaded", accounts=len(self.accounts))
        return True
