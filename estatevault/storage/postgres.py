from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from estatevault.logging import get_logger
from estatevault.storage.common import (
    SecretCipher,
    check_account_fields,
    ensure_aware,
    normalize_email,
    parse_json_meta,
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL,
        status TEXT NOT NULL,
        password_hash TEXT,
        password_algo TEXT,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        phone_number TEXT,
        first_name TEXT,
        last_name TEXT,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        profile JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_history (
        id BIGSERIAL PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        reason TEXT NOT NULL,
        changed_by UUID,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_history_account_idx ON password_history (account_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS ledger_token (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        token_type TEXT NOT NULL,
        digest TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ,
        session_id UUID,
        ip_address TEXT,
        user_agent TEXT,
        meta JSONB NOT NULL DEFAULT '{}'::jsonb,
        UNIQUE (token_type, digest)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ledger_token_account_idx ON ledger_token (account_id, token_type)",
    "CREATE INDEX IF NOT EXISTS ledger_token_expiry_idx ON ledger_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS token_blacklist (
        digest TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        account_id UUID NOT NULL,
        reason TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_blacklist_expiry_idx ON token_blacklist (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS two_factor_config (
        account_id UUID PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        method TEXT NOT NULL,
        secret TEXT,
        temp_secret TEXT,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        is_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        enabled_at TIMESTAMPTZ,
        disabled_at TIMESTAMPTZ,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        phone_number TEXT,
        last_used_at TIMESTAMPTZ,
        last_used_step BIGINT
    )
    """,
    "ALTER TABLE two_factor_config ADD COLUMN IF NOT EXISTS last_used_step BIGINT",
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id UUID PRIMARY KEY,
        account_id UUID,
        action TEXT NOT NULL,
        severity TEXT NOT NULL,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        performed_by UUID,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_account_idx ON audit_event (account_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS audit_event_action_idx ON audit_event (action, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS login_record (
        id BIGSERIAL PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        success BOOLEAN NOT NULL,
        ip_address TEXT,
        country TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_record_account_idx ON login_record (account_id, created_at DESC)",
)

_ACCOUNT_JSON_FIELDS = {"profile"}
_ACCOUNT_ENUM_FIELDS = {"role", "status"}


class PostgresStore:
    """Postgres-backed auth store.

    Atomic operations are expressed as single statements (``DELETE ...
    RETURNING``, ``UPDATE ... RETURNING``) or one explicit transaction, so
    concurrent handlers on separate instances cannot interleave them.
    """

    def __init__(self, dsn: str, fs_root: str, *, encryption_key: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # -- row mapping --------------------------------------------------------

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            role=Role(row["role"]),
            status=AccountStatus(row["status"]),
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            failed_login_count=row.get("failed_login_count") or 0,
            locked_until=ensure_aware(row.get("locked_until")),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            email_verified=bool(row.get("email_verified")),
            phone_number=row.get("phone_number"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            last_login_at=ensure_aware(row.get("last_login_at")),
            last_login_ip=row.get("last_login_ip"),
            created_at=ensure_aware(row["created_at"]),
            profile=parse_json_meta(row.get("profile")),
        )

    @staticmethod
    def _token_from_row(row: dict) -> LedgerToken:
        return LedgerToken(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_type=TokenType(row["token_type"]),
            digest=row["digest"],
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(row["created_at"]),
            last_used_at=ensure_aware(row.get("last_used_at")),
            session_id=str(row["session_id"]) if row.get("session_id") else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            meta=parse_json_meta(row.get("meta")),
        )

    @staticmethod
    def _blacklist_from_row(row: dict) -> BlacklistEntry:
        return BlacklistEntry(
            digest=row["digest"],
            kind=TokenKind(row["kind"]),
            account_id=str(row["account_id"]),
            reason=BlacklistReason(row["reason"]),
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(row["created_at"]),
        )

    def _two_factor_from_row(self, row: dict) -> TwoFactorConfig:
        return TwoFactorConfig(
            account_id=str(row["account_id"]),
            method=TwoFactorMethod(row["method"]),
            secret=self._cipher.decrypt(row.get("secret")),
            temp_secret=self._cipher.decrypt(row.get("temp_secret")),
            backup_codes=list(row.get("backup_codes") or []),
            is_enabled=bool(row.get("is_enabled")),
            enabled_at=ensure_aware(row.get("enabled_at")),
            disabled_at=ensure_aware(row.get("disabled_at")),
            failed_attempts=row.get("failed_attempts") or 0,
            locked_until=ensure_aware(row.get("locked_until")),
            phone_number=row.get("phone_number"),
            last_used_at=ensure_aware(row.get("last_used_at")),
            last_used_step=row.get("last_used_step"),
        )

    @staticmethod
    def _audit_from_row(row: dict) -> AuditEvent:
        return AuditEvent(
            id=str(row["id"]),
            account_id=str(row["account_id"]) if row.get("account_id") else None,
            action=AuditAction(row["action"]),
            severity=Severity(row["severity"]),
            details=parse_json_meta(row.get("details")),
            performed_by=str(row["performed_by"]) if row.get("performed_by") else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=ensure_aware(row["created_at"]),
        )

    # -- accounts -----------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        email = normalize_email(account.email)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (
                        id, email, role, status, password_hash, password_algo,
                        two_factor_enabled, email_verified, phone_number,
                        first_name, last_name, created_at, profile
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        email,
                        account.role.value,
                        account.status.value,
                        account.password_hash,
                        account.password_algo,
                        account.two_factor_enabled,
                        account.email_verified,
                        account.phone_number,
                        account.first_name,
                        account.last_name,
                        account.created_at,
                        json.dumps(account.profile or {}),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        account.email = email
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account(self, account_id: str, **changes: Any) -> Optional[Account]:
        check_account_fields(changes)
        if not changes:
            return self.get_account(account_id)
        assignments = []
        params: list[Any] = []
        for name, value in changes.items():
            if name in _ACCOUNT_JSON_FIELDS:
                value = json.dumps(value or {})
            elif name in _ACCOUNT_ENUM_FIELDS:
                value = value.value if hasattr(value, "value") else value
            elif name == "email":
                value = normalize_email(value)
            assignments.append(f"{name} = %s")
            params.append(value)
        params.append(account_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE account SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row) if row else None

    def list_accounts(self, role: Optional[Role] = None, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            if role is None:
                rows = conn.execute(
                    "SELECT * FROM account ORDER BY created_at LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM account WHERE role = %s ORDER BY created_at LIMIT %s",
                    (role.value, limit),
                ).fetchall()
        return [self._account_from_row(r) for r in rows]

    # -- credentials --------------------------------------------------------

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE account SET password_hash = %s, password_algo = %s WHERE id = %s",
                (password_hash, password_algo, account_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )

    def append_password_history(self, entry: PasswordHistoryEntry, keep: int) -> None:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO password_history (account_id, password_hash, reason, changed_by, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (
                            entry.account_id,
                            entry.password_hash,
                            entry.reason.value,
                            entry.changed_by,
                            entry.created_at,
                        ),
                    )
                    conn.execute(
                        """
                        DELETE FROM password_history
                        WHERE account_id = %s AND id NOT IN (
                            SELECT id FROM password_history WHERE account_id = %s
                            ORDER BY created_at DESC, id DESC LIMIT %s
                        )
                        """,
                        (entry.account_id, entry.account_id, keep),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": entry.account_id})

    def list_password_history(self, account_id: str, limit: int) -> List[PasswordHistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM password_history WHERE account_id = %s
                ORDER BY created_at DESC, id DESC LIMIT %s
                """,
                (account_id, limit),
            ).fetchall()
        return [
            PasswordHistoryEntry(
                account_id=str(r["account_id"]),
                password_hash=r["password_hash"],
                reason=PasswordChangeReason(r["reason"]),
                changed_by=str(r["changed_by"]) if r.get("changed_by") else None,
                created_at=ensure_aware(r["created_at"]),
            )
            for r in rows
        ]

    # -- lockout ------------------------------------------------------------

    def record_login_failure(
        self, account_id: str, threshold: int, lock_for: timedelta, now: datetime
    ) -> LockoutState:
        # An expired lock restarts the count; the lock is only set on the crossing attempt.
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH prior AS (
                    SELECT id, locked_until AS prev_locked_until FROM account WHERE id = %(id)s FOR UPDATE
                )
                UPDATE account a SET
                    failed_login_count = CASE
                        WHEN p.prev_locked_until IS NOT NULL AND p.prev_locked_until <= %(now)s THEN 1
                        ELSE a.failed_login_count + 1 END,
                    locked_until = CASE
                        WHEN p.prev_locked_until IS NOT NULL AND p.prev_locked_until > %(now)s THEN p.prev_locked_until
                        WHEN (CASE WHEN p.prev_locked_until IS NOT NULL AND p.prev_locked_until <= %(now)s
                                   THEN 1 ELSE a.failed_login_count + 1 END) >= %(threshold)s
                            THEN %(lock_until)s
                        ELSE NULL END
                FROM prior p
                WHERE a.id = p.id
                RETURNING a.failed_login_count, a.locked_until, p.prev_locked_until
                """,
                {
                    "id": account_id,
                    "now": now,
                    "threshold": threshold,
                    "lock_until": now + lock_for,
                },
            ).fetchone()
        if not row:
            return LockoutState(failed_count=0)
        locked_until = ensure_aware(row["locked_until"])
        previous = ensure_aware(row["prev_locked_until"])
        just_locked = locked_until is not None and (previous is None or previous <= now)
        return LockoutState(
            failed_count=row["failed_login_count"],
            locked_until=locked_until,
            just_locked=just_locked,
        )

    def reset_login_failures(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET failed_login_count = 0, locked_until = NULL WHERE id = %s",
                (account_id,),
            )

    # -- ledger -------------------------------------------------------------

    def _insert_token(self, conn, token: LedgerToken) -> None:
        conn.execute(
            """
            INSERT INTO ledger_token (
                id, account_id, token_type, digest, expires_at, created_at,
                last_used_at, session_id, ip_address, user_agent, meta
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.account_id,
                token.token_type.value,
                token.digest,
                token.expires_at,
                token.created_at,
                token.last_used_at,
                token.session_id,
                token.ip_address,
                token.user_agent,
                json.dumps(token.meta or {}),
            ),
        )

    def insert_token(self, token: LedgerToken) -> LedgerToken:
        try:
            with self._connect() as conn:
                self._insert_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"type": token.token_type.value})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": token.account_id})
        return token

    def get_token(self, token_type: TokenType, digest: str) -> Optional[LedgerToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ledger_token WHERE token_type = %s AND digest = %s",
                (token_type.value, digest),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def take_token(self, token_type: TokenType, digest: str) -> Optional[LedgerToken]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM ledger_token WHERE token_type = %s AND digest = %s RETURNING *",
                (token_type.value, digest),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def rotate_token(
        self, token_type: TokenType, old_digest: str, replacement: LedgerToken
    ) -> Optional[LedgerToken]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "DELETE FROM ledger_token WHERE token_type = %s AND digest = %s RETURNING *",
                    (token_type.value, old_digest),
                ).fetchone()
                if not row:
                    return None
                self._insert_token(conn, replacement)
        return self._token_from_row(row)

    def list_tokens(
        self, account_id: str, token_type: TokenType, now: Optional[datetime] = None
    ) -> List[LedgerToken]:
        query = "SELECT * FROM ledger_token WHERE account_id = %s AND token_type = %s"
        params: list[Any] = [account_id, token_type.value]
        if now is not None:
            query += " AND expires_at > %s"
            params.append(now)
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._token_from_row(r) for r in rows]

    def delete_tokens(
        self,
        account_id: str,
        token_type: TokenType,
        *,
        session_id: Optional[str] = None,
        except_session_id: Optional[str] = None,
    ) -> List[LedgerToken]:
        query = "DELETE FROM ledger_token WHERE account_id = %s AND token_type = %s"
        params: list[Any] = [account_id, token_type.value]
        if session_id is not None:
            query += " AND session_id = %s"
            params.append(session_id)
        if except_session_id is not None:
            query += " AND (session_id IS NULL OR session_id <> %s)"
            params.append(except_session_id)
        query += " RETURNING *"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._token_from_row(r) for r in rows]

    def purge_expired_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM ledger_token WHERE expires_at <= %s", (now,))
            return result.rowcount or 0

    # -- blacklist ----------------------------------------------------------

    def add_blacklist_entry(self, entry: BlacklistEntry) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                INSERT INTO token_blacklist (digest, kind, account_id, reason, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (digest) DO NOTHING
                """,
                (
                    entry.digest,
                    entry.kind.value,
                    entry.account_id,
                    entry.reason.value,
                    entry.expires_at,
                    entry.created_at,
                ),
            )
            return bool(result.rowcount)

    def get_blacklist_entry(self, digest: str) -> Optional[BlacklistEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM token_blacklist WHERE digest = %s", (digest,)
            ).fetchone()
        return self._blacklist_from_row(row) if row else None

    def purge_blacklist(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM token_blacklist WHERE expires_at < %s", (before,))
            return result.rowcount or 0

    # -- two-factor ---------------------------------------------------------

    def get_two_factor(self, account_id: str) -> Optional[TwoFactorConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_config WHERE account_id = %s", (account_id,)
            ).fetchone()
        return self._two_factor_from_row(row) if row else None

    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO two_factor_config (
                        account_id, method, secret, temp_secret, backup_codes, is_enabled,
                        enabled_at, disabled_at, failed_attempts, locked_until, phone_number, last_used_at,
                        last_used_step
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (account_id) DO UPDATE SET
                        method = EXCLUDED.method,
                        secret = EXCLUDED.secret,
                        temp_secret = EXCLUDED.temp_secret,
                        backup_codes = EXCLUDED.backup_codes,
                        is_enabled = EXCLUDED.is_enabled,
                        enabled_at = EXCLUDED.enabled_at,
                        disabled_at = EXCLUDED.disabled_at,
                        failed_attempts = EXCLUDED.failed_attempts,
                        locked_until = EXCLUDED.locked_until,
                        phone_number = EXCLUDED.phone_number,
                        last_used_at = EXCLUDED.last_used_at,
                        last_used_step = EXCLUDED.last_used_step
                    """,
                    (
                        config.account_id,
                        config.method.value,
                        self._cipher.encrypt(config.secret),
                        self._cipher.encrypt(config.temp_secret),
                        list(config.backup_codes),
                        config.is_enabled,
                        config.enabled_at,
                        config.disabled_at,
                        config.failed_attempts,
                        config.locked_until,
                        config.phone_number,
                        config.last_used_at,
                        config.last_used_step,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for two-factor", {"account_id": config.account_id}
            )
        return config

    def consume_backup_code(self, account_id: str, code_digest: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_config
                SET backup_codes = array_remove(backup_codes, %s)
                WHERE account_id = %s AND %s = ANY(backup_codes)
                RETURNING account_id
                """,
                (code_digest, account_id, code_digest),
            ).fetchone()
        return row is not None

    def record_two_factor_failure(
        self, account_id: str, threshold: int, lock_for: timedelta, now: datetime
    ) -> LockoutState:
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH prior AS (
                    SELECT account_id, locked_until AS prev_locked_until
                    FROM two_factor_config WHERE account_id = %(id)s FOR UPDATE
                )
                UPDATE two_factor_config t SET
                    failed_attempts = CASE
                        WHEN p.prev_locked_until IS NOT NULL AND p.prev_locked_until <= %(now)s THEN 1
                        ELSE t.failed_attempts + 1 END,
                    locked_until = CASE
                        WHEN p.prev_locked_until IS NOT NULL AND p.prev_locked_until > %(now)s THEN p.prev_locked_until
                        WHEN (CASE WHEN p.prev_locked_until IS NOT NULL AND p.prev_locked_until <= %(now)s
                                   THEN 1 ELSE t.failed_attempts + 1 END) >= %(threshold)s
                            THEN %(lock_until)s
                        ELSE NULL END
                FROM prior p
                WHERE t.account_id = p.account_id
                RETURNING t.failed_attempts, t.locked_until, p.prev_locked_until
                """,
                {
                    "id": account_id,
                    "now": now,
                    "threshold": threshold,
                    "lock_until": now + lock_for,
                },
            ).fetchone()
        if not row:
            return LockoutState(failed_count=0)
        locked_until = ensure_aware(row["locked_until"])
        previous = ensure_aware(row["prev_locked_until"])
        return LockoutState(
            failed_count=row["failed_attempts"],
            locked_until=locked_until,
            just_locked=locked_until is not None and (previous is None or previous <= now),
        )

    def reset_two_factor_failures(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE two_factor_config SET failed_attempts = 0, locked_until = NULL
                WHERE account_id = %s AND (failed_attempts > 0 OR locked_until IS NOT NULL)
                """,
                (account_id,),
            )

    def claim_totp_step(self, account_id: str, step: int, used_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_config SET last_used_step = %s, last_used_at = %s
                WHERE account_id = %s AND (last_used_step IS NULL OR last_used_step < %s)
                RETURNING account_id
                """,
                (step, used_at, account_id, step),
            ).fetchone()
        return row is not None

    # -- audit --------------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (
                    id, account_id, action, severity, details, performed_by,
                    ip_address, user_agent, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.account_id,
                    event.action.value,
                    event.severity.value,
                    json.dumps(event.details or {}, default=str),
                    event.performed_by,
                    event.ip_address,
                    event.user_agent,
                    event.created_at,
                ),
            )

    def list_audit_events(
        self,
        account_id: Optional[str] = None,
        *,
        actions: Optional[Sequence[AuditAction]] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses = []
        params: list[Any] = []
        if account_id is not None:
            clauses.append("account_id = %s")
            params.append(account_id)
        if actions:
            clauses.append("action = ANY(%s)")
            params.append([a.value for a in actions])
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._audit_from_row(r) for r in rows]

    def purge_audit_events(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM audit_event WHERE created_at < %s", (before,))
            return result.rowcount or 0

    def record_login(self, record: LoginRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_record (account_id, success, ip_address, country, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    record.account_id,
                    record.success,
                    record.ip_address,
                    record.country,
                    record.user_agent,
                    record.created_at,
                ),
            )

    def list_login_records(
        self, account_id: str, since: Optional[datetime] = None, limit: int = 100
    ) -> List[LoginRecord]:
        query = "SELECT * FROM login_record WHERE account_id = %s"
        params: list[Any] = [account_id]
        if since is not None:
            query += " AND created_at >= %s"
            params.append(since)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            LoginRecord(
                account_id=str(r["account_id"]),
                success=bool(r["success"]),
                ip_address=r.get("ip_address"),
                country=r.get("country"),
                user_agent=r.get("user_agent"),
                created_at=ensure_aware(r["created_at"]),
            )
            for r in rows
        ]

    def check_health(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True
