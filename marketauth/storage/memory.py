from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from marketauth.logging import get_logger
from marketauth.storage.errors import ConstraintViolation
from marketauth.storage.models import (
    ACTION_TOKEN_KINDS,
    DEFAULT_ROLE,
    EMAIL_VERIFY,
    PASSWORD_RESET,
    Account,
    ActionToken,
    RefreshSession,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and local development.

    Every public method runs under one re-entrant lock, so each call is a
    single atomic unit with respect to every other call on the same store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.refresh_sessions: Dict[str, RefreshSession] = {}
        self.action_tokens: Dict[str, ActionToken] = {}
        # RLock so compound operations can reuse the single-row helpers
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        name: Optional[str] = None,
        role: str = DEFAULT_ROLE,
        email_verified: bool = False,
    ) -> Account:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(
                email,
                password_hash=password_hash,
                name=name,
                role=role,
                email_verified=email_verified,
            )
            self.accounts[account.id] = account
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    # -- refresh sessions ---------------------------------------------------

    def insert_refresh_session(
        self, subject_id: str, jti: str, family_id: Optional[str] = None
    ) -> bool:
        """Record ``jti``; returns False (and changes nothing) if it already exists."""
        with self._data_lock:
            if jti in self.refresh_sessions:
                return False
            self.refresh_sessions[jti] = RefreshSession(
                jti=jti, subject_id=subject_id, family_id=family_id or jti
            )
            return True

    def get_refresh_session(self, jti: str) -> Optional[RefreshSession]:
        with self._data_lock:
            return self.refresh_sessions.get(jti)

    def revoke_refresh_session(self, jti: str) -> bool:
        with self._data_lock:
            record = self.refresh_sessions.get(jti)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = utcnow()
            return True

    def replace_refresh_session(self, old_jti: str, subject_id: str, new_jti: str) -> bool:
        with self._data_lock:
            if new_jti in self.refresh_sessions:
                raise ConstraintViolation("refresh session exists", {"jti": new_jti})
            record = self.refresh_sessions.get(old_jti)
            if (
                not record
                or record.revoked_at is not None
                or record.subject_id != subject_id
            ):
                return False
            record.revoked_at = utcnow()
            record.replaced_by = new_jti
            self.refresh_sessions[new_jti] = RefreshSession(
                jti=new_jti, subject_id=subject_id, family_id=record.family_id
            )
            return True

    def revoke_subject_sessions(self, subject_id: str) -> int:
        with self._data_lock:
            return self._revoke_where(lambda r: r.subject_id == subject_id)

    def revoke_family(self, family_id: str) -> int:
        with self._data_lock:
            return self._revoke_where(lambda r: r.family_id == family_id)

    def _revoke_where(self, predicate) -> int:
        now = utcnow()
        revoked = 0
        for record in self.refresh_sessions.values():
            if record.revoked_at is None and predicate(record):
                record.revoked_at = now
                revoked += 1
        return revoked

    def purge_revoked_sessions(self, older_than: datetime) -> int:
        with self._data_lock:
            stale = [
                jti
                for jti, record in self.refresh_sessions.items()
                if record.revoked_at is not None and record.revoked_at < older_than
            ]
            for jti in stale:
                self.refresh_sessions.pop(jti, None)
            return len(stale)

    def list_refresh_sessions(self, subject_id: str) -> List[RefreshSession]:
        with self._data_lock:
            return sorted(
                (r for r in self.refresh_sessions.values() if r.subject_id == subject_id),
                key=lambda r: r.created_at,
            )

    # -- single-use action tokens -------------------------------------------

    def create_action_token(
        self,
        subject_id: str,
        kind: str,
        token: str,
        ttl_minutes: int,
        *,
        invalidate_pending: bool = False,
    ) -> ActionToken:
        if kind not in ACTION_TOKEN_KINDS:
            raise ValueError(f"unknown action token kind: {kind}")
        with self._data_lock:
            if subject_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"subject_id": subject_id})
            if token in self.action_tokens:
                raise ConstraintViolation("action token exists", {"field": "token"})
            if invalidate_pending:
                now = utcnow()
                for pending in self.action_tokens.values():
                    if (
                        pending.subject_id == subject_id
                        and pending.kind == kind
                        and pending.used_at is None
                    ):
                        pending.used_at = now
            record = ActionToken.new(token, kind, subject_id, ttl_minutes)
            self.action_tokens[token] = record
            return record

    def get_action_token(self, token: str) -> Optional[ActionToken]:
        with self._data_lock:
            return self.action_tokens.get(token)

    def list_action_tokens(
        self, subject_id: str, kind: Optional[str] = None
    ) -> List[ActionToken]:
        with self._data_lock:
            return [
                t
                for t in self.action_tokens.values()
                if t.subject_id == subject_id and (kind is None or t.kind == kind)
            ]

    def _claim_action_token(self, token: str, kind: str) -> Optional[Tuple[ActionToken, Account]]:
        """Mark ``token`` used only when it is consumable and its account exists."""
        now = utcnow()
        record = self.action_tokens.get(token)
        if not record or record.kind != kind or not record.is_consumable(now):
            return None
        account = self.accounts.get(record.subject_id)
        if not account:
            return None
        record.used_at = now
        return record, account

    def consume_email_verification(self, token: str) -> Optional[Account]:
        with self._data_lock:
            claimed = self._claim_action_token(token, EMAIL_VERIFY)
            if not claimed:
                return None
            record, account = claimed
            if not account.email_verified:
                account.email_verified = True
                account.email_verified_at = record.used_at
            return account

    def consume_password_reset(self, token: str, password_hash: str) -> Optional[Account]:
        with self._data_lock:
            claimed = self._claim_action_token(token, PASSWORD_RESET)
            if not claimed:
                return None
            _record, account = claimed
            account.password_hash = password_hash
            self.revoke_subject_sessions(account.id)
            return account

    def set_password_and_revoke_sessions(self, account_id: str, password_hash: str) -> int:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            account.password_hash = password_hash
            return self.revoke_subject_sessions(account_id)
