from __future__ import annotations

from datetime import timedelta
from typing import Optional, Protocol

from marketauth.logging import get_logger
from marketauth.storage.models import RefreshSession, utcnow

logger = get_logger(__name__)


class RefreshSessionBackend(Protocol):
    def insert_refresh_session(
        self, subject_id: str, jti: str, family_id: Optional[str] = None
    ) -> bool: ...

    def get_refresh_session(self, jti: str) -> Optional[RefreshSession]: ...

    def revoke_refresh_session(self, jti: str) -> bool: ...

    def replace_refresh_session(self, old_jti: str, subject_id: str, new_jti: str) -> bool: ...

    def revoke_subject_sessions(self, subject_id: str) -> int: ...

    def revoke_family(self, family_id: str) -> int: ...

    def purge_revoked_sessions(self, older_than) -> int: ...


class RefreshSessionStore:
    """Lifecycle of persisted refresh-token identifiers.

    Every mutation is delegated to a single conditional write in the backing
    store, so concurrent callers racing on the same ``jti`` see exactly one
    winner.
    """

    def __init__(self, backend: RefreshSessionBackend) -> None:
        self.backend = backend

    def save(self, subject_id: str, jti: str, family_id: Optional[str] = None) -> bool:
        """Record ``jti`` as active. A duplicate ``jti`` is a silent no-op.

        Returns True when a new record was written.
        """
        inserted = self.backend.insert_refresh_session(subject_id, jti, family_id)
        if not inserted:
            logger.info("refresh_session_duplicate_ignored", subject_id=subject_id)
        return inserted

    def is_active(self, jti: str) -> bool:
        # Unknown and revoked are deliberately indistinguishable
        record = self.backend.get_refresh_session(jti)
        return bool(record and record.revoked_at is None)

    def get(self, jti: str) -> Optional[RefreshSession]:
        return self.backend.get_refresh_session(jti)

    def rotate(self, old_jti: str) -> bool:
        """Revoke ``old_jti`` if it is active; absent or already revoked is not an error."""
        return self.backend.revoke_refresh_session(old_jti)

    def replace(self, old_jti: str, subject_id: str, new_jti: str) -> bool:
        """Atomically revoke ``old_jti`` and record ``new_jti`` in the same lineage.

        Returns False when ``old_jti`` was not active for ``subject_id``; in
        that case nothing is written.
        """
        return self.backend.replace_refresh_session(old_jti, subject_id, new_jti)

    def revoke_all(self, subject_id: str) -> int:
        revoked = self.backend.revoke_subject_sessions(subject_id)
        logger.info("refresh_sessions_revoked_all", subject_id=subject_id, revoked_count=revoked)
        return revoked

    def revoke_family(self, family_id: str) -> int:
        return self.backend.revoke_family(family_id)

    def purge_older_than(self, retention_days: int) -> int:
        cutoff = utcnow() - timedelta(days=retention_days)
        purged = self.backend.purge_revoked_sessions(cutoff)
        logger.info(
            "refresh_sessions_purged", retention_days=retention_days, purged_count=purged
        )
        return purged
