"""Tests for refresh session persistence and rotation against the in-memory store."""

import threading
from datetime import timedelta

import pytest

from marketauth.service.sessions import RefreshSessionStore
from marketauth.storage.errors import ConstraintViolation
from marketauth.storage.memory import MemoryStore
from marketauth.storage.models import utcnow


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("buyer@example.com", "hash")


@pytest.fixture
def sessions(memory_store):
    return RefreshSessionStore(memory_store)


class TestSave:
    def test_saved_jti_is_active(self, sessions, account):
        assert sessions.save(account.id, "jti-1") is True
        assert sessions.is_active("jti-1")

    def test_duplicate_save_is_noop(self, sessions, memory_store, account):
        sessions.save(account.id, "jti-1")
        sessions.rotate("jti-1")

        assert sessions.save(account.id, "jti-1") is False
        # the existing record keeps its revoked state
        assert not sessions.is_active("jti-1")
        assert len(memory_store.list_refresh_sessions(account.id)) == 1

    def test_new_lineage_is_keyed_by_its_first_jti(self, sessions, account):
        sessions.save(account.id, "jti-1")
        assert sessions.get("jti-1").family_id == "jti-1"

    def test_unknown_jti_is_inactive(self, sessions):
        assert sessions.is_active("never-issued") is False


class TestRotate:
    def test_rotate_revokes_once(self, sessions, account):
        sessions.save(account.id, "jti-1")

        assert sessions.rotate("jti-1") is True
        assert sessions.rotate("jti-1") is False
        assert not sessions.is_active("jti-1")

    def test_rotate_unknown_is_not_an_error(self, sessions):
        assert sessions.rotate("missing") is False


class TestReplace:
    def test_replace_revokes_old_and_links_new(self, sessions, account):
        sessions.save(account.id, "jti-1")

        assert sessions.replace("jti-1", account.id, "jti-2") is True
        old = sessions.get("jti-1")
        new = sessions.get("jti-2")
        assert old.revoked_at is not None
        assert old.replaced_by == "jti-2"
        assert new.is_active
        assert new.family_id == old.family_id == "jti-1"

    def test_replace_of_revoked_writes_nothing(self, sessions, account):
        sessions.save(account.id, "jti-1")
        sessions.rotate("jti-1")

        assert sessions.replace("jti-1", account.id, "jti-2") is False
        assert sessions.get("jti-2") is None

    def test_replace_requires_matching_subject(self, sessions, memory_store, account):
        other = memory_store.create_account("other@example.com", "hash")
        sessions.save(account.id, "jti-1")

        assert sessions.replace("jti-1", other.id, "jti-2") is False
        assert sessions.is_active("jti-1")

    def test_replace_onto_existing_jti_raises_and_keeps_old_active(self, sessions, account):
        sessions.save(account.id, "jti-1")
        sessions.save(account.id, "jti-2")

        with pytest.raises(ConstraintViolation):
            sessions.replace("jti-1", account.id, "jti-2")
        assert sessions.is_active("jti-1")

    def test_concurrent_replace_has_single_winner(self, sessions, account):
        sessions.save(account.id, "jti-0")
        results = []
        barrier = threading.Barrier(8)

        def worker(n):
            barrier.wait()
            results.append(sessions.replace("jti-0", account.id, f"next-{n}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7


class TestBulkRevocation:
    def test_revoke_all_counts_only_active(self, sessions, memory_store, account):
        other = memory_store.create_account("other@example.com", "hash")
        for jti in ("a", "b", "c"):
            sessions.save(account.id, jti)
        sessions.save(other.id, "d")
        sessions.rotate("a")

        assert sessions.revoke_all(account.id) == 2
        assert sessions.revoke_all(account.id) == 0
        assert sessions.is_active("d")

    def test_revoke_family_spares_other_lineages(self, sessions, account):
        sessions.save(account.id, "phone-1")
        sessions.replace("phone-1", account.id, "phone-2")
        sessions.save(account.id, "laptop-1")

        assert sessions.revoke_family("phone-1") == 1
        assert not sessions.is_active("phone-2")
        assert sessions.is_active("laptop-1")


class TestPurge:
    def test_purge_removes_only_old_revoked_records(self, sessions, memory_store, account):
        for jti in ("old", "recent", "active"):
            sessions.save(account.id, jti)
        sessions.rotate("old")
        sessions.rotate("recent")
        memory_store.refresh_sessions["old"].revoked_at = utcnow() - timedelta(days=45)

        assert sessions.purge_older_than(30) == 1
        assert sessions.get("old") is None
        assert sessions.get("recent") is not None
        assert sessions.is_active("active")

    def test_purged_jti_stays_unusable(self, sessions, memory_store, account):
        sessions.save(account.id, "old")
        sessions.rotate("old")
        memory_store.refresh_sessions["old"].revoked_at = utcnow() - timedelta(days=45)
        sessions.purge_older_than(30)

        assert sessions.is_active("old") is False
        assert sessions.replace("old", account.id, "new") is False
