"""Tests for verification session lifecycle."""

import asyncio

import pytest

from stepguard.service.errors import (
    SessionAlreadyTerminal,
    SessionExpired,
    SessionNotFound,
    ValidationError,
)
from stepguard.storage.models import ChannelKind, ChannelSpec, FlowKind, SessionStatus
from stepguard.storage.sessions import SessionStore

EMAIL = ChannelSpec(ChannelKind.EMAIL, "user@example.com")
PHONE = ChannelSpec(ChannelKind.MESSAGING, "6285800650661")


@pytest.fixture
def store(clock):
    return SessionStore(ttl_minutes=10, clock=clock)


def _verify(kind):
    def mutation(session):
        for entry in session.channels.values():
            if entry.kind is kind:
                entry.consumed_at = session.created_at
            else:
                entry.code_hash = None
        session.status = SessionStatus.VERIFIED
        session.verified_channel = kind
        session.verified_at = session.created_at

    return mutation


class TestCreate:
    def test_new_session_is_pending(self, store, clock):
        """A fresh session expires ten minutes after creation."""
        session = store.create("subject", [EMAIL, PHONE], flow=FlowKind.REGISTRATION)
        assert session.status is SessionStatus.PENDING
        assert session.created_at == clock.now
        assert (session.expires_at - session.created_at).total_seconds() == 600
        assert set(session.channels) == {ChannelKind.EMAIL, ChannelKind.MESSAGING}
        assert len(session.id) == 64

    def test_undelivered_channels_may_resend_immediately(self, store, clock):
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        assert session.channels[ChannelKind.EMAIL].resend_available_at == clock.now
        assert session.channels[ChannelKind.EMAIL].code_hash is None

    def test_channels_are_required(self, store):
        with pytest.raises(ValidationError):
            store.create("subject", [], flow=FlowKind.LOGIN)

    def test_duplicate_channel_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create("subject", [EMAIL, EMAIL], flow=FlowKind.LOGIN)

    def test_ids_are_unique(self, store):
        ids = {store.create("subject", [EMAIL], flow=FlowKind.LOGIN).id for _ in range(50)}
        assert len(ids) == 50


class TestGet:
    def test_unknown_session(self, store):
        with pytest.raises(SessionNotFound):
            store.get("missing")

    def test_valid_until_exact_expiry(self, store, clock):
        """Expiry is strict: the last instant still counts as valid."""
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        clock.advance(minutes=10)
        assert store.get(session.id).status is SessionStatus.PENDING

    def test_expires_lazily(self, store, clock):
        """One second past the TTL the session reads as expired."""
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        clock.advance(minutes=10, seconds=1)
        with pytest.raises(SessionExpired):
            store.get(session.id)
        with pytest.raises(SessionExpired):
            store.update(session.id, lambda s: None)

    def test_reads_are_copies(self, store):
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        session.status = SessionStatus.VERIFIED
        assert store.get(session.id).status is SessionStatus.PENDING

    def test_terminal_sessions_are_readable(self, store):
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        store.update(session.id, _verify(ChannelKind.EMAIL))
        assert store.get(session.id).status is SessionStatus.VERIFIED


class TestUpdate:
    def test_verification_consumes_one_channel(self, store):
        session = store.create("subject", [EMAIL, PHONE], flow=FlowKind.REGISTRATION)

        def seed(s):
            for entry in s.channels.values():
                entry.code_hash = f"hash-{entry.kind.value}"

        store.update(session.id, seed)
        updated = store.update(session.id, _verify(ChannelKind.MESSAGING))
        assert updated.verified_channel is ChannelKind.MESSAGING
        assert updated.channels[ChannelKind.EMAIL].code_hash is None
        assert updated.channels[ChannelKind.MESSAGING].consumed_at is not None

    def test_terminal_session_rejects_updates(self, store):
        """No transition leaves a terminal state."""
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        store.update(session.id, _verify(ChannelKind.EMAIL))
        with pytest.raises(SessionAlreadyTerminal):
            store.update(session.id, lambda s: None)

    def test_failed_mutation_leaves_session_untouched(self, store):
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)

        def broken(s):
            s.status = SessionStatus.LOCKED
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.update(session.id, broken)
        assert store.get(session.id).status is SessionStatus.PENDING

    def test_lifetime_is_immutable(self, store, clock):
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)

        def extend(s):
            s.expires_at = clock.advance(minutes=5)

        with pytest.raises(ValueError):
            store.update(session.id, extend)

    def test_verified_requires_single_consumed_channel(self, store):
        session = store.create("subject", [EMAIL, PHONE], flow=FlowKind.LOGIN)

        def bad(s):
            s.status = SessionStatus.VERIFIED
            s.verified_channel = ChannelKind.EMAIL

        with pytest.raises(ValueError):
            store.update(session.id, bad)

    def test_expire_only_affects_pending(self, store):
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        store.update(session.id, _verify(ChannelKind.EMAIL))
        store.expire(session.id)
        assert store.get(session.id).status is SessionStatus.VERIFIED

        other = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        store.expire(other.id)
        with pytest.raises(SessionExpired):
            store.get(other.id)


class TestLockAndCleanup:
    async def test_lock_serializes_one_session(self, store):
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        order = []

        async def worker(name):
            async with store.lock(session.id):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    def test_cleanup_after_retention(self, store, clock):
        session = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        clock.advance(minutes=20)
        assert store.cleanup_expired() == 0
        clock.advance(seconds=1)
        assert store.cleanup_expired() == 1
        assert len(store) == 0
        with pytest.raises(SessionNotFound):
            store.get(session.id)

    async def test_unknown_session_gets_no_lock(self, store):
        for index in range(100):
            with pytest.raises(SessionNotFound):
                async with store.lock(f"missing-{index}"):
                    pass
        assert store._locks == {}

    async def test_locks_are_released_with_their_sessions(self, store, clock):
        """Neither deletion nor cleanup leaves a lock entry behind."""
        deleted = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        swept = store.create("subject", [EMAIL], flow=FlowKind.LOGIN)
        async with store.lock(deleted.id):
            store.delete(deleted.id)
        async with store.lock(swept.id):
            pass
        assert list(store._locks) == [swept.id]
        clock.advance(hours=2)
        assert store.cleanup_expired() == 1
        assert store._locks == {}
