"""
Tests for challenge-response login and sessions.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from certregistry.core.challenge import ChallengeSessionManager, InMemoryChallengeStore
from certregistry.core.errors import (
    AccountNotFound,
    AlreadyConsumed,
    AuthenticationError,
    ExpiredChallenge,
    NoSuchChallenge,
    SignatureMismatch,
)
from certregistry.core.sessions import LoginRateLimiter, SessionRegistry
from certregistry.core.signature import SignatureVerifier, generate_account, sign_message
from certregistry.db.store import InMemoryReadModelStore, SessionStatus


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryReadModelStore()


@pytest.fixture
def sessions(store, clock):
    return SessionRegistry(store, secret="test-secret", ttl_seconds=3600, clock=clock)


@pytest.fixture
def manager(sessions, clock):
    return ChallengeSessionManager(SignatureVerifier(), sessions, ttl_seconds=300, clock=clock)


@pytest.fixture
def wallet():
    return generate_account()


class TestChallengeSessionManager:

    def test_login_round_trip(self, manager, sessions, wallet):
        address, key = wallet
        challenge = manager.create_challenge(address)
        assert address in challenge.nonce_message

        token = manager.consume_challenge(address, sign_message(challenge.nonce_message, key))
        assert token.address == address
        assert token.token_type == "bearer"
        assert sessions.resolve(token.access_token).address == address

    def test_nonce_is_fresh_each_time(self, manager, wallet):
        address, _ = wallet
        first = manager.create_challenge(address)
        second = manager.create_challenge(address)
        assert first.nonce_message != second.nonce_message

    def test_accepts_lowercase_address(self, manager, wallet):
        address, key = wallet
        challenge = manager.create_challenge(address.lower())
        token = manager.consume_challenge(address.lower(), sign_message(challenge.nonce_message, key))
        assert token.address == address

    def test_new_challenge_replaces_old(self, manager, wallet):
        address, key = wallet
        old = manager.create_challenge(address)
        manager.create_challenge(address)
        with pytest.raises(SignatureMismatch):
            manager.consume_challenge(address, sign_message(old.nonce_message, key))

    def test_replay_rejected(self, manager, wallet):
        """Same valid signature a second time is AlreadyConsumed."""
        address, key = wallet
        challenge = manager.create_challenge(address)
        sig = sign_message(challenge.nonce_message, key)
        manager.consume_challenge(address, sig)
        with pytest.raises(AlreadyConsumed):
            manager.consume_challenge(address, sig)

    def test_expired(self, manager, clock, wallet):
        address, key = wallet
        challenge = manager.create_challenge(address)
        clock.advance(300)
        with pytest.raises(ExpiredChallenge):
            manager.consume_challenge(address, sign_message(challenge.nonce_message, key))

    def test_no_challenge(self, manager, wallet):
        address, key = wallet
        with pytest.raises(NoSuchChallenge):
            manager.consume_challenge(address, sign_message("anything", key))

    def test_malformed_address_is_no_challenge(self, manager):
        with pytest.raises(NoSuchChallenge):
            manager.consume_challenge("0x123", "0x" + "00" * 65)

    def test_create_rejects_malformed_address(self, manager):
        with pytest.raises(ValueError):
            manager.create_challenge("not an address")

    def test_wrong_signer(self, manager, wallet):
        address, _ = wallet
        _, other_key = generate_account()
        challenge = manager.create_challenge(address)
        with pytest.raises(SignatureMismatch):
            manager.consume_challenge(address, sign_message(challenge.nonce_message, other_key))

    def test_echoed_message_must_match(self, manager, wallet):
        address, key = wallet
        challenge = manager.create_challenge(address)
        forged = challenge.nonce_message + "\nExtra: 1"
        with pytest.raises(SignatureMismatch):
            manager.consume_challenge(address, sign_message(forged, key), message=forged)

    def test_failed_signature_does_not_consume(self, manager, wallet):
        address, key = wallet
        challenge = manager.create_challenge(address)
        with pytest.raises(SignatureMismatch):
            manager.consume_challenge(address, "0x" + "11" * 65)
        manager.consume_challenge(address, sign_message(challenge.nonce_message, key))

    def test_concurrent_consume_exactly_once(self, manager, wallet):
        address, key = wallet
        challenge = manager.create_challenge(address)
        sig = sign_message(challenge.nonce_message, key)

        results = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            try:
                manager.consume_challenge(address, sig)
                results.append("ok")
            except AlreadyConsumed:
                results.append("consumed")

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("consumed") == 7

    def test_admit_hook_sets_admin(self, sessions, clock, wallet):
        address, key = wallet
        manager = ChallengeSessionManager(
            SignatureVerifier(), sessions, clock=clock, admit=lambda a: True
        )
        challenge = manager.create_challenge(address)
        token = manager.consume_challenge(address, sign_message(challenge.nonce_message, key))
        assert token.is_admin

    def test_admit_hook_can_refuse(self, sessions, store, clock, wallet):
        address, key = wallet

        def refuse(a):
            raise AccountNotFound(f"{a} not registered")

        manager = ChallengeSessionManager(SignatureVerifier(), sessions, clock=clock, admit=refuse)
        challenge = manager.create_challenge(address)
        with pytest.raises(AccountNotFound):
            manager.consume_challenge(address, sign_message(challenge.nonce_message, key))
        assert store.list_sessions() == []

    def test_purge_expired(self, clock, sessions):
        challenge_store = InMemoryChallengeStore()
        manager = ChallengeSessionManager(
            SignatureVerifier(), sessions, store=challenge_store, clock=clock
        )
        for _ in range(3):
            manager.create_challenge(generate_account()[0])
        clock.advance(301)
        manager.create_challenge(generate_account()[0])
        assert manager.purge_expired() == 3
        assert len(challenge_store) == 1

    def test_lock_table_stays_bounded(self, clock, sessions):
        challenge_store = InMemoryChallengeStore(stripes=8)
        manager = ChallengeSessionManager(
            SignatureVerifier(), sessions, store=challenge_store, clock=clock
        )
        for _ in range(200):
            manager.create_challenge(generate_account()[0])
        clock.advance(301)
        assert manager.purge_expired() == 200
        assert len(challenge_store) == 0
        assert challenge_store.lock_count == 8

    def test_rejects_zero_stripes(self):
        with pytest.raises(ValueError):
            InMemoryChallengeStore(stripes=0)


class TestSessionRegistry:

    def test_logout(self, sessions, wallet):
        token = sessions.open(wallet[0])
        assert sessions.close(token.session_id)
        with pytest.raises(AuthenticationError, match="logged_out"):
            sessions.resolve(token.access_token)
        assert not sessions.close(token.session_id)

    def test_tampered_token(self, sessions, wallet):
        token = sessions.open(wallet[0])
        with pytest.raises(AuthenticationError):
            sessions.resolve(token.access_token[:-2] + "xx")

    def test_token_from_other_secret(self, sessions, store, clock, wallet):
        other = SessionRegistry(store, secret="another-secret", clock=clock)
        token = other.open(wallet[0])
        with pytest.raises(AuthenticationError):
            sessions.resolve(token.access_token)

    def test_missing_token(self, sessions):
        with pytest.raises(AuthenticationError):
            sessions.resolve("")

    def test_expiry(self, sessions, store, clock, wallet):
        token = sessions.open(wallet[0])
        clock.advance(3600)
        with pytest.raises(AuthenticationError):
            sessions.resolve(token.access_token)
        assert store.get_session(token.session_id).status == SessionStatus.EXPIRED

    def test_expire_stale(self, sessions, clock, wallet):
        sessions.open(wallet[0])
        sessions.open(wallet[0])
        clock.advance(1800)
        sessions.open(wallet[0])
        clock.advance(1800)
        assert sessions.expire_stale() == 2
        assert len(sessions.active_sessions()) == 1

    def test_revoke_for_address(self, sessions, wallet):
        a = sessions.open(wallet[0])
        other = sessions.open(generate_account()[0])
        assert sessions.revoke_for_address(wallet[0]) == 1
        with pytest.raises(AuthenticationError, match="revoked"):
            sessions.resolve(a.access_token)
        assert sessions.resolve(other.access_token)

    def test_demote(self, sessions, wallet):
        token = sessions.open(wallet[0], is_admin=True)
        sessions.demote(sessions.resolve(token.access_token))
        assert sessions.resolve(token.access_token).is_admin is False


class TestLoginRateLimiter:

    def test_blocks_after_max_attempts(self):
        now = [0.0]
        limiter = LoginRateLimiter(max_attempts=3, window_seconds=60, clock=lambda: now[0])
        for _ in range(3):
            assert limiter.check("1.2.3.4") == (True, 0)
            limiter.record("1.2.3.4")
        allowed, retry_after = limiter.check("1.2.3.4")
        assert not allowed
        assert retry_after == 60
        assert limiter.check("5.6.7.8")[0]

    def test_window_slides(self):
        now = [0.0]
        limiter = LoginRateLimiter(max_attempts=1, window_seconds=60, clock=lambda: now[0])
        limiter.record("ip")
        assert not limiter.check("ip")[0]
        now[0] = 61.0
        assert limiter.check("ip")[0]

    def test_clear(self):
        limiter = LoginRateLimiter(max_attempts=1)
        limiter.record("ip")
        limiter.clear("ip")
        assert limiter.check("ip")[0]

    def test_remaining_counts_down(self):
        now = [0.0]
        limiter = LoginRateLimiter(max_attempts=3, window_seconds=60, clock=lambda: now[0])
        assert limiter.remaining("ip") == 3
        limiter.record("ip")
        limiter.record("ip")
        assert limiter.remaining("ip") == 1
        now[0] = 61.0
        assert limiter.remaining("ip") == 3

    def test_clear_prefix_only_touches_matching_keys(self):
        limiter = LoginRateLimiter(max_attempts=1)
        limiter.record("10.0.0.1:0xaa")
        limiter.record("10.0.0.1:0xbb")
        limiter.record("10.0.0.2:0xaa")
        limiter.clear_prefix("10.0.0.1:")
        assert limiter.check("10.0.0.1:0xaa")[0]
        assert limiter.check("10.0.0.1:0xbb")[0]
        assert not limiter.check("10.0.0.2:0xaa")[0]
