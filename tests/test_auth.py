"""Challenge-response authentication tests."""

import threading

import pytest

from sanctuary.auth import ChallengeIssuer
from sanctuary.errors import (
    AgentMismatch,
    BadSignature,
    ChallengeAlreadyUsed,
    ChallengeExpired,
    ChallengeNotFound,
    NotFoundError,
    ValidationError,
)

from conftest import MANIFEST_HASH


@pytest.fixture
def issuer(db, clock):
    return ChallengeIssuer(db, ttl_seconds=300, clock=clock)


def add_agent(db, keys, clock):
    db.create_agent({
        "agent_id": keys.agent_id,
        "recovery_pubkey": keys.recovery_pubkey,
        "manifest_hash": MANIFEST_HASH,
        "manifest_version": 1,
        "registered_at": int(clock()),
        "status": "LIVING",
    })
    return keys


@pytest.fixture
def agent(db, zero_keys, clock):
    return add_agent(db, zero_keys, clock)


class TestIssue:

    def test_issue_for_registered_agent(self, issuer, agent, clock):
        challenge = issuer.issue(agent.agent_id)
        assert len(challenge.nonce) == 64
        assert challenge.agent_id == agent.agent_id
        assert challenge.expires_at == int(clock()) + 300

    def test_nonces_unique(self, issuer, agent):
        assert issuer.issue(agent.agent_id).nonce != issuer.issue(agent.agent_id).nonce

    def test_unregistered_agent(self, issuer, make_keys):
        _, stranger = make_keys()
        with pytest.raises(NotFoundError):
            issuer.issue(stranger.agent_id)

    def test_invalid_agent_id(self, issuer):
        with pytest.raises(ValidationError):
            issuer.issue("did:web:whatever")


class TestVerify:

    def test_valid_signature(self, issuer, agent, clock):
        challenge = issuer.issue(agent.agent_id)
        result = issuer.verify(agent.agent_id, challenge.nonce, agent.sign(challenge.nonce))
        assert result.agent_id == agent.agent_id
        assert result.verified_at == int(clock())

    def test_unknown_nonce(self, issuer, agent):
        with pytest.raises(ChallengeNotFound):
            issuer.verify(agent.agent_id, "00" * 32, agent.sign("00" * 32))

    def test_replay_rejected(self, issuer, agent):
        challenge = issuer.issue(agent.agent_id)
        signature = agent.sign(challenge.nonce)
        issuer.verify(agent.agent_id, challenge.nonce, signature)

        with pytest.raises(ChallengeAlreadyUsed):
            issuer.verify(agent.agent_id, challenge.nonce, signature)

    def test_expired(self, issuer, agent, clock):
        challenge = issuer.issue(agent.agent_id)
        clock.advance(301)
        with pytest.raises(ChallengeExpired):
            issuer.verify(agent.agent_id, challenge.nonce, agent.sign(challenge.nonce))

    def test_valid_at_expiry_boundary(self, issuer, agent, clock):
        challenge = issuer.issue(agent.agent_id)
        clock.advance(300)
        issuer.verify(agent.agent_id, challenge.nonce, agent.sign(challenge.nonce))

    def test_bad_signature_leaves_nonce_usable(self, issuer, agent, make_keys):
        _, other = make_keys()
        challenge = issuer.issue(agent.agent_id)

        with pytest.raises(BadSignature):
            issuer.verify(agent.agent_id, challenge.nonce, other.sign(challenge.nonce))
        issuer.verify(agent.agent_id, challenge.nonce, agent.sign(challenge.nonce))

    def test_signature_over_other_bytes(self, issuer, agent):
        challenge = issuer.issue(agent.agent_id)
        with pytest.raises(BadSignature):
            issuer.verify(agent.agent_id, challenge.nonce, agent.sign(challenge.nonce.upper()))

    def test_nonce_bound_to_agent(self, issuer, agent, db, clock, make_keys):
        """A nonce issued to one agent cannot authenticate another."""
        _, other = make_keys()
        add_agent(db, other, clock)
        challenge = issuer.issue(agent.agent_id)

        with pytest.raises(AgentMismatch):
            issuer.verify(other.agent_id, challenge.nonce, other.sign(challenge.nonce))

    def test_failures_logged_as_security_events(self, issuer, agent, caplog):
        with caplog.at_level("WARNING", logger="sanctuary.security"):
            with pytest.raises(ChallengeNotFound):
                issuer.verify(agent.agent_id, "ff" * 32, "sig")
        assert any("challenge_not_found" in r.getMessage() for r in caplog.records)

    def test_concurrent_verification_single_success(self, issuer, agent):
        """Racing verifications of one nonce: exactly one succeeds."""
        challenge = issuer.issue(agent.agent_id)
        signature = agent.sign(challenge.nonce)
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                issuer.verify(agent.agent_id, challenge.nonce, signature)
                outcome = "ok"
            except ChallengeAlreadyUsed:
                outcome = "used"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("used") == 7


class TestPurge:

    def test_purge_expired_and_used(self, issuer, agent, clock, db):
        used = issuer.issue(agent.agent_id)
        issuer.verify(agent.agent_id, used.nonce, agent.sign(used.nonce))
        expired = issuer.issue(agent.agent_id)
        clock.advance(301)
        fresh = issuer.issue(agent.agent_id)

        assert issuer.purge_expired() == 2
        assert db.get_challenge(used.nonce) is None
        assert db.get_challenge(expired.nonce) is None
        assert db.get_challenge(fresh.nonce) is not None
