"""Record store tests."""

import threading

import pytest

from sanctuary.backup_chain import GENESIS_HASH
from sanctuary.errors import AgentInactive, ChainIntegrityError, DailyBackupLimit, NotFoundError

from conftest import DAY, MANIFEST_HASH, START_TIME

AGENT = "did:sanctuary:" + "ab" * 32
OTHER = "did:sanctuary:" + "cd" * 32


def agent_row(agent_id=AGENT, owner_id=None, status="LIVING", registered_at=START_TIME):
    return {
        "agent_id": agent_id,
        "owner_id": owner_id,
        "recovery_pubkey": "cmVjb3Zlcnk=",
        "manifest_hash": MANIFEST_HASH,
        "manifest_version": 1,
        "registered_at": registered_at,
        "status": status,
    }


def backup_row(seq=1, prev=GENESIS_HASH, received_at=START_TIME, header_hash=None):
    return {
        "id": f"backup-{seq}",
        "agent_id": AGENT,
        "tx_id": f"tx-{seq}",
        "backup_seq": seq,
        "agent_timestamp": received_at,
        "received_at": received_at,
        "size_bytes": 10,
        "manifest_hash": MANIFEST_HASH,
        "header_hash": header_hash or f"{seq:064x}",
        "prev_backup_hash": prev,
    }


class TestAgents:

    def test_create_and_get(self, db):
        assert db.create_agent(agent_row())
        agent = db.get_agent(AGENT)
        assert agent["status"] == "LIVING"
        assert agent["owner_id"] is None
        assert agent["ledger_tx"] is None

    def test_duplicate_agent(self, db):
        db.create_agent(agent_row())
        assert not db.create_agent(agent_row())

    def test_one_agent_per_owner(self, db):
        assert db.create_agent(agent_row(owner_id="github:42"))
        assert not db.create_agent(agent_row(OTHER, owner_id="github:42"))
        assert db.get_agent_by_owner("github:42")["agent_id"] == AGENT

    def test_agents_without_owner_allowed(self, db):
        assert db.create_agent(agent_row())
        assert db.create_agent(agent_row(OTHER))

    def test_list_agents(self, db):
        db.create_agent(agent_row())
        db.create_agent(agent_row(OTHER, status="FALLEN"))
        assert len(db.list_agents()) == 2
        assert [a["agent_id"] for a in db.list_agents("FALLEN")] == [OTHER]

    def test_update_manifest(self, db):
        db.create_agent(agent_row())
        assert db.update_agent_manifest(AGENT, "cd" * 32, 2)
        assert db.get_agent(AGENT)["manifest_version"] == 2
        assert not db.update_agent_manifest(OTHER, "cd" * 32, 2)

    def test_transition_status(self, db):
        db.create_agent(agent_row())
        assert db.transition_status(AGENT, ["LIVING", "RETURNED"], "FALLEN")
        assert not db.transition_status(AGENT, ["LIVING", "RETURNED"], "FALLEN")
        assert db.get_agent(AGENT)["status"] == "FALLEN"


class TestUsers:

    def test_create_user_once(self, db):
        assert db.create_user("github:42", "octocat", created_at=START_TIME)
        assert not db.create_user("github:42", "octocat")
        assert db.get_user("github:42")["username"] == "octocat"


class TestHeartbeats:

    def test_latest_heartbeat(self, db):
        db.create_agent(agent_row())
        db.create_heartbeat(AGENT, START_TIME, START_TIME + 5)
        db.create_heartbeat(AGENT, START_TIME + DAY, START_TIME + DAY + 5)
        assert db.get_latest_heartbeat(AGENT)["received_at"] == START_TIME + DAY + 5
        assert db.get_latest_heartbeat(OTHER) is None

    def test_stale_agents(self, db):
        """Falls back to registration time when an agent never sent a heartbeat."""
        db.create_agent(agent_row())
        db.create_agent(agent_row(OTHER))
        db.create_heartbeat(OTHER, START_TIME + 20 * DAY, START_TIME + 20 * DAY)
        now = START_TIME + 31 * DAY

        stale = db.get_agents_without_recent_heartbeat(30 * DAY, now)
        assert [a["agent_id"] for a in stale] == [AGENT]

    def test_fallen_agents_not_reported_stale(self, db):
        db.create_agent(agent_row(status="FALLEN"))
        assert db.get_agents_without_recent_heartbeat(30 * DAY, START_TIME + 60 * DAY) == []


class TestBackups:

    @pytest.fixture(autouse=True)
    def agent(self, db):
        db.create_agent(agent_row())

    def test_accept_first_backup(self, db):
        db.accept_backup(backup_row(), DAY)
        assert db.get_backup_count(AGENT) == 1
        assert db.get_backup("backup-1")["tx_id"] == "tx-1"
        assert db.get_backup_by_seq(AGENT, 1)["backup_seq"] == 1
        assert db.get_next_backup_seq(AGENT) == 2

    def test_rejects_within_interval(self, db):
        db.accept_backup(backup_row(), DAY)
        with pytest.raises(DailyBackupLimit):
            db.accept_backup(backup_row(2, f"{1:064x}", START_TIME + DAY - 1), DAY)
        assert db.get_backup_count(AGENT) == 1

    def test_rejects_wrong_prev_hash(self, db):
        db.accept_backup(backup_row(), DAY)
        with pytest.raises(ChainIntegrityError):
            db.accept_backup(backup_row(2, GENESIS_HASH, START_TIME + DAY), DAY)
        assert db.get_next_backup_seq(AGENT) == 2

    def test_rejects_inactive_agent(self, db):
        db.transition_status(AGENT, ["LIVING"], "FALLEN")
        with pytest.raises(AgentInactive):
            db.accept_backup(backup_row(), DAY)
        assert db.get_backup_count(AGENT) == 0

    def test_rejects_unknown_agent(self, db):
        with pytest.raises(NotFoundError):
            db.accept_backup({**backup_row(), "agent_id": OTHER}, DAY)

    def test_backups_newest_first(self, db):
        db.accept_backup(backup_row(), DAY)
        db.accept_backup(backup_row(2, f"{1:064x}", START_TIME + DAY), DAY)
        db.accept_backup(backup_row(3, f"{2:064x}", START_TIME + 2 * DAY), DAY)

        assert [b["backup_seq"] for b in db.get_backups_by_agent(AGENT)] == [3, 2, 1]
        assert [b["backup_seq"] for b in db.get_backups_by_agent(AGENT, limit=1)] == [3]
        assert db.get_latest_backup(AGENT)["backup_seq"] == 3

    def test_concurrent_uploads_single_acceptance(self, db):
        """Racing first uploads for one agent: exactly one is stored."""
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def attempt(i):
            barrier.wait()
            try:
                db.accept_backup({**backup_row(), "id": f"backup-1-{i}", "tx_id": f"tx-1-{i}"}, DAY)
                outcome = "ok"
            except (DailyBackupLimit, ChainIntegrityError):
                outcome = "rejected"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == 7
        assert db.get_backup_count(AGENT) == 1


class TestChallenges:

    def test_consume_unknown_nonce(self, db):
        assert db.consume_challenge("00" * 32, lambda row: None) is False

    def test_consume_marks_used(self, db):
        db.create_challenge("aa" * 32, AGENT, START_TIME + 300)
        assert db.consume_challenge("aa" * 32, lambda row: None)
        assert db.get_challenge("aa" * 32)["used"] == 1

    def test_rejecting_decision_leaves_challenge_unused(self, db):
        db.create_challenge("aa" * 32, AGENT, START_TIME + 300)

        def reject(row):
            raise ValueError("no")

        with pytest.raises(ValueError):
            db.consume_challenge("aa" * 32, reject)
        assert db.get_challenge("aa" * 32)["used"] == 0

    def test_cleanup(self, db):
        db.create_challenge("aa" * 32, AGENT, START_TIME - 1)
        db.create_challenge("bb" * 32, AGENT, START_TIME + 300)
        assert db.cleanup_expired_challenges(START_TIME) == 1
        assert db.get_challenge("bb" * 32) is not None


class TestTrustAndNotes:

    def test_upsert_trust_score(self, db):
        db.create_agent(agent_row())
        db.upsert_trust_score({"agent_id": AGENT, "score": 10.0, "level": "UNVERIFIED",
                               "unique_attesters": 0, "computed_at": START_TIME})
        db.upsert_trust_score({"agent_id": AGENT, "score": 25.0, "level": "VERIFIED",
                               "unique_attesters": 1, "computed_at": START_TIME + 60})
        snapshot = db.get_trust_score(AGENT)
        assert snapshot["score"] == 25.0
        assert snapshot["level"] == "VERIFIED"

    def test_note_stored_once(self, db):
        db.create_attestation_note("ff" * 32, "first", START_TIME)
        db.create_attestation_note("ff" * 32, "second", START_TIME + 1)
        assert db.get_attestation_note("ff" * 32)["content"] == "first"
        assert db.get_attestation_note("00" * 32) is None

    def test_stats(self, db):
        db.create_agent(agent_row())
        db.create_agent(agent_row(OTHER, status="FALLEN"))
        db.create_attestation_note("ff" * 32, "note", START_TIME)

        stats = db.get_stats()
        assert stats["agents"] == 2
        assert stats["by_status"] == {"LIVING": 1, "FALLEN": 1}
        assert stats["backups"] == 0
        assert stats["attestation_notes"] == 1
