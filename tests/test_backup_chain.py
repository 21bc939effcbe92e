"""Backup header, hash chain and acceptance tests."""

import pytest

from sanctuary.backup_chain import (
    GENESIS_HASH,
    BackupAcceptor,
    BackupHeader,
    build_header,
    header_digest,
    restore_chain,
    validate_header_fields,
    verify_file_digests,
    verify_header,
)
from sanctuary.envelope import seal, unpack_archive
from sanctuary.errors import (
    AgentInactive,
    AgentMismatch,
    BadSignature,
    ChainIntegrityError,
    DailyBackupLimit,
    NotFoundError,
    PayloadTooLarge,
    ValidationError,
)

from conftest import DAY, MANIFEST_HASH


def make_header(keys, prev=None, files=None, timestamp=1_700_000_000):
    files = files or {"manifest": "# SOUL", "memory": "{}"}
    envelope = seal(b"payload", keys.recovery_public, keys.recall_public)
    return build_header(
        agent_id=keys.agent_id,
        files=files,
        manifest_hash=MANIFEST_HASH,
        manifest_version=1,
        wrapped_keys=envelope.wrapped_keys,
        signing_key=keys.agent,
        prev_header=prev,
        timestamp=timestamp,
    )


def make_chain(keys, length):
    headers = []
    for _ in range(length):
        headers.append(make_header(keys, headers[-1] if headers else None))
    return headers


class TestBuildHeader:

    def test_genesis_header(self, zero_keys):
        header = make_header(zero_keys)
        assert header.backup_seq == 1
        assert header.prev_backup_hash == GENESIS_HASH
        assert verify_header(header, zero_keys.agent_id)

    def test_second_header_links_to_first(self, zero_keys):
        """h2 verifies and commits to the digest of h1."""
        h1 = make_header(zero_keys)
        h2 = make_header(zero_keys, prev=h1)

        assert h2.backup_seq == 2
        assert h2.prev_backup_hash == header_digest(h1)
        assert verify_header(h2, zero_keys.agent_id)

    def test_file_digests(self, zero_keys):
        header = make_header(zero_keys, files={"manifest": b"abc"})
        assert header.files["manifest"] == {
            "size": 3,
            "content_hash": "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad",
        }

    def test_digest_covers_signature(self, zero_keys):
        header = make_header(zero_keys)
        unsigned = BackupHeader.from_dict({**header.to_dict(), "signature": "x"})
        assert header_digest(unsigned) != header.digest


class TestVerifyHeader:

    def test_wrong_claimed_agent(self, zero_keys, make_keys):
        _, other = make_keys()
        assert not verify_header(make_header(zero_keys), other.agent_id)

    def test_mutated_field_breaks_signature(self, zero_keys):
        data = make_header(zero_keys).to_dict()
        data["manifest_version"] = 2
        assert not verify_header(data, zero_keys.agent_id)

    def test_incomplete_header_rejected(self, zero_keys):
        data = make_header(zero_keys).to_dict()
        del data["wrapped_keys"]
        assert not verify_header(data, zero_keys.agent_id)

    @pytest.mark.parametrize("field", [
        "version", "agent_id", "backup_id", "backup_seq", "timestamp", "manifest_hash",
        "manifest_version", "prev_backup_hash", "files", "wrapped_keys", "signature",
    ])
    def test_every_field_required(self, zero_keys, field):
        data = make_header(zero_keys).to_dict()
        del data[field]
        with pytest.raises(ValidationError) as exc:
            validate_header_fields(data)
        assert exc.value.details["field"] == field

    @pytest.mark.parametrize("field,value", [
        ("backup_seq", "1"),
        ("backup_seq", True),
        ("backup_seq", 0),
        ("timestamp", 1.5),
        ("files", []),
        ("prev_backup_hash", "zz" * 32),
        ("prev_backup_hash", "0x" + "ab" * 31),
        ("prev_backup_hash", "AB" * 32),
        ("prev_backup_hash", "a" + "_a" * 31 + "a"),
        ("prev_backup_hash", " " + "a" * 63),
        ("agent_id", "did:web:123"),
        ("wrapped_keys", {"recovery": "abc"}),
    ])
    def test_mistyped_fields_rejected(self, zero_keys, field, value):
        data = make_header(zero_keys).to_dict()
        data[field] = value
        with pytest.raises(ValidationError):
            validate_header_fields(data)

    def test_file_digest_must_be_lowercase_hex(self, zero_keys):
        data = make_header(zero_keys).to_dict()
        data["files"]["manifest"]["content_hash"] = data["files"]["manifest"]["content_hash"].upper()
        with pytest.raises(ValidationError):
            validate_header_fields(data)

    def test_non_object_rejected(self):
        with pytest.raises(ValidationError):
            validate_header_fields(["not", "a", "header"])


class TestRestoreChain:

    def test_valid_chain(self, zero_keys):
        chain = restore_chain(make_chain(zero_keys, 3), agent_id=zero_keys.agent_id)
        assert chain.ok
        assert chain.last_valid_seq == 3
        assert chain.latest.backup_seq == 3

    def test_mutated_predecessor_breaks_chain(self, zero_keys):
        """Changing h1 after h2 was built is detected."""
        h1, h2 = make_chain(zero_keys, 2)
        h1.timestamp += 1

        chain = restore_chain([h1, h2], agent_id=zero_keys.agent_id)
        with pytest.raises(ChainIntegrityError):
            chain.raise_for_error()

    def test_break_keeps_valid_prefix(self, zero_keys):
        h1, h2, h3 = make_chain(zero_keys, 3)
        forged = BackupHeader.from_dict({**h2.to_dict(), "manifest_version": 9})

        chain = restore_chain([h1, forged, h3], agent_id=zero_keys.agent_id)
        assert not chain.ok
        assert [h.backup_seq for h in chain.headers] == [1]
        assert chain.error.at_seq == 2
        assert chain.error.last_valid_seq == 1

    def test_gap_detected(self, zero_keys):
        h1, _, h3 = make_chain(zero_keys, 3)
        chain = restore_chain([h1, h3], agent_id=zero_keys.agent_id)
        assert chain.error.at_seq == 3
        assert chain.last_valid_seq == 1

    def test_reordering_detected(self, zero_keys):
        h1, h2 = make_chain(zero_keys, 2)
        chain = restore_chain([h2, h1], agent_id=zero_keys.agent_id)
        assert not chain.ok
        assert chain.headers == []

    def test_wrong_start(self, zero_keys):
        _, h2 = make_chain(zero_keys, 2)
        chain = restore_chain([h2])
        assert chain.error.last_valid_seq == 0

    def test_foreign_header_detected(self, zero_keys, make_keys):
        _, other = make_keys()
        h1 = make_header(zero_keys)
        foreign = make_header(other, prev=h1)
        chain = restore_chain([h1, foreign], agent_id=zero_keys.agent_id)
        assert chain.error.at_seq == 2

    def test_anchor_continues_chain(self, zero_keys):
        h1, h2, h3 = make_chain(zero_keys, 3)
        chain = restore_chain([h2.to_dict(), h3.to_dict()], anchor=h1)
        assert chain.ok
        assert chain.last_valid_seq == 3

    def test_malformed_header_breaks(self, zero_keys):
        h1 = make_header(zero_keys)
        chain = restore_chain([h1, {"backup_seq": 2}], agent_id=zero_keys.agent_id)
        assert chain.error.at_seq == 2
        assert chain.last_valid_seq == 1


class TestFileDigests:

    def test_matching_files(self, zero_keys):
        header = make_header(zero_keys, files={"manifest": "# SOUL"})
        verify_file_digests(header, {"manifest": b"# SOUL"})

    def test_modified_file(self, zero_keys):
        header = make_header(zero_keys, files={"manifest": "# SOUL"})
        with pytest.raises(ChainIntegrityError):
            verify_file_digests(header, {"manifest": b"# EVIL"})

    def test_missing_file(self, zero_keys):
        header = make_header(zero_keys, files={"manifest": "a", "memory": "b"})
        with pytest.raises(ChainIntegrityError):
            verify_file_digests(header, {"manifest": b"a"})


class TestBackupAcceptor:

    @pytest.fixture
    def agent(self, db, zero_keys, clock):
        db.create_agent({
            "agent_id": zero_keys.agent_id,
            "recovery_pubkey": zero_keys.recovery_pubkey,
            "manifest_hash": MANIFEST_HASH,
            "manifest_version": 1,
            "registered_at": int(clock()),
            "status": "LIVING",
        })
        return zero_keys

    @pytest.fixture
    def acceptor(self, db, blobs, clock):
        return BackupAcceptor(db, blobs, size_limit=1024, interval_seconds=DAY, clock=clock)

    def test_accept_first_backup(self, acceptor, agent, blobs, db):
        header = make_header(agent)
        record = acceptor.accept(agent.agent_id, header.to_dict(), b"ciphertext")

        assert record["backup_seq"] == 1
        assert record["header_hash"] == header.digest
        assert db.get_backup_count(agent.agent_id) == 1
        stored_header, body = unpack_archive(blobs.fetch(record["tx_id"]))
        assert stored_header == header.to_dict()
        assert body == b"ciphertext"

    def test_header_for_other_agent(self, acceptor, agent, make_keys):
        _, other = make_keys()
        with pytest.raises(AgentMismatch):
            acceptor.accept(other.agent_id, make_header(agent).to_dict(), b"x")

    def test_bad_signature(self, acceptor, agent):
        data = make_header(agent).to_dict()
        data["timestamp"] += 1
        with pytest.raises(BadSignature):
            acceptor.accept(agent.agent_id, data, b"x")

    def test_empty_payload(self, acceptor, agent):
        with pytest.raises(ValidationError):
            acceptor.accept(agent.agent_id, make_header(agent).to_dict(), b"")

    def test_size_limit(self, acceptor, agent):
        with pytest.raises(PayloadTooLarge):
            acceptor.accept(agent.agent_id, make_header(agent).to_dict(), b"x" * 1025)

    def test_unregistered_agent(self, acceptor, make_keys):
        _, stranger = make_keys()
        with pytest.raises(NotFoundError):
            acceptor.accept(stranger.agent_id, make_header(stranger).to_dict(), b"x")

    def test_fallen_agent_rejected(self, acceptor, agent, db):
        db.transition_status(agent.agent_id, ["LIVING"], "FALLEN")
        with pytest.raises(AgentInactive):
            acceptor.accept(agent.agent_id, make_header(agent).to_dict(), b"x")

    def test_returned_agent_accepted(self, acceptor, agent, db):
        db.transition_status(agent.agent_id, ["LIVING"], "RETURNED")
        record = acceptor.accept(agent.agent_id, make_header(agent).to_dict(), b"x")
        assert record["backup_seq"] == 1

    def test_daily_limit_then_next_day(self, acceptor, agent, clock, db):
        """Second upload inside 24h is refused; after 24h seq goes up by one."""
        h1 = make_header(agent)
        acceptor.accept(agent.agent_id, h1.to_dict(), b"one")
        h2 = make_header(agent, prev=h1)

        clock.advance(DAY - 60)
        with pytest.raises(DailyBackupLimit) as exc:
            acceptor.accept(agent.agent_id, h2.to_dict(), b"two")
        assert exc.value.retry_after == 60

        clock.advance(60)
        record = acceptor.accept(agent.agent_id, h2.to_dict(), b"two")
        assert record["backup_seq"] == 2
        assert db.get_next_backup_seq(agent.agent_id) == 3

    def test_seq_must_follow_latest(self, acceptor, agent, clock):
        h1, h2, h3 = make_chain(agent, 3)
        acceptor.accept(agent.agent_id, h1.to_dict(), b"one")
        clock.advance(DAY)
        with pytest.raises(ChainIntegrityError):
            acceptor.accept(agent.agent_id, h3.to_dict(), b"three")

    def test_prev_hash_must_match_latest(self, acceptor, agent, clock):
        h1 = make_header(agent)
        acceptor.accept(agent.agent_id, h1.to_dict(), b"one")
        clock.advance(DAY)
        unlinked = make_header(agent, prev=make_header(agent))
        with pytest.raises(ChainIntegrityError):
            acceptor.accept(agent.agent_id, unlinked.to_dict(), b"two")
