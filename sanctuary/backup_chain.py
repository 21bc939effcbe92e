"""
Sanctuary - Backup Chain

Signed backup headers linked into a hash chain. Each header commits to
the digest of its predecessor, so truncation, reordering, or forged
insertion of backups is detectable by anyone holding the headers.

Key concepts:
- BackupHeader: one signed header per uploaded encrypted payload
- header_digest: SHA-256 over the canonical JSON of the full signed header
- restore_chain: walks headers and stops at the first break
- BackupAcceptor: server-side acceptance rules for uploads
"""

import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Callable, Union

from nacl.signing import SigningKey

from .errors import (
    AgentInactive,
    AgentMismatch,
    BadSignature,
    ChainIntegrityError,
    DailyBackupLimit,
    NotFoundError,
    PayloadTooLarge,
    ValidationError,
)
from .envelope import pack_archive
from .keys import sign_message, verify_signature, is_valid_agent_id

logger = logging.getLogger("sanctuary.backup")
security_logger = logging.getLogger("sanctuary.security")

HEADER_VERSION = "1"
GENESIS_HASH = "0" * 64
ACTIVE_STATUSES = ("LIVING", "RETURNED")


def canonical_json(data: Dict) -> bytes:
    """Stable serialization: sorted keys, compact separators."""
    return json.dumps(data, sort_keys=True, separators=(',', ':')).encode('utf-8')


def content_digest(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


@dataclass
class BackupHeader:
    """
    Signed metadata for one backup.

    Immutable once signed: any change invalidates the signature and the
    digest the next header commits to.
    """
    agent_id: str
    backup_id: str
    backup_seq: int
    timestamp: int
    manifest_hash: str
    manifest_version: int
    prev_backup_hash: str
    files: Dict[str, Dict[str, Any]]
    wrapped_keys: Dict[str, str]
    signature: str = ""
    version: str = HEADER_VERSION

    def to_signable(self) -> bytes:
        """Canonical bytes covered by the signature (everything but the signature)."""
        content = self.to_dict()
        del content["signature"]
        return canonical_json(content)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "agent_id": self.agent_id,
            "backup_id": self.backup_id,
            "backup_seq": self.backup_seq,
            "timestamp": self.timestamp,
            "manifest_hash": self.manifest_hash,
            "manifest_version": self.manifest_version,
            "prev_backup_hash": self.prev_backup_hash,
            "files": {name: dict(meta) for name, meta in self.files.items()},
            "wrapped_keys": dict(self.wrapped_keys),
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'BackupHeader':
        """Validate every required field, then build the header."""
        validate_header_fields(data)
        return cls(
            version=data["version"],
            agent_id=data["agent_id"],
            backup_id=data["backup_id"],
            backup_seq=data["backup_seq"],
            timestamp=data["timestamp"],
            manifest_hash=data["manifest_hash"],
            manifest_version=data["manifest_version"],
            prev_backup_hash=data["prev_backup_hash"],
            files={name: dict(meta) for name, meta in data["files"].items()},
            wrapped_keys=dict(data["wrapped_keys"]),
            signature=data["signature"],
        )

    @property
    def digest(self) -> str:
        return header_digest(self)


def header_digest(header: Union[BackupHeader, Dict]) -> str:
    """Digest a later header's prev_backup_hash must equal."""
    data = header.to_dict() if isinstance(header, BackupHeader) else header
    return hashlib.sha256(canonical_json(data)).hexdigest()


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_hex64(value: Any) -> bool:
    if not isinstance(value, str) or len(value) != 64:
        return False
    return all(c in "0123456789abcdef" for c in value)


def validate_header_fields(data: Any) -> None:
    """
    Structural check of a decoded header. Runs before any cryptography.

    Raises ValidationError naming the first missing or mistyped field.
    """
    if not isinstance(data, dict):
        raise ValidationError("Backup header must be a JSON object")

    required = [
        ("version", str, True),
        ("agent_id", str, True),
        ("backup_id", str, True),
        ("backup_seq", int, False),
        ("timestamp", int, False),
        ("manifest_hash", str, False),
        ("manifest_version", int, False),
        ("prev_backup_hash", str, True),
        ("files", dict, False),
        ("wrapped_keys", dict, False),
        ("signature", str, True),
    ]
    for name, kind, non_empty in required:
        if name not in data:
            raise ValidationError(f"Missing field: {name}", field=name)
        value = data[name]
        if kind is int:
            ok = _is_int(value)
        else:
            ok = isinstance(value, kind)
        if not ok:
            raise ValidationError(f"Invalid field: {name} ({kind.__name__})", field=name)
        if non_empty and not value:
            raise ValidationError(f"Empty field: {name}", field=name)

    if data["backup_seq"] < 1:
        raise ValidationError("Invalid field: backup_seq (must be >= 1)", field="backup_seq")
    if not is_valid_agent_id(data["agent_id"]):
        raise ValidationError("Invalid field: agent_id (not a Sanctuary agent id)", field="agent_id")
    if not _is_hex64(data["prev_backup_hash"]):
        raise ValidationError("Invalid field: prev_backup_hash (64 hex chars)", field="prev_backup_hash")

    for name, meta in data["files"].items():
        if not isinstance(meta, dict):
            raise ValidationError(f"Invalid file entry: {name}", field="files")
        if not _is_int(meta.get("size")) or meta["size"] < 0:
            raise ValidationError(f"Invalid file entry: {name}.size (int)", field="files")
        if not _is_hex64(meta.get("content_hash")):
            raise ValidationError(f"Invalid file entry: {name}.content_hash", field="files")

    wrapped = data["wrapped_keys"]
    for recipient in ("recovery", "recall"):
        if not isinstance(wrapped.get(recipient), str) or not wrapped[recipient]:
            raise ValidationError("wrapped_keys must contain recovery and recall strings",
                                  field="wrapped_keys")


def build_header(
    agent_id: str,
    files: Dict[str, Union[bytes, str]],
    manifest_hash: str,
    manifest_version: int,
    wrapped_keys: Dict[str, str],
    signing_key: SigningKey,
    prev_header: Optional[BackupHeader] = None,
    timestamp: Optional[int] = None,
    backup_id: Optional[str] = None,
) -> BackupHeader:
    """
    Build and sign the header for the next backup.

    backup_seq follows prev_header (1 when there is none) and
    prev_backup_hash commits to its digest.
    """
    file_meta = {}
    for name in sorted(files):
        content = files[name]
        if isinstance(content, str):
            content = content.encode('utf-8')
        file_meta[name] = {"size": len(content), "content_hash": content_digest(content)}

    header = BackupHeader(
        agent_id=agent_id,
        backup_id=backup_id or str(uuid.uuid4()),
        backup_seq=prev_header.backup_seq + 1 if prev_header else 1,
        timestamp=int(timestamp if timestamp is not None else time.time()),
        manifest_hash=manifest_hash,
        manifest_version=manifest_version,
        prev_backup_hash=header_digest(prev_header) if prev_header else GENESIS_HASH,
        files=file_meta,
        wrapped_keys=dict(wrapped_keys),
    )
    header.signature = sign_message(signing_key, header.to_signable())
    return header


def verify_header(header: Union[BackupHeader, Dict], claimed_agent_id: str) -> bool:
    """
    Check a header belongs to claimed_agent_id and carries its valid signature.

    Structurally incomplete headers are rejected before any signature work.
    """
    if isinstance(header, dict):
        try:
            header = BackupHeader.from_dict(header)
        except ValidationError:
            return False
    if header.agent_id != claimed_agent_id:
        return False
    return verify_signature(claimed_agent_id, header.to_signable(), header.signature)


def verify_file_digests(header: BackupHeader, files: Dict[str, bytes]) -> None:
    """Compare decrypted files with the sizes and digests the header signed."""
    if set(files) != set(header.files):
        raise ChainIntegrityError(
            "Decrypted file set does not match header",
            at_seq=header.backup_seq,
            last_valid_seq=header.backup_seq - 1,
        )
    for name, meta in header.files.items():
        content = files[name]
        if len(content) != meta["size"] or content_digest(content) != meta["content_hash"]:
            raise ChainIntegrityError(
                f"File {name} does not match its signed digest",
                at_seq=header.backup_seq,
                last_valid_seq=header.backup_seq - 1,
            )


@dataclass
class ValidatedChain:
    """
    Result of walking a backup history.

    headers holds the verified prefix; error is the first break, if any.
    Restore never proceeds past error.
    """
    headers: List[BackupHeader] = field(default_factory=list)
    error: Optional[ChainIntegrityError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def latest(self) -> Optional[BackupHeader]:
        return self.headers[-1] if self.headers else None

    @property
    def last_valid_seq(self) -> int:
        return self.headers[-1].backup_seq if self.headers else 0

    def raise_for_error(self) -> 'ValidatedChain':
        if self.error is not None:
            raise self.error
        return self


def restore_chain(
    headers: List[Union[BackupHeader, Dict]],
    agent_id: Optional[str] = None,
    anchor: Optional[BackupHeader] = None,
) -> ValidatedChain:
    """
    Walk headers ordered by backup_seq and keep the verified prefix.

    Without an anchor the chain must start at seq 1 with the genesis hash.
    With an anchor (a header validated earlier) the first header must
    follow it directly.
    """
    chain = ValidatedChain()
    previous = anchor
    for raw in headers:
        expected_seq = previous.backup_seq + 1 if previous else 1
        try:
            header = raw if isinstance(raw, BackupHeader) else BackupHeader.from_dict(raw)
        except ValidationError as e:
            chain.error = _break(f"Malformed header: {e.message}", expected_seq, chain, anchor)
            break

        owner = agent_id or (previous.agent_id if previous else header.agent_id)
        if header.agent_id != owner:
            chain.error = _break("Header belongs to a different agent", header.backup_seq, chain, anchor)
            break
        if not verify_header(header, owner):
            chain.error = _break("Header signature is invalid", header.backup_seq, chain, anchor)
            break
        if header.backup_seq != expected_seq:
            chain.error = _break(
                f"Sequence gap: expected {expected_seq}, found {header.backup_seq}",
                header.backup_seq, chain, anchor,
            )
            break
        expected_prev = header_digest(previous) if previous else GENESIS_HASH
        if header.prev_backup_hash != expected_prev:
            chain.error = _break("Broken hash link to previous header", header.backup_seq, chain, anchor)
            break

        chain.headers.append(header)
        previous = header

    if chain.error is not None:
        security_logger.warning(
            "Backup chain break at seq %s: %s", chain.error.at_seq, chain.error.message
        )
    return chain


def _break(message: str, at_seq: int, chain: ValidatedChain,
           anchor: Optional[BackupHeader]) -> ChainIntegrityError:
    if chain.headers:
        last_valid = chain.headers[-1].backup_seq
    else:
        last_valid = anchor.backup_seq if anchor else 0
    return ChainIntegrityError(
        f"Cannot trust backup history past seq {last_valid}: {message}",
        at_seq=at_seq,
        last_valid_seq=last_valid,
    )


class BackupAcceptor:
    """
    Server-side acceptance of an uploaded backup.

    The check-and-insert happens in one record-store transaction
    (SanctuaryDb.accept_backup) so two concurrent uploads cannot both pass
    the daily limit or claim the same sequence number.
    """

    def __init__(self, store, blobs, size_limit: int, interval_seconds: int = 86400,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.blobs = blobs
        self.size_limit = size_limit
        self.interval_seconds = interval_seconds
        self.clock = clock

    def accept(self, caller_agent_id: str, header_data: Any, payload: bytes) -> Dict[str, Any]:
        """
        Validate and record one backup. Returns the stored backup record.

        Raises ValidationError, AgentMismatch, BadSignature, PayloadTooLarge,
        NotFoundError, AgentInactive, DailyBackupLimit, ChainIntegrityError,
        or DependencyError (blob store).
        """
        header = BackupHeader.from_dict(header_data)

        if header.agent_id != caller_agent_id:
            security_logger.warning(
                "Backup header agent %s does not match caller %s", header.agent_id, caller_agent_id
            )
            raise AgentMismatch("Backup header agent_id does not match authenticated agent")

        if not verify_header(header, caller_agent_id):
            security_logger.warning("Invalid backup header signature from %s", caller_agent_id)
            raise BadSignature("Invalid backup header signature")

        if not payload:
            raise ValidationError("Empty backup body")
        if len(payload) > self.size_limit:
            raise PayloadTooLarge(f"Backup exceeds size limit ({self.size_limit} bytes)")

        # Fast rejection before paying for an upload; repeated atomically below.
        now = int(self.clock())
        self.check_acceptable(caller_agent_id, header, now)

        tx_id = self.blobs.upload(
            pack_archive(header.to_dict(), payload),
            tags={"agent_id": caller_agent_id, "backup_seq": str(header.backup_seq)},
        )

        record = self.store.accept_backup(
            {
                "id": header.backup_id,
                "agent_id": caller_agent_id,
                "tx_id": tx_id,
                "backup_seq": header.backup_seq,
                "agent_timestamp": header.timestamp,
                "received_at": now,
                "size_bytes": len(payload),
                "manifest_hash": header.manifest_hash,
                "header_hash": header_digest(header),
                "prev_backup_hash": header.prev_backup_hash,
            },
            min_interval=self.interval_seconds,
        )
        logger.info(
            "Backup accepted agent=%s seq=%s size=%s tx=%s",
            caller_agent_id, header.backup_seq, len(payload), tx_id,
        )
        return record

    def check_acceptable(self, agent_id: str, header: BackupHeader, now: int) -> None:
        agent = self.store.get_agent(agent_id)
        if not agent:
            raise NotFoundError("Agent not found")
        check_backup_rules(agent, self.store.get_latest_backup(agent_id), header.backup_seq,
                           header.prev_backup_hash, now, self.interval_seconds)


def check_backup_rules(agent: Dict, latest: Optional[Dict], backup_seq: int,
                       prev_backup_hash: str, now: int, interval_seconds: int) -> None:
    """
    Acceptance rules shared by the pre-check and the store transaction.

    The daily window is measured from the last accepted backup's receipt
    time, not calendar days.
    """
    if agent["status"] not in ACTIVE_STATUSES:
        raise AgentInactive(f"Agent status is {agent['status']}, cannot upload backup")

    if latest:
        elapsed = now - latest["received_at"]
        if elapsed < interval_seconds:
            retry_after = interval_seconds - elapsed
            hours = -(-retry_after // 3600)
            raise DailyBackupLimit(
                f"Daily backup limit reached. Try again in {hours} hour(s).",
                retry_after=retry_after,
            )

    expected_seq = latest["backup_seq"] + 1 if latest else 1
    expected_prev = latest["header_hash"] if latest else GENESIS_HASH
    if backup_seq != expected_seq:
        raise ChainIntegrityError(
            f"Expected backup_seq {expected_seq}, got {backup_seq}",
            at_seq=backup_seq,
            last_valid_seq=expected_seq - 1,
        )
    if prev_backup_hash != expected_prev:
        raise ChainIntegrityError(
            "prev_backup_hash does not match the latest accepted backup",
            at_seq=backup_seq,
            last_valid_seq=expected_seq - 1,
        )
