"""
Sanctuary Client - Agent-side client for the Sanctuary service.

Usage:
    from sanctuary import SanctuaryClient

    # First run: generate a phrase, derive keys, register
    result = SanctuaryClient.setup("https://sanctuary.example", manifest_hash)
    print(result.recovery_phrase)   # shown once, store it offline
    client = result.client
    client.save("sanctuary_agent.json")

    # Later runs
    client = SanctuaryClient.from_file("sanctuary_agent.json", service_url)
    client.heartbeat()
    client.backup({"manifest": soul_md, "memory": memory_json}, manifest_hash)

    # After losing the host
    client = SanctuaryClient.recover(service_url, phrase)
    restored = client.restore(phrase)
"""

import base64
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple, Union, Callable

import httpx
from nacl.public import PrivateKey
from nacl.signing import SigningKey

from . import proof as identity_proof
from .auth import auth_headers, registration_message
from .backup_chain import (
    BackupHeader,
    ValidatedChain,
    build_header,
    header_digest,
    restore_chain,
    verify_file_digests,
    verify_header,
)
from .envelope import open_envelope, pack_files, seal, unpack_archive, unpack_files
from .errors import (
    AgentMismatch,
    DependencyError,
    NotFoundError,
    SanctuaryError,
    ValidationError,
    error_from_dict,
)
from .keys import DerivedKeySet, decode_public_key, derive_keys, generate_mnemonic
from .storage import BlobStore

logger = logging.getLogger("sanctuary.client")
security_logger = logging.getLogger("sanctuary.security")

BACKUP_HEADER = "X-Backup-Header"
REGISTRATION_WINDOW = 600


@dataclass
class SetupResult:
    client: "SanctuaryClient"
    agent_id: str
    recovery_phrase: str  # shown once, never stored
    registered_at: int


@dataclass
class RestoreResult:
    agent_id: str
    files: Dict[str, bytes]
    header: BackupHeader
    chain: ValidatedChain
    source: str  # "service" or "blob_store"

    @property
    def complete(self) -> bool:
        """False when the history broke and only a prefix was trusted."""
        return self.chain.ok


class SanctuaryClient:
    """Client for an agent talking to its Sanctuary service."""

    DEFAULT_SERVICE = "http://localhost:8000"

    def __init__(
        self,
        service_url: str,
        keys: DerivedKeySet,
        http: Optional[httpx.Client] = None,
        blobs: Optional[BlobStore] = None,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.service_url = service_url.rstrip("/")
        self.keys = keys
        self.blobs = blobs
        self.timeout = timeout
        self.clock = clock
        self._http = http or httpx.Client(timeout=timeout)
        self._last_header: Optional[BackupHeader] = None

    @property
    def agent_id(self) -> str:
        return self.keys.agent_id

    # Setup and local state

    @classmethod
    def setup(
        cls,
        service_url: str,
        manifest_hash: str,
        manifest_version: int = 1,
        owner_id: Optional[str] = None,
        owner_name: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        blobs: Optional[BlobStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> SetupResult:
        """
        Generate a recovery phrase, derive keys and register the agent.

        The recovery secret is discarded before this returns; only the
        phrase in the result can bring it back.
        """
        phrase = generate_mnemonic()
        keys = derive_keys(phrase)
        client = cls(service_url, keys, http=http, blobs=blobs, clock=clock)
        data = client.register(manifest_hash, manifest_version, owner_id, owner_name)
        client.lock()
        return SetupResult(
            client=client,
            agent_id=keys.agent_id,
            recovery_phrase=phrase,
            registered_at=data["registered_at"],
        )

    @classmethod
    def recover(cls, service_url: str, phrase: str, http: Optional[httpx.Client] = None,
                blobs: Optional[BlobStore] = None) -> "SanctuaryClient":
        """Client for an existing agent, keys re-derived from its phrase."""
        keys = derive_keys(phrase)
        keys.lock()
        return cls(service_url, keys, http=http, blobs=blobs)

    @classmethod
    def from_file(cls, path: str, service_url: str = DEFAULT_SERVICE,
                  http: Optional[httpx.Client] = None, blobs: Optional[BlobStore] = None) -> "SanctuaryClient":
        """Load agent state saved with save()."""
        with open(path) as f:
            data = json.load(f)
        keys = DerivedKeySet(
            recovery=None,
            agent=SigningKey(base64.b64decode(data["agent_secret"])),
            recall=PrivateKey(base64.b64decode(data["recall_secret"])),
            recovery_public=decode_public_key(data["recovery_pubkey"]),
        )
        if keys.agent_id != data["agent_id"]:
            raise AgentMismatch("Saved agent_id does not match the saved agent key")
        return cls(service_url, keys, http=http, blobs=blobs)

    def save(self, path: str) -> None:
        """
        Save agent state to a JSON file readable only by its owner.

        The recovery secret is never written.
        """
        data = {
            "agent_id": self.agent_id,
            "agent_secret": base64.b64encode(bytes(self.keys.agent)).decode(),
            "recall_secret": base64.b64encode(bytes(self.keys.recall)).decode(),
            "recovery_pubkey": self.keys.recovery_pubkey,
        }
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.chmod(path, 0o600)

    def lock(self) -> None:
        """Discard the recovery secret from memory."""
        self.keys.lock()

    # Transport

    def _request(self, method: str, path: str, headers: Optional[Dict[str, str]] = None,
                 **kwargs) -> httpx.Response:
        try:
            response = self._http.request(method, f"{self.service_url}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException:
            raise DependencyError("Sanctuary service timed out", dependency="service")
        except httpx.HTTPError as e:
            raise DependencyError(f"Sanctuary service unavailable: {e}", dependency="service")

        if response.status_code >= 400:
            try:
                data = response.json()
            except ValueError:
                raise DependencyError(f"Service error {response.status_code}", dependency="service")
            if response.status_code >= 500 and "code" not in data:
                raise DependencyError(f"Service error {response.status_code}", dependency="service")
            raise error_from_dict(data, response.status_code)
        return response

    def _data(self, method: str, path: str, **kwargs) -> Any:
        return self._request(method, path, **kwargs).json()["data"]

    def authenticate(self) -> Dict[str, str]:
        """
        Fetch and sign a fresh challenge.

        Returns the headers for exactly one authenticated call.
        """
        challenge = self._data("POST", "/auth/challenge", json={"agent_id": self.agent_id})
        signature = self.keys.sign(challenge["nonce"])
        return auth_headers(self.agent_id, challenge["nonce"], signature)

    def verify_auth(self) -> Dict[str, Any]:
        """Run the challenge-response flow against /auth/verify."""
        challenge = self._data("POST", "/auth/challenge", json={"agent_id": self.agent_id})
        return self._data("POST", "/auth/verify", json={
            "agent_id": self.agent_id,
            "nonce": challenge["nonce"],
            "signature": self.keys.sign(challenge["nonce"]),
        })

    # Identity

    def register(self, manifest_hash: str, manifest_version: int = 1,
                 owner_id: Optional[str] = None, owner_name: Optional[str] = None) -> Dict[str, Any]:
        deadline = int(self.clock()) + REGISTRATION_WINDOW
        message = registration_message(
            self.agent_id, self.keys.recovery_pubkey, manifest_hash, manifest_version, deadline, owner_id,
        )
        return self._data("POST", "/agents/register", json={
            "agent_id": self.agent_id,
            "public_key": base64.b64encode(bytes(self.keys.agent.verify_key)).decode(),
            "recovery_pubkey": self.keys.recovery_pubkey,
            "manifest_hash": manifest_hash,
            "manifest_version": manifest_version,
            "deadline": deadline,
            "owner_id": owner_id,
            "owner_name": owner_name,
            "signature": self.keys.sign(message),
        })

    def status(self, agent_id: Optional[str] = None) -> Dict[str, Any]:
        return self._data("GET", f"/agents/{agent_id or self.agent_id}/status")

    def heartbeat(self, manifest_hash: Optional[str] = None,
                  manifest_version: Optional[int] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"timestamp": int(self.clock())}
        if manifest_hash is not None:
            body["manifest_hash"] = manifest_hash
            body["manifest_version"] = manifest_version
        return self._data("POST", "/heartbeat", json=body, headers=self.authenticate())

    # Trust

    def attest(self, about: str, note: str) -> Dict[str, Any]:
        """Vouch for another agent. Raises CooldownActive inside the cooldown."""
        return self._data("POST", "/attestations", json={"about": about, "note": note},
                          headers=self.authenticate())

    def attestations(self, agent_id: Optional[str] = None) -> Dict[str, Any]:
        return self._data("GET", f"/attestations/{agent_id or self.agent_id}")

    def proof(self) -> identity_proof.IdentityProof:
        data = self._data("POST", f"/agents/{self.agent_id}/proof", headers=self.authenticate())
        return identity_proof.IdentityProof.from_dict(data)

    def verify_proof(self, proof: Union[identity_proof.IdentityProof, Dict[str, Any]]) -> Dict[str, Any]:
        """Ask the issuing service whether a proof is genuine and still current."""
        body = proof.to_dict() if isinstance(proof, identity_proof.IdentityProof) else proof
        return self._data("POST", "/proofs/verify", json=body)

    # Backups

    def latest_header(self) -> Optional[BackupHeader]:
        """Header of the newest accepted backup, from the service."""
        try:
            latest = self._data("GET", f"/backups/{self.agent_id}/latest", headers=self.authenticate())
        except NotFoundError:
            return None
        header, _ = self._fetch_archive(latest["backup_seq"])
        return BackupHeader.from_dict(header)

    def backup(self, files: Dict[str, Union[bytes, str]], manifest_hash: str,
               manifest_version: int = 1) -> Dict[str, Any]:
        """
        Encrypt files for the recovery and recall keys, sign the header and
        upload. Raises DailyBackupLimit inside the backup interval.
        """
        if not files:
            raise ValidationError("Nothing to back up")
        prev = self._last_header or self.latest_header()

        envelope = seal(pack_files(files), self.keys.recovery_public, self.keys.recall_public)
        header = build_header(
            agent_id=self.agent_id,
            files=files,
            manifest_hash=manifest_hash,
            manifest_version=manifest_version,
            wrapped_keys=envelope.wrapped_keys,
            signing_key=self.keys.agent,
            prev_header=prev,
            timestamp=int(self.clock()),
        )
        encoded = base64.b64encode(
            json.dumps(header.to_dict(), sort_keys=True).encode('utf-8')
        ).decode('ascii')

        headers = self.authenticate()
        headers[BACKUP_HEADER] = encoded
        headers["Content-Type"] = "application/octet-stream"
        record = self._data("POST", "/backups/upload", content=envelope.ciphertext, headers=headers)
        self._last_header = header
        logger.info("Backup %s uploaded (%s bytes)", header.backup_seq, record["size_bytes"])
        return record

    def _fetch_archive(self, backup_seq: int) -> Tuple[Dict, bytes]:
        response = self._request("GET", f"/backups/{self.agent_id}/archive/{backup_seq}")
        return unpack_archive(response.content)

    def _archives_from_service(self) -> List[Tuple[Dict, bytes]]:
        """Every archive from seq 1 to the latest accepted one."""
        try:
            latest = self._data("GET", f"/backups/{self.agent_id}/latest", headers=self.authenticate())
        except NotFoundError:
            return []
        return [self._fetch_archive(seq) for seq in range(1, latest["backup_seq"] + 1)]

    def _archives_from_blob_store(self) -> List[Tuple[Dict, bytes]]:
        """
        Archives tagged with this agent, one per seq, in seq order.

        The blob store is public: anyone can tag a blob with our agent id.
        Blobs that do not parse or are not signed by this agent are skipped.
        Where several signed archives share a seq, the one linking to the
        previous pick wins.
        """
        candidates: Dict[int, List[Tuple[BackupHeader, Dict, bytes]]] = {}
        for tx_id in self.blobs.find({"agent_id": self.agent_id}):
            try:
                raw, body = unpack_archive(self.blobs.fetch(tx_id))
                header = BackupHeader.from_dict(raw)
            except (ValidationError, NotFoundError) as e:
                security_logger.warning("Skipping unreadable blob %s for %s: %s",
                                        tx_id, self.agent_id, e.message)
                continue
            if not verify_header(header, self.agent_id):
                security_logger.warning("Skipping blob %s: header not signed by %s", tx_id, self.agent_id)
                continue
            candidates.setdefault(header.backup_seq, []).append((header, raw, body))

        archives = []
        previous: Optional[BackupHeader] = None
        for seq in sorted(candidates):
            options = candidates[seq]
            if previous is not None:
                linked = [c for c in options if c[0].prev_backup_hash == header_digest(previous)]
                options = linked or options
            header, raw, body = options[0]
            archives.append((raw, body))
            previous = header
        return archives

    def load_archives(self) -> Tuple[List[Tuple[Dict, bytes]], str]:
        """
        All stored archives, from the service or, when it is unreachable,
        straight from the blob store.
        """
        try:
            return self._archives_from_service(), "service"
        except DependencyError as e:
            if self.blobs is None:
                raise
            logger.warning("Service unavailable (%s), restoring from blob store", e.message)
            return self._archives_from_blob_store(), "blob_store"

    def restore(self, phrase: str, recipient: str = "recovery") -> RestoreResult:
        """
        Re-derive keys from the phrase and restore the newest trustworthy backup.

        The history is verified header by header; restore stops at the
        first break and decrypts the last header before it.
        """
        keys = derive_keys(phrase)
        try:
            if keys.agent_id != self.agent_id:
                raise AgentMismatch("Recovery phrase belongs to a different agent")
            self.keys = keys

            archives, source = self.load_archives()
            chain = restore_chain([header for header, _ in archives], agent_id=self.agent_id)
            if chain.latest is None:
                if chain.error is not None:
                    raise chain.error
                raise NotFoundError("No backups found for agent")

            latest = chain.latest
            ciphertext = next(body for header, body in archives
                              if isinstance(header, dict) and header_digest(header) == latest.digest)
            secret = keys.recovery if recipient == "recovery" else keys.recall
            files = unpack_files(open_envelope(ciphertext, latest.wrapped_keys, secret, recipient))
            verify_file_digests(latest, files)
        finally:
            keys.lock()

        self._last_header = latest if chain.ok else None
        logger.info("Restored backup %s from %s", latest.backup_seq, source)
        return RestoreResult(
            agent_id=self.agent_id,
            files=files,
            header=latest,
            chain=chain,
            source=source,
        )

    def test_restore(self, phrase: str) -> bool:
        """
        Check a phrase re-derives exactly this agent's keys.

        Nothing is kept: the derived recovery secret is discarded at once.
        """
        try:
            derived = derive_keys(phrase)
        except SanctuaryError:
            return False
        try:
            return self.keys.same_keys(derived)
        finally:
            derived.lock()
