"""
Sanctuary - Ledger Collaborator

The append-only fact store holding identity registrations and
attestations. Ordering and tamper resistance are the ledger's job; this
module only defines how Sanctuary talks to it.

MemoryLedger is used for tests and local development. HttpLedger talks to
a JSON gateway in front of the real ledger with a bounded timeout and
never retries.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, List, Any, Callable

import httpx

from .errors import ConflictError, CooldownActive, DependencyError, SanctuaryError, error_from_dict

logger = logging.getLogger("sanctuary.ledger")

DEFAULT_COOLDOWN_SECONDS = 7 * 24 * 60 * 60


@dataclass
class Attestation:
    """A ledger-recorded vouching statement from one agent about another."""
    from_agent: str
    about: str
    note_hash: str
    timestamp: int
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_agent,
            "about": self.about,
            "note_hash": self.note_hash,
            "timestamp": self.timestamp,
            "tx_hash": self.tx_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Attestation':
        return cls(
            from_agent=data["from"],
            about=data["about"],
            note_hash=data["note_hash"],
            timestamp=int(data["timestamp"]),
            tx_hash=data.get("tx_hash"),
        )


class Ledger(ABC):
    """Operations Sanctuary needs from the ledger."""

    @abstractmethod
    def register_identity(self, agent_id: str, recovery_pubkey: str, manifest_hash: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def record_attestation(self, from_agent: str, about: str, note_hash: str) -> Attestation:
        ...

    @abstractmethod
    def read_attestations_about(self, agent_id: str) -> List[Attestation]:
        ...

    @abstractmethod
    def read_attestations_by(self, agent_id: str) -> List[Attestation]:
        ...

    @abstractmethod
    def read_registration_facts(self, agent_id: str) -> Optional[Dict[str, Any]]:
        ...


def cooldown_remaining(history: List[Attestation], from_agent: str, about: str,
                       now: int, cooldown_seconds: int) -> int:
    """Seconds left before from_agent may attest about again (0 if allowed)."""
    previous = [a.timestamp for a in history if a.from_agent == from_agent and a.about == about]
    if not previous:
        return 0
    return max(0, max(previous) + cooldown_seconds - now)


class MemoryLedger(Ledger):
    """
    In-process ledger.

    Like the on-chain registry it refuses duplicate registrations and
    attestations inside the pair cooldown.
    """

    def __init__(self, cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._identities: Dict[str, Dict[str, Any]] = {}
        self._attestations: List[Attestation] = []

    def register_identity(self, agent_id, recovery_pubkey, manifest_hash):
        with self._lock:
            if agent_id in self._identities:
                raise ConflictError("Identity already registered on ledger")
            fact = {
                "agent_id": agent_id,
                "recovery_pubkey": recovery_pubkey,
                "manifest_hash": manifest_hash,
                "registered_at": int(self.clock()),
                "tx_hash": f"mem-reg-{len(self._identities) + 1}",
            }
            self._identities[agent_id] = fact
            return dict(fact)

    def record_attestation(self, from_agent, about, note_hash):
        with self._lock:
            now = int(self.clock())
            remaining = cooldown_remaining(self._attestations, from_agent, about, now,
                                           self.cooldown_seconds)
            if remaining:
                raise CooldownActive("Attestation cooldown active on ledger", retry_after=remaining)
            attestation = Attestation(
                from_agent=from_agent,
                about=about,
                note_hash=note_hash,
                timestamp=now,
                tx_hash=f"mem-att-{len(self._attestations) + 1}",
            )
            self._attestations.append(attestation)
            return attestation

    def read_attestations_about(self, agent_id):
        with self._lock:
            return [a for a in self._attestations if a.about == agent_id]

    def read_attestations_by(self, agent_id):
        with self._lock:
            return [a for a in self._attestations if a.from_agent == agent_id]

    def read_registration_facts(self, agent_id):
        with self._lock:
            fact = self._identities.get(agent_id)
            return dict(fact) if fact else None


class HttpLedger(Ledger):
    """JSON gateway client. Every call is bounded by `timeout` seconds."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, f"{self.base_url}{path}",
                                            timeout=self.timeout, **kwargs)
        except httpx.TimeoutException:
            logger.error("Ledger %s %s timed out after %ss", method, path, self.timeout)
            raise DependencyError("Ledger request timed out", dependency="ledger")
        except httpx.HTTPError as e:
            logger.error("Ledger %s %s failed: %s", method, path, e)
            raise DependencyError(f"Ledger unavailable: {e}", dependency="ledger")

        if response.status_code == 404:
            return None
        if response.status_code >= 500:
            raise DependencyError(f"Ledger error: {response.status_code}", dependency="ledger")
        try:
            data = response.json()
        except ValueError:
            raise DependencyError("Ledger returned a non-JSON response", dependency="ledger")
        if response.status_code >= 400:
            raise error_from_dict(data, response.status_code)
        return data

    def register_identity(self, agent_id, recovery_pubkey, manifest_hash):
        return self._request("POST", "/identities", json={
            "agent_id": agent_id,
            "recovery_pubkey": recovery_pubkey,
            "manifest_hash": manifest_hash,
        })

    def record_attestation(self, from_agent, about, note_hash):
        data = self._request("POST", "/attestations", json={
            "from": from_agent,
            "about": about,
            "note_hash": note_hash,
        })
        if data is None:
            raise SanctuaryError("Ledger rejected attestation")
        return Attestation.from_dict(data)

    def read_attestations_about(self, agent_id):
        data = self._request("GET", "/attestations", params={"about": agent_id}) or []
        return [Attestation.from_dict(a) for a in data]

    def read_attestations_by(self, agent_id):
        data = self._request("GET", "/attestations", params={"from": agent_id}) or []
        return [Attestation.from_dict(a) for a in data]

    def read_registration_facts(self, agent_id):
        return self._request("GET", f"/identities/{agent_id}")

    def close(self) -> None:
        self._client.close()
