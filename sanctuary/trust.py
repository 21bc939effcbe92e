"""
Sanctuary - Trust Layer

Computes an agent's trust score from registration age, backup count and
ledger attestations, and gates new attestations behind a per-pair cooldown.

Key concepts:
- Attestation: a ledger fact "agent A vouches for agent B"
- Score: age points + backup points + attestation weight
- Trust Level: step function of the score (UNVERIFIED .. PILLAR)
- Snapshot: cached score with a computed_at staleness marker

Attester scores inside another agent's computation are taken from the
attester's last snapshot, not evaluated recursively. This bounds the work to
O(attesters) and makes attestation cycles harmless. It is an approximation,
not fixed-point trust propagation.
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, List, Callable, Any

from .errors import CooldownActive, NotFoundError, ValidationError
from .ledger import Attestation, cooldown_remaining

logger = logging.getLogger("sanctuary.trust")

SECONDS_PER_MONTH = 30 * 24 * 60 * 60
MAX_AGE_POINTS = 12
BACKUP_POINT = 0.5
MAX_BACKUP_POINTS = 50
ATTESTER_WEIGHT = 0.1
MUTUAL_FACTOR = 0.5
ATTESTATION_COOLDOWN_DAYS = 7
MAX_NOTE_LENGTH = 4096


class TrustLevel(str, Enum):
    UNVERIFIED = "UNVERIFIED"
    VERIFIED = "VERIFIED"
    ESTABLISHED = "ESTABLISHED"
    PILLAR = "PILLAR"


TRUST_THRESHOLDS = [
    (100, TrustLevel.PILLAR),
    (50, TrustLevel.ESTABLISHED),
    (20, TrustLevel.VERIFIED),
]


def level_for_score(score: float) -> TrustLevel:
    for threshold, level in TRUST_THRESHOLDS:
        if score >= threshold:
            return level
    return TrustLevel.UNVERIFIED


@dataclass
class TrustScore:
    """Recomputable projection; the ledger and record store are the source of truth."""
    agent_id: str
    score: float
    level: TrustLevel
    unique_attesters: int
    computed_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "score": self.score,
            "level": self.level.value,
            "unique_attesters": self.unique_attesters,
            "computed_at": self.computed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'TrustScore':
        return cls(
            agent_id=data["agent_id"],
            score=float(data["score"]),
            level=TrustLevel(data["level"]),
            unique_attesters=int(data["unique_attesters"]),
            computed_at=int(data["computed_at"]),
        )


def age_points(registered_at: int, now: int) -> int:
    months = max(0, now - registered_at) // SECONDS_PER_MONTH
    return min(MAX_AGE_POINTS, int(months))


def backup_points(backup_count: int) -> float:
    return min(MAX_BACKUP_POINTS, BACKUP_POINT * backup_count)


def attestation_weight(
    agent_id: str,
    received: List[Attestation],
    given: List[Attestation],
    attester_score: Callable[[str], float],
) -> Dict[str, Any]:
    """
    Sum of attester_score * 0.1 over distinct attesters.

    Self-attestations are ignored. An attester this agent also attested
    about (a mutual pair) counts at half weight.
    """
    attested_back = {a.about for a in given if a.from_agent == agent_id}
    attesters = sorted({a.from_agent for a in received if a.about == agent_id and a.from_agent != agent_id})

    weight = 0.0
    for attester in attesters:
        contribution = attester_score(attester) * ATTESTER_WEIGHT
        if attester in attested_back:
            contribution *= MUTUAL_FACTOR
        weight += contribution
    return {"weight": weight, "unique_attesters": len(attesters)}


def compute_score(
    agent_id: str,
    registered_at: int,
    backup_count: int,
    received: List[Attestation],
    given: List[Attestation],
    attester_score: Callable[[str], float],
    now: int,
) -> TrustScore:
    """Pure score computation; see module docstring for the formula."""
    attest = attestation_weight(agent_id, received, given, attester_score)
    score = age_points(registered_at, now) + backup_points(backup_count) + attest["weight"]
    score = round(score, 6)
    return TrustScore(
        agent_id=agent_id,
        score=score,
        level=level_for_score(score),
        unique_attesters=attest["unique_attesters"],
        computed_at=now,
    )


def note_hash(content: str) -> str:
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


class TrustGraph:
    """
    Trust scores and attestations for all agents known to the service.

    store  - record store (agents, backups, trust snapshots, notes)
    ledger - attestation facts; cooldowns are checked against it, never
             against a local cache
    """

    def __init__(self, store, ledger, cooldown_days: int = ATTESTATION_COOLDOWN_DAYS,
                 cache_ttl_seconds: int = 3600, clock: Callable[[], float] = time.time):
        self.store = store
        self.ledger = ledger
        self.cooldown_seconds = cooldown_days * 24 * 60 * 60
        self.cache_ttl_seconds = cache_ttl_seconds
        self.clock = clock
        self._pair_locks: Dict[tuple, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _snapshot_score(self, agent_id: str) -> float:
        snapshot = self.store.get_trust_score(agent_id)
        return float(snapshot["score"]) if snapshot else 0.0

    def recompute(self, agent_id: str) -> TrustScore:
        """Authoritative synchronous recompute; stores a fresh snapshot."""
        agent = self.store.get_agent(agent_id)
        if not agent:
            raise NotFoundError(f"Agent {agent_id} not found")

        score = compute_score(
            agent_id=agent_id,
            registered_at=agent["registered_at"],
            backup_count=self.store.get_backup_count(agent_id),
            received=self.ledger.read_attestations_about(agent_id),
            given=self.ledger.read_attestations_by(agent_id),
            attester_score=self._snapshot_score,
            now=int(self.clock()),
        )
        self.store.upsert_trust_score(score.to_dict())
        logger.debug("Trust recomputed for %s: %s (%s)", agent_id, score.score, score.level.value)
        return score

    def get_score(self, agent_id: str, max_age: Optional[int] = None) -> TrustScore:
        """
        Cached snapshot if younger than max_age (default cache_ttl_seconds),
        otherwise a synchronous recompute.
        """
        max_age = self.cache_ttl_seconds if max_age is None else max_age
        snapshot = self.store.get_trust_score(agent_id)
        if snapshot and int(self.clock()) - snapshot["computed_at"] <= max_age:
            return TrustScore.from_dict(snapshot)
        return self.recompute(agent_id)

    def cached_score(self, agent_id: str) -> TrustScore:
        """Snapshot without recomputing; zero score when none exists."""
        snapshot = self.store.get_trust_score(agent_id)
        if snapshot:
            return TrustScore.from_dict(snapshot)
        return TrustScore(agent_id, 0.0, TrustLevel.UNVERIFIED, 0, 0)

    def recompute_all(self) -> int:
        count = 0
        for agent in self.store.list_agents():
            self.recompute(agent["agent_id"])
            count += 1
        return count

    def _pair_lock(self, from_agent: str, about: str) -> threading.Lock:
        with self._locks_guard:
            return self._pair_locks.setdefault((from_agent, about), threading.Lock())

    def cooldown_remaining(self, from_agent: str, about: str) -> int:
        history = self.ledger.read_attestations_about(about)
        return cooldown_remaining(history, from_agent, about, int(self.clock()), self.cooldown_seconds)

    def record_attestation(self, from_agent: str, about: str, note: str) -> Attestation:
        """
        Submit an attestation to the ledger.

        Raises ValidationError for self-attestation or unknown agents and
        CooldownActive when the same pair attested within the cooldown.
        """
        if from_agent == about:
            raise ValidationError("Cannot attest about yourself")
        if not isinstance(note, str) or not note.strip():
            raise ValidationError("Attestation note must be a non-empty string")
        if len(note) > MAX_NOTE_LENGTH:
            raise ValidationError(f"Attestation note exceeds {MAX_NOTE_LENGTH} characters")
        if not self.store.get_agent(from_agent):
            raise NotFoundError("Attesting agent is not registered")
        if not self.store.get_agent(about):
            raise NotFoundError("Target agent is not registered")

        with self._pair_lock(from_agent, about):
            remaining = self.cooldown_remaining(from_agent, about)
            if remaining:
                days = remaining / 86400
                raise CooldownActive(
                    f"Attestation cooldown active. Try again in {days:.1f} day(s).",
                    retry_after=remaining,
                )

            digest = note_hash(note)
            self.store.create_attestation_note(digest, note, int(self.clock()))
            attestation = self.ledger.record_attestation(from_agent, about, digest)

        logger.info("Attestation recorded %s -> %s (%s)", from_agent, about, digest[:12])
        return attestation
