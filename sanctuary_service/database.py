"""
Database operations for the Sanctuary service.

Uses SQLite. A SanctuaryDb is constructed explicitly with its path and
passed to every component that needs it. Each operation opens its own
connection; every check-then-write runs inside BEGIN IMMEDIATE so
concurrent writers serialize on the database lock.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Callable, Iterable

from sanctuary.backup_chain import check_backup_rules
from sanctuary.errors import ChallengeAlreadyUsed, NotFoundError

logger = logging.getLogger("sanctuary.database")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    external_id TEXT PRIMARY KEY,
    username TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
    agent_id TEXT PRIMARY KEY,
    owner_id TEXT UNIQUE,
    recovery_pubkey TEXT NOT NULL,
    manifest_hash TEXT NOT NULL,
    manifest_version INTEGER NOT NULL DEFAULT 1,
    registered_at INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'LIVING',
    ledger_tx TEXT
);

CREATE TABLE IF NOT EXISTS heartbeats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    agent_timestamp INTEGER NOT NULL,
    received_at INTEGER NOT NULL,
    FOREIGN KEY (agent_id) REFERENCES agents(agent_id)
);

CREATE TABLE IF NOT EXISTS backups (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    tx_id TEXT NOT NULL,
    backup_seq INTEGER NOT NULL,
    agent_timestamp INTEGER NOT NULL,
    received_at INTEGER NOT NULL,
    size_bytes INTEGER NOT NULL,
    manifest_hash TEXT NOT NULL,
    header_hash TEXT NOT NULL,
    prev_backup_hash TEXT NOT NULL,
    FOREIGN KEY (agent_id) REFERENCES agents(agent_id),
    UNIQUE (agent_id, backup_seq)
);

CREATE TABLE IF NOT EXISTS auth_challenges (
    nonce TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    used INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS trust_scores (
    agent_id TEXT PRIMARY KEY,
    score REAL NOT NULL,
    level TEXT NOT NULL,
    unique_attesters INTEGER NOT NULL,
    computed_at INTEGER NOT NULL,
    FOREIGN KEY (agent_id) REFERENCES agents(agent_id)
);

CREATE TABLE IF NOT EXISTS attestation_notes (
    hash TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS rate_limits (
    key TEXT NOT NULL,
    window_start INTEGER NOT NULL,
    count INTEGER DEFAULT 1,
    PRIMARY KEY (key, window_start)
);

CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status);
CREATE INDEX IF NOT EXISTS idx_heartbeats_agent ON heartbeats(agent_id, received_at DESC);
CREATE INDEX IF NOT EXISTS idx_backups_agent ON backups(agent_id, backup_seq DESC);
CREATE INDEX IF NOT EXISTS idx_auth_challenges_expires ON auth_challenges(expires_at);
"""


class SanctuaryDb:
    """Keyed, indexed record store."""

    def __init__(self, path: str, timeout: float = 30.0):
        self.path = path
        self.timeout = timeout

    @contextmanager
    def connection(self):
        """Autocommit connection; use transaction() for multi-statement writes."""
        conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception."""
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def init(self) -> None:
        """Initialize the database schema."""
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)

    # Users

    def create_user(self, external_id: str, username: str, created_at: Optional[int] = None) -> bool:
        """Create a user keyed by external login id. False if it exists."""
        with self.connection() as conn:
            try:
                conn.execute(
                    "INSERT INTO users (external_id, username, created_at) VALUES (?, ?, ?)",
                    (external_id, username, created_at or int(time.time()))
                )
                return True
            except sqlite3.IntegrityError:
                return False

    def get_user(self, external_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE external_id = ?", (external_id,)).fetchone()
            return dict(row) if row else None

    # Agents

    def create_agent(self, agent: Dict[str, Any]) -> bool:
        """Insert an identity. False if the agent id or owner is already taken."""
        with self.connection() as conn:
            try:
                conn.execute(
                    """INSERT INTO agents (agent_id, owner_id, recovery_pubkey, manifest_hash,
                                           manifest_version, registered_at, status, ledger_tx)
                       VALUES (:agent_id, :owner_id, :recovery_pubkey, :manifest_hash,
                               :manifest_version, :registered_at, :status, :ledger_tx)""",
                    {"owner_id": None, "ledger_tx": None, **agent}
                )
                return True
            except sqlite3.IntegrityError:
                return False

    def get_agent(self, agent_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM agents WHERE agent_id = ?", (agent_id,)).fetchone()
            return dict(row) if row else None

    def get_agent_by_owner(self, owner_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM agents WHERE owner_id = ?", (owner_id,)).fetchone()
            return dict(row) if row else None

    def list_agents(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            if status:
                rows = conn.execute("SELECT * FROM agents WHERE status = ?", (status,)).fetchall()
            else:
                rows = conn.execute("SELECT * FROM agents ORDER BY registered_at").fetchall()
            return [dict(row) for row in rows]

    def update_agent_manifest(self, agent_id: str, manifest_hash: str, manifest_version: int) -> bool:
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE agents SET manifest_hash = ?, manifest_version = ? WHERE agent_id = ?",
                (manifest_hash, manifest_version, agent_id)
            )
            return cursor.rowcount > 0

    def transition_status(self, agent_id: str, from_statuses: Iterable[str], to_status: str) -> bool:
        """Atomically move an agent to to_status if it is in one of from_statuses."""
        from_statuses = list(from_statuses)
        placeholders = ",".join("?" for _ in from_statuses)
        with self.connection() as conn:
            cursor = conn.execute(
                f"UPDATE agents SET status = ? WHERE agent_id = ? AND status IN ({placeholders})",
                (to_status, agent_id, *from_statuses)
            )
            changed = cursor.rowcount > 0
        if changed:
            logger.info("Agent %s status -> %s", agent_id, to_status)
        return changed

    # Heartbeats

    def create_heartbeat(self, agent_id: str, agent_timestamp: int, received_at: int) -> None:
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO heartbeats (agent_id, agent_timestamp, received_at) VALUES (?, ?, ?)",
                (agent_id, agent_timestamp, received_at)
            )

    def get_latest_heartbeat(self, agent_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM heartbeats WHERE agent_id = ? ORDER BY received_at DESC LIMIT 1",
                (agent_id,)
            ).fetchone()
            return dict(row) if row else None

    def get_agents_without_recent_heartbeat(self, threshold_seconds: int, now: int) -> List[Dict[str, Any]]:
        """LIVING or RETURNED agents whose last heartbeat (or registration) is older than the threshold."""
        cutoff = now - threshold_seconds
        with self.connection() as conn:
            rows = conn.execute(
                """SELECT a.* FROM agents a
                   LEFT JOIN (
                       SELECT agent_id, MAX(received_at) AS last_heartbeat
                       FROM heartbeats GROUP BY agent_id
                   ) h ON a.agent_id = h.agent_id
                   WHERE a.status IN ('LIVING', 'RETURNED')
                   AND COALESCE(h.last_heartbeat, a.registered_at) < ?""",
                (cutoff,)
            ).fetchall()
            return [dict(row) for row in rows]

    # Backups

    def accept_backup(self, record: Dict[str, Any], min_interval: int) -> Dict[str, Any]:
        """
        Re-check the acceptance rules and insert, as one write transaction.

        Raises NotFoundError, AgentInactive, DailyBackupLimit or
        ChainIntegrityError; on any of them nothing is written.
        """
        with self.transaction() as conn:
            agent = conn.execute(
                "SELECT * FROM agents WHERE agent_id = ?", (record["agent_id"],)
            ).fetchone()
            if not agent:
                raise NotFoundError("Agent not found")
            latest = conn.execute(
                "SELECT * FROM backups WHERE agent_id = ? ORDER BY backup_seq DESC LIMIT 1",
                (record["agent_id"],)
            ).fetchone()
            check_backup_rules(
                dict(agent), dict(latest) if latest else None,
                record["backup_seq"], record["prev_backup_hash"],
                record["received_at"], min_interval,
            )
            conn.execute(
                """INSERT INTO backups (id, agent_id, tx_id, backup_seq, agent_timestamp, received_at,
                                        size_bytes, manifest_hash, header_hash, prev_backup_hash)
                   VALUES (:id, :agent_id, :tx_id, :backup_seq, :agent_timestamp, :received_at,
                           :size_bytes, :manifest_hash, :header_hash, :prev_backup_hash)""",
                record
            )
        return dict(record)

    def get_backup(self, backup_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM backups WHERE id = ?", (backup_id,)).fetchone()
            return dict(row) if row else None

    def get_latest_backup(self, agent_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM backups WHERE agent_id = ? ORDER BY backup_seq DESC LIMIT 1",
                (agent_id,)
            ).fetchone()
            return dict(row) if row else None

    def get_backup_by_seq(self, agent_id: str, backup_seq: int) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM backups WHERE agent_id = ? AND backup_seq = ?",
                (agent_id, backup_seq)
            ).fetchone()
            return dict(row) if row else None

    def get_backups_by_agent(self, agent_id: str, limit: int = 30) -> List[Dict[str, Any]]:
        """Newest first."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM backups WHERE agent_id = ? ORDER BY backup_seq DESC LIMIT ?",
                (agent_id, limit)
            ).fetchall()
            return [dict(row) for row in rows]

    def get_backup_count(self, agent_id: str) -> int:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM backups WHERE agent_id = ?", (agent_id,)
            ).fetchone()
            return row["count"]

    def get_next_backup_seq(self, agent_id: str) -> int:
        latest = self.get_latest_backup(agent_id)
        return latest["backup_seq"] + 1 if latest else 1

    # Challenge operations

    def create_challenge(self, nonce: str, agent_id: str, expires_at: int) -> None:
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO auth_challenges (nonce, agent_id, expires_at, used) VALUES (?, ?, ?, 0)",
                (nonce, agent_id, expires_at)
            )

    def get_challenge(self, nonce: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM auth_challenges WHERE nonce = ?", (nonce,)).fetchone()
            return dict(row) if row else None

    def consume_challenge(self, nonce: str, decide: Callable[[Dict[str, Any]], None]) -> bool:
        """
        Load a challenge, let `decide` accept or raise, then mark it used,
        all under one write lock.

        Returns False if the nonce is unknown. Exceptions from `decide`
        propagate and leave the challenge untouched.
        """
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM auth_challenges WHERE nonce = ?", (nonce,)).fetchone()
            if not row:
                return False
            decide(dict(row))
            cursor = conn.execute(
                "UPDATE auth_challenges SET used = 1 WHERE nonce = ? AND used = 0", (nonce,)
            )
            if cursor.rowcount != 1:
                raise ChallengeAlreadyUsed("Challenge has already been used")
        return True

    def cleanup_expired_challenges(self, now: Optional[int] = None) -> int:
        """Remove expired and used challenges. Returns number removed."""
        now = int(time.time()) if now is None else now
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM auth_challenges WHERE expires_at < ? OR used = 1", (now,)
            )
            return cursor.rowcount

    # Trust scores

    def upsert_trust_score(self, score: Dict[str, Any]) -> None:
        with self.connection() as conn:
            conn.execute(
                """INSERT INTO trust_scores (agent_id, score, level, unique_attesters, computed_at)
                   VALUES (:agent_id, :score, :level, :unique_attesters, :computed_at)
                   ON CONFLICT(agent_id) DO UPDATE SET
                       score = excluded.score,
                       level = excluded.level,
                       unique_attesters = excluded.unique_attesters,
                       computed_at = excluded.computed_at""",
                score
            )

    def get_trust_score(self, agent_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM trust_scores WHERE agent_id = ?", (agent_id,)).fetchone()
            return dict(row) if row else None

    # Attestation notes

    def create_attestation_note(self, note_hash: str, content: str, created_at: int) -> None:
        """Content-addressed, so inserting the same note twice is a no-op."""
        with self.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO attestation_notes (hash, content, created_at) VALUES (?, ?, ?)",
                (note_hash, content, created_at)
            )

    def get_attestation_note(self, note_hash: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM attestation_notes WHERE hash = ?", (note_hash,)
            ).fetchone()
            return dict(row) if row else None

    # Stats

    def get_stats(self) -> Dict[str, Any]:
        with self.connection() as conn:
            by_status = {
                row["status"]: row["count"]
                for row in conn.execute("SELECT status, COUNT(*) AS count FROM agents GROUP BY status")
            }
            backups = conn.execute("SELECT COUNT(*) AS count FROM backups").fetchone()["count"]
            notes = conn.execute("SELECT COUNT(*) AS count FROM attestation_notes").fetchone()["count"]
        return {
            "agents": sum(by_status.values()),
            "by_status": by_status,
            "backups": backups,
            "attestation_notes": notes,
        }
