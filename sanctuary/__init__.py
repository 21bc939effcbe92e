"""Sanctuary - Durable, verifiable identity and encrypted backups for autonomous agents."""

__version__ = "0.1.0"

from .keys import (
    DerivedKeySet,
    generate_mnemonic,
    derive_keys,
    agent_id_from_public_key,
    public_key_from_agent_id,
    sign_message,
    verify_signature,
)

from .envelope import (
    Envelope,
    seal,
    open_envelope,
    wrap_key,
    unwrap_key,
)

from .backup_chain import (
    BackupHeader,
    ValidatedChain,
    build_header,
    header_digest,
    verify_header,
    restore_chain,
)

from .auth import (
    Challenge,
    AuthResult,
    ChallengeIssuer,
)

from .trust import (
    TrustLevel,
    TrustScore,
    TrustGraph,
    compute_score,
    level_for_score,
)

from .proof import IdentityProof

from .errors import (
    SanctuaryError,
    ValidationError,
    InvalidSeedError,
    AuthError,
    UnwrapError,
    ChainIntegrityError,
    RateLimitError,
    DependencyError,
)

from .client import SanctuaryClient

__all__ = [
    # Keys
    "DerivedKeySet",
    "generate_mnemonic",
    "derive_keys",
    "agent_id_from_public_key",
    "public_key_from_agent_id",
    "sign_message",
    "verify_signature",
    # Envelope
    "Envelope",
    "seal",
    "open_envelope",
    "wrap_key",
    "unwrap_key",
    # Backups
    "BackupHeader",
    "ValidatedChain",
    "build_header",
    "header_digest",
    "verify_header",
    "restore_chain",
    # Auth
    "Challenge",
    "AuthResult",
    "ChallengeIssuer",
    # Trust
    "TrustLevel",
    "TrustScore",
    "TrustGraph",
    "compute_score",
    "level_for_score",
    # Proofs
    "IdentityProof",
    # Errors
    "SanctuaryError",
    "ValidationError",
    "InvalidSeedError",
    "AuthError",
    "UnwrapError",
    "ChainIntegrityError",
    "RateLimitError",
    "DependencyError",
    # Client
    "SanctuaryClient",
]
