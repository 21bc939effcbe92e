"""
Sanctuary - Key Derivation

Turns a 24-word BIP-39 recovery phrase into three independent keypairs:

- recovery: X25519, unwraps backups. Exists only transiently.
- agent:    Ed25519, signs every authenticated request and backup header.
            Its public key is the agent id.
- recall:   X25519, unwraps backups for searchable recall without the
            recovery key.

Each key comes from its own HKDF label, so one key type reveals nothing
about the others.
"""

import base64
import hashlib
from typing import Optional, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from mnemonic import Mnemonic
from nacl.encoding import Base64Encoder
from nacl.exceptions import BadSignatureError
from nacl.public import PrivateKey, PublicKey
from nacl.signing import SigningKey, VerifyKey

from .errors import InvalidSeedError, ValidationError

AGENT_ID_PREFIX = "did:sanctuary:"
PHRASE_WORDS = 24
PHRASE_STRENGTH = 256

HKDF_SALT = b"sanctuary-key-derivation"
RECOVERY_LABEL = b"sanctuary/recovery/v1"
AGENT_LABEL = b"sanctuary/agent/v1"
RECALL_LABEL = b"sanctuary/recall/v1"

_wordlist = Mnemonic("english")


def generate_mnemonic() -> str:
    """Generate a fresh 24-word recovery phrase. Shown to the user once."""
    return _wordlist.generate(strength=PHRASE_STRENGTH)


def normalize_phrase(phrase: str) -> str:
    return " ".join(phrase.strip().lower().split())


def validate_mnemonic(phrase: str) -> str:
    """Return the normalized phrase or raise InvalidSeedError."""
    if not isinstance(phrase, str):
        raise InvalidSeedError("Recovery phrase must be a string")
    normalized = normalize_phrase(phrase)
    words = normalized.split(" ")
    if len(words) != PHRASE_WORDS:
        raise InvalidSeedError(f"Recovery phrase must have {PHRASE_WORDS} words, got {len(words)}")
    if not _wordlist.check(normalized):
        raise InvalidSeedError("Recovery phrase failed word list or checksum validation")
    return normalized


def _hkdf(seed: bytes, label: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=HKDF_SALT,
        info=label,
    ).derive(seed)


# Agent ids

def agent_id_from_public_key(public_key: Union[bytes, VerifyKey]) -> str:
    """
    Agent id for an Ed25519 verify key.

    Format: did:sanctuary:<hex public key>. The full key is embedded so any
    verifier can recover it from the id alone.
    """
    if isinstance(public_key, VerifyKey):
        public_key = bytes(public_key)
    if len(public_key) != 32:
        raise ValidationError("Ed25519 public key must be 32 bytes")
    return f"{AGENT_ID_PREFIX}{public_key.hex()}"


def is_valid_agent_id(agent_id: str) -> bool:
    if not isinstance(agent_id, str) or not agent_id.startswith(AGENT_ID_PREFIX):
        return False
    key_hex = agent_id[len(AGENT_ID_PREFIX):]
    if len(key_hex) != 64:
        return False
    try:
        bytes.fromhex(key_hex)
    except ValueError:
        return False
    return key_hex == key_hex.lower()


def public_key_from_agent_id(agent_id: str) -> VerifyKey:
    """Recover the verify key embedded in an agent id."""
    if not is_valid_agent_id(agent_id):
        raise ValidationError(f"Invalid agent id: {agent_id!r}")
    return VerifyKey(bytes.fromhex(agent_id[len(AGENT_ID_PREFIX):]))


def fingerprint(public_key: bytes) -> str:
    """Short hex fingerprint for logs."""
    return hashlib.sha256(public_key).hexdigest()[:16]


# Signatures

def sign_message(signing_key: SigningKey, message: Union[bytes, str]) -> str:
    """Sign a message. Returns a base64 detached signature."""
    if isinstance(message, str):
        message = message.encode('utf-8')
    signed = signing_key.sign(message, encoder=Base64Encoder)
    return signed.signature.decode('utf-8')


def verify_signature(agent_id: str, message: Union[bytes, str], signature_b64: str) -> bool:
    """Verify a base64 signature against the key embedded in agent_id."""
    if isinstance(message, str):
        message = message.encode('utf-8')
    try:
        verify_key = public_key_from_agent_id(agent_id)
        signature = base64.b64decode(signature_b64, validate=True)
    except (ValidationError, ValueError, TypeError):
        return False
    try:
        verify_key.verify(message, signature)
        return True
    except (BadSignatureError, ValueError):
        return False


def encode_public_key(key: PublicKey) -> str:
    return base64.b64encode(bytes(key)).decode('utf-8')


def decode_public_key(key_b64: str) -> PublicKey:
    try:
        raw = base64.b64decode(key_b64, validate=True)
    except (ValueError, TypeError):
        raise ValidationError("Public key must be base64")
    if len(raw) != 32:
        raise ValidationError("X25519 public key must be 32 bytes")
    return PublicKey(raw)


class DerivedKeySet:
    """
    The three keypairs derived from one recovery phrase.

    The recovery secret is held only while needed; lock() drops it. Nothing
    here is ever written to disk.
    """

    def __init__(self, recovery: Optional[PrivateKey], agent: SigningKey, recall: PrivateKey,
                 recovery_public: Optional[PublicKey] = None):
        self._recovery = recovery
        self.agent = agent
        self.recall = recall
        self.recovery_public = recovery_public or recovery.public_key

    @property
    def recovery(self) -> Optional[PrivateKey]:
        return self._recovery

    @property
    def locked(self) -> bool:
        return self._recovery is None

    @property
    def agent_id(self) -> str:
        return agent_id_from_public_key(self.agent.verify_key)

    @property
    def recall_public(self) -> PublicKey:
        return self.recall.public_key

    @property
    def recovery_pubkey(self) -> str:
        """Base64 recovery public key, as registered."""
        return encode_public_key(self.recovery_public)

    def sign(self, message: Union[bytes, str]) -> str:
        return sign_message(self.agent, message)

    def lock(self) -> None:
        """Discard the recovery secret from this process."""
        self._recovery = None

    def same_keys(self, other: "DerivedKeySet") -> bool:
        """Byte-for-byte comparison of public material and agent/recall secrets."""
        return (
            bytes(self.recovery_public) == bytes(other.recovery_public)
            and bytes(self.agent) == bytes(other.agent)
            and bytes(self.recall) == bytes(other.recall)
        )


def derive_keys(phrase: str) -> DerivedKeySet:
    """
    Deterministically derive the key set from a recovery phrase.

    Raises InvalidSeedError if the phrase is not a valid 24-word BIP-39
    mnemonic.
    """
    normalized = validate_mnemonic(phrase)
    seed = Mnemonic.to_seed(normalized)

    recovery = PrivateKey(_hkdf(seed, RECOVERY_LABEL))
    agent = SigningKey(_hkdf(seed, AGENT_LABEL))
    recall = PrivateKey(_hkdf(seed, RECALL_LABEL))
    return DerivedKeySet(recovery=recovery, agent=agent, recall=recall)
