"""
Sanctuary - Error Taxonomy

Every failure in the protocol layer is a SanctuaryError subclass carrying a
stable machine-readable code and the HTTP status the service maps it to.
"""

from typing import Optional, Dict, Any


class SanctuaryError(Exception):
    """Base class for all protocol errors."""

    code = "error"
    http_status = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        data = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(SanctuaryError):
    """Malformed input: a field is missing or has the wrong type."""
    code = "validation_error"
    http_status = 400


class PayloadTooLarge(ValidationError):
    code = "payload_too_large"
    http_status = 413


class NotFoundError(SanctuaryError):
    code = "not_found"
    http_status = 404


class ConflictError(SanctuaryError):
    """The record already exists (duplicate registration)."""
    code = "conflict"
    http_status = 409


class InvalidSeedError(ValidationError):
    """Recovery phrase fails the BIP-39 word list or checksum."""
    code = "invalid_seed"


# Authentication

class AuthError(SanctuaryError):
    """Security-relevant rejection. Always surfaced, never downgraded."""
    code = "auth_error"
    http_status = 401


class ChallengeNotFound(AuthError):
    code = "challenge_not_found"


class ChallengeExpired(AuthError):
    code = "challenge_expired"


class ChallengeAlreadyUsed(AuthError):
    code = "challenge_already_used"


class BadSignature(AuthError):
    code = "bad_signature"


class AgentMismatch(AuthError):
    """Declared agent id does not match the authenticated or signing agent."""
    code = "agent_mismatch"
    http_status = 403


class AgentInactive(AuthError):
    """Agent status does not allow the operation (FALLEN, UNREGISTERED)."""
    code = "agent_inactive"
    http_status = 403


# Cryptography

class UnwrapError(SanctuaryError):
    """A wrapped key or ciphertext could not be opened with the given secret."""
    code = "unwrap_error"
    http_status = 400


class ChainIntegrityError(SanctuaryError):
    """
    The backup history cannot be trusted past a point.

    at_seq is the sequence number where the break was found, last_valid_seq
    the last header that passed verification (0 when none did).
    """
    code = "chain_integrity_error"
    http_status = 409

    def __init__(self, message: str, at_seq: Optional[int] = None, last_valid_seq: int = 0):
        super().__init__(message, at_seq=at_seq, last_valid_seq=last_valid_seq)
        self.at_seq = at_seq
        self.last_valid_seq = last_valid_seq


# Rate limits

class RateLimitError(SanctuaryError):
    code = "rate_limited"
    http_status = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class DailyBackupLimit(RateLimitError):
    code = "daily_backup_limit"


class CooldownActive(RateLimitError):
    code = "cooldown_active"


# Collaborators

class DependencyError(SanctuaryError):
    """Ledger or blob storage unavailable or timed out."""
    code = "dependency_error"
    http_status = 503

    def __init__(self, message: str, dependency: str):
        super().__init__(message, dependency=dependency)
        self.dependency = dependency


_BY_CODE = {}


def _index(cls):
    _BY_CODE[cls.code] = cls
    for sub in cls.__subclasses__():
        _index(sub)


_index(SanctuaryError)


def error_from_dict(data: Dict[str, Any], status_code: int = 500) -> SanctuaryError:
    """Rebuild a typed error from a service error response."""
    code = data.get("code", "error")
    message = data.get("error", "Unknown error")
    details = data.get("details") or {}
    cls = _BY_CODE.get(code, SanctuaryError)

    if issubclass(cls, RateLimitError):
        return cls(message, retry_after=int(details.get("retry_after", 0)))
    if issubclass(cls, ChainIntegrityError):
        return cls(message, at_seq=details.get("at_seq"),
                   last_valid_seq=details.get("last_valid_seq", 0))
    if issubclass(cls, DependencyError):
        return cls(message, dependency=details.get("dependency", "service"))
    return cls(message, **details)
