"""
Sanctuary - Configuration

Settings are built once at process start and passed to each component.
Values come from SANCTUARY_* environment variables.
"""

import os
from typing import Optional, List, Mapping

from pydantic import BaseModel, Field

from .errors import ValidationError

ENV_PREFIX = "SANCTUARY_"


class Settings(BaseModel):
    """Service configuration."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    environment: str = "development"
    public_url: str = ""

    # Record store
    database_path: str = "sanctuary.db"

    # HMAC key for identity proofs
    server_secret: str = Field(..., min_length=1)

    # Ledger
    ledger_url: str = ""
    ledger_timeout: float = 10.0
    chain_id: int = 84532
    contract_address: str = ""

    # Blob storage
    blob_url: str = ""
    blob_dir: str = ""
    blob_timeout: float = 30.0

    # Limits
    challenge_ttl_seconds: int = 300
    backup_size_limit: int = 5 * 1024 * 1024
    backup_interval_seconds: int = 24 * 60 * 60
    attestation_cooldown_days: int = 7
    fallen_threshold_days: int = 30
    trust_cache_ttl_seconds: int = 3600
    registration_deadline_max_seconds: int = 3600

    # Maintenance
    cleanup_interval_seconds: int = 300

    # Per-IP request limits (requests per minute)
    challenge_rate_limit: int = 30
    default_rate_limit: int = 120
    rate_limiting_enabled: bool = True

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        """Read SANCTUARY_<FIELD> variables; keyword overrides win."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in environ and environ[key] != "":
                values[name] = environ[key]
        values.update(overrides)
        if "server_secret" not in values:
            raise ValidationError(f"Missing required environment variable: {ENV_PREFIX}SERVER_SECRET")
        return cls(**values)

    def validate_for_production(self) -> List[str]:
        """Configuration problems that must block a production start."""
        errors = []
        if self.is_production:
            if not self.contract_address:
                errors.append(f"{ENV_PREFIX}CONTRACT_ADDRESS is required in production")
            if len(self.server_secret) < 32:
                errors.append(f"{ENV_PREFIX}SERVER_SECRET should be at least 32 characters in production")
            if not self.ledger_url:
                errors.append(f"{ENV_PREFIX}LEDGER_URL is required in production")
            if not (self.blob_url or self.blob_dir):
                errors.append(f"{ENV_PREFIX}BLOB_URL or {ENV_PREFIX}BLOB_DIR is required in production")
        return errors
