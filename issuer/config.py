"""
Explicit client configuration, validated once at construction.

Environment / .env loading lives in the top-level config.py; this structure
is what the issuer actually consumes.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from acmeproto.errors import ConfigurationError
from issuer.notifications import Notifications

LETSENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"


class ClientConfig(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    base_path: str = ""
    username: Optional[str] = None
    key_bits: int = Field(2048, ge=1024)
    max_attempts: int = Field(15, ge=1)
    directory_url: str = LETSENCRYPT_DIRECTORY
    source_ip: Optional[str] = None
    connection_timeout: float = Field(30, gt=0)
    ca_bundle: str = ""
    insecure: bool = False
    notifications: Notifications = Field(default_factory=Notifications)

    @classmethod
    def from_options(cls, **options: Any) -> "ClientConfig":
        """Build a config, reporting invalid options as ConfigurationError."""
        try:
            return cls(**options)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid client configuration: {exc}") from exc
