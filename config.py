"""
Process settings for the CLI, read from ACME_* variables and .env files.
Settings.client_config() turns them into the ClientConfig the issuer consumes.
"""
from __future__ import annotations

import json
from typing import Dict, List, Literal, Optional, Union

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from issuer.config import LETSENCRYPT_DIRECTORY, LETSENCRYPT_STAGING_DIRECTORY, ClientConfig
from issuer.notifications import Notifications


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings calls json.loads() on complex-typed fields (the
    CERTIFICATES mapping) before field_validators run.  A plain
    comma-separated value like ``example.com,www.example.com`` is not valid
    JSON; returning the raw string lets parse_certificates split it.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


_PRESETS = {
    "letsencrypt": LETSENCRYPT_DIRECTORY,
    "letsencrypt_staging": LETSENCRYPT_STAGING_DIRECTORY,
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ACME_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── CA ─────────────────────────────────────────────────────────────────
    CA_PROVIDER: Literal["letsencrypt", "letsencrypt_staging", "custom"] = "letsencrypt"
    # Only consulted when CA_PROVIDER="custom"
    DIRECTORY_URL: str = ""

    # ── Account & storage ──────────────────────────────────────────────────
    BASE_PATH: str = "./acme"
    USERNAME: Optional[str] = None
    KEY_BITS: int = 2048

    # ── Certificates: label → domains ─────────────────────────────────────
    CERTIFICATES: Dict[str, List[str]] = {}

    # ── HTTP agent ─────────────────────────────────────────────────────────
    SOURCE_IP: Optional[str] = None
    CONNECTION_TIMEOUT: float = 30
    CA_BUNDLE: str = ""       # Path to CA cert bundle; empty = system default
    INSECURE: bool = False    # Skip TLS verification (never use in production)

    # ── Validation polling ─────────────────────────────────────────────────
    MAX_ATTEMPTS: int = 15

    # ── Challenge server (--serv) ──────────────────────────────────────────
    HTTP_HOST: str = "127.0.0.1"
    HTTP_PORT: int = 80

    # ── Batch & scheduling ─────────────────────────────────────────────────
    BATCH_WORKERS: int = 4
    SCHEDULE_TIME: str = "06:00"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("CERTIFICATES", mode="before")
    @classmethod
    def parse_certificates(cls, v: object) -> Union[Dict[str, List[str]], object]:
        """
        Accept a JSON mapping, a comma-separated domain list (one label per
        domain) or a list whose items are a domain or a list of domains.
        """
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("{") or v.startswith("["):
                v = json.loads(v)
            else:
                v = [d.strip() for d in v.split(",") if d.strip()]
        if isinstance(v, list):
            mapping: Dict[str, List[str]] = {}
            for item in v:
                domains = [str(d) for d in item] if isinstance(item, list) else [str(item)]
                if domains:
                    mapping.setdefault(domains[0], domains)
            return mapping
        if isinstance(v, dict):
            return {
                str(k): [str(d) for d in d_list] if isinstance(d_list, list) else [str(d_list)]
                for k, d_list in v.items()
            }
        return v

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        if self.CA_PROVIDER in _PRESETS:
            self.DIRECTORY_URL = _PRESETS[self.CA_PROVIDER]
        elif not self.DIRECTORY_URL:
            raise ValueError("ACME_DIRECTORY_URL must be set when ACME_CA_PROVIDER='custom'")
        return self

    def client_config(self, notifications: Optional[Notifications] = None) -> ClientConfig:
        """Build the validated issuer configuration from these settings."""
        return ClientConfig.from_options(
            base_path=self.BASE_PATH,
            username=self.USERNAME,
            key_bits=self.KEY_BITS,
            max_attempts=self.MAX_ATTEMPTS,
            directory_url=self.DIRECTORY_URL,
            source_ip=self.SOURCE_IP,
            connection_timeout=self.CONNECTION_TIMEOUT,
            ca_bundle=self.CA_BUNDLE,
            insecure=self.INSECURE,
            notifications=notifications or Notifications(),
        )


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Load settings, optionally from a specific .env file."""
    if env_file:
        return Settings(_env_file=env_file)
    return Settings()
