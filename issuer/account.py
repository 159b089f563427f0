"""
Account manager — load or register the ACME account for a base path.

The account key pair is created once per base path and reused for every
certificate operation afterwards; account.json is never rewritten while it
exists.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from josepy.jwk import JWKRSA

from acmeproto import jws as jwslib
from acmeproto.client import AcmeProtocolClient, parse_agreement
from acmeproto.errors import ConfigurationError, PersistenceError, ProtocolError
from certstore.filestore import FileStore
from issuer.locking import base_path_lock

logger = logging.getLogger(__name__)

ACCOUNT_FILE = "account.json"


@dataclass
class Account:
    key: JWKRSA
    url: str
    agreement: Optional[str] = None

    @property
    def thumbprint(self) -> str:
        return jwslib.compute_jwk_thumbprint(self.key)

    def to_record(self) -> dict:
        return {
            "key": jwslib.account_key_to_record(self.key),
            "url": self.url,
            "agreement": self.agreement,
        }

    @classmethod
    def from_record(cls, record: dict) -> "Account":
        try:
            return cls(
                key=jwslib.account_key_from_record(record["key"]),
                url=record["url"],
                agreement=record.get("agreement"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Corrupt {ACCOUNT_FILE}: {exc}") from exc


class AccountManager:
    def __init__(
        self,
        protocol: AcmeProtocolClient,
        store: FileStore,
        username: Optional[str],
        key_bits: int = 2048,
    ) -> None:
        self.protocol = protocol
        self.store = store.scope(None)
        self.username = username
        self.key_bits = key_bits

    def load_or_create(self) -> Account:
        """
        Return the stored account, registering a new one on first use.

        Requires the directory to have been fetched already.
        """
        if not self.username:
            raise ConfigurationError("Username not provided")

        with base_path_lock(self.store.base_path):
            if self.store.exists(ACCOUNT_FILE):
                account = Account.from_record(self.store.read_json(ACCOUNT_FILE))
                logger.info("Loaded ACME account %s", account.url)
                return account
            return self._register()

    def _register(self) -> Account:
        key = jwslib.generate_account_key(self.key_bits)
        payload = {
            "termsOfServiceAgreed": True,
            "contact": [f"mailto:{self.username}"],
        }
        url = self.protocol.url("newAccount")
        logger.info("Creating new ACME account for %s at %s", self.username, url)

        resp = self.protocol.signed_request(url, payload, key)
        if not resp.location:
            raise ProtocolError("newAccount response has no Location header", resp.status)

        account = Account(key=key, url=resp.location, agreement=parse_agreement(resp.link))
        self.store.write(ACCOUNT_FILE, account.to_record(), "json", mode=0o600)
        logger.info("Registered ACME account %s", account.url)
        return account
