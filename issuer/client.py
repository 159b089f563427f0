"""
Certificate issuance state machine.

One ``generate_certificate`` call walks a single label through:

    order created → authorizations fetched → challenges published →
    locally verified → remotely validated → finalized → certificate
    downloaded → persisted

with no backward transitions.  Any failure aborts only that label.  The
publish..persist section runs under the per-base-path issuance lock because
route.json is shared by every label of the base path.

Remote validation polling
-------------------------
With N = max_attempts the client re-submits the challenge up to N times and,
after each attempt that is not yet ``valid``, sleeps ``ceil(N / remaining)``
seconds where ``remaining`` counts down from N.  For N=3 the delays are
1s, 2s, 3s and the attempt then fails with ValidationTimeoutError.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from acmeproto import crypto
from acmeproto.agent import HttpAgent
from acmeproto.client import AcmeProtocolClient
from acmeproto.errors import (
    ConfigurationError,
    LocalValidationError,
    NotInitializedError,
    PersistenceError,
    ProtocolError,
    ValidationTimeoutError,
)
from acmeproto.responder import CHALLENGE_PREFIX, RouteState
from certstore.filestore import FileStore
from issuer.account import Account, AccountManager
from issuer.config import ClientConfig
from issuer.locking import base_path_lock

logger = logging.getLogger(__name__)

RENEWAL_THRESHOLD_DAYS = 30
CERT_RECORD = "cert.json"


# ─── Data model ───────────────────────────────────────────────────────────────


@dataclass
class Order:
    url: str
    identifiers: list[dict]
    authorizations: list[str]
    finalize: str
    status: str = "pending"
    certificate: Optional[str] = None


@dataclass
class PendingChallenge:
    """The http-01 challenge selected from one authorization."""

    authorization_url: str
    domain: str
    status: str
    expires: Optional[str]
    token: str
    url: str
    key_authorization: str

    @property
    def well_known_url(self) -> str:
        return f"http://{self.domain}{CHALLENGE_PREFIX}{self.token}"


@dataclass
class CertificateRecord:
    key: str
    domains: list[str]
    keypair: dict[str, str] = field(repr=False)
    cert: str = field(repr=False)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "domains": self.domains,
            "keypair": self.keypair,
            "cert": self.cert,
        }


def validation_delay(max_attempts: int, remaining: int) -> int:
    """Seconds to wait after a failed attempt while *remaining* attempts are left."""
    return math.ceil(max_attempts / remaining)


def certificate_expired(cert_pem: str | bytes, now: Optional[datetime] = None) -> bool:
    """
    True when the certificate is outside its validity window or has fewer
    than RENEWAL_THRESHOLD_DAYS (rounded) left.
    """
    not_before, not_after = crypto.parse_validity(cert_pem)
    now = now or datetime.now(tz=timezone.utc)
    if now < not_before or now > not_after:
        return True
    days_left = abs((not_after - now).total_seconds()) / 86400
    return math.floor(days_left + 0.5) < RENEWAL_THRESHOLD_DAYS


# ─── Client ───────────────────────────────────────────────────────────────────


class Client:
    """
    ACME client for one base path.

    Usage:
        client = Client(ClientConfig(base_path="/etc/acme", username="ops@example.com"))
        client.init()
        if client.is_expired("key1"):
            client.generate_certificate("key1", ["example.com"])
    """

    def __init__(self, config: ClientConfig, agent: Optional[HttpAgent] = None) -> None:
        self.config = config
        self.store = FileStore(config.base_path)
        self.protocol = AcmeProtocolClient(
            config.directory_url,
            agent
            or HttpAgent(
                source_ip=config.source_ip,
                timeout=config.connection_timeout,
                ca_bundle=config.ca_bundle,
                insecure=config.insecure,
            ),
        )
        self.accounts = AccountManager(
            self.protocol, self.store, config.username, config.key_bits
        )
        self.account: Optional[Account] = None

    @property
    def notifications(self):
        return self.config.notifications

    # ── Initialization ────────────────────────────────────────────────────

    def init(self) -> Account:
        """Fetch the directory and load/create the account.  Idempotent."""
        if self.account is not None:
            return self.account
        try:
            if not self.config.username:
                raise ConfigurationError("Username not provided")
            self.protocol.get_directory()
            self.account = self.accounts.load_or_create()
        except Exception as exc:
            self.notifications.notify("on_error", exc)
            raise
        self.notifications.notify("on_init", self.account)
        return self.account

    # ── Expiry ────────────────────────────────────────────────────────────

    def is_expired(self, label: str) -> bool:
        """True when *label* has no stored certificate or it is due for renewal."""
        scoped = self.store.scope(label, create=False)
        if not scoped.exists(CERT_RECORD):
            logger.info("Certificate %s is missing, going to generate it", label)
            return True
        try:
            record = scoped.read_json(CERT_RECORD)
            return certificate_expired(record["cert"])
        except (KeyError, TypeError, ValueError) as exc:
            err = PersistenceError(f"Cannot parse stored certificate {label}: {exc}")
            self.notifications.notify("on_error", err)
            raise err from exc
        except PersistenceError as exc:
            self.notifications.notify("on_error", exc)
            raise

    # ── Issuance ──────────────────────────────────────────────────────────

    def generate_certificate(self, label: str, domains: list[str]) -> CertificateRecord:
        """Run the full issuance protocol for one label and persist the result."""
        if self.account is None:
            err = NotInitializedError("Client is not initialized.")
            self.notifications.notify("on_error", err)
            raise err
        try:
            record = self._issue(self.account, label, list(domains))
        except Exception as exc:
            logger.error("Certificate %s failed: %s", label, exc)
            self.notifications.notify("on_certificate_error", label, exc)
            raise
        self.notifications.notify("on_certificate_updated", record)
        return record

    def clear(self) -> None:
        """Reset route.json to the idle (empty) record."""
        RouteState.clear(self.store)

    def _issue(self, account: Account, label: str, domains: list[str]) -> CertificateRecord:
        order = self._create_order(account, domains)
        challenges = [self._fetch_challenge(account, url) for url in order.authorizations]
        pending = [c for c in challenges if c.status != "valid"]

        with base_path_lock(self.store.base_path):
            try:
                RouteState(
                    fingerprint=account.thumbprint, tokens=[c.token for c in pending]
                ).save(self.store)

                for challenge in pending:
                    self._self_check(challenge)
                for challenge in pending:
                    self._validate(account, challenge)

                domain_key = crypto.generate_rsa_key(self.config.key_bits)
                cert_url = self._finalize(account, order, domain_key, domains)
                chain = self._download(account, cert_url)
                return self._persist(label, domains, domain_key, chain)
            finally:
                self.clear()

    # ── Protocol steps ────────────────────────────────────────────────────

    def _create_order(self, account: Account, domains: list[str]) -> Order:
        url = self.protocol.url("newOrder")
        identifiers = [{"type": "dns", "value": d} for d in domains]
        logger.info("Submitting new order to %s for %s", url, domains)

        resp = self.protocol.signed_request(url, {"identifiers": identifiers}, account.key, account.url)
        body = resp.body
        if not body.get("authorizations") or not body.get("finalize"):
            raise ProtocolError(f"Malformed order from <{url}>", resp.status, body)
        return Order(
            url=resp.location or "",
            identifiers=identifiers,
            authorizations=list(body["authorizations"]),
            finalize=body["finalize"],
            status=body.get("status", "pending"),
            certificate=body.get("certificate"),
        )

    def _fetch_challenge(self, account: Account, authorization_url: str) -> PendingChallenge:
        body = self.protocol.signed_request(authorization_url, None, account.key, account.url).body
        challenge = next(
            (c for c in body.get("challenges", []) if c.get("type") == "http-01"), None
        )
        if challenge is None:
            raise ProtocolError(
                f"Authorization <{authorization_url}> offers no http-01 challenge", body=body
            )
        domain = body.get("identifier", {}).get("value", "")
        token = challenge["token"]
        logger.info("Authorization for %s: %s", domain, body.get("status"))
        return PendingChallenge(
            authorization_url=authorization_url,
            domain=domain,
            status=body.get("status", "pending"),
            expires=body.get("expires"),
            token=token,
            url=challenge["url"],
            key_authorization=f"{token}.{account.thumbprint}",
        )

    def _self_check(self, challenge: PendingChallenge) -> None:
        """GET our own well-known URL and require the exact key authorization."""
        url = challenge.well_known_url
        try:
            resp = self.protocol.request(url, expect_json=False)
        except ProtocolError as exc:
            raise LocalValidationError(
                f"Could not verify ownership of {challenge.domain} via local HTTP: {exc}"
            ) from exc
        if resp.status != 200 or resp.body != challenge.key_authorization:
            raise LocalValidationError(
                f"Could not verify ownership of {challenge.domain} via local HTTP "
                f"(<{url}> answered {resp.status})"
            )
        logger.info("Local HTTP-01 check passed for %s", challenge.domain)

    def _validate(self, account: Account, challenge: PendingChallenge) -> None:
        """Ask the CA to validate *challenge*, polling with the bounded backoff."""
        max_attempts = self.config.max_attempts
        payload = {"resource": "challenge", "keyAuthorization": challenge.key_authorization}
        remaining = max_attempts
        while remaining > 0:
            body = self.protocol.signed_request(challenge.url, payload, account.key, account.url).body
            status = body.get("status")
            if status == "valid":
                logger.info("Challenge for %s is valid", challenge.domain)
                return
            delay = validation_delay(max_attempts, remaining)
            logger.info(
                "Challenge for %s is %s (attempt %d/%d), retrying in %ds",
                challenge.domain,
                status,
                max_attempts - remaining + 1,
                max_attempts,
                delay,
            )
            time.sleep(delay)
            remaining -= 1

        raise ValidationTimeoutError(
            f"Could not verify ownership of {challenge.domain} via HTTP "
            f"after {max_attempts} attempts"
        )

    def _finalize(
        self,
        account: Account,
        order: Order,
        domain_key: rsa.RSAPrivateKey,
        domains: list[str],
    ) -> str:
        csr = crypto.csr_to_b64url(crypto.create_csr(domain_key, domains))
        logger.info("Finalizing order for %s", domains)
        body = self.protocol.signed_request(order.finalize, {"csr": csr}, account.key, account.url).body
        if body.get("certificate"):
            return body["certificate"]
        if not order.url:
            raise ProtocolError("Finalized order has no certificate URL", body=body)
        return self._await_certificate(account, order.url)

    def _await_certificate(self, account: Account, order_url: str) -> str:
        """Poll a processing order until the CA publishes the certificate URL."""
        max_attempts = self.config.max_attempts
        remaining = max_attempts
        while remaining > 0:
            body = self.protocol.signed_request(order_url, None, account.key, account.url).body
            status = body.get("status")
            if status == "valid" and body.get("certificate"):
                return body["certificate"]
            if status == "invalid":
                raise ProtocolError(f"Order <{order_url}> became invalid", body=body)
            delay = validation_delay(max_attempts, remaining)
            logger.info("Order is %s, checking again in %ds", status, delay)
            time.sleep(delay)
            remaining -= 1

        raise ValidationTimeoutError(f"Order <{order_url}> was not issued after {max_attempts} attempts")

    def _download(self, account: Account, cert_url: str) -> str:
        logger.info("Downloading certificate from %s", cert_url)
        resp = self.protocol.signed_request(
            cert_url,
            None,
            account.key,
            account.url,
            expect_json=False,
            accept="application/pem-certificate-chain",
        )
        return resp.body

    def _persist(
        self,
        label: str,
        domains: list[str],
        domain_key: rsa.RSAPrivateKey,
        chain: str,
    ) -> CertificateRecord:
        """
        Stage every file of the label before replacing any of them, so a failed
        write never pairs a new cert.key with an old cert.pem.  cert.json is
        replaced last; it is the record is_expired() trusts.
        """
        scoped = self.store.scope(label)
        record = CertificateRecord(
            key=label, domains=domains, keypair=crypto.key_pair_record(domain_key), cert=chain
        )

        files = [
            ("cert.key", record.keypair["private_key_pem"], "text", 0o600),
            ("cert.pem", chain, "text", None),
        ]
        split = crypto.split_pem_chain(chain)
        if split:
            leaf, issuer = split
            files += [("cert.crt", leaf, "text", None), ("cert.ca", issuer, "text", None)]
        files.append((CERT_RECORD, record.to_dict(), "json", 0o600))
        scoped.write_many(files)

        logger.info("Stored certificate %s for %s in %s", label, domains, scoped.path())
        return record
