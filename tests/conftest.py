"""
Shared pytest fixtures and mock-CA helpers.

Every CA endpoint is mocked with the `responses` library; the local HTTP-01
self-check is answered by a real ChallengeResponder reading route.json, so
the issuer → responder hand-off is exercised end to end.
"""
from __future__ import annotations

import base64
import datetime
import json
from pathlib import Path

import pytest
import responses as resp_lib
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from acmeproto import jws as jwslib
from acmeproto.responder import ChallengeResponder
from certstore.filestore import FileStore
from issuer.account import Account
from issuer.client import Client
from issuer.config import ClientConfig
from issuer.notifications import Notifications

DIRECTORY_URL = "https://acme.test/directory"

FAKE_DIRECTORY = {
    "newNonce": "https://acme.test/newNonce",
    "newAccount": "https://acme.test/newAccount",
    "newOrder": "https://acme.test/newOrder",
    "revokeCert": "https://acme.test/revokeCert",
    "keyChange": "https://acme.test/keyChange",
}

FAKE_NONCE = "testnonce12345"
ACCOUNT_URL = "https://acme.test/acct/42"


# ─── Keys & certificates ──────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def account_key():
    return jwslib.generate_account_key(key_size=2048)


@pytest.fixture(scope="session")
def cert_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_cert_pem(key, days_valid: int, common_name: str = "example.com", days_before: int = 1) -> str:
    """Self-signed certificate valid from *days_before* days ago for *days_valid* days from now."""
    now = datetime.datetime.now(datetime.timezone.utc)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=days_before))
        .not_valid_after(now + datetime.timedelta(days=days_valid))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(Encoding.PEM).decode()


@pytest.fixture(scope="session")
def pem_chain(cert_key) -> str:
    """A leaf + issuer chain as returned by the CA."""
    return make_cert_pem(cert_key, 90) + make_cert_pem(cert_key, 3650, common_name="Test CA")


# ─── Store & client ───────────────────────────────────────────────────────────


@pytest.fixture()
def base_path(tmp_path: Path) -> Path:
    path = tmp_path / "acme"
    path.mkdir()
    return path


@pytest.fixture()
def store(base_path: Path) -> FileStore:
    return FileStore(base_path)


def seed_account(store: FileStore, account_key) -> Account:
    """Write account.json so init() only has to fetch the directory."""
    account = Account(key=account_key, url=ACCOUNT_URL, agreement="https://acme.test/tos")
    store.write("account.json", account.to_record(), "json", mode=0o600)
    return account


def seed_certificate(store: FileStore, label: str, cert_pem: str, domains=None) -> None:
    store.scope(label).write(
        "cert.json",
        {"key": label, "domains": domains or ["example.com"], "keypair": {}, "cert": cert_pem},
        "json",
    )


@pytest.fixture()
def make_client(base_path: Path):
    def _make(**options) -> Client:
        options.setdefault("base_path", str(base_path))
        options.setdefault("username", "ops@example.com")
        options.setdefault("directory_url", DIRECTORY_URL)
        options.setdefault("notifications", Notifications())
        return Client(ClientConfig(**options))

    return _make


# ─── Mock CA ──────────────────────────────────────────────────────────────────


def decode_jws(body: bytes | str) -> tuple[dict, dict | None]:
    """Return (protected_header, payload) of a posted flattened JWS."""
    jws = json.loads(body)
    protected = json.loads(_b64decode(jws["protected"]))
    payload = json.loads(_b64decode(jws["payload"])) if jws["payload"] else None
    return protected, payload


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def add_directory_and_nonce(rsps=resp_lib) -> None:
    rsps.add(rsps.GET, DIRECTORY_URL, json=FAKE_DIRECTORY)
    rsps.add(rsps.HEAD, FAKE_DIRECTORY["newNonce"], headers={"Replay-Nonce": FAKE_NONCE})


def add_well_known(store: FileStore, domain: str, token: str, rsps=resp_lib) -> None:
    """Answer http://<domain>/.well-known/acme-challenge/<token> through a real responder."""
    responder = ChallengeResponder(store)

    def callback(request):
        path = f"/.well-known/acme-challenge/{token}"
        response = responder(request.method, path, lambda: None)
        if response is None:
            return 404, {}, "not found"
        return response.status, {}, response.body

    rsps.add_callback(
        rsps.GET,
        f"http://{domain}/.well-known/acme-challenge/{token}",
        callback=callback,
    )


def add_issuance(
    domain: str,
    token: str,
    chain: str,
    n: int = 1,
    challenge_status: str = "valid",
    rsps=resp_lib,
) -> dict[str, str]:
    """
    Register authorization → challenge → finalize → certificate for one
    domain.  Returns the URLs used.
    """
    urls = {
        "authz": f"https://acme.test/authz/{n}",
        "challenge": f"https://acme.test/chall/{n}",
        "finalize": f"https://acme.test/finalize/{n}",
        "order": f"https://acme.test/order/{n}",
        "cert": f"https://acme.test/cert/{n}",
    }
    rsps.add(
        rsps.POST,
        urls["authz"],
        json={
            "identifier": {"type": "dns", "value": domain},
            "status": "pending",
            "expires": "2030-01-01T00:00:00Z",
            "challenges": [
                {"type": "dns-01", "token": "dns-token", "url": f"https://acme.test/dns/{n}"},
                {"type": "http-01", "token": token, "url": urls["challenge"], "status": "pending"},
            ],
        },
    )
    rsps.add(rsps.POST, urls["challenge"], json={"type": "http-01", "status": challenge_status})
    rsps.add(rsps.POST, urls["finalize"], json={"status": "valid", "certificate": urls["cert"]})
    rsps.add(
        rsps.POST,
        urls["cert"],
        body=chain,
        content_type="application/pem-certificate-chain",
    )
    return urls


def add_new_order(domain_to_n: dict[str, int], rsps=resp_lib) -> None:
    """newOrder answering with the authorization of the requested domain."""

    def callback(request):
        _, payload = decode_jws(request.body)
        domain = payload["identifiers"][0]["value"]
        n = domain_to_n[domain]
        body = {
            "status": "pending",
            "identifiers": payload["identifiers"],
            "authorizations": [f"https://acme.test/authz/{n}"],
            "finalize": f"https://acme.test/finalize/{n}",
        }
        headers = {"Location": f"https://acme.test/order/{n}", "Replay-Nonce": "nonce-order"}
        return 201, headers, json.dumps(body)

    rsps.add_callback(
        rsps.POST,
        FAKE_DIRECTORY["newOrder"],
        callback=callback,
        content_type="application/json",
    )
