"""
Signing primitive for the ACME protocol (RFC 8555 / RFC 7515 / RFC 7638).

Uses *josepy* for the JWK representation of the account key and
*cryptography* for the RS256 signature itself.

Responsibilities (boundary with acmeproto/crypto.py):
  - Generate the **account** RSA key and convert it to/from its stored form
  - Compute the JWK thumbprint (for HTTP-01 key-authorizations)
  - Produce the flattened JWS envelope for every signed ACME request
"""
from __future__ import annotations

import base64
import json
from typing import Any

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from josepy.jwk import JWKRSA


# ─── Account key ──────────────────────────────────────────────────────────────


def generate_account_key(key_size: int = 2048) -> JWKRSA:
    """Create the RSA key pair that identifies the ACME account."""
    return JWKRSA(key=rsa.generate_private_key(public_exponent=65537, key_size=key_size))


def account_key_to_record(jwk: JWKRSA) -> dict[str, str]:
    """Serialize the account key pair as the PEM pair stored in account.json."""
    private_pem = jwk.key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = jwk.key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return {
        "private_key_pem": private_pem.decode(),
        "public_key_pem": public_pem.decode(),
    }


def account_key_from_record(record: dict[str, str]) -> JWKRSA:
    """Load the account key pair back from its account.json form."""
    private_key = serialization.load_pem_private_key(
        record["private_key_pem"].encode(), password=None
    )
    return JWKRSA(key=private_key)


# ─── Thumbprint & key authorization ────────────────────────────────────────────────────────────────────────────────────────────────────


def compute_jwk_thumbprint(jwk: JWKRSA) -> str:
    """
    Return the base64url SHA-256 thumbprint (RFC 7638) of the public JWK.

    The route record publishes it as ``fingerprint``; the responder answers
    ``<token>.<fingerprint>``.
    """
    return _b64url(jwk.public_key().thumbprint(hash_function=hashes.SHA256))


def compute_key_authorization(token: str, jwk: JWKRSA) -> str:
    """``<token>.<thumbprint>``, the body a responder must serve for *token*."""
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


def public_jwk(jwk: JWKRSA) -> dict[str, Any]:
    """Return the public JWK members used in a ``jwk`` protected header."""
    fields = jwk.public_key().fields_to_partial_json()
    fields["kty"] = "RSA"
    return fields


# ─── Request envelope ─────────────────────────────────────────────────────────────────────────────────────────────────────────────────────


def sign_request(
    payload: dict | None,
    account_key: JWKRSA,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Sign an ACME request payload and return the flattened JWS dict to POST.

    If *account_url* is None the protected header carries the full public JWK
    (only valid for newAccount).  Otherwise it carries ``kid``.  The nonce and
    the target URL are always part of the protected header.  A None payload
    produces the empty payload used for POST-as-GET.
    """
    header: dict[str, Any] = {"alg": "RS256", "nonce": nonce, "url": url}
    header.update({"kid": account_url} if account_url else {"jwk": public_jwk(account_key)})

    protected = _b64url(json.dumps(header).encode())
    payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode())

    signature = _sign_rsa(account_key, f"{protected}.{payload_b64}".encode("ascii"))
    return {"protected": protected, "payload": payload_b64, "signature": _b64url(signature)}


# ─── Internal helpers ─────────────────────────────────────────────────────────


def _b64url(data: bytes) -> str:
    """Unpadded base64url, the JOSE encoding for every JWS member."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _sign_rsa(jwk: JWKRSA, data: bytes) -> bytes:
    """RS256 signature of *data*."""
    return jwk.key.sign(data, padding.PKCS1v15(), hashes.SHA256())
