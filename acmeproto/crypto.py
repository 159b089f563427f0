"""
Domain key pairs, CSR creation and certificate inspection.

Boundary: this module owns everything cryptographic that is *domain*-specific.
Account-key operations (JWK, JWS) live in acmeproto/jws.py.
"""
from __future__ import annotations

import base64
import re
from datetime import datetime, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

_TWO_CERT_CHAIN = re.compile(
    r"-+BEGIN CERTIFICATE-+(.+?)-+END CERTIFICATE-+\n+-+BEGIN CERTIFICATE-+(.+?)-+END CERTIFICATE-",
    re.DOTALL,
)


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Fresh RSA key for the certificate of one label."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def private_key_to_pem(key: rsa.RSAPrivateKey) -> str:
    """Unencrypted PKCS#1 PEM, the form stored in cert.key and cert.json."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def public_key_to_pem(key: rsa.RSAPrivateKey) -> str:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def key_pair_record(key: rsa.RSAPrivateKey) -> dict[str, str]:
    """Return the ``{private_key_pem, public_key_pem}`` form stored in cert.json."""
    return {
        "private_key_pem": private_key_to_pem(key),
        "public_key_pem": public_key_to_pem(key),
    }


def create_csr(private_key: rsa.RSAPrivateKey, domains: list[str]) -> bytes:
    """
    Create a DER-encoded CSR covering *domains*.

    The first domain becomes the subject CN; every domain is listed as a
    SubjectAlternativeName (duplicates removed, order preserved).
    """
    if not domains:
        raise ValueError("A CSR needs at least one domain")
    all_domains = list(dict.fromkeys(domains))

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, all_domains[0])])
        )
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in all_domains]),
            critical=False,
        )
    )

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)


def csr_to_b64url(csr_der: bytes) -> str:
    """Encode a DER CSR the way the finalize payload expects it."""
    return base64.urlsafe_b64encode(csr_der).rstrip(b"=").decode()


def parse_validity(pem_text: str | bytes) -> tuple[datetime, datetime]:
    """Return (notBefore, notAfter) of the first certificate in *pem_text* as UTC datetimes."""
    if isinstance(pem_text, str):
        pem_text = pem_text.encode()
    cert = x509.load_pem_x509_certificate(pem_text)
    # cryptography >= 42 exposes timezone-aware accessors
    try:
        return cert.not_valid_before_utc, cert.not_valid_after_utc
    except AttributeError:
        return (
            cert.not_valid_before.replace(tzinfo=timezone.utc),
            cert.not_valid_after.replace(tzinfo=timezone.utc),
        )


def split_pem_chain(full_chain: str) -> tuple[str, str] | None:
    """
    Split a leaf + issuer PEM chain into (leaf_pem, issuer_pem).

    Matches the first two consecutive BEGIN/END CERTIFICATE blocks; returns
    None when the chain does not contain two of them.
    """
    match = _TWO_CERT_CHAIN.search(full_chain)
    if not match:
        return None

    def block(body: str) -> str:
        return f"-----BEGIN CERTIFICATE-----{body}-----END CERTIFICATE-----\n"

    return block(match.group(1)), block(match.group(2))
