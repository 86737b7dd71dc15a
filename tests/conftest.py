"""
Shared test fixtures for the ksef-sync test suite.

Key material is real: an RSA key pair and a self-signed X.509 certificate are
generated once per session with `cryptography`, so key wrapping and token
encryption run the same code paths as in production.
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from tests.fakes import StaticCertificates


def build_certificate(
    private_key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey,
    common_name: str = "Exchange Test Encryption",
    not_before: datetime | None = None,
    not_after: datetime | None = None,
) -> x509.Certificate:
    """Self-signed certificate for `private_key`."""
    not_before = not_before or datetime.now(UTC) - timedelta(days=1)
    not_after = not_after or datetime.now(UTC) + timedelta(days=365)
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "PL"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(private_key, hashes.SHA256())
    )


def certificate_b64(certificate: x509.Certificate) -> str:
    """Bare base64 DER, the way the Exchange publishes certificates."""
    return base64.b64encode(certificate.public_bytes(serialization.Encoding.DER)).decode("ascii")


def certificate_entry(
    certificate: x509.Certificate,
    usage: list[str],
    valid_from: str = "2020-01-01T00:00:00Z",
    valid_to: str = "2099-01-01T00:00:00Z",
) -> dict[str, object]:
    """One element of the GET /security/public-key-certificates array."""
    return {
        "certificate": certificate_b64(certificate),
        "validFrom": valid_from,
        "validTo": valid_to,
        "usage": usage,
    }


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def exchange_certificate(rsa_private_key: rsa.RSAPrivateKey) -> x509.Certificate:
    return build_certificate(rsa_private_key)


@pytest.fixture(scope="session")
def exchange_certificate_b64(exchange_certificate: x509.Certificate) -> str:
    return certificate_b64(exchange_certificate)


@pytest.fixture(scope="session")
def exchange_certificate_pem(exchange_certificate: x509.Certificate) -> bytes:
    return exchange_certificate.public_bytes(serialization.Encoding.PEM)


@pytest.fixture()
def static_certificates(exchange_certificate_b64: str) -> StaticCertificates:
    """Certificate provider publishing the test certificate for every usage."""
    return StaticCertificates(exchange_certificate_b64)
