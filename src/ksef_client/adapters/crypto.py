"""
Cryptography adapter: session keys, payload encryption and token encryption.

Adapter layer: implements the Exchange's cryptographic envelope with the
`cryptography` package; certificate armour is handled by asn1crypto.pem and
X.509 parsing by cryptography.x509, so no ASN.1 is walked by hand.

  Session / export key : AES-256-CBC, PKCS#7 padding, random 32-byte key + 16-byte IV
  Key transport        : RSA-OAEP (SHA-256, MGF1-SHA-256) under the "SymmetricKeyEncryption" cert
  Token encryption     : RSA-OAEP (SHA-256) of "token|timestampMs" under the "KsefTokenEncryption" cert
  Hashes               : SHA-256, base64
"""

from __future__ import annotations

import base64
import hashlib
import os
import re

import structlog
from asn1crypto import pem
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ksef_client.adapters.certificates import CertificateProvider, CertificateUsage
from ksef_client.domain.models import EncryptedPayload, EncryptionContext, FileDigest
from ksef_client.errors import CertificateParseError, CryptographyError, KeyWrapError

log = structlog.get_logger()

KEY_SIZE = 32
IV_SIZE = 16
_BASE64_RE = re.compile(rb"^[A-Za-z0-9+/=\s]+$")


def _oaep() -> asym_padding.OAEP:
    return asym_padding.OAEP(
        mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def digest(data: bytes) -> FileDigest:
    """Base64 SHA-256 and byte length."""
    return FileDigest(
        sha256_b64=base64.b64encode(hashlib.sha256(data).digest()).decode("ascii"),
        size=len(data),
    )


def _certificate_der(certificate: bytes | str) -> bytes:
    """Accept PEM, bare base64 DER (as the Exchange publishes it) or raw DER."""
    raw = certificate.encode("ascii", errors="strict") if isinstance(certificate, str) else certificate
    if pem.detect(raw):
        _, _, der = pem.unarmor(raw)
        return der
    stripped = raw.strip()
    if stripped and _BASE64_RE.match(stripped):
        return base64.b64decode(stripped, validate=False)
    return raw


def load_certificate(certificate: bytes | str) -> x509.Certificate:
    try:
        return x509.load_der_x509_certificate(_certificate_der(certificate))
    except (ValueError, TypeError, UnicodeEncodeError) as e:
        raise CertificateParseError(f"Malformed X.509 certificate: {e}") from e


def extract_public_key(certificate: bytes | str) -> bytes:
    """DER SubjectPublicKeyInfo of the certificate's public key."""
    cert = load_certificate(certificate)
    try:
        public_key = cert.public_key()
    except (ValueError, UnsupportedAlgorithm) as e:
        raise CertificateParseError(f"Unsupported public key in certificate: {e}") from e
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _rsa_key(certificate: bytes | str) -> rsa.RSAPublicKey:
    key = serialization.load_der_public_key(extract_public_key(certificate))
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyWrapError("Exchange certificate does not carry an RSA key")
    return key


def rsa_encrypt(plaintext: bytes, certificate: bytes | str) -> bytes:
    key = _rsa_key(certificate)
    # OAEP-SHA256 overhead: 2 * 32 + 2 bytes
    limit = key.key_size // 8 - 2 * hashes.SHA256.digest_size - 2
    if len(plaintext) > limit:
        raise CryptographyError(f"Plaintext of {len(plaintext)} bytes exceeds the RSA-OAEP limit of {limit}")
    return key.encrypt(plaintext, _oaep())


def aes_encrypt(plaintext: bytes, key: bytes, iv: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def aes_decrypt(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
    if len(ciphertext) % IV_SIZE:
        raise CryptographyError("Ciphertext length is not a multiple of the AES block size")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise CryptographyError("Invalid padding; wrong key or corrupted ciphertext") from e


class CryptographyService:
    """
    Exchange cryptography bound to one environment's certificate provider.

    Stateless apart from the provider's certificate cache; every context it
    hands out is owned by the caller and must be destroyed by it.
    """

    def __init__(self, certificates: CertificateProvider) -> None:
        self._certificates = certificates

    async def generate_encryption_context(self) -> EncryptionContext:
        """Fresh AES key + IV, key wrapped under the symmetric-key-encryption certificate."""
        certificate = await self._certificates.certificate_for(CertificateUsage.SYMMETRIC_KEY_ENCRYPTION)
        if certificate is None:
            raise KeyWrapError("No Exchange certificate published for symmetric key encryption")
        key = bytearray(os.urandom(KEY_SIZE))
        iv = bytearray(os.urandom(IV_SIZE))
        try:
            wrapped = rsa_encrypt(bytes(key), certificate)
        except CertificateParseError as e:
            raise KeyWrapError(f"Cannot wrap session key: {e.message}") from e
        log.debug("crypto.context_generated", key_bytes=KEY_SIZE)
        return EncryptionContext(
            symmetric_key=key,
            initialization_vector=iv,
            wrapped_key=base64.b64encode(wrapped).decode("ascii"),
        )

    async def encrypt_token(self, token: str, timestamp_ms: int) -> str:
        """Base64 RSA-OAEP ciphertext of 'token|timestampMs' under the token-encryption certificate."""
        certificate = await self._certificates.certificate_for(CertificateUsage.TOKEN_ENCRYPTION)
        if certificate is None:
            raise KeyWrapError("No Exchange certificate published for token encryption")
        ciphertext = rsa_encrypt(f"{token}|{timestamp_ms}".encode(), certificate)
        return base64.b64encode(ciphertext).decode("ascii")

    @staticmethod
    def encrypt_payload(plaintext: bytes, ctx: EncryptionContext) -> EncryptedPayload:
        """Encrypt with the context's key and IV; digests cover plaintext and ciphertext."""
        if ctx.destroyed:
            raise CryptographyError("Encryption context has been destroyed")
        ciphertext = aes_encrypt(plaintext, bytes(ctx.symmetric_key), bytes(ctx.initialization_vector))
        return EncryptedPayload(ciphertext=ciphertext, plain=digest(plaintext), encrypted=digest(ciphertext))

    @staticmethod
    def decrypt_payload(ciphertext: bytes, ctx: EncryptionContext) -> bytes:
        if ctx.destroyed:
            raise CryptographyError("Encryption context has been destroyed")
        return aes_decrypt(ciphertext, bytes(ctx.symmetric_key), bytes(ctx.initialization_vector))
