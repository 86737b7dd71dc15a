"""
Invoice verification link (CODE I): pure functions, no I/O.

After acceptance, anyone holding the document can check it against the
Exchange at

    https://<host>/invoice/{seller tax id}/{DD-MM-YYYY}/{hash}

where `hash` is the SHA-256 of the submitted XML bytes, base64url encoded
without padding. Rendering the link as a QR image is left to the caller.
"""

from __future__ import annotations

import base64
import hashlib
from datetime import date

from ksef_client.domain.models import Environment

VERIFICATION_BASE_URLS: dict[Environment, str] = {
    Environment.TEST: "https://qr-test.ksef.mf.gov.pl",
    Environment.DEMO: "https://qr-demo.ksef.mf.gov.pl",
    Environment.PRODUCTION: "https://qr.ksef.mf.gov.pl",
}


def payload_digest(payload: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(payload).digest()).rstrip(b"=").decode("ascii")


def verification_url(environment: Environment, seller_tax_id: str, issue_date: date, payload: bytes) -> str:
    """The CODE I link for a document exactly as it was sent."""
    return (
        f"{VERIFICATION_BASE_URLS[environment]}/invoice/"
        f"{seller_tax_id}/{issue_date.strftime('%d-%m-%Y')}/{payload_digest(payload)}"
    )
