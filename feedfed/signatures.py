# feedfed/signatures.py
"""
HTTP Signatures for outbound ActivityPub requests.

Uses RSA-SHA256 (PKCS#1 v1.5) signatures over a canonical string of
request headers, compatible with draft-cavage-http-signatures as deployed
across the fediverse. The body is bound to the signature through the
Digest header.
"""

import base64
import hashlib
import logging
import time
from dataclasses import dataclass
from email.utils import formatdate
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlparse

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from .errors import SigningError
from .keys import KeyPurpose, KeyStore, key_id_for

logger = logging.getLogger(__name__)

ALGORITHM = "rsa-sha256"
DIGEST_ALGORITHM = "SHA-256"
ACTIVITY_JSON = "application/activity+json"

# Signed header order. Signer and verifier must agree on it.
SIGNED_HEADERS = ["(request-target)", "host", "date", "digest"]


def compute_digest(body: bytes) -> str:
    """base64(SHA-256(body))."""
    return base64.b64encode(hashlib.sha256(body).digest()).decode("utf-8")


def digest_header(body: bytes) -> str:
    """Digest header value for a body."""
    return f"{DIGEST_ALGORITHM}={compute_digest(body)}"


def http_date(timestamp: float = None) -> str:
    """RFC 7231 date, e.g. 'Sun, 06 Nov 1994 08:49:37 GMT'."""
    return formatdate(timestamp if timestamp is not None else time.time(), usegmt=True)


def request_target(url: str) -> tuple[str, str]:
    """Split a URL into (host, path including query)."""
    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"
    return parsed.netloc, path


@dataclass(frozen=True)
class SigningContext:
    """Per-request values covered by the signature. Never persisted."""
    method: str
    path: str
    host: str
    date: str
    digest: str

    def canonical_string(self) -> str:
        return SignatureSigner.canonical_string(
            self.method, self.path, self.host, self.date, self.digest
        )


@dataclass
class SignatureHeader:
    """
    Parsed or to-be-rendered Signature header.

    Attributes:
        key_id: URI of the signing key (actor URI + fragment)
        algorithm: Signature algorithm name
        headers: Signed header names, in signing order
        signature: base64 signature value
    """
    key_id: str
    headers: List[str]
    signature: str
    algorithm: str = ALGORITHM

    def to_header(self) -> str:
        return SignatureSigner.build_header(self.key_id, self.headers, self.signature, self.algorithm)


class SignatureSigner:
    """
    Signs outbound requests with an actor's private key.

    Usage:
        signer = SignatureSigner(keystore)
        headers = signer.sign_request(actor_id, "POST", inbox_url, body)
    """

    def __init__(self, keystore: KeyStore):
        self.keystore = keystore

    @staticmethod
    def canonical_string(method: str, path: str, host: str, date: str, digest: str) -> str:
        """
        Build the signing string.

        One "name: value" line per header, in SIGNED_HEADERS order.
        digest is the base64 SHA-256 of the body.
        """
        lines = [
            f"(request-target): {method.lower()} {path}",
            f"host: {host}",
            f"date: {date}",
            f"digest: {DIGEST_ALGORITHM}={digest}",
        ]
        return "\n".join(lines)

    def sign(self, actor_id: str, canonical_string: str) -> str:
        """
        Sign a canonical string with an actor's private key.

        Returns:
            base64-encoded RSA-SHA256 signature

        Raises:
            SigningError: no key exists for actor_id
        """
        private_pem = self.keystore.private_key(actor_id, KeyPurpose.SIGNING)
        if private_pem is None:
            raise SigningError(f"No signing key for {actor_id}")

        private_key = serialization.load_pem_private_key(
            private_pem.encode("utf-8"),
            password=None,
        )
        signature_bytes = private_key.sign(
            canonical_string.encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return base64.b64encode(signature_bytes).decode("utf-8")

    @staticmethod
    def build_header(
        key_id: str,
        header_names: Sequence[str],
        signature_b64: str,
        algorithm: str = ALGORITHM,
    ) -> str:
        """Render a Signature header value."""
        return (
            f'keyId="{key_id}",'
            f'algorithm="{algorithm}",'
            f'headers="{" ".join(header_names)}",'
            f'signature="{signature_b64}"'
        )

    def sign_request(
        self,
        actor_id: str,
        method: str,
        url: str,
        body: bytes,
        now: Optional[float] = None,
    ) -> Dict[str, str]:
        """
        Produce the full signed header set for a request.

        Returns:
            Host, Date, Digest, Signature and Content-Type headers
        """
        host, path = request_target(url)
        context = SigningContext(
            method=method,
            path=path,
            host=host,
            date=http_date(now),
            digest=compute_digest(body),
        )
        signature = self.sign(actor_id, context.canonical_string())
        header = SignatureHeader(
            key_id=key_id_for(actor_id),
            headers=list(SIGNED_HEADERS),
            signature=signature,
        )
        logger.debug(f"Signed {method} {url} as {actor_id}")
        return {
            "Host": context.host,
            "Date": context.date,
            "Digest": f"{DIGEST_ALGORITHM}={context.digest}",
            "Signature": header.to_header(),
            "Content-Type": ACTIVITY_JSON,
        }
