# feedfed/verifier.py
"""
HTTP Signature verification for inbound ActivityPub requests.

Verification is fail-closed: verify() either returns the signing actor's
URI or raises a VerificationError subclass. Checks run in order:

1. Signature header parses and names the required headers
2. Date is within the allowed clock skew
3. Digest matches the raw body
4. The signing actor's public key resolves
5. The signature verifies against the canonical string
"""

import base64
import binascii
import hashlib
import hmac
import logging
import re
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Dict, List, Mapping, Optional
from urllib.parse import urldefrag

from cryptography import exceptions as crypto_exceptions
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from .errors import (
    DigestMismatch,
    InvalidSignature,
    MalformedSignature,
    ResolutionError,
    StaleRequest,
)
from .resolver import SOURCE_CACHE, SOURCE_LOCAL, ActorResolver
from .signatures import SIGNED_HEADERS, SignatureHeader

logger = logging.getLogger(__name__)

MAX_CLOCK_SKEW = 300.0
SUPPORTED_ALGORITHMS = {"rsa-sha256", "hs2019"}

_PARAM_RE = re.compile(r'\s*([A-Za-z]+)\s*=\s*"([^"]*)"\s*(?:,|$)')


def parse_signature_header(value: Optional[str]) -> SignatureHeader:
    """
    Parse a Signature header value.

    Example:
        keyId="https://example.com/users/alice#main-key",algorithm="rsa-sha256",
        headers="(request-target) host date digest",signature="..."

    Raises:
        MalformedSignature: missing, unparseable, or incomplete header
    """
    if not value or not value.strip():
        raise MalformedSignature("Missing Signature header")

    params: Dict[str, str] = {}
    pos = 0
    value = value.strip()
    while pos < len(value):
        match = _PARAM_RE.match(value, pos)
        if match is None:
            raise MalformedSignature("Unparseable Signature header")
        params[match.group(1)] = match.group(2)
        pos = match.end()

    key_id = params.get("keyId")
    signature = params.get("signature")
    headers = params.get("headers", "").split()
    algorithm = params.get("algorithm", "hs2019").lower()

    if not key_id or not signature:
        raise MalformedSignature("Signature header lacks keyId or signature")
    if not headers:
        raise MalformedSignature("Signature header lacks headers")
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise MalformedSignature(f"Unsupported signature algorithm: {algorithm}")

    return SignatureHeader(
        key_id=key_id,
        headers=[h.lower() for h in headers],
        signature=signature,
        algorithm=algorithm,
    )


def build_signing_string(
    header_names: List[str],
    method: str,
    path: str,
    headers: Mapping[str, str],
) -> str:
    """
    Rebuild the signing string from the request, in the signed order.

    headers must have lowercase keys.
    """
    lines = []
    for name in header_names:
        if name == "(request-target)":
            lines.append(f"(request-target): {method.lower()} {path}")
            continue
        value = headers.get(name)
        if value is None:
            raise MalformedSignature(f"Signed header missing from request: {name}")
        lines.append(f"{name}: {value.strip()}")
    return "\n".join(lines)


def _parse_date(value: Optional[str]) -> datetime:
    if not value:
        raise MalformedSignature("Missing Date header")
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        raise MalformedSignature("Unparseable Date header")
    if parsed is None:
        raise MalformedSignature("Unparseable Date header")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _digest_value(value: Optional[str]) -> Optional[str]:
    """Extract the SHA-256 entry of a (possibly multi-valued) Digest header."""
    if not value:
        return None
    for part in value.split(","):
        algorithm, sep, digest = part.strip().partition("=")
        if sep and algorithm.strip().lower() == "sha-256":
            return digest.strip()
    return None


def _verify_with(public_key_pem: str, signature: bytes, signing_string: str) -> bool:
    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        public_key.verify(
            signature,
            signing_string.encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return True
    except (crypto_exceptions.InvalidSignature, ValueError, TypeError,
            crypto_exceptions.UnsupportedAlgorithm):
        return False


class SignatureVerifier:
    """
    Verifies inbound signed requests.

    Args:
        resolver: Source of actor public keys
        max_skew: Allowed absolute difference between Date and now, seconds
        clock: Returns the current time as a UNIX timestamp
    """

    def __init__(
        self,
        resolver: ActorResolver,
        max_skew: float = MAX_CLOCK_SKEW,
        clock: Callable[[], float] = time.time,
    ):
        self.resolver = resolver
        self.max_skew = max_skew
        self._clock = clock

    def verify(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> str:
        """
        Verify a request and return the signing actor's URI.

        Args:
            method: HTTP method
            path: Request path including query string
            headers: Request headers (any case)
            body: Raw request body

        Raises:
            MalformedSignature, StaleRequest, DigestMismatch,
            ResolutionError, InvalidSignature
        """
        lowered = {k.lower(): v for k, v in headers.items()}

        header = parse_signature_header(lowered.get("signature"))
        missing = [h for h in SIGNED_HEADERS if h not in header.headers]
        if missing:
            raise MalformedSignature(f"Signature does not cover: {' '.join(missing)}")

        self._check_date(lowered.get("date"))
        self._check_digest(lowered.get("digest"), body)

        actor_uri = urldefrag(header.key_id)[0]
        if not actor_uri:
            raise MalformedSignature("keyId does not name an actor")

        signing_string = build_signing_string(header.headers, method, path, lowered)
        try:
            signature = base64.b64decode(header.signature, validate=True)
        except (binascii.Error, ValueError):
            raise MalformedSignature("Signature is not valid base64")

        resolved = self.resolver.lookup(actor_uri)
        if _verify_with(resolved.public_key_pem, signature, signing_string):
            return actor_uri

        if resolved.source == SOURCE_LOCAL:
            for grace_key in self.resolver.grace_keys(actor_uri):
                if _verify_with(grace_key, signature, signing_string):
                    logger.debug(f"Verified {actor_uri} with a deprecated key")
                    return actor_uri
        elif resolved.source == SOURCE_CACHE:
            # The remote actor may have rotated its key since we cached it.
            logger.debug(f"Re-fetching key for {actor_uri} after failed verification")
            try:
                fresh = self.resolver.lookup(actor_uri, force_refresh=True)
            except ResolutionError:
                raise InvalidSignature(f"Signature verification failed for {actor_uri}")
            if fresh.public_key_pem != resolved.public_key_pem and _verify_with(
                fresh.public_key_pem, signature, signing_string
            ):
                return actor_uri

        raise InvalidSignature(f"Signature verification failed for {actor_uri}")

    def _check_date(self, value: Optional[str]):
        request_time = _parse_date(value)
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        skew = abs((now - request_time).total_seconds())
        if skew > self.max_skew:
            raise StaleRequest(f"Date is {skew:.0f}s from now (max {self.max_skew:.0f}s)")

    def _check_digest(self, value: Optional[str], body: bytes):
        if not value:
            raise MalformedSignature("Missing Digest header")
        claimed = _digest_value(value)
        if claimed is None:
            raise DigestMismatch("Digest header has no SHA-256 value")
        expected = base64.b64encode(hashlib.sha256(body).digest()).decode("utf-8")
        if not hmac.compare_digest(claimed.encode("utf-8"), expected.encode("utf-8")):
            raise DigestMismatch("Body does not match Digest header")
