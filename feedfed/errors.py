# feedfed/errors.py
"""
Exception taxonomy for the federation trust layer.

Verification errors carry the HTTP status the inbox answers with.
Messages never include key material.
"""


class FederationError(Exception):
    """Base class for all feedfed errors."""


class KeyGenerationError(FederationError):
    """Keypair could not be generated or stored."""


class SigningError(FederationError):
    """No signing key is available for the requested actor."""


class VerificationError(FederationError):
    """An inbound request failed signature verification."""
    status = 403


class MalformedSignature(VerificationError):
    """Signature header missing, unparseable, or incomplete."""
    status = 401


class StaleRequest(VerificationError):
    """Date header outside the allowed clock skew."""


class DigestMismatch(VerificationError):
    """Body digest does not match the Digest header."""


class InvalidSignature(VerificationError):
    """Signature does not verify against the actor's public key."""


class ResolutionError(VerificationError):
    """The signing actor's public key could not be resolved."""
    status = 401


class DeliveryError(FederationError):
    """A delivery attempt failed."""


class DeliveryTransientFailure(DeliveryError):
    """Failure that may succeed on retry (network, timeout, 5xx, 429)."""


class DeliveryPermanentFailure(DeliveryError):
    """Failure that retrying cannot fix (4xx, missing key)."""
