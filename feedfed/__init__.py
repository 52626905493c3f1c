# feedfed - ActivityPub federation trust layer
#
# Signs outgoing server-to-server requests with per-actor RSA keys, verifies
# incoming ones against the sender's published key, and delivers activities
# to remote inboxes with retry.
#
# Core concepts:
# - KeyStore: Local actors and their key pairs
# - ActorResolver: Public keys of remote actors, fetched once and cached
# - SignatureSigner / SignatureVerifier: HTTP Signatures (rsa-sha256)
# - DeliveryQueue: Per-inbox ordered delivery with exponential backoff
# - Federation: Wires the above together for the server and CLI

from .errors import (
    FederationError,
    KeyGenerationError,
    SigningError,
    VerificationError,
    MalformedSignature,
    StaleRequest,
    DigestMismatch,
    InvalidSignature,
    ResolutionError,
    DeliveryError,
    DeliveryTransientFailure,
    DeliveryPermanentFailure,
)
from .keys import Actor, KeyStore, KeyPurpose
from .cache import KeyCache, CacheEntry, CacheStats
from .client import FederationClient
from .resolver import ActorResolver
from .signatures import SignatureSigner, SignatureHeader
from .verifier import SignatureVerifier, parse_signature_header
from .delivery import DeliveryQueue, DeliveryTask, TaskStatus
from .followers import FollowerStore
from .handlers import ActivityHandler, register_handler, get_handler
from .config import FederationConfig, DeliveryConfig
from .federation import Federation, InboxResult
from .server import FederationServer

__all__ = [
    # Errors
    "FederationError",
    "KeyGenerationError",
    "SigningError",
    "VerificationError",
    "MalformedSignature",
    "StaleRequest",
    "DigestMismatch",
    "InvalidSignature",
    "ResolutionError",
    "DeliveryError",
    "DeliveryTransientFailure",
    "DeliveryPermanentFailure",
    # Keys
    "Actor",
    "KeyStore",
    "KeyPurpose",
    "KeyCache",
    "CacheEntry",
    "CacheStats",
    "FederationClient",
    "ActorResolver",
    # Signatures
    "SignatureSigner",
    "SignatureHeader",
    "SignatureVerifier",
    "parse_signature_header",
    # Delivery
    "DeliveryQueue",
    "DeliveryTask",
    "TaskStatus",
    # Inbox
    "FollowerStore",
    "ActivityHandler",
    "register_handler",
    "get_handler",
    # Wiring
    "FederationConfig",
    "DeliveryConfig",
    "Federation",
    "InboxResult",
    "FederationServer",
]

__version__ = "0.1.0"
