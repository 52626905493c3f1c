# tests/test_signatures.py
"""Tests for request signing."""

import base64

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from feedfed.errors import SigningError
from feedfed.signatures import (
    SIGNED_HEADERS,
    SignatureHeader,
    SignatureSigner,
    compute_digest,
    digest_header,
    http_date,
    request_target,
)
from feedfed.verifier import parse_signature_header

ALICE = "https://social.example/users/alice"
INBOX = "https://remote.example/users/bob/inbox"


@pytest.fixture
def signer(keystore):
    keystore.generate(ALICE)
    return SignatureSigner(keystore)


class TestHelpers:
    """Test digest, date and URL helpers."""

    def test_digest_of_empty_body(self):
        assert compute_digest(b"") == "47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU="
        assert digest_header(b"").startswith("SHA-256=")

    def test_http_date_format(self):
        assert http_date(784111777) == "Sun, 06 Nov 1994 08:49:37 GMT"

    def test_request_target_keeps_query(self):
        assert request_target("https://remote.example/inbox?x=1") == ("remote.example", "/inbox?x=1")
        assert request_target("https://remote.example") == ("remote.example", "/")

    def test_canonical_string(self):
        canonical = SignatureSigner.canonical_string(
            "POST", "/users/bob/inbox", "remote.example", "Sun, 06 Nov 1994 08:49:37 GMT", "abc="
        )
        assert canonical.split("\n") == [
            "(request-target): post /users/bob/inbox",
            "host: remote.example",
            "date: Sun, 06 Nov 1994 08:49:37 GMT",
            "digest: SHA-256=abc=",
        ]


class TestSignatureSigner:
    """Test SignatureSigner class."""

    def test_sign_request_headers(self, signer):
        body = b'{"type": "Follow"}'
        headers = signer.sign_request(ALICE, "POST", INBOX, body, now=784111777)

        assert headers["Host"] == "remote.example"
        assert headers["Date"] == "Sun, 06 Nov 1994 08:49:37 GMT"
        assert headers["Digest"] == digest_header(body)
        assert headers["Content-Type"] == "application/activity+json"

        parsed = parse_signature_header(headers["Signature"])
        assert parsed.key_id == f"{ALICE}#main-key"
        assert parsed.algorithm == "rsa-sha256"
        assert parsed.headers == SIGNED_HEADERS

    def test_signature_verifies_with_public_key(self, signer, keystore):
        canonical = "(request-target): post /inbox"
        signature = base64.b64decode(signer.sign(ALICE, canonical))

        public_key = serialization.load_pem_public_key(keystore.public_key(ALICE).encode())
        public_key.verify(signature, canonical.encode(), padding.PKCS1v15(), hashes.SHA256())

    def test_unknown_actor(self, signer):
        with pytest.raises(SigningError):
            signer.sign("https://social.example/users/nobody", "x")

    def test_header_never_contains_private_key(self, signer):
        headers = signer.sign_request(ALICE, "POST", INBOX, b"{}")
        assert all("PRIVATE" not in value for value in headers.values())


class TestSignatureHeader:
    """Test Signature header rendering."""

    def test_render(self):
        header = SignatureHeader(key_id="k", headers=["date", "host"], signature="c2ln")
        assert header.to_header() == 'keyId="k",algorithm="rsa-sha256",headers="date host",signature="c2ln"'

    def test_render_then_parse(self):
        header = SignatureHeader(key_id="https://a.example/u#k", headers=list(SIGNED_HEADERS), signature="c2ln")
        assert parse_signature_header(header.to_header()) == header
