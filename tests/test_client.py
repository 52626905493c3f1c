# tests/test_client.py
"""Tests for the outbound HTTP client."""

import pytest

from feedfed.client import FederationClient


class TestFederationClient:
    """Protocol-level failures surface as ConnectionError."""

    def test_fetch_bad_status_line(self, garbage_server):
        with pytest.raises(ConnectionError):
            FederationClient(timeout=5).fetch_actor(f"{garbage_server}/users/bob")

    def test_post_bad_status_line(self, garbage_server):
        with pytest.raises(ConnectionError):
            FederationClient(timeout=5).post(f"{garbage_server}/users/bob/inbox", b"{}", {})

    def test_connection_refused(self):
        with pytest.raises(ConnectionError):
            FederationClient(timeout=5).fetch_actor("http://127.0.0.1:1/users/bob")
