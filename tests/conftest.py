# tests/conftest.py
"""Shared fakes for network and time."""

import socket
import tempfile
import threading
import time
from pathlib import Path

import pytest

from feedfed.keys import KeyStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeClient:
    """
    In-memory stand-in for FederationClient.

    documents maps actor URI to actor document. statuses maps inbox URL to
    a list of responses consumed one per POST; an exception instance in the
    list is raised instead of returned. When a list runs out, 202 is returned.
    """

    def __init__(self, fetch_delay: float = 0.0):
        self.documents = {}
        self.statuses = {}
        self.fetches = []
        self.posts = []
        self.fetch_delay = fetch_delay
        self.on_post = None
        self._lock = threading.Lock()

    def add_actor(self, actor):
        """Publish a local Actor's document as if it were remote."""
        self.documents[actor.actor_id] = actor.to_activitypub()

    def fetch_actor(self, actor_uri):
        with self._lock:
            self.fetches.append(actor_uri)
        if self.fetch_delay:
            time.sleep(self.fetch_delay)
        if actor_uri not in self.documents:
            raise RuntimeError(f"HTTP 404 fetching {actor_uri}")
        return self.documents[actor_uri]

    def post(self, url, body, headers):
        with self._lock:
            self.posts.append((url, body, dict(headers)))
            queued = self.statuses.get(url)
            response = queued.pop(0) if queued else 202
        if isinstance(response, Exception):
            raise response
        if self.on_post is not None:
            return self.on_post(url, body, headers)
        return response


@pytest.fixture
def temp_dir():
    """Create temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def keystore(clock):
    """In-memory key store on the fake clock."""
    return KeyStore(clock=clock)


@pytest.fixture
def garbage_server():
    """TCP server answering every request with an invalid status line."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    sock.settimeout(0.1)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                conn, _ = sock.accept()
            except socket.timeout:
                continue
            with conn:
                conn.settimeout(2)
                data = b""
                try:
                    while b"\r\n\r\n" not in data:
                        chunk = conn.recv(4096)
                        if not chunk:
                            break
                        data += chunk
                    conn.sendall(b"garbage\r\n\r\n")
                except OSError:
                    pass

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{sock.getsockname()[1]}"
    stop.set()
    thread.join()
    sock.close()
