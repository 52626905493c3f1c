# feedfed/server.py
"""
HTTP server for the federation endpoints.

Endpoints:
    GET  /users/:username            - Actor document (public key included)
    POST /users/:username/inbox      - Signed activity delivery
    GET  /users/:username/followers  - Followers collection
    GET  /users/:username/following  - Following collection
    GET  /health                     - Liveness and delivery counts
"""

import json
import logging
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import urlparse

from .federation import Federation
from .followers import FOLLOWERS, FOLLOWING

logger = logging.getLogger(__name__)

ACTIVITY_JSON = "application/activity+json"
MAX_BODY_BYTES = 1024 * 1024

_ACTOR_RE = re.compile(r"^/users/([A-Za-z0-9_]{1,64})(?:/(inbox|followers|following))?/?$")


class FederationServer:
    """
    HTTP server for one federation instance.

    Usage:
        server = FederationServer(Federation(config), host="0.0.0.0", port=8080)
        server.start()  # Blocking
    """

    def __init__(self, federation: Federation, host: str = "127.0.0.1", port: int = 8080):
        self.federation = federation
        self.host = host
        self.port = port
        self._httpd: Optional[ThreadingHTTPServer] = None

    def _create_handler(server_instance):
        """Create request handler with access to server instance."""

        class RequestHandler(BaseHTTPRequestHandler):
            server_ref = server_instance

            def log_message(self, format, *args):
                logger.debug(format % args)

            def _send_json(self, data: Any, status: int = 200, content_type: str = "application/json"):
                body = json.dumps(data).encode()
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _send_error(self, message: str, status: int = 400):
                self._send_json({"error": message}, status)

            def do_GET(self):
                federation = self.server_ref.federation
                path = urlparse(self.path).path

                if path == "/health":
                    self._send_json({
                        "status": "ok",
                        "actors": len(federation.keys),
                        "deliveries": federation.queue.counts(),
                    })
                    return

                match = _ACTOR_RE.match(path)
                if not match or match.group(2) == "inbox":
                    self._send_error("Not found", 404)
                    return

                actor = federation.get_actor(match.group(1))
                if actor is None:
                    self._send_error("Actor not found", 404)
                    return

                kind = match.group(2)
                if kind is None:
                    self._send_json(actor.to_activitypub(), content_type=ACTIVITY_JSON)
                elif kind in (FOLLOWERS, FOLLOWING):
                    collection = federation.followers.collection(actor.actor_id, kind)
                    self._send_json(collection, content_type=ACTIVITY_JSON)

            def do_POST(self):
                path = urlparse(self.path).path
                match = _ACTOR_RE.match(path)
                if not match or match.group(2) != "inbox":
                    self._send_error("Not found", 404)
                    return

                try:
                    content_length = int(self.headers.get("Content-Length", 0))
                except ValueError:
                    self._send_error("Invalid Content-Length")
                    return
                if content_length < 0:
                    self._send_error("Invalid Content-Length")
                    return
                if content_length > MAX_BODY_BYTES:
                    self._send_error("Payload too large", 413)
                    return
                body = self.rfile.read(content_length)

                try:
                    result = self.server_ref.federation.receive(
                        match.group(1), "POST", self.path, self.headers, body
                    )
                except Exception as e:
                    logger.exception(f"Inbox processing failed for {match.group(1)}")
                    self._send_error(f"Internal error: {type(e).__name__}", 500)
                    return

                if result.accepted:
                    self._send_json({"status": "accepted"}, result.status)
                else:
                    self._send_error(result.error or "Rejected", result.status)

        return RequestHandler

    def bind(self) -> ThreadingHTTPServer:
        """Bind the listening socket. Port 0 picks a free port."""
        if self._httpd is None:
            handler = self._create_handler()
            self._httpd = ThreadingHTTPServer((self.host, self.port), handler)
            self.port = self._httpd.server_address[1]
        return self._httpd

    def start(self):
        """Start the HTTP server (blocking)."""
        httpd = self.bind()
        logger.info(f"Federation server starting on {self.host}:{self.port}")
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutting down...")
        finally:
            httpd.server_close()

    def start_background(self) -> threading.Thread:
        """Start the server in a background thread."""
        self.bind()
        thread = threading.Thread(target=self.start)
        thread.daemon = True
        thread.start()
        return thread

    def shutdown(self):
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd = None
