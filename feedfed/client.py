# feedfed/client.py
"""
Outbound HTTP for federation.

Fetches remote actor documents and POSTs signed activities to remote
inboxes. Every request is bounded by a timeout; a timeout surfaces as a
ConnectionError, the same as any other network failure.

Usage:
    client = FederationClient(timeout=10)
    actor = client.fetch_actor("https://remote.example/users/bob")
    status = client.post(actor["inbox"], body, signed_headers)
"""

import json
import logging
from http.client import HTTPException
from typing import Any, Dict, Optional
from urllib.error import HTTPError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

ACTIVITY_JSON = "application/activity+json"
DEFAULT_TIMEOUT = 10.0
USER_AGENT = "feedfed/0.1"
MAX_DOCUMENT_BYTES = 1024 * 1024


class FederationClient:
    """
    HTTP client for remote ActivityPub servers.

    Args:
        timeout: Request timeout in seconds
        user_agent: User-Agent header value
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, user_agent: str = USER_AGENT):
        self.timeout = timeout
        self.user_agent = user_agent

    def fetch_actor(self, actor_uri: str) -> Dict[str, Any]:
        """
        Fetch an actor document.

        Raises:
            ConnectionError: network failure or timeout
            RuntimeError: non-2xx response
            ValueError: response body is not a JSON object, or is too large
        """
        headers = {
            "Accept": f"{ACTIVITY_JSON}, application/ld+json",
            "User-Agent": self.user_agent,
        }
        req = Request(actor_uri, headers=headers, method="GET")

        try:
            with urlopen(req, timeout=self.timeout) as response:
                body = response.read(MAX_DOCUMENT_BYTES + 1)
        except HTTPError as e:
            raise RuntimeError(f"HTTP {e.code} fetching {actor_uri}")
        except (OSError, HTTPException) as e:
            raise ConnectionError(f"Failed to fetch {actor_uri}: {e}")

        if len(body) > MAX_DOCUMENT_BYTES:
            raise ValueError(f"Actor document from {actor_uri} is too large")

        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Invalid actor document from {actor_uri}: {e}")
        if not isinstance(data, dict):
            raise ValueError(f"Invalid actor document from {actor_uri}")
        return data

    def post(self, url: str, body: bytes, headers: Dict[str, str]) -> int:
        """
        POST a body and return the response status code.

        HTTP error statuses are returned, not raised.

        Raises:
            ConnectionError: network failure or timeout
        """
        all_headers = {"User-Agent": self.user_agent}
        all_headers.update(headers)
        req = Request(url, data=body, headers=all_headers, method="POST")

        try:
            with urlopen(req, timeout=self.timeout) as response:
                response.read(MAX_DOCUMENT_BYTES)
                return response.status
        except HTTPError as e:
            error_body = _read_error(e)
            logger.debug(f"POST {url} -> HTTP {e.code}: {error_body}")
            return e.code
        except (OSError, HTTPException) as e:
            raise ConnectionError(f"Failed to POST to {url}: {e}")


def _read_error(e: HTTPError) -> Optional[str]:
    try:
        return e.read().decode("utf-8", errors="replace")[:200]
    except (OSError, HTTPException):
        return None
