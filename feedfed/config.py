# feedfed/config.py
"""
Configuration for a feedfed instance.

Loaded from YAML, e.g.:

    base_url: https://social.example
    data_dir: /var/lib/feedfed
    port: 8080
    delivery:
      workers: 4
      max_attempts: 8
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class DeliveryConfig:
    """Delivery queue settings."""
    workers: int = 4
    max_attempts: int = 8
    backoff_base: float = 30.0
    backoff_cap: float = 3600.0
    jitter: float = 0.0
    archive_limit: int = 1000


@dataclass
class FederationConfig:
    """
    Instance settings.

    Attributes:
        base_url: Public origin; actor URIs are {base_url}/users/{username}
        data_dir: Root for keys, key cache, deliveries and followers
            (None keeps everything in memory)
        host: Bind address for the HTTP server
        port: Bind port for the HTTP server
        request_timeout: Seconds for every outbound request
        key_cache_ttl: Seconds a fetched remote key stays valid
        max_clock_skew: Allowed Date header skew, seconds
        rotation_grace: Seconds a rotated-out key is still accepted
    """
    base_url: str = "http://localhost:8080"
    data_dir: Optional[str] = None
    host: str = "127.0.0.1"
    port: int = 8080
    request_timeout: float = 10.0
    key_cache_ttl: float = 3600.0
    max_clock_skew: float = 300.0
    rotation_grace: float = 86400.0
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.max_clock_skew < 0:
            raise ValueError("max_clock_skew must not be negative")

    def actor_id(self, username: str) -> str:
        return f"{self.base_url}/users/{username}"

    def path(self, *parts: str) -> Optional[Path]:
        """Path under data_dir, or None when running in memory."""
        if self.data_dir is None:
            return None
        return Path(self.data_dir).joinpath(*parts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FederationConfig":
        data = dict(data or {})
        _reject_unknown(cls, data, "config")
        delivery = data.pop("delivery", None) or {}
        if not isinstance(delivery, dict):
            raise ValueError("delivery must be a mapping")
        _reject_unknown(DeliveryConfig, delivery, "delivery")
        return cls(delivery=DeliveryConfig(**delivery), **data)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "FederationConfig":
        """Parse config from YAML content."""
        data = yaml.safe_load(yaml_content)
        if data is not None and not isinstance(data, dict):
            raise ValueError("Config must be a YAML mapping")
        return cls.from_dict(data or {})

    @classmethod
    def from_file(cls, path: Path | str) -> "FederationConfig":
        """Load config from a YAML file."""
        with open(path, "r") as f:
            return cls.from_yaml(f.read())


def _reject_unknown(cls, data: Dict[str, Any], where: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown {where} keys: {', '.join(unknown)}")
