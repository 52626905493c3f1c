# tests/test_config.py
"""Tests for instance configuration."""

import pytest

from feedfed.config import DeliveryConfig, FederationConfig


class TestFederationConfig:
    """Test FederationConfig loading."""

    def test_defaults(self):
        config = FederationConfig()
        assert config.request_timeout == 10.0
        assert config.max_clock_skew == 300.0
        assert config.data_dir is None
        assert config.path("keys") is None

    def test_from_yaml(self):
        yaml_content = """
base_url: https://social.example/
data_dir: /var/lib/feedfed
port: 9000
key_cache_ttl: 600
delivery:
  workers: 2
  max_attempts: 3
"""
        config = FederationConfig.from_yaml(yaml_content)

        assert config.base_url == "https://social.example"
        assert config.port == 9000
        assert config.key_cache_ttl == 600
        assert config.delivery == DeliveryConfig(workers=2, max_attempts=3)
        assert str(config.path("keys")) == "/var/lib/feedfed/keys"

    def test_empty_yaml(self):
        assert FederationConfig.from_yaml("") == FederationConfig()

    def test_from_file(self, temp_dir):
        path = temp_dir / "feedfed.yaml"
        path.write_text("base_url: https://social.example\n")
        assert FederationConfig.from_file(path).base_url == "https://social.example"

    def test_actor_id(self):
        config = FederationConfig(base_url="https://social.example")
        assert config.actor_id("alice") == "https://social.example/users/alice"

    @pytest.mark.parametrize("yaml_content", [
        "unknown_key: 1",
        "delivery:\n  retries: 3",
        "delivery: 5",
        "- a list",
        "request_timeout: 0",
        "max_clock_skew: -1",
    ])
    def test_invalid(self, yaml_content):
        with pytest.raises(ValueError):
            FederationConfig.from_yaml(yaml_content)

    def test_to_dict(self):
        data = FederationConfig(base_url="https://social.example").to_dict()
        assert data["base_url"] == "https://social.example"
        assert data["delivery"]["workers"] == 4
        assert FederationConfig.from_dict(data) == FederationConfig(base_url="https://social.example")
