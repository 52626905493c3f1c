# tests/test_cli.py
"""Tests for the command-line interface."""

import json

import pytest

from feedfed.cli import main


@pytest.fixture
def run(temp_dir, capsys):
    """Run the CLI against a temporary data directory."""
    def _run(*args):
        code = main(["--data-dir", str(temp_dir), "--base-url", "https://social.example", *args])
        return code, capsys.readouterr()
    return _run


class TestCli:
    """Test CLI commands."""

    def test_create_and_show_actor(self, run):
        code, out = run("create-actor", "alice", "--display-name", "Alice")
        assert code == 0
        assert "@alice@social.example" in out.out

        code, out = run("show-actor", "alice")
        assert code == 0
        document = json.loads(out.out)
        assert document["id"] == "https://social.example/users/alice"
        assert document["name"] == "Alice"
        assert "PRIVATE" not in out.out

    def test_show_unknown_actor(self, run):
        code, out = run("show-actor", "nobody")
        assert code == 1

    def test_duplicate_actor(self, run):
        run("create-actor", "alice")
        code, out = run("create-actor", "alice")
        assert code == 1
        assert "already exists" in out.err

    def test_rotate_key(self, run):
        run("create-actor", "alice")
        before = json.loads(run("show-actor", "alice")[1].out)
        code, _ = run("rotate-key", "alice")
        after = json.loads(run("show-actor", "alice")[1].out)

        assert code == 0
        assert before["publicKey"]["publicKeyPem"] != after["publicKey"]["publicKeyPem"]

    def test_deliveries_empty(self, run):
        code, out = run("deliveries")
        assert code == 0
        assert "No deliveries" in out.out

    def test_deliver_nothing(self, run):
        code, out = run("deliver")
        assert code == 0
        assert "Made 0 delivery attempt(s)" in out.out

    def test_config_file(self, temp_dir, capsys):
        config = temp_dir / "feedfed.yaml"
        config.write_text(f"base_url: https://other.example\ndata_dir: {temp_dir / 'data'}\n")

        assert main(["--config", str(config), "create-actor", "bob"]) == 0
        assert "@bob@other.example" in capsys.readouterr().out
        assert (temp_dir / "data" / "keys" / "actors.json").exists()

    def test_no_command(self, capsys):
        assert main([]) == 1
