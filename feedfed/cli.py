#!/usr/bin/env python3
"""
feedfed CLI

Command-line interface for running a federation instance:
  feedfed create-actor - Create a local actor with a fresh key pair
  feedfed show-actor   - Print an actor's public ActivityPub document
  feedfed rotate-key   - Replace an actor's key pair
  feedfed follow       - Send a signed Follow to a remote actor
  feedfed deliveries   - List queued and finished deliveries
  feedfed deliver      - Attempt every ready delivery once
  feedfed serve        - Run the HTTP server and delivery workers

Usage:
  feedfed [--config <file>] [--data-dir <dir>] create-actor <username>
  feedfed follow <username> <actor-uri>
  feedfed serve [--host <host>] [--port <port>]
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .config import FederationConfig
from .delivery import TaskStatus
from .errors import FederationError
from .federation import Federation
from .server import FederationServer

DEFAULT_DATA_DIR = "./feedfed_data"


def load_config(args) -> FederationConfig:
    """Config file values, overridden by command-line flags."""
    config = FederationConfig.from_file(args.config) if args.config else FederationConfig()
    if args.data_dir:
        config.data_dir = args.data_dir
    elif config.data_dir is None:
        config.data_dir = DEFAULT_DATA_DIR
    if args.base_url:
        config.base_url = args.base_url.rstrip("/")
    return config


def cmd_create_actor(federation: Federation, args) -> int:
    actor = federation.create_actor(args.username, args.display_name)
    print(f"Created {actor.handle}")
    print(f"  id:     {actor.actor_id}")
    print(f"  key id: {actor.key_id}")
    return 0


def cmd_show_actor(federation: Federation, args) -> int:
    document = federation.actor_document(args.username)
    if document is None:
        print(f"Actor {args.username} not found", file=sys.stderr)
        return 1
    print(json.dumps(document, indent=2))
    return 0


def cmd_rotate_key(federation: Federation, args) -> int:
    actor = federation.rotate_key(args.username)
    grace = federation.config.rotation_grace
    print(f"Rotated key for {actor.handle}")
    print(f"  previous key accepted for another {grace:.0f}s")
    return 0


def cmd_follow(federation: Federation, args) -> int:
    task = federation.follow(args.username, args.actor)
    print(f"Queued Follow of {args.actor} ({task.task_id})")
    attempts = federation.queue.run_pending()
    task = federation.queue.get(task.task_id)
    print(f"  {attempts} attempt(s), status: {task.status.value}")
    return 0


def cmd_deliveries(federation: Federation, args) -> int:
    status = TaskStatus(args.status) if args.status else None
    tasks = federation.queue.list_tasks(status=status, include_archive=args.all)
    if not tasks:
        print("No deliveries")
        return 0
    for task in tasks:
        line = f"{task.task_id}  {task.status.value:<16} attempts={task.attempts}  {task.target_inbox}"
        if task.last_error:
            line += f"  ({task.last_error})"
        print(line)
    return 0


def cmd_deliver(federation: Federation, args) -> int:
    attempts = federation.queue.run_pending()
    print(f"Made {attempts} delivery attempt(s)")
    counts = federation.queue.counts()
    print("  " + ", ".join(f"{k}={v}" for k, v in counts.items()))
    return 0


def cmd_serve(federation: Federation, args) -> int:
    config = federation.config
    server = FederationServer(
        federation,
        host=args.host or config.host,
        port=args.port if args.port is not None else config.port,
    )
    federation.start()
    try:
        server.start()
    finally:
        federation.stop()
    return 0


COMMANDS = {
    "create-actor": cmd_create_actor,
    "show-actor": cmd_show_actor,
    "rotate-key": cmd_rotate_key,
    "follow": cmd_follow,
    "deliveries": cmd_deliveries,
    "deliver": cmd_deliver,
    "serve": cmd_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feedfed",
        description="feedfed - ActivityPub federation trust layer",
    )
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--data-dir", help=f"Data directory (default: {DEFAULT_DATA_DIR})")
    parser.add_argument("--base-url", help="Public base URL of this instance")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    create_parser = subparsers.add_parser("create-actor", help="Create a local actor")
    create_parser.add_argument("username", help="Local username")
    create_parser.add_argument("--display-name", help="Human-readable name")

    show_parser = subparsers.add_parser("show-actor", help="Print an actor document")
    show_parser.add_argument("username", help="Local username")

    rotate_parser = subparsers.add_parser("rotate-key", help="Rotate an actor's key pair")
    rotate_parser.add_argument("username", help="Local username")

    follow_parser = subparsers.add_parser("follow", help="Follow a remote actor")
    follow_parser.add_argument("username", help="Local username")
    follow_parser.add_argument("actor", help="Remote actor URI")

    list_parser = subparsers.add_parser("deliveries", help="List deliveries")
    list_parser.add_argument("--status", choices=[s.value for s in TaskStatus],
                             help="Only show tasks in this status")
    list_parser.add_argument("--all", action="store_true",
                             help="Include delivered and abandoned tasks")

    subparsers.add_parser("deliver", help="Attempt every ready delivery once")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, help="Port to bind to")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    try:
        federation = Federation(load_config(args))
        return command(federation, args)
    except (FederationError, ValueError, KeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
