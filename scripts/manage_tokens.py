#!/usr/bin/env python3
"""
Manage credentials and dead-man triggers directly in the configured backend.

    python scripts/manage_tokens.py grant --read '^/public/' --name reader
    python scripts/manage_tokens.py grant public --read '^/status/'
    python scripts/manage_tokens.py revoke <token>
    python scripts/manage_tokens.py provision /hosts/web-1 --delay 300
"""

import argparse
import asyncio
import secrets
import sys
from pathlib import Path

# Add the parent directory to sys.path to import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from dkv.api.deps import Services
from dkv.core.config import get_backend, get_notifier, load_settings, validate_config
from dkv.core.errors import DKVError
from dkv.core.schema import PermissionRecord
from dkv.core.store import parse_path
from dkv.util.logging import logger


def build_services() -> Services:
    settings = load_settings()
    issues = validate_config(settings)
    if issues:
        for issue in issues:
            print(f"❌ {issue}")
        sys.exit(1)
    return Services.build(settings, get_backend(settings), get_notifier(settings))


async def grant_command(args):
    token = args.token or secrets.token_urlsafe(32)
    record = PermissionRecord(
        can_read=args.read,
        can_write=args.write,
        can_ping=args.ping,
        can_notify=args.notify,
        display_name=args.name or "",
        description=args.description or "",
    )
    await build_services().auth.grant(token, record)
    logger.log_operation("tokens.grant", "success", {"name": record.display_name})
    print(f"✅ Granted: {token}")


async def revoke_command(args):
    await build_services().auth.revoke(args.token)
    logger.log_operation("tokens.revoke", "success")
    print("✅ Revoked")


async def provision_command(args):
    trigger = await build_services().deadman.provision(parse_path(args.path), args.delay, args.cooldown)
    print(f"✅ Trigger {args.path}: notify after {trigger.notify_delay:g}s, "
          f"cooldown {trigger.effective_cooldown:g}s")


def main():
    """Main CLI entry point for credential and trigger management."""
    parser = argparse.ArgumentParser(
        description="dkv credential and dead-man trigger management",
        prog="python scripts/manage_tokens.py"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    grant_parser = subparsers.add_parser("grant", help="Create or replace a credential")
    grant_parser.add_argument("token", nargs="?", help="Token to grant (generated when omitted; 'public' for anonymous access)")
    grant_parser.add_argument("--read", help="Regex of readable paths")
    grant_parser.add_argument("--write", help="Regex of writable paths")
    grant_parser.add_argument("--ping", help="Regex of paths that may be pinged")
    grant_parser.add_argument("--notify", help="Regex of paths that may send notifications")
    grant_parser.add_argument("--name", help="Display name")
    grant_parser.add_argument("--description", help="Free-form description")
    grant_parser.set_defaults(func=grant_command)

    revoke_parser = subparsers.add_parser("revoke", help="Delete a credential")
    revoke_parser.add_argument("token", help="Token to revoke")
    revoke_parser.set_defaults(func=revoke_command)

    provision_parser = subparsers.add_parser("provision", help="Create or update a dead-man trigger")
    provision_parser.add_argument("path", help="Entity path, e.g. /hosts/web-1")
    provision_parser.add_argument("--delay", type=float, required=True, help="Seconds of silence before alerting")
    provision_parser.add_argument("--cooldown", type=float, help="Seconds between repeated alerts (default: delay)")
    provision_parser.set_defaults(func=provision_command)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(args.func(args))
    except ValidationError as e:
        print(f"❌ Invalid input: {e}")
        sys.exit(1)
    except DKVError as e:
        print(f"❌ {e.message}")
        logger.error(f"CLI {args.command} failed: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
