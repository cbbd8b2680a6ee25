#!/usr/bin/env python3
"""Manage service clients: the backends allowed to call /v1/service.

Usage:
    python scripts/service_clients.py create "Billing backend" --scope user:read --scope invite:send
    python scripts/service_clients.py list
    python scripts/service_clients.py disable svc_0123abcd
    python scripts/service_clients.py rotate svc_0123abcd
    python scripts/service_clients.py scopes svc_0123abcd user:read session:create
    python scripts/service_clients.py allow-ip svc_0123abcd 10.0.0.0/24
    python scripts/service_clients.py token svc_0123abcd --scope user:read --expires-in 15m

Secrets are printed once, at creation and rotation.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _describe(client) -> str:
    state = "active" if client.is_active else "disabled"
    allow = ",".join(client.ip_allowlist) or "any"
    return f"{client.id}\t{client.name}\t{state}\tscopes={','.join(client.allowed_scopes)}\tips={allow}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage claimgate service clients",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="register a new client")
    create.add_argument("name")
    create.add_argument("--scope", action="append", default=[], dest="scopes")
    create.add_argument("--client-id")
    create.add_argument("--description")
    create.add_argument("--allow-ip", action="append", default=[], dest="ip_allowlist")

    sub.add_parser("list", help="list registered clients")

    for name in ("disable", "enable", "rotate"):
        cmd = sub.add_parser(name)
        cmd.add_argument("client_id")

    scopes = sub.add_parser("scopes", help="replace the allowed scopes")
    scopes.add_argument("client_id")
    scopes.add_argument("scopes", nargs="+")

    for name in ("allow-ip", "deny-ip"):
        cmd = sub.add_parser(name)
        cmd.add_argument("client_id")
        cmd.add_argument("entry", help="address or CIDR network")

    token = sub.add_parser("token", help="mint a service token for a client")
    token.add_argument("client_id")
    token.add_argument("--scope", action="append", default=[], dest="scopes")
    token.add_argument("--expires-in", default=None)
    return parser


def run(args: argparse.Namespace) -> int:
    from claimgate.service.runtime import get_runtime

    manager = get_runtime().service_clients

    if args.command == "create":
        client = manager.create_client(
            args.name,
            args.scopes,
            client_id=args.client_id,
            description=args.description,
            ip_allowlist=args.ip_allowlist,
        )
        print(_describe(client))
        print(f"secret: {client.secret}")
    elif args.command == "list":
        for client in manager.list_clients():
            print(_describe(client))
    elif args.command == "disable":
        print(_describe(manager.disable(args.client_id)))
    elif args.command == "enable":
        print(_describe(manager.enable(args.client_id)))
    elif args.command == "rotate":
        client = manager.rotate_secret(args.client_id)
        print(_describe(client))
        print(f"secret: {client.secret}")
    elif args.command == "scopes":
        print(_describe(manager.update_scopes(args.client_id, args.scopes)))
    elif args.command == "allow-ip":
        print(_describe(manager.add_allowed_ip(args.client_id, args.entry)))
    elif args.command == "deny-ip":
        print(_describe(manager.remove_allowed_ip(args.client_id, args.entry)))
    elif args.command == "token":
        client = manager.store.get_service_client(args.client_id)
        if not client:
            print(f"Error: unknown client {args.client_id}")
            return 1
        scopes = args.scopes or client.allowed_scopes
        exchange = manager.exchange_credentials(
            client.id, client.secret, scopes, args.expires_in
        )
        print(exchange.access_token)
        print(f"expires_in={exchange.expires_in} scopes={','.join(exchange.scopes)}")
    return 0


def main():
    args = build_parser().parse_args()
    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required; clients must persist to be useful")
        sys.exit(1)
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    try:
        sys.exit(run(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
