#!/usr/bin/env python3
"""
CareGate management commands.

Usage:
  python main.py generate-keys
  python main.py generate-keys --base64
  python main.py create-admin --email admin@example.com --first-name Ada --last-name Admin
  python main.py purge

Elevated roles can only be registered by an administrator, so the very first
administrator is created here, directly against the identity store.

Environment variables:
  DATABASE_URL           Identity/session database (default: auth/caregate_auth.db)
  REVOCATION_STORE_URL   redis://... or a SQLite path (default: cache/caregate_revocations.db)
  JWT_PRIVATE_KEY / JWT_PUBLIC_KEY   required unless DEBUG=true
"""

import argparse
import base64
import getpass
import sys

from auth.credentials import CredentialStore
from auth.errors import AuthError
from auth.models import Profile
from auth.permissions import ADMINISTRATOR
from auth.store import DEFAULT_DB_URL, IdentityStore, SessionStore, open_engine
from cache.store import open_revocation_store
from core.config import generate_rsa_keypair, get_settings


def _generate_keys(args: argparse.Namespace) -> int:
    private_pem, public_pem = generate_rsa_keypair(key_size=args.bits)
    if args.base64:
        print(f"JWT_PRIVATE_KEY=base64:{base64.b64encode(private_pem.encode()).decode()}")
        print(f"JWT_PUBLIC_KEY=base64:{base64.b64encode(public_pem.encode()).decode()}")
    else:
        print(private_pem)
        print(public_pem)
    return 0


def _read_password(args: argparse.Namespace) -> str:
    if args.password_stdin:
        return sys.stdin.readline().rstrip("\n")
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        raise SystemExit("  [!] Passwords do not match.")
    return password


def _report(exc: AuthError) -> None:
    print(f"  [!] {exc.message}")
    if exc.details:
        print(f"      {exc.details}")


def _create_admin(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = None
    try:
        engine = open_engine(settings.database_url or DEFAULT_DB_URL, settings.store_timeout_seconds)
        credentials = CredentialStore(IdentityStore(engine), bcrypt_rounds=settings.bcrypt_rounds)
        identity = credentials.register(
            args.email,
            _read_password(args),
            Profile(first_name=args.first_name, last_name=args.last_name, role=ADMINISTRATOR, zone_id=args.zone_id),
        )
    except AuthError as exc:
        _report(exc)
        return 1
    finally:
        if engine is not None:
            engine.dispose()
    print(f"  Administrator created: {identity.email} (id={identity.id})")
    return 0


def _purge(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = revocations = None
    try:
        engine = open_engine(settings.database_url or DEFAULT_DB_URL, settings.store_timeout_seconds)
        revocations = open_revocation_store(settings.revocation_store_url, settings.store_timeout_seconds)
        sessions_removed = SessionStore(engine).purge_expired()
        revocations_removed = revocations.purge_expired()
    except AuthError as exc:
        _report(exc)
        return 1
    finally:
        if revocations is not None:
            revocations.close()
        if engine is not None:
            engine.dispose()
    print(f"  Removed {sessions_removed} expired session(s) and {revocations_removed} revocation(s).")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="caregate",
        description="CareGate authentication service management.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    keys = commands.add_parser("generate-keys", help="Print a fresh RSA key pair for token signing")
    keys.add_argument("--bits", type=int, default=2048, help="RSA key size (default: 2048)")
    keys.add_argument("--base64", action="store_true", help="Print as base64: env lines instead of raw PEM")
    keys.set_defaults(handler=_generate_keys)

    admin = commands.add_parser("create-admin", help="Create an administrator identity")
    admin.add_argument("--email", required=True)
    admin.add_argument("--first-name", required=True)
    admin.add_argument("--last-name", required=True)
    admin.add_argument("--zone-id", default=None, help="Optional home zone (administrators may act in any zone)")
    admin.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    admin.set_defaults(handler=_create_admin)

    purge = commands.add_parser("purge", help="Delete expired sessions and revocation entries")
    purge.set_defaults(handler=_purge)

    args = parser.parse_args()
    sys.exit(args.handler(args))


if __name__ == "__main__":
    main()
