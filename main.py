#!/usr/bin/env python3
"""
Konabra -- operator utilities for the authentication core.

Usage:
  python main.py keygen                 # print SECRET_KEY and PROTECTOR_MASTER_KEY lines
  python main.py keygen --env-file .env # append them to a file instead
  python main.py check                  # validate current settings and exit

Environment variables (see core/config.py):
  SECRET_KEY             JWT signing secret, at least 32 bytes.
  PROTECTOR_MASTER_KEY   base64 of exactly 64 random bytes.
  DEBUG                  true to auto-generate both for local development.
"""

import argparse
import base64
import secrets
import sys
from pathlib import Path

from pydantic import ValidationError as SettingsError

from core.config import MASTER_KEY_BYTES, get_settings


def generate_secret_key() -> str:
    """Return a 64-character hex SECRET_KEY (256 bits of entropy)."""
    return secrets.token_hex(32)


def generate_master_key() -> str:
    """Return a base64-encoded 64-byte PROTECTOR_MASTER_KEY."""
    return base64.b64encode(secrets.token_bytes(MASTER_KEY_BYTES)).decode("ascii")


def _keygen(args: argparse.Namespace) -> int:
    lines = [
        f"SECRET_KEY={generate_secret_key()}",
        f"PROTECTOR_MASTER_KEY={generate_master_key()}",
    ]
    if args.env_file:
        path = Path(args.env_file)
        existing = path.read_text() if path.is_file() else ""
        if "SECRET_KEY=" in existing or "PROTECTOR_MASTER_KEY=" in existing:
            print(f"  [!] {path} already defines keys; refusing to overwrite.", file=sys.stderr)
            return 1
        with path.open("a", encoding="utf-8") as fh:
            if existing and not existing.endswith("\n"):
                fh.write("\n")
            fh.write("\n".join(lines) + "\n")
        print(f"  Keys written to {path}.")
        return 0
    print("\n".join(lines))
    return 0


def _check(args: argparse.Namespace) -> int:
    get_settings.cache_clear()
    try:
        settings = get_settings()
    except SettingsError as e:
        print(f"  [!] Invalid configuration:\n{e}", file=sys.stderr)
        return 1
    print("  Configuration OK")
    print(f"  issuer:       {settings.jwt_issuer}")
    print(f"  audience:     {', '.join(settings.jwt_audience)}")
    print(f"  access TTL:   {settings.access_token_expire_seconds}s")
    print(f"  refresh TTL:  {settings.refresh_token_expire_seconds}s")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Konabra authentication core utilities.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    keygen = sub.add_parser("keygen", help="Generate SECRET_KEY and PROTECTOR_MASTER_KEY.")
    keygen.add_argument("--env-file", metavar="PATH", help="Append the keys to this file.")
    keygen.set_defaults(func=_keygen)

    check = sub.add_parser("check", help="Validate the current environment configuration.")
    check.set_defaults(func=_check)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
