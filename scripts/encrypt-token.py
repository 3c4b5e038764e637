#!/usr/bin/env python3
"""
Encrypt the chat service API token file in place.

Usage:
  python3 scripts/encrypt-token.py /etc/chatsync/api-token
  python3 scripts/encrypt-token.py --generate-key

The key is read from the keychain entry ``token_encryption_key`` (or the
``CHATSYNC_TOKEN_ENCRYPTION_KEY`` env var).  ``--generate-key`` prints a
fresh key to store there first.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from shared.secrets import encrypt_token_file, generate_encryption_key, get_secret

logger = logging.getLogger("scripts.encrypt_token")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Encrypt the chatsync API token file")
    parser.add_argument("path", nargs="?", type=Path, help="Plaintext token file")
    parser.add_argument(
        "--generate-key",
        action="store_true",
        help="Print a new Fernet key and exit",
    )
    return parser


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    args = _build_parser().parse_args()

    if args.generate_key:
        print(generate_encryption_key())
        return 0
    if args.path is None:
        logger.error("A token file path is required")
        return 2
    if not args.path.exists():
        logger.error("Token file not found: %s", args.path)
        return 1

    encrypt_token_file(args.path, get_secret("token_encryption_key"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
