#!/usr/bin/env python3
"""Generate a secp256k1 signing key pair for activation tokens."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from cryptography.hazmat.primitives import serialization

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from licensing.license_crypto import generate_key_pair, load_private_key


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a license signing key pair")
    parser.add_argument("--pem-out", default="", help="also write the private key as PKCS8 PEM to this path")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    pair = generate_key_pair()
    print(f"[generate-keys] LICENSE_PRIVATE_KEY={pair.private_key_hex}")
    print(f"[generate-keys] LICENSE_PUBLIC_KEY={pair.public_key_hex}")

    pem_out = str(args.pem_out or "").strip()
    if pem_out:
        key = load_private_key(pair.private_key_hex)
        pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        path = Path(pem_out).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(pem)
        path.chmod(0o600)
        print(f"[generate-keys] private key PEM written: {path}")
    print("[generate-keys] keep LICENSE_PRIVATE_KEY out of config.yaml; ship LICENSE_PUBLIC_KEY to clients")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
