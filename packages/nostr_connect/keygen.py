#!/usr/bin/env python3
"""Key generation utility for nostr-connect identities.

Usage:
    # Generate a keypair in ~/.nostr-connect/keys/
    nostr-connect-keygen

    # Custom name and directory
    nostr-connect-keygen --name signer --output-dir /custom/path

    # Also print a pairing URI for an application
    nostr-connect-keygen --name app --relay wss://relay.example.com --app-name "My App"

Keys are saved as <name>_private.key / <name>_public.key.
"""

import argparse
import sys
from pathlib import Path
from typing import Optional

from .keys import generate_keypair, get_public_key, save_private_key, save_public_key
from .uri import ConnectURI


DEFAULT_KEY_DIR = Path.home() / ".nostr-connect" / "keys"


def generate_named_keypair(output_dir: Path, name: str, force: bool = False) -> str:
    """Generate and save a keypair; returns the hex identity."""
    private_path = output_dir / f"{name}_private.key"
    public_path = output_dir / f"{name}_public.key"
    if private_path.exists() and not force:
        raise FileExistsError(f"{private_path} already exists (use --force to overwrite)")

    private_key, public_key = generate_keypair()
    save_private_key(private_key, private_path)
    save_public_key(public_key, public_path)

    identity = get_public_key(private_key)
    print(f"Generated {name} keypair:")
    print(f"  Private key: {private_path}")
    print(f"  Public key:  {public_path}")
    print(f"  Identity:    {identity}")
    return identity


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate an Ed25519 identity for nostr-connect",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s                                   Generate ~/.nostr-connect/keys/default_*.key
    %(prog)s --name signer                     Generate signer_*.key
    %(prog)s --relay wss://r.example --app-name "My App"
                                               Also print a pairing URI
"""
    )
    parser.add_argument("--name", default="default", help="Key file prefix (default: default)")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=DEFAULT_KEY_DIR,
        help=f"Output directory (default: {DEFAULT_KEY_DIR})"
    )
    parser.add_argument("--force", action="store_true", help="Overwrite existing keys")
    parser.add_argument("--relay", help="Relay URL to put in a pairing URI")
    parser.add_argument("--app-name", help="Application name for the pairing URI metadata")
    parser.add_argument("--app-url", help="Application URL for the pairing URI metadata")

    args = parser.parse_args(argv)

    if args.relay and not args.app_name:
        parser.error("--app-name is required with --relay")

    output_dir = args.output_dir.expanduser()
    try:
        identity = generate_named_keypair(output_dir, args.name, force=args.force)
    except (FileExistsError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.relay:
        metadata = {"name": args.app_name}
        if args.app_url:
            metadata["url"] = args.app_url
        uri = ConnectURI.create(identity, args.relay, metadata)
        print()
        print(f"Pairing URI: {uri}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
