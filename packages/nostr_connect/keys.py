"""Ed25519 key material for NostrConnect identities.

An identity is the hex-encoded Ed25519 verify key of a party. Secrets are
handled as hex-encoded Ed25519 seeds so they can be passed around as plain
strings (config files, environment, pairing tools).
"""

from pathlib import Path
from typing import Tuple, Union

from nacl.encoding import HexEncoder
from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey

from .exceptions import KeyLoadError


SecretKey = Union[str, SigningKey]


def generate_keypair() -> Tuple[SigningKey, VerifyKey]:
    """Generate a new Ed25519 keypair.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = SigningKey.generate()
    return private_key, private_key.verify_key


def generate_secret_key() -> str:
    """Generate a new hex-encoded secret key."""
    private_key, _ = generate_keypair()
    return private_key_to_hex(private_key)


def signing_key(secret: SecretKey) -> SigningKey:
    """Coerce a hex secret (or an existing SigningKey) into a SigningKey."""
    if isinstance(secret, SigningKey):
        return secret
    try:
        return SigningKey(secret, encoder=HexEncoder)
    except (CryptoError, ValueError, TypeError) as e:
        raise KeyLoadError(f"Invalid secret key: {e}") from e


def get_public_key(secret: SecretKey) -> str:
    """Derive the hex-encoded identity for a secret key."""
    return signing_key(secret).verify_key.encode(encoder=HexEncoder).decode('utf-8')


def private_key_to_hex(private_key: SigningKey) -> str:
    return private_key.encode(encoder=HexEncoder).decode('utf-8')


def public_key_from_hex(hex_key: str) -> VerifyKey:
    """Load a public key from hex string.

    Raises:
        KeyLoadError: If the string is not a valid Ed25519 public key
    """
    try:
        return VerifyKey(hex_key, encoder=HexEncoder)
    except (CryptoError, ValueError, TypeError) as e:
        raise KeyLoadError(f"Invalid public key {hex_key!r}: {e}") from e


def save_private_key(private_key: SigningKey, path: Union[str, Path]) -> None:
    """Save a private key to file in hex format (owner read/write only)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(private_key_to_hex(private_key))
    path.chmod(0o600)


def save_public_key(public_key: VerifyKey, path: Union[str, Path]) -> None:
    """Save a public key to file in hex format."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(public_key.encode(encoder=HexEncoder).decode('utf-8'))


def load_private_key(path: Union[str, Path]) -> SigningKey:
    """Load a private key from file.

    Args:
        path: Path to the key file (hex format)

    Returns:
        Ed25519 signing key

    Raises:
        KeyLoadError: If key cannot be loaded
    """
    path = Path(path).expanduser()
    try:
        key_hex = path.read_text().strip()
    except FileNotFoundError:
        raise KeyLoadError(f"Private key not found: {path}")
    except OSError as e:
        raise KeyLoadError(f"Failed to read private key from {path}: {e}")
    try:
        return SigningKey(key_hex, encoder=HexEncoder)
    except (CryptoError, ValueError, TypeError) as e:
        raise KeyLoadError(f"Failed to load private key from {path}: {e}")


def load_public_key(path: Union[str, Path]) -> str:
    """Load a hex identity from file.

    Raises:
        KeyLoadError: If key cannot be loaded
    """
    path = Path(path).expanduser()
    try:
        key_hex = path.read_text().strip()
    except FileNotFoundError:
        raise KeyLoadError(f"Public key not found: {path}")
    except OSError as e:
        raise KeyLoadError(f"Failed to read public key from {path}: {e}")
    public_key_from_hex(key_hex)
    return key_hex.lower()
