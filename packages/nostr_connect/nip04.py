"""Authenticated encryption between two identities.

Both parties derive the same Curve25519 box from their own Ed25519 secret and
the peer's Ed25519 identity. Ciphertexts use the ``<ciphertext>?iv=<nonce>``
layout, both parts base64 encoded.
"""

import base64
import binascii

import nacl.utils
from nacl.exceptions import CryptoError
from nacl.public import Box

from .exceptions import DecryptionError, EncodingError, KeyLoadError
from .keys import SecretKey, public_key_from_hex, signing_key


def _box(secret: SecretKey, peer_pubkey: str) -> Box:
    private_key = signing_key(secret).to_curve25519_private_key()
    public_key = public_key_from_hex(peer_pubkey).to_curve25519_public_key()
    return Box(private_key, public_key)


def encrypt(secret: SecretKey, peer_pubkey: str, plaintext: str) -> str:
    """Encrypt ``plaintext`` so only ``peer_pubkey`` (and us) can read it.

    Raises:
        EncodingError: If the keys are invalid or encryption fails
    """
    try:
        box = _box(secret, peer_pubkey)
        nonce = nacl.utils.random(Box.NONCE_SIZE)
        encrypted = box.encrypt(plaintext.encode('utf-8'), nonce)
    except (CryptoError, KeyLoadError, ValueError, TypeError) as e:
        raise EncodingError(f"Encryption failed: {e}") from e

    ciphertext = base64.b64encode(encrypted.ciphertext).decode('ascii')
    iv = base64.b64encode(nonce).decode('ascii')
    return f"{ciphertext}?iv={iv}"


def decrypt(secret: SecretKey, peer_pubkey: str, content: str) -> str:
    """Decrypt a ciphertext produced by ``encrypt`` on the peer side.

    Raises:
        DecryptionError: On malformed content, wrong keys or tampering
    """
    ciphertext, sep, iv = content.partition("?iv=")
    if not sep:
        raise DecryptionError("Ciphertext is missing its iv")
    try:
        box = _box(secret, peer_pubkey)
        plaintext = box.decrypt(base64.b64decode(ciphertext), base64.b64decode(iv))
        return plaintext.decode('utf-8')
    except (CryptoError, KeyLoadError, binascii.Error, ValueError, TypeError) as e:
        raise DecryptionError(f"Decryption failed: {e}") from e
