"""Credential vault — symmetric encryption of tenant secrets held in memory.

The key is derived once (scrypt) from the configured base secret and a fixed
salt. Every seal draws a fresh IV, so sealing the same plaintext twice never
yields the same ciphertext. Wire format: ``<iv hex>:<ciphertext hex>``.
"""

from __future__ import annotations

import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

log = logging.getLogger(__name__)

_KEY_BYTES = 32
_IV_BYTES = 16
_SEPARATOR = ":"


class CryptoError(Exception):
    """Raised when a ciphertext cannot be opened."""


def _derive_key(secret: str, salt: str) -> bytes:
    # Same cost parameters as Node's scryptSync defaults (N=16384, r=8, p=1)
    kdf = Scrypt(salt=salt.encode("utf-8"), length=_KEY_BYTES, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


class CredentialVault:
    """Seal/open tenant secrets with AES-256-CBC under a process-wide key."""

    def __init__(self, secret: str, salt: str = "salt"):
        if not secret:
            raise ValueError("Vault secret must not be empty")
        self._key = _derive_key(secret, salt)

    def __repr__(self) -> str:
        return "CredentialVault(<sealed>)"

    def seal(self, plaintext: str) -> str:
        iv = os.urandom(_IV_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return iv.hex() + _SEPARATOR + ciphertext.hex()

    def open(self, sealed: str) -> str:
        """Decrypt a value produced by seal(). Raises CryptoError if malformed."""
        if not isinstance(sealed, str) or _SEPARATOR not in sealed:
            raise CryptoError("ciphertext is missing the iv separator")
        iv_hex, _, body_hex = sealed.partition(_SEPARATOR)
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(body_hex)
        except ValueError as e:
            raise CryptoError("ciphertext is not valid hex") from e
        if len(iv) != _IV_BYTES:
            raise CryptoError(f"iv must be {_IV_BYTES} bytes, got {len(iv)}")
        if not ciphertext or len(ciphertext) % (algorithms.AES.block_size // 8):
            raise CryptoError("ciphertext length is not a whole number of blocks")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            data = unpadder.update(padded) + unpadder.finalize()
            return data.decode("utf-8")
        except ValueError as e:
            # Wrong key or tampered ciphertext; UnicodeDecodeError is a ValueError
            raise CryptoError("ciphertext could not be decrypted") from e
