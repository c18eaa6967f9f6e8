"""
Provider credential encryption.

Keys are stored in `api_providers.api_key_encrypted` in the OpenSSL "Salted__"
format produced by CryptoJS passphrase mode:

  base64( b"Salted__" + salt[8] + AES-256-CBC(PKCS7(plaintext)) )

with key and IV derived from (passphrase, salt) by EVP_BytesToKey over MD5.
The passphrase is the first 32 characters of the service-role secret, so rows
written by the admin dashboard decrypt here unchanged.
"""

import base64
import hashlib
import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import ProviderConfigurationError

logger = logging.getLogger(__name__)

SALT_MAGIC = b"Salted__"
KEY_LEN = 32
IV_LEN = 16
PASSPHRASE_LEN = 32


def passphrase_from_secret(secret: str) -> str:
    return secret[:PASSPHRASE_LEN]


def _evp_bytes_to_key(passphrase: bytes, salt: bytes) -> tuple[bytes, bytes]:
    derived = b""
    block = b""
    while len(derived) < KEY_LEN + IV_LEN:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:KEY_LEN], derived[KEY_LEN:KEY_LEN + IV_LEN]


def encrypt_api_key(api_key: str, secret: str, salt: bytes | None = None) -> str:
    """Encrypt a plaintext key. `salt` is only passed by tests that need fixed output."""
    if not secret:
        raise ProviderConfigurationError("Credential encryption secret is not configured")
    salt = salt or os.urandom(8)
    key, iv = _evp_bytes_to_key(passphrase_from_secret(secret).encode("utf-8"), salt)

    padder = padding.PKCS7(128).padder()
    padded = padder.update(api_key.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return base64.b64encode(SALT_MAGIC + salt + ciphertext).decode("ascii")


def decrypt_api_key(encrypted: str, secret: str) -> str:
    """
    Decrypt a stored key.

    Raises:
        ProviderConfigurationError: the blob is not in the salted format or
            does not decrypt with the configured secret. The message never
            includes the blob or the secret.
    """
    if not secret:
        raise ProviderConfigurationError("Credential encryption secret is not configured")
    try:
        raw = base64.b64decode(encrypted, validate=True)
    except ValueError:
        raise ProviderConfigurationError("Stored credential is not valid base64")

    if len(raw) < 32 or not raw.startswith(SALT_MAGIC):
        raise ProviderConfigurationError("Stored credential is not in salted format")

    salt, ciphertext = raw[8:16], raw[16:]
    if len(ciphertext) % 16:
        raise ProviderConfigurationError("Stored credential has a truncated ciphertext")

    key, iv = _evp_bytes_to_key(passphrase_from_secret(secret).encode("utf-8"), salt)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    try:
        unpadder = padding.PKCS7(128).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except ValueError:
        raise ProviderConfigurationError("Stored credential could not be decrypted with the configured secret")


def mask_api_key(api_key: str | None) -> str:
    """Safe-to-log form of a key: first 4 and last 4 characters."""
    if not api_key:
        return "MISSING"
    if len(api_key) <= 8:
        return "****"
    return f"{api_key[:4]}...{api_key[-4:]}"
