"""Password hashing with a per-password random salt."""

import hashlib
import hmac
import os

SEPARATOR = "."
SALT_BYTES = 16
KEY_BYTES = 64

# scrypt work factors; n * r * 128 bytes of memory per derivation (16 MiB)
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1


def _derive(password: str, salt: bytes) -> bytes:
    return hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        maxmem=64 * 1024 * 1024,
        dklen=KEY_BYTES,
    )


def hash_password(password: str) -> str:
    """Return ``hex(key).hex(salt)`` for a freshly salted scrypt derivation."""
    salt = os.urandom(SALT_BYTES)
    return f"{_derive(password, salt).hex()}{SEPARATOR}{salt.hex()}"


def verify_password(password: str, stored: str) -> bool:
    """Check ``password`` against a value produced by :func:`hash_password`.

    Raises ``ValueError`` when ``stored`` is not in the expected format; that
    indicates corrupted data rather than a wrong password.
    """
    key_hex, sep, salt_hex = stored.partition(SEPARATOR)
    if not sep or not key_hex or not salt_hex:
        raise ValueError("malformed password hash")
    expected = bytes.fromhex(key_hex)
    supplied = _derive(password, bytes.fromhex(salt_hex))
    return hmac.compare_digest(expected, supplied)
