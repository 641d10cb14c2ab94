"""
Credential hashing and verification.

Passwords and transaction PINs are stored as salted scrypt digests encoded
as ``scrypt$<cost>$<salt>$<hex digest>``.
"""

import hashlib
import hmac
import secrets
from typing import Optional


SCRYPT_COST = 16384
SCRYPT_BLOCK_SIZE = 8
SCRYPT_PARALLELISM = 1


def _generate_salt() -> str:
    """Generate random salt for hashing"""
    return secrets.token_hex(16)


def _scrypt(secret: str, salt: str, cost: int) -> str:
    return hashlib.scrypt(
        secret.encode(),
        salt=salt.encode(),
        n=cost, r=SCRYPT_BLOCK_SIZE, p=SCRYPT_PARALLELISM
    ).hex()


def hash_secret(secret: str) -> str:
    """Hash a password or PIN with a fresh salt"""
    salt = _generate_salt()
    return f"scrypt${SCRYPT_COST}${salt}${_scrypt(secret, salt, SCRYPT_COST)}"


def verify_secret(secret: Optional[str], stored_hash: Optional[str]) -> bool:
    """
    Check a candidate secret against a stored hash.

    Returns False for a mismatch and for a missing or malformed stored hash;
    never raises.
    """
    if not secret or not stored_hash:
        return False
    try:
        scheme, cost, salt, expected = stored_hash.split("$")
        if scheme != "scrypt":
            return False
        actual = _scrypt(secret, salt, int(cost))
    except (ValueError, MemoryError):
        return False
    return hmac.compare_digest(actual, expected)


def generate_passcode(digits: int = 4) -> str:
    """Numeric one-time passcode"""
    return "".join(secrets.choice("0123456789") for _ in range(digits))
