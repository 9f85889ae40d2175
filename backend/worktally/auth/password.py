"""Password hashing (PBKDF2-SHA256, salted).

Stored format: ``pbkdf2_sha256$<iterations>$<salt hex>$<digest hex>``
"""

import hashlib
import hmac
import secrets

ITERATIONS = 390_000
_PREFIX = "pbkdf2_sha256"


def hash_password(password: str, iterations: int = ITERATIONS) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations)
    return f"{_PREFIX}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, hashed: str) -> bool:
    try:
        prefix, iterations, salt, expected = hashed.split("$")
        rounds = int(iterations)
    except (ValueError, AttributeError):
        return False
    if prefix != _PREFIX:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), rounds)
    return hmac.compare_digest(digest.hex(), expected)
