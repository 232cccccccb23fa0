import hashlib
import secrets


def generate_token(nbytes: int = 32) -> str:
    """Generate a new random token.

    Uses `secrets.token_hex()` so the value is printable and safe to put in
    headers and cookies.

    Args:
        nbytes: Number of random bytes to use as input entropy.

    Returns:
        A hex string of ``2 * nbytes`` characters.
    """
    return secrets.token_hex(nbytes)


def hash_token(raw_token: str) -> str:
    """Hash a token using SHA256.

    Tokens are high-entropy random values, so an unsalted digest is enough
    to keep the raw value out of storage.

    Args:
        raw_token: The raw token to hash

    Returns:
        The SHA256 hex digest of the token
    """
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()

