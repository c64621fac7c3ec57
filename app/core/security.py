import hashlib
import secrets


def generate_service_key() -> tuple[str, str]:
    """Generate a caller service key and its SHA-256 hash.

    Returns:
        (raw_key, key_hash). raw_key is handed to the caller once, key_hash is stored.
    """
    raw_key = f"sk-{secrets.token_hex(24)}"
    return raw_key, hash_service_key(raw_key)


def hash_service_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()
