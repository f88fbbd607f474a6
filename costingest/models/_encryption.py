"""
Lazy encryption key resolver for ORM column definitions.

StringEncryptedType accepts a callable for the `key` parameter, evaluated at
encrypt/decrypt time rather than at import time, so models import without
ENCRYPTION_KEY being set and the failure surfaces at first use.
"""

from typing import Optional

_cached_key: Optional[str] = None


def get_encryption_key() -> str:
    """Resolve the encryption key from settings, cached after the first call."""
    global _cached_key
    if _cached_key is not None:
        return _cached_key

    from costingest.shared.core.config import get_settings

    key = get_settings().ENCRYPTION_KEY
    if not key:
        raise RuntimeError(
            "ENCRYPTION_KEY not set. Cannot encrypt or decrypt stored provider credentials."
        )
    _cached_key = key
    return _cached_key
