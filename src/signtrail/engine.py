"""Integrity primitives: content hashing and access codes.

The registered hash of a signed file is the only thing that ties a file
found in the wild back to a signature record, so every comparison goes
through ``hmac.compare_digest``.
"""

import hashlib
import hmac
import secrets
from typing import Optional


class IntegrityEngine:
    """Stateless hashing and PIN helpers."""

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        """Compute SHA-256 hash of raw bytes.

        Args:
            data: Bytes to hash.

        Returns:
            Hex-encoded SHA-256 digest.
        """
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def hashes_match(stored: str, recalculated: str) -> bool:
        """Compare two hex digests in constant time."""
        return hmac.compare_digest(stored.lower(), recalculated.lower())

    # ------------------------------------------------------------------
    # Access codes
    # ------------------------------------------------------------------

    @staticmethod
    def generate_access_code(length: int = 6) -> str:
        """Random numeric PIN, zero-padded to ``length`` digits."""
        return "".join(secrets.choice("0123456789") for _ in range(length))

    @staticmethod
    def codes_match(stored: Optional[str], supplied: Optional[str]) -> bool:
        """True only when a code is set and the supplied one equals it.

        A record without an access code never matches anything.
        """
        if not stored or supplied is None:
            return False
        return hmac.compare_digest(stored.encode("utf-8"), supplied.encode("utf-8"))
