"""
Consistent hashing for bucket assignment.

Every replica computes the same bucket for the same (subject, key, salt)
without coordination, so rollout and experiment decisions agree across
processes and restarts.
"""

import hashlib

# First 8 bytes of the digest, masked to a non-negative 63-bit integer
_HASH_BYTES = 8
_HASH_MASK = 0x7FFF_FFFF_FFFF_FFFF


class AssignmentHasher:
    """
    Deterministic hash of (subject, key, salt).

    The salt is the flag or experiment id: two flags with the same key
    history but different ids bucket users independently.

    Usage:
        hasher = AssignmentHasher()
        bucket = hasher.hash_to_percentage("user-123", "new_checkout", str(flag.id))
        if bucket <= flag_config.rollout_percentage:
            ...
    """

    def hash(self, subject: str, key: str, salt: str) -> int:
        """Return a non-negative 63-bit integer."""
        digest = hashlib.sha256(f"{subject}:{key}:{salt}".encode("utf-8")).digest()
        return int.from_bytes(digest[:_HASH_BYTES], "big") & _HASH_MASK

    def hash_to_percentage(self, subject: str, key: str, salt: str) -> int:
        """Map the hash onto 0..100 inclusive."""
        return self.hash(subject, key, salt) % 101
