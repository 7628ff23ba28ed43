"""
Identifiers for every ledger entity

Budget codes, allocations, chains, events and commands all take a UUIDv7:
the leading 48 bits are the creation time in milliseconds, so ids sort in
the order they were issued and an allocation list ordered by id reads
oldest first.
"""

import secrets
import time
import uuid

_TIMESTAMP_MASK = 0xFFFF_FFFF_FFFF


def generate_id() -> str:
    """
    Issue a new time-ordered id

    Layout (RFC 9562 version 7): 48-bit unix ms | version 7 | 12 random
    bits | variant 0b10 | 62 random bits.

    Returns:
        Canonical 36-character UUID string
    """
    timestamp_ms = time.time_ns() // 1_000_000
    value = (timestamp_ms & _TIMESTAMP_MASK) << 80
    value |= 0x7 << 76 | secrets.randbits(12) << 64
    value |= 0b10 << 62 | secrets.randbits(62)
    return str(uuid.UUID(int=value))
