from __future__ import annotations

import os
import random
import string
import time
import uuid


def generate_uuid7() -> str:
    """
    Generate a UUIDv7 string (time-ordered).

    UUIDv7 layout per draft:
    - 48-bit Unix timestamp in milliseconds
    - 4-bit version (0b0111)
    - 74-bit randomness

    Used for ledger tables (audit log, field history) so that the primary key
    sorts in insertion order even when two rows share a timestamp.
    """
    ts_ms = int(time.time() * 1000)
    ts_bytes = ts_ms.to_bytes(6, "big", signed=False)
    rand_bytes = os.urandom(10)
    raw = bytearray(ts_bytes + rand_bytes)
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


def _random_block(length: int = 8) -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(random.choices(alphabet, k=length))


def generate_short_id(prefix: str = "ID") -> str:
    """
    Generate a short ID like 'MAN-1F2A9C3D' or 'ID-8K2L0P9Q'.

    SQLAlchemy calls column defaults with zero positional arguments,
    so this must work as `generate_short_id()`.
    """
    block = _random_block(8)
    if prefix:
        return f"{prefix}-{block}"
    return block
