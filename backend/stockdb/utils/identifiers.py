from __future__ import annotations

import os
import time
import uuid


def generate_uuid7() -> str:
    """
    Generate a UUIDv7 string (time-ordered).

    Movements, allocations and consumptions use these so that id order
    follows creation order, which breaks ties between movements recorded
    within the same timestamp.
    """
    ts_ms = int(time.time() * 1000)
    ts_bytes = ts_ms.to_bytes(6, "big", signed=False)
    rand_bytes = os.urandom(10)
    raw = bytearray(ts_bytes + rand_bytes)
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


def movement_idempotency_key(reference_type: str, reference_id: str, item_id: str) -> str:
    """
    Stable dedup key for a ledger movement.

    Each part is length-prefixed, netstring style, so separators inside ids
    cannot make two different references collide:
    ("po_line", "X:Y", "Z") -> "7:po_line,3:X:Y,1:Z,".
    """
    return "".join(f"{len(part)}:{part}," for part in (reference_type, reference_id, item_id))
