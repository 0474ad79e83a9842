"""24-character hex ids for internal rows (ObjectId layout).

4 bytes timestamp, 3 bytes machine, 2 bytes process, 3 bytes counter.
"""

import os
import re
import secrets
import threading
import time
import uuid

ID_LENGTH = 24
_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")

_MACHINE_ID = uuid.getnode().to_bytes(6, "big")[:3]
_counter_lock = threading.Lock()
_counter = secrets.randbelow(0xFFFFFF)


def _process_id() -> bytes:
    pid = os.getpid()
    if 0 < pid <= 0xFFFF:
        return pid.to_bytes(2, "big")
    return secrets.token_bytes(2)


def generate_id() -> str:
    """Generate a new lowercase 24-hex id."""
    global _counter
    with _counter_lock:
        _counter = (_counter + 1) & 0xFFFFFF
        counter = _counter
    raw = (
        int(time.time()).to_bytes(4, "big")
        + _MACHINE_ID
        + _process_id()
        + counter.to_bytes(3, "big")
    )
    return raw.hex()


def is_valid_id(value: str) -> bool:
    return bool(value) and len(value) == ID_LENGTH and bool(_ID_PATTERN.match(value))
