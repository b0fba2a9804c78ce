"""Short time-ordered identifiers for IPC records and requests."""

import secrets
import string
import time

_ALPHABET = string.ascii_lowercase + string.digits


def _random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_id(prefix: str = "") -> str:
    """Return ``<prefix>-<epoch ms>-<6 random chars>`` (prefix optional)."""
    stamp = f"{int(time.time() * 1000)}-{_random_suffix()}"
    if not prefix:
        return stamp
    return f"{prefix}-{stamp}"
