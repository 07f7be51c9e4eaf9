import secrets
import time
import uuid


def uuid7() -> str:
    """Generate a time-ordered UUIDv7 string for document ids."""
    ms = time.time_ns() // 1_000_000

    value = (ms & 0xFFFFFFFFFFFF) << 80
    value |= 0x7 << 76
    value |= secrets.randbits(12) << 64
    value |= 0x2 << 62
    value |= secrets.randbits(62)

    return str(uuid.UUID(int=value))
