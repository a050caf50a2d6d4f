"""Identity keys: external UUID strings <-> compact 16-byte storage keys.

The binary form swaps the time-high and time-low groups of the UUID so that
time-based (version 1) keys sort in creation order inside an index. The
transform is a pure byte permutation, so ``decode(encode(s))`` returns the
canonical lowercase form of ``s``.
"""

import re
import uuid

from tenancy.errors import InvalidIdentityKey

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

KEY_LENGTH = 16


def is_valid(external: object) -> bool:
    """True if ``external`` is a hyphenated UUID string."""
    return isinstance(external, str) and _UUID_RE.match(external) is not None


def encode(external: str) -> bytes:
    """Encode an external UUID string into its 16-byte storage key."""
    if not is_valid(external):
        raise InvalidIdentityKey(f"Invalid identity key: {external!r}")
    raw = uuid.UUID(external).bytes
    return raw[6:8] + raw[4:6] + raw[0:4] + raw[8:]


def decode(binary: bytes) -> str:
    """Decode a 16-byte storage key back into the external UUID string."""
    if len(binary) != KEY_LENGTH:
        raise InvalidIdentityKey(f"Storage key must be {KEY_LENGTH} bytes")
    raw = binary[4:8] + binary[2:4] + binary[0:2] + binary[8:]
    return str(uuid.UUID(bytes=raw))


def new_key() -> tuple[str, bytes]:
    """Generate a fresh time-based key as ``(external, binary)``."""
    external = str(uuid.uuid1())
    return external, encode(external)
