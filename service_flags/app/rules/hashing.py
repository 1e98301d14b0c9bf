"""
Deterministic hashing used for bucketing and name obfuscation.
"""

import base64
import hashlib
from enum import Enum
from typing import Dict


CONDITION_SEGMENT_COUNT = 10 * 1000
USER_BUCKET_COUNT = 1000

# The memo is cleared wholesale once it grows past this bound. Clearing only
# costs recomputation, so an LRU is not needed for correctness.
MAX_HASH_MEMO_SIZE = 100_000

_unit_hash_memo: Dict[str, int] = {}


class HashAlgorithm(str, Enum):
    """Algorithms accepted for client-facing name hashing."""
    NONE = "none"
    DJB2 = "djb2"
    SHA256 = "sha256"


def sha256_digest(value: str) -> bytes:
    return hashlib.sha256(value.encode("utf-8")).digest()


def compute_unit_hash(value: str) -> int:
    """Return the first 8 bytes of sha256(value) as an unsigned big-endian int."""
    cached = _unit_hash_memo.get(value)
    if cached is not None:
        return cached

    hashed = int.from_bytes(sha256_digest(value)[:8], byteorder="big", signed=False)

    if len(_unit_hash_memo) > MAX_HASH_MEMO_SIZE:
        _unit_hash_memo.clear()
    _unit_hash_memo[value] = hashed
    return hashed


def clear_hash_memo() -> None:
    _unit_hash_memo.clear()


def sha256_base64(value: str) -> str:
    return base64.b64encode(sha256_digest(value)).decode("ascii")


def hash_unit_id_for_id_list(unit_id) -> str:
    """Membership key for ID lists: truncated base64 sha256 of the unit id."""
    return sha256_base64(str(unit_id))[:8]


def djb2_hash(value: str) -> str:
    """32-bit djb2 over UTF-16 code units, printed as an unsigned integer."""
    encoded = value.encode("utf-16-le")
    hash_value = 0
    for i in range(0, len(encoded), 2):
        code_unit = encoded[i] | (encoded[i + 1] << 8)
        hash_value = ((hash_value << 5) - hash_value + code_unit) & 0xFFFFFFFF
    return str(hash_value)


def hash_name(value: str, algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> str:
    """Obfuscate a spec or gate name for client-facing payloads."""
    algorithm = HashAlgorithm(algorithm)
    if algorithm == HashAlgorithm.NONE:
        return value
    if algorithm == HashAlgorithm.DJB2:
        return djb2_hash(value)
    return sha256_base64(value)
