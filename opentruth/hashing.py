"""
OpenTruth Hashing

Content-addressing digests. All digests are SHA-256 with an explicit
algorithm tag; the textual form is "sha256:" followed by 64 lowercase hex
characters (71 characters in total).
"""

import hashlib
import hmac
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Sequence, Union

from .canonicalization import canonicalize

SHA256 = "sha256"
DIGEST_SIZE = 32
DIGEST_TEXT_LENGTH = len(SHA256) + 1 + DIGEST_SIZE * 2

DIGEST_PATTERN = re.compile(r'^sha256:[0-9a-f]{64}$')
ROOT_PATTERN = re.compile(r'^0x[0-9a-f]{64}$')

_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class Digest:
    """
    A fixed-length digest tagged with its algorithm.

    Equality is byte-exact on (algorithm, value).
    """
    algorithm: str
    value: bytes

    def __post_init__(self):
        if self.algorithm != SHA256:
            raise ValueError(f"Unsupported digest algorithm: {self.algorithm}")
        if not isinstance(self.value, bytes) or len(self.value) != DIGEST_SIZE:
            raise ValueError(f"Digest value must be {DIGEST_SIZE} bytes")

    @classmethod
    def parse(cls, text: str) -> 'Digest':
        """Parse the "sha256:<hex>" textual form. Strict: lowercase only."""
        if not isinstance(text, str) or not DIGEST_PATTERN.match(text):
            raise ValueError(f"Invalid digest text: {text!r}")
        return cls(SHA256, bytes.fromhex(text[len(SHA256) + 1:]))

    @classmethod
    def from_root_hex(cls, text: str) -> 'Digest':
        """Parse the "0x<hex>" textual form used for Merkle roots."""
        if not isinstance(text, str) or not ROOT_PATTERN.match(text):
            raise ValueError(f"Invalid root text: {text!r}")
        return cls(SHA256, bytes.fromhex(text[2:]))

    @classmethod
    def coerce(cls, value: Union['Digest', bytes, str]) -> 'Digest':
        """Accept a Digest, raw 32 bytes, "sha256:<hex>" or "0x<hex>"."""
        if isinstance(value, Digest):
            return value
        if isinstance(value, (bytes, bytearray)):
            return cls(SHA256, bytes(value))
        if isinstance(value, str):
            if value.startswith("0x"):
                return cls.from_root_hex(value)
            return cls.parse(value)
        raise ValueError(f"Cannot interpret {type(value)} as a digest")

    @property
    def hex(self) -> str:
        return self.value.hex()

    @property
    def root_hex(self) -> str:
        """Merkle root textual form: "0x" + lowercase hex."""
        return "0x" + self.value.hex()

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value.hex()}"


def digest(data: Union[bytes, str]) -> Digest:
    """
    Compute the SHA-256 digest of a byte sequence.

    Pure and total: the empty input has a digest like any other.
    Strings are hashed as their UTF-8 bytes.
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return Digest(SHA256, hashlib.sha256(data).digest())


def sha256_hash(data: Union[bytes, str]) -> str:
    """
    Compute SHA-256 hash in textual form.

    Returns:
        Hash string in format "sha256:abcdef..."
    """
    return str(digest(data))


def digest_composite(obj: Any) -> Digest:
    """
    Digest structured data through its canonical JSON encoding.

    digest_composite(x) == digest(canonicalize(x)); key insertion order of
    the in-memory object never influences the result.
    """
    return digest(canonicalize(obj))


def digest_file(path: Union[str, Path], chunk_size: int = _CHUNK_SIZE) -> Digest:
    """Stream a file through SHA-256. I/O errors propagate to the caller."""
    h = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            h.update(chunk)
    return Digest(SHA256, h.digest())


def digest_many(blobs: Sequence[bytes], max_workers: int = 4) -> List[Digest]:
    """
    Digest a batch of byte sequences on a bounded worker pool.

    Results are returned in input order, which matters for Merkle leaf order.
    """
    if max_workers <= 1 or len(blobs) <= 1:
        return [digest(b) for b in blobs]
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(digest, blobs))


def digest_files(paths: Iterable[Union[str, Path]], max_workers: int = 4) -> List[Digest]:
    """Digest files concurrently, preserving the caller's ordering."""
    paths = list(paths)
    if max_workers <= 1 or len(paths) <= 1:
        return [digest_file(p) for p in paths]
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(digest_file, paths))


def verify_hash(declared_hash: Union[Digest, str], data: Union[bytes, str]) -> bool:
    """
    Verify that data matches a declared hash.

    Verifiers MUST recompute hashes from source data. Comparison is
    byte-exact; a malformed declaration simply fails.
    """
    try:
        expected = Digest.coerce(declared_hash)
    except ValueError:
        return False
    return hmac.compare_digest(digest(data).value, expected.value)
