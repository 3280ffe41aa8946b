"""
Shamir secret sharing over GF(2^521 - 1).

Used by the reference threshold cipher to split a 32-byte data key into
shares held by independent key servers. Any `threshold` distinct shares
recover the key; fewer reveal nothing about it.
"""

import secrets
from dataclasses import dataclass
from typing import List, Sequence

# Mersenne prime, comfortably larger than any 32-byte secret.
PRIME = 2 ** 521 - 1
SHARE_VALUE_SIZE = 66
SECRET_SIZE = 32


@dataclass(frozen=True)
class Share:
    """A point (index, value) on the sharing polynomial. index >= 1."""
    index: int
    value: int

    def to_bytes(self) -> bytes:
        return self.index.to_bytes(1, "big") + self.value.to_bytes(SHARE_VALUE_SIZE, "big")

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'Share':
        if len(raw) != 1 + SHARE_VALUE_SIZE:
            raise ValueError("Share must be 67 bytes")
        index = raw[0]
        value = int.from_bytes(raw[1:], "big")
        if index == 0 or value >= PRIME:
            raise ValueError("Malformed share")
        return cls(index=index, value=value)


def _eval_poly(coefficients: Sequence[int], x: int) -> int:
    result = 0
    for coefficient in reversed(coefficients):
        result = (result * x + coefficient) % PRIME
    return result


def split_secret(secret: bytes, threshold: int, share_count: int) -> List[Share]:
    """
    Split `secret` into `share_count` shares, any `threshold` of which recover it.

    Raises:
        ValueError: if threshold is not in 1..share_count or share_count > 255
    """
    if len(secret) != SECRET_SIZE:
        raise ValueError(f"Secret must be {SECRET_SIZE} bytes")
    if not 1 <= threshold <= share_count:
        raise ValueError(f"Threshold must be between 1 and {share_count}")
    if share_count > 255:
        raise ValueError("At most 255 shares are supported")

    coefficients = [int.from_bytes(secret, "big")]
    coefficients.extend(secrets.randbelow(PRIME) for _ in range(threshold - 1))
    return [Share(index=i, value=_eval_poly(coefficients, i)) for i in range(1, share_count + 1)]


def combine_shares(shares: Sequence[Share]) -> bytes:
    """
    Lagrange interpolation at x = 0.

    The caller supplies at least `threshold` shares; with fewer, the result
    is an unrelated value rather than an error.

    Raises:
        ValueError: if no shares are given or indices repeat
    """
    if not shares:
        raise ValueError("No shares to combine")
    indices = [s.index for s in shares]
    if len(set(indices)) != len(indices):
        raise ValueError("Duplicate share indices")

    secret = 0
    for i, share in enumerate(shares):
        numerator, denominator = 1, 1
        for j, other in enumerate(shares):
            if i == j:
                continue
            numerator = (numerator * -other.index) % PRIME
            denominator = (denominator * (share.index - other.index)) % PRIME
        secret = (secret + share.value * numerator * pow(denominator, -1, PRIME)) % PRIME

    if secret >= 1 << (8 * SECRET_SIZE):
        raise ValueError("Shares do not reconstruct a valid secret")
    return secret.to_bytes(SECRET_SIZE, "big")


def pack_shares(shares: Sequence[Share]) -> bytes:
    """Concatenate shares held by one server."""
    return b"".join(s.to_bytes() for s in shares)


def unpack_shares(raw: bytes) -> List[Share]:
    """
    Inverse of pack_shares.

    Raises:
        ValueError: if `raw` is empty or not a whole number of shares
    """
    size = 1 + SHARE_VALUE_SIZE
    if not raw or len(raw) % size:
        raise ValueError(f"Packed shares must be a non-empty multiple of {size} bytes")
    return [Share.from_bytes(raw[i:i + size]) for i in range(0, len(raw), size)]
