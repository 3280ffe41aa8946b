"""
OpenTruth error taxonomy.

Three families of failure:
- Input errors: malformed certificates, ciphertexts, proof indices, empty leaf sets.
- Scheme errors: a signature scheme outside the supported set.
- External-dependency errors: blob store, signer, key servers, sessions.

Cryptographic mismatches (hash, signature, Merkle proof) are never raised;
they are reported as boolean results or verification reports.
"""

from typing import Optional


class OpenTruthError(Exception):
    """Base class for every error raised by the protocol."""


# ============================================================
# Input errors
# ============================================================

class CanonicalizationError(OpenTruthError, ValueError):
    """Raised when a value has no canonical JSON encoding."""


class CertificateFormatError(OpenTruthError, ValueError):
    """Raised when a certificate cannot be decoded into the typed model."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class EmptyInputError(OpenTruthError, ValueError):
    """Raised when a Merkle tree is requested over zero leaves."""


class IndexOutOfRangeError(OpenTruthError, IndexError):
    """Raised when a proof is requested for a leaf index outside the tree."""

    def __init__(self, index: int, leaf_count: int):
        self.index = index
        self.leaf_count = leaf_count
        super().__init__(f"Leaf index {index} out of range for {leaf_count} leaves")


class CiphertextFormatError(OpenTruthError, ValueError):
    """Raised when an encrypted object header cannot be parsed."""


# ============================================================
# Scheme errors
# ============================================================

class UnsupportedSchemeError(OpenTruthError):
    """Raised when a signature scheme is not ED25519 or SECP256K1."""

    def __init__(self, scheme: object):
        self.scheme = scheme
        super().__init__(f"Unsupported signature scheme: {scheme!r}")


# ============================================================
# External-dependency errors
# ============================================================

class NotFoundError(OpenTruthError, KeyError):
    """Raised by a blob store when an object is absent or expired."""

    def __init__(self, locator: str):
        self.locator = locator
        super().__init__(locator)

    def __str__(self) -> str:
        return f"Blob not found: {self.locator}"


class SignerError(OpenTruthError):
    """Raised when the external signer is unavailable or refuses to sign."""


class KeyServerError(OpenTruthError):
    """Raised when a key server fails for a reason other than policy."""

    def __init__(self, server_id: str, message: str):
        self.server_id = server_id
        super().__init__(f"{server_id}: {message}")


class AccessDeniedError(OpenTruthError):
    """Raised when key servers reject the requester under the access policy."""

    def __init__(self, message: str, server_id: Optional[str] = None):
        self.server_id = server_id
        super().__init__(message)


class InvalidSessionError(OpenTruthError):
    """Raised when a session key is not signed by the identity it names."""


class SessionExpiredError(OpenTruthError):
    """Raised when a session's TTL elapses before decryption completes."""


class QuorumNotReachedError(OpenTruthError):
    """Raised when the released shares, counted by server weight, fall short of `threshold`."""

    def __init__(self, threshold: int, successes: int, denials: int = 0, failures: int = 0):
        self.threshold = threshold
        self.successes = successes
        self.denials = denials
        self.failures = failures
        super().__init__(
            f"Quorum not reached: {successes}/{threshold} shares "
            f"({denials} denied, {failures} failed)"
        )


class DecryptionError(OpenTruthError):
    """Raised when recovered key material does not open the ciphertext."""
