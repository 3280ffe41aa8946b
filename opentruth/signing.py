"""
OpenTruth Signature Protocol

Signs the canonical certificate bytes through an external signer and
verifies (signature, public key) pairs against a certificate and the
identity it claims as author.

The protocol never generates, stores or sees the private key used for a
certificate. It only talks to a `Signer`, which may be a wallet callback.
The local `Ed25519Signer` and `Secp256k1Signer` exist for tooling and tests.

Schemes:
- ED25519:   32-byte public key, 64-byte signature over the raw message
- SECP256K1: 33-byte compressed public key, 64-byte compact r||s ECDSA
             signature over SHA-256(message), low-s form required

Identity: address = "0x" + hex(BLAKE2b-256(flag || public_key)),
flag 0x00 for ED25519 and 0x01 for SECP256K1.
"""

import base64
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from .certificate import (
    Certificate,
    CertificateLike,
    SignatureProof,
    SignatureScheme,
    canonicalize_certificate,
)
from .errors import CertificateFormatError, SignerError, UnsupportedSchemeError

logger = logging.getLogger(__name__)

SCHEME_FLAGS = {
    SignatureScheme.ED25519: 0x00,
    SignatureScheme.SECP256K1: 0x01,
}

PUBLIC_KEY_LENGTHS = {
    SignatureScheme.ED25519: 32,
    SignatureScheme.SECP256K1: 33,
}

SIGNATURE_LENGTH = 64

# secp256k1 group order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def parse_scheme(value: Union[SignatureScheme, str]) -> SignatureScheme:
    """
    Resolve a scheme tag.

    Raises:
        UnsupportedSchemeError: if the tag is not in the supported set
    """
    if isinstance(value, SignatureScheme):
        return value
    try:
        return SignatureScheme(value)
    except ValueError:
        raise UnsupportedSchemeError(value)


def derive_address(scheme: Union[SignatureScheme, str], public_key: bytes) -> str:
    """Identity bound to a public key."""
    scheme = parse_scheme(scheme)
    if len(public_key) != PUBLIC_KEY_LENGTHS[scheme]:
        raise ValueError(f"{scheme.value} public key must be {PUBLIC_KEY_LENGTHS[scheme]} bytes")
    h = hashlib.blake2b(bytes([SCHEME_FLAGS[scheme]]) + public_key, digest_size=32)
    return "0x" + h.hexdigest()


# ============================================================
# Signers
# ============================================================

class Signer(ABC):
    """Abstract interface for an external signer (a wallet)."""

    @property
    @abstractmethod
    def scheme(self) -> SignatureScheme:
        pass

    @property
    @abstractmethod
    def public_key(self) -> bytes:
        pass

    @abstractmethod
    def sign(self, message: bytes) -> bytes:
        """
        Sign an opaque message.

        Called with canonical certificate bytes or a session challenge,
        never with file content.
        """
        pass

    @property
    def address(self) -> str:
        return derive_address(self.scheme, self.public_key)


class Ed25519Signer(Signer):
    """Local Ed25519 signer backed by PyNaCl."""

    def __init__(self, signing_key: Optional[bytes] = None):
        self._sk = SigningKey(signing_key) if signing_key is not None else SigningKey.generate()

    @classmethod
    def from_seed(cls, seed: bytes) -> 'Ed25519Signer':
        return cls(seed)

    @property
    def scheme(self) -> SignatureScheme:
        return SignatureScheme.ED25519

    @property
    def public_key(self) -> bytes:
        return bytes(self._sk.verify_key)

    def private_bytes(self) -> bytes:
        return bytes(self._sk)

    def sign(self, message: bytes) -> bytes:
        return self._sk.sign(message).signature


class Secp256k1Signer(Signer):
    """Local secp256k1 ECDSA signer backed by `cryptography`."""

    def __init__(self, private_key: Optional[bytes] = None):
        if private_key is None:
            self._sk = ec.generate_private_key(ec.SECP256K1())
        else:
            self._sk = ec.derive_private_key(int.from_bytes(private_key, "big"), ec.SECP256K1())

    @property
    def scheme(self) -> SignatureScheme:
        return SignatureScheme.SECP256K1

    @property
    def public_key(self) -> bytes:
        return self._sk.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.CompressedPoint,
        )

    def private_bytes(self) -> bytes:
        return self._sk.private_numbers().private_value.to_bytes(32, "big")

    def sign(self, message: bytes) -> bytes:
        r, s = decode_dss_signature(self._sk.sign(message, ec.ECDSA(hashes.SHA256())))
        if s > SECP256K1_N // 2:
            s = SECP256K1_N - s
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")


class CallbackSigner(Signer):
    """
    Adapter for an external wallet.

    `callback(message) -> signature` is invoked for every signature; any
    failure it raises is reported as SignerError.
    """

    def __init__(self, scheme: Union[SignatureScheme, str], public_key: bytes,
                 callback: Callable[[bytes], bytes]):
        self._scheme = parse_scheme(scheme)
        self._public_key = bytes(public_key)
        self._callback = callback

    @property
    def scheme(self) -> SignatureScheme:
        return self._scheme

    @property
    def public_key(self) -> bytes:
        return self._public_key

    def sign(self, message: bytes) -> bytes:
        try:
            signature = self._callback(message)
        except SignerError:
            raise
        except Exception as e:
            raise SignerError(f"External signer failed: {e}") from e
        if not isinstance(signature, (bytes, bytearray)):
            raise SignerError("External signer returned a non-bytes signature")
        return bytes(signature)


def generate_signer(scheme: Union[SignatureScheme, str] = SignatureScheme.ED25519) -> Signer:
    """Generate a fresh local signer."""
    scheme = parse_scheme(scheme)
    if scheme == SignatureScheme.SECP256K1:
        return Secp256k1Signer()
    return Ed25519Signer()


def save_signer(signer: Union[Ed25519Signer, Secp256k1Signer], path: str) -> None:
    """Write a local signer's key to a JSON key file."""
    data = {
        "scheme": signer.scheme.value,
        "address": signer.address,
        "private_key_b64": base64.b64encode(signer.private_bytes()).decode('ascii'),
        "public_key_b64": base64.b64encode(signer.public_key).decode('ascii'),
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def load_signer(path: str) -> Signer:
    """Load a local signer from a JSON key file written by save_signer."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    scheme = parse_scheme(raw["scheme"])
    private_key = base64.b64decode(raw["private_key_b64"])
    if scheme == SignatureScheme.SECP256K1:
        return Secp256k1Signer(private_key)
    return Ed25519Signer(private_key)


# ============================================================
# Verification primitives
# ============================================================

def verify_signature(
    scheme: Union[SignatureScheme, str],
    message: bytes,
    signature: bytes,
    public_key: bytes,
) -> bool:
    """
    Scheme-specific signature verification.

    Returns False for any mismatch or malformed key/signature.

    Raises:
        UnsupportedSchemeError: if `scheme` is not supported
    """
    scheme = parse_scheme(scheme)
    if not isinstance(signature, (bytes, bytearray)) or len(signature) != SIGNATURE_LENGTH:
        return False
    if not isinstance(public_key, (bytes, bytearray)) or len(public_key) != PUBLIC_KEY_LENGTHS[scheme]:
        return False
    if scheme == SignatureScheme.ED25519:
        return _verify_ed25519(message, bytes(signature), bytes(public_key))
    return _verify_secp256k1(message, bytes(signature), bytes(public_key))


def _verify_ed25519(message: bytes, signature: bytes, public_key: bytes) -> bool:
    try:
        VerifyKey(public_key).verify(message, signature)
        return True
    except (BadSignatureError, CryptoError, ValueError, TypeError):
        return False


def _verify_secp256k1(message: bytes, signature: bytes, public_key: bytes) -> bool:
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    if not (0 < r < SECP256K1_N) or not (0 < s <= SECP256K1_N // 2):
        return False
    try:
        key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
        key.verify(encode_dss_signature(r, s), message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def _infer_scheme(public_key: bytes) -> Optional[SignatureScheme]:
    for scheme, length in PUBLIC_KEY_LENGTHS.items():
        if len(public_key) == length:
            return scheme
    return None


# ============================================================
# Certificate signing
# ============================================================

def sign_certificate(base_cert: Certificate, signer: Signer) -> Tuple[bytes, bytes]:
    """
    Sign an unsigned certificate.

    Passes canonicalize_certificate(base_cert) to the signer and returns
    (signature, public_key).

    Raises:
        UnsupportedSchemeError: if the signer's scheme is not supported
        SignerError: if the external signer fails
        ValueError: if the certificate is already signed or the signer is
            not the certificate author
    """
    scheme = parse_scheme(signer.scheme)
    if base_cert.proofs is not None:
        raise ValueError("Certificate is already signed")
    public_key = bytes(signer.public_key)
    if derive_address(scheme, public_key) != base_cert.author.address.lower():
        raise ValueError("Signer identity does not match certificate author")

    message = canonicalize_certificate(base_cert)
    signature = signer.sign(message)
    logger.debug("Signed certificate payload of %d bytes with %s", len(message), scheme.value)
    return bytes(signature), public_key


def verify_certificate_signature(
    cert: CertificateLike,
    signature: bytes,
    public_key: bytes,
    scheme: Optional[Union[SignatureScheme, str]] = None,
) -> bool:
    """
    Verify a signature over a certificate.

    Two checks must both pass:
    1. The signature verifies over the canonical bytes of the certificate
       with proofs, storage and encryption stripped.
    2. The public key derives to the identity in cert.author.

    The scheme is taken from `scheme` if given, otherwise from the
    certificate's proof section, otherwise from the public key length.
    Never raises on untrusted certificate content.

    Raises:
        UnsupportedSchemeError: only if the caller passes an unsupported `scheme`
    """
    if scheme is not None:
        scheme = parse_scheme(scheme)
    try:
        certificate = cert if isinstance(cert, Certificate) else Certificate.from_dict(cert)
        message = canonicalize_certificate(certificate)
    except (CertificateFormatError, ValueError, TypeError):
        return False

    if not isinstance(public_key, (bytes, bytearray)) or not isinstance(signature, (bytes, bytearray)):
        return False
    public_key = bytes(public_key)

    if scheme is None:
        if certificate.proofs is not None:
            scheme = certificate.proofs.scheme
        else:
            scheme = _infer_scheme(public_key)
            if scheme is None:
                return False

    if not verify_signature(scheme, message, bytes(signature), public_key):
        return False
    return derive_address(scheme, public_key) == certificate.author.address.lower()


def verify_certificate(cert: CertificateLike) -> bool:
    """Verify a certificate against its own embedded proof section."""
    try:
        certificate = cert if isinstance(cert, Certificate) else Certificate.from_dict(cert)
    except (CertificateFormatError, ValueError, TypeError):
        return False
    if certificate.proofs is None:
        return False
    proof = certificate.proofs
    return verify_certificate_signature(certificate, proof.signature, proof.public_key, proof.scheme)


def build_signature_proof(scheme: Union[SignatureScheme, str], signature: bytes,
                          public_key: bytes) -> SignatureProof:
    """Proof section for a signature returned by sign_certificate."""
    return SignatureProof(scheme=parse_scheme(scheme), signature=bytes(signature),
                          public_key=bytes(public_key))
