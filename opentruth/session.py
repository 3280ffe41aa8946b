"""
Decryption sessions.

A session is a short-lived Ed25519 key certified by the requester's wallet.
The wallet signs a human-readable challenge naming the package, the TTL,
the creation time and the session public key; from then on the session key
signs each key-share request, so the wallet is prompted once per session
rather than once per key server.
"""

import hashlib
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from nacl.signing import SigningKey

from .certificate import SignatureScheme, is_valid_address
from .errors import InvalidSessionError, SessionExpiredError
from .signing import derive_address, parse_scheme, verify_signature

DEFAULT_TTL_MIN = 30

Clock = Callable[[], float]

_REQUEST_DOMAIN = b"opentruth.key-request.v1"


def session_message(package_id: str, ttl_min: int, creation_time_ms: int, session_public_key: bytes) -> bytes:
    """The challenge the wallet signs to certify a session key."""
    created = time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime(creation_time_ms / 1000))
    return (
        f"Accessing keys of package {package_id} for {ttl_min} mins from {created}, "
        f"session key {session_public_key.hex()}"
    ).encode('utf-8')


def request_message(key_id: str, authorization_token: bytes) -> bytes:
    """What the session key signs for one key-share request."""
    return _REQUEST_DOMAIN + key_id.encode('ascii') + hashlib.sha256(authorization_token).digest()


@dataclass(frozen=True)
class SessionProof:
    """Everything a key server needs to check a request came from `address`."""
    address: str
    package_id: str
    creation_time_ms: int
    ttl_min: int
    session_public_key: bytes
    wallet_scheme: SignatureScheme
    wallet_public_key: bytes
    wallet_signature: bytes
    request_signature: bytes

    @property
    def expires_at_ms(self) -> int:
        return self.creation_time_ms + self.ttl_min * 60_000


class SessionKey:
    """
    Ephemeral session bound to a requester identity.

    Usage:
        session = SessionKey.create(address, package_id)
        signature = wallet.sign(session.personal_message())
        session.set_personal_message_signature(signature, wallet.public_key, wallet.scheme)
        proof = session.build_proof(key_id, token)
    """

    def __init__(self, address: str, package_id: str, ttl_min: int = DEFAULT_TTL_MIN,
                 clock: Clock = time.time):
        if not is_valid_address(address):
            raise InvalidSessionError(f"Invalid session address: {address!r}")
        if ttl_min < 1:
            raise ValueError("Session TTL must be at least one minute")
        self.address = address.lower()
        self.package_id = package_id
        self.ttl_min = ttl_min
        self._clock = clock
        self.creation_time_ms = int(clock() * 1000)
        self._session_key = SigningKey.generate()
        self._wallet_scheme: Optional[SignatureScheme] = None
        self._wallet_public_key: Optional[bytes] = None
        self._wallet_signature: Optional[bytes] = None

    @classmethod
    def create(cls, address: str, package_id: str, ttl_min: int = DEFAULT_TTL_MIN,
               clock: Clock = time.time) -> 'SessionKey':
        return cls(address, package_id, ttl_min=ttl_min, clock=clock)

    @property
    def session_public_key(self) -> bytes:
        return bytes(self._session_key.verify_key)

    @property
    def is_certified(self) -> bool:
        return self._wallet_signature is not None

    def personal_message(self) -> bytes:
        return session_message(self.package_id, self.ttl_min, self.creation_time_ms, self.session_public_key)

    def set_personal_message_signature(self, signature: bytes, public_key: bytes,
                                       scheme: Union[SignatureScheme, str]) -> None:
        """
        Attach the wallet's signature over personal_message().

        Raises:
            InvalidSessionError: if the signature does not verify or the key
                does not belong to the session address
        """
        scheme = parse_scheme(scheme)
        if not verify_signature(scheme, self.personal_message(), signature, public_key):
            raise InvalidSessionError("Wallet signature over session message does not verify")
        if derive_address(scheme, public_key) != self.address:
            raise InvalidSessionError("Wallet key does not belong to the session address")
        self._wallet_scheme = scheme
        self._wallet_public_key = bytes(public_key)
        self._wallet_signature = bytes(signature)

    def expires_at_ms(self) -> int:
        return self.creation_time_ms + self.ttl_min * 60_000

    def is_expired(self) -> bool:
        return int(self._clock() * 1000) >= self.expires_at_ms()

    def build_proof(self, key_id: str, authorization_token: bytes) -> SessionProof:
        """
        Sign one key-share request with the session key.

        Raises:
            InvalidSessionError: if the wallet has not certified the session
            SessionExpiredError: if the TTL has elapsed
        """
        if not self.is_certified:
            raise InvalidSessionError("Session key has not been signed by the wallet")
        if self.is_expired():
            raise SessionExpiredError(f"Session for {self.address} expired")
        return SessionProof(
            address=self.address,
            package_id=self.package_id,
            creation_time_ms=self.creation_time_ms,
            ttl_min=self.ttl_min,
            session_public_key=self.session_public_key,
            wallet_scheme=self._wallet_scheme,
            wallet_public_key=self._wallet_public_key,
            wallet_signature=self._wallet_signature,
            request_signature=self._session_key.sign(request_message(key_id, authorization_token)).signature,
        )


def verify_session_proof(proof: SessionProof, key_id: str, authorization_token: bytes,
                         now_ms: Optional[int] = None) -> None:
    """
    Server-side session check.

    Raises:
        SessionExpiredError: if the session is past its TTL at `now_ms`
        InvalidSessionError: if either signature fails or the wallet key
            does not derive to the session address
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if now_ms >= proof.expires_at_ms:
        raise SessionExpiredError(f"Session for {proof.address} expired")
    if now_ms + 60_000 < proof.creation_time_ms:
        raise InvalidSessionError("Session creation time is in the future")

    challenge = session_message(proof.package_id, proof.ttl_min, proof.creation_time_ms, proof.session_public_key)
    if not verify_signature(proof.wallet_scheme, challenge, proof.wallet_signature, proof.wallet_public_key):
        raise InvalidSessionError("Wallet signature over session message does not verify")
    if derive_address(proof.wallet_scheme, proof.wallet_public_key) != proof.address.lower():
        raise InvalidSessionError("Wallet key does not belong to the session address")
    if not verify_signature(SignatureScheme.ED25519, request_message(key_id, authorization_token),
                            proof.request_signature, proof.session_public_key):
        raise InvalidSessionError("Session signature over key request does not verify")
