"""
OpenTruth Threshold Encryption Protocol

Encryption:
    owner + nonce -> key id -> ThresholdCipher.seal -> ciphertext + metadata

Decryption is an interactive protocol, not an inverse function:
1. Parse the ciphertext header to recover the embedded key id
2. Establish a session bound to the requester (wallet-signed challenge, TTL)
3. Build the authorization token naming the requester as sender
4. Query every key server in parallel; stop once the shares, counted by
   server weight, reach `threshold`
5. Combine the shares and decrypt locally

The cipher itself is pluggable. `ShamirAesGcmCipher` is the reference
implementation: AES-256-GCM under a random data key that is split with
Shamir sharing and escrowed across the key servers with the access policy.
"""

import dataclasses
import json
import logging
import os
import struct
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError, as_completed
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .authorization import build_authorization_token
from .canonicalization import canonicalize
from .certificate import AccessPolicy, Certificate, attach_encryption, is_valid_address
from .config import ProtocolConfig
from .errors import (
    AccessDeniedError,
    CanonicalizationError,
    CiphertextFormatError,
    DecryptionError,
    KeyServerError,
    QuorumNotReachedError,
    SessionExpiredError,
)
from .keyservers import KeyServer, KeyShare
from .logging_config import AuditLogger, audit_log
from .session import SessionKey, SessionProof
from .sharing import combine_shares, pack_shares, split_secret, unpack_shares
from .signing import Signer

logger = logging.getLogger(__name__)

MAGIC = b"OTEO"
FORMAT_VERSION = 1
DEM_AES_256_GCM = "AES-256-GCM"
NONCE_SIZE = 12
KEY_ID_LENGTH = 2 + 2 * (32 + 8)

TransactionAuthorizer = Callable[[str], bytes]


# ============================================================
# Key identity
# ============================================================

def derive_identity(owner: str, nonce: int) -> str:
    """
    Key id for one encryption event: "0x" + owner(32 bytes) + nonce(u64 BE).

    Deterministic in (owner, nonce); the nonce must be unique per event.
    """
    if not is_valid_address(owner):
        raise ValueError(f"Invalid owner address: {owner!r}")
    if isinstance(nonce, bool) or not isinstance(nonce, int) or not 0 <= nonce < 2 ** 64:
        raise ValueError("Nonce must be an unsigned 64-bit integer")
    return "0x" + owner[2:].lower() + nonce.to_bytes(8, "big").hex()


def parse_identity(key_id: str) -> Tuple[str, int]:
    """Split a key id back into (owner, nonce)."""
    if not isinstance(key_id, str) or len(key_id) != KEY_ID_LENGTH or not key_id.startswith("0x"):
        raise ValueError(f"Invalid key id: {key_id!r}")
    try:
        raw = bytes.fromhex(key_id[2:])
    except ValueError:
        raise ValueError(f"Invalid key id: {key_id!r}")
    return "0x" + raw[:32].hex(), int.from_bytes(raw[32:], "big")


def new_nonce() -> int:
    """Nanosecond timestamp; unique per encryption event in practice."""
    return time.time_ns()


# ============================================================
# Encrypted object
# ============================================================

@dataclass(frozen=True)
class EncryptedObject:
    package_id: str
    key_id: str
    threshold: int
    servers: Tuple[str, ...]
    weights: Tuple[int, ...]
    nonce: bytes
    ciphertext: bytes
    version: int = FORMAT_VERSION
    dem: str = DEM_AES_256_GCM

    def header_bytes(self) -> bytes:
        """Canonical header, also the AEAD associated data."""
        return canonicalize({
            "version": self.version,
            "dem": self.dem,
            "packageId": self.package_id,
            "keyId": self.key_id,
            "threshold": self.threshold,
            "servers": list(self.servers),
            "weights": list(self.weights),
            "nonce": self.nonce.hex(),
        })

    def to_bytes(self) -> bytes:
        header = self.header_bytes()
        return MAGIC + struct.pack(">I", len(header)) + header + self.ciphertext


def parse_encrypted_object(data: bytes) -> EncryptedObject:
    """
    Parse ciphertext bytes produced by a ThresholdCipher.

    Raises:
        CiphertextFormatError: if the magic, header or fields are malformed
    """
    if not isinstance(data, (bytes, bytearray)) or len(data) < 8 or bytes(data[:4]) != MAGIC:
        raise CiphertextFormatError("Not an OpenTruth encrypted object")
    data = bytes(data)
    (header_len,) = struct.unpack(">I", data[4:8])
    if len(data) < 8 + header_len:
        raise CiphertextFormatError("Truncated header")
    try:
        header = json.loads(data[8:8 + header_len].decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CiphertextFormatError(f"Header is not JSON: {e}")
    if not isinstance(header, dict):
        raise CiphertextFormatError("Header must be an object")

    try:
        obj = EncryptedObject(
            version=header["version"],
            dem=header["dem"],
            package_id=header["packageId"],
            key_id=header["keyId"],
            threshold=header["threshold"],
            servers=tuple(header["servers"]),
            weights=tuple(header["weights"]),
            nonce=bytes.fromhex(header["nonce"]),
            ciphertext=data[8 + header_len:],
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CiphertextFormatError(f"Malformed header: {e}")

    if obj.version != FORMAT_VERSION:
        raise CiphertextFormatError(f"Unsupported format version: {obj.version!r}")
    if obj.dem != DEM_AES_256_GCM:
        raise CiphertextFormatError(f"Unsupported DEM: {obj.dem!r}")
    if not all(isinstance(s, str) for s in obj.servers) or len(set(obj.servers)) != len(obj.servers):
        raise CiphertextFormatError("Server list must be unique strings")
    if len(obj.weights) != len(obj.servers) \
            or not all(isinstance(w, int) and not isinstance(w, bool) and w >= 1 for w in obj.weights):
        raise CiphertextFormatError("Weights must be one positive integer per server")
    if isinstance(obj.threshold, bool) or not isinstance(obj.threshold, int) \
            or not 1 <= obj.threshold <= sum(obj.weights):
        raise CiphertextFormatError("Threshold out of range")
    if not isinstance(obj.key_id, str) or not isinstance(obj.package_id, str):
        raise CiphertextFormatError("keyId and packageId must be strings")
    if len(obj.nonce) != NONCE_SIZE:
        raise CiphertextFormatError("Nonce must be 12 bytes")
    try:
        canonical = obj.header_bytes()
    except CanonicalizationError as e:
        raise CiphertextFormatError(f"Malformed header: {e}")
    if canonical != data[8:8 + header_len]:
        raise CiphertextFormatError("Header is not in canonical form")
    return obj


# ============================================================
# Ciphers
# ============================================================

class ThresholdCipher(ABC):
    """Authenticated encryption whose key needs `threshold` servers to recover."""

    @abstractmethod
    def seal(self, plaintext: bytes, key_id: str, package_id: str, threshold: int,
             key_servers: Sequence[KeyServer], policy: AccessPolicy) -> bytes:
        pass

    @abstractmethod
    def open(self, encrypted: EncryptedObject, shares: Sequence[KeyShare]) -> bytes:
        pass


class ShamirAesGcmCipher(ThresholdCipher):
    """
    AES-256-GCM with the data key Shamir-split across the key servers.

    A server of weight w escrows w shares.
    """

    def seal(self, plaintext: bytes, key_id: str, package_id: str, threshold: int,
             key_servers: Sequence[KeyServer], policy: AccessPolicy) -> bytes:
        data_key = AESGCM.generate_key(bit_length=256)
        shares = split_secret(data_key, threshold, sum(s.weight for s in key_servers))
        obj = EncryptedObject(
            package_id=package_id,
            key_id=key_id,
            threshold=threshold,
            servers=tuple(s.server_id for s in key_servers),
            weights=tuple(s.weight for s in key_servers),
            nonce=os.urandom(NONCE_SIZE),
            ciphertext=b"",
        )
        ciphertext = AESGCM(data_key).encrypt(obj.nonce, plaintext, obj.header_bytes())
        offset = 0
        for server in key_servers:
            server.escrow(key_id, pack_shares(shares[offset:offset + server.weight]), policy)
            offset += server.weight
        return dataclasses.replace(obj, ciphertext=ciphertext).to_bytes()

    def open(self, encrypted: EncryptedObject, shares: Sequence[KeyShare]) -> bytes:
        try:
            points = [point for s in shares for point in unpack_shares(s.share)]
        except ValueError as e:
            raise DecryptionError(f"Key shares are malformed: {e}")
        if len(points) < encrypted.threshold:
            raise DecryptionError(f"Need {encrypted.threshold} shares, have {len(points)}")
        try:
            data_key = combine_shares(points[:encrypted.threshold])
        except ValueError as e:
            raise DecryptionError(f"Key shares are malformed: {e}")
        try:
            return AESGCM(data_key).decrypt(encrypted.nonce, encrypted.ciphertext, encrypted.header_bytes())
        except InvalidTag:
            raise DecryptionError("Recovered key does not authenticate the ciphertext")


# ============================================================
# Protocol
# ============================================================

@dataclass(frozen=True)
class EncryptionResult:
    ciphertext: bytes
    package_id: str
    key_id: str
    threshold: int
    policy: AccessPolicy


class ThresholdEncryption:
    """
    Sequencing for threshold encryption and authorized decryption.

    Key servers and configuration are injected; nothing is read from
    module-level state.
    """

    def __init__(
        self,
        config: ProtocolConfig,
        key_servers: Sequence[KeyServer],
        cipher: Optional[ThresholdCipher] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        config.validate()
        ids = [s.server_id for s in key_servers]
        if len(set(ids)) != len(ids):
            raise ValueError("Key server ids must be unique")
        self.config = config
        self.key_servers = list(key_servers)
        self.cipher = cipher or ShamirAesGcmCipher()
        self.audit = audit or audit_log
        self._clock = clock

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt(
        self,
        plaintext: bytes,
        key_id: str,
        package_id: Optional[str] = None,
        threshold: Optional[int] = None,
        policy: Optional[AccessPolicy] = None,
    ) -> EncryptionResult:
        """
        Encrypt `plaintext` under `key_id`.

        The default policy admits only the owner named in the key id.

        Raises:
            ValueError: if the key id is malformed or the threshold exceeds
                the total key server weight
        """
        owner, _ = parse_identity(key_id)
        package_id = package_id or self.config.package_id
        threshold = self.config.threshold if threshold is None else threshold
        total_weight = sum(s.weight for s in self.key_servers)
        if not 1 <= threshold <= total_weight:
            raise ValueError(f"Threshold {threshold} must be between 1 and the total key server weight "
                             f"{total_weight}")
        if policy is None:
            policy = AccessPolicy.owner_only(owner)
        elif policy.owner.lower() != owner:
            raise ValueError("Policy owner must match the owner in the key id")

        ciphertext = self.cipher.seal(plaintext, key_id, package_id, threshold, self.key_servers, policy)
        self.audit.encryption_performed(key_id, package_id, threshold, len(self.key_servers))
        return EncryptionResult(
            ciphertext=ciphertext,
            package_id=package_id,
            key_id=key_id,
            threshold=threshold,
            policy=policy,
        )

    def encrypt_for_owner(self, plaintext: bytes, owner: str, nonce: Optional[int] = None,
                          threshold: Optional[int] = None,
                          policy: Optional[AccessPolicy] = None) -> EncryptionResult:
        """Derive a fresh key id for `owner` and encrypt under it."""
        key_id = derive_identity(owner, new_nonce() if nonce is None else nonce)
        return self.encrypt(plaintext, key_id, threshold=threshold, policy=policy)

    @staticmethod
    def annotate(cert: Certificate, result: EncryptionResult, encrypted_blob_id: str) -> Certificate:
        """Attach the unsigned encryption annex to a signed certificate."""
        return attach_encryption(
            cert,
            encrypted_blob_id=encrypted_blob_id,
            key_id=result.key_id,
            threshold=result.threshold,
            package_id=result.package_id,
            policy=result.policy,
        )

    # ------------------------------------------------------------------
    # Decryption
    # ------------------------------------------------------------------

    def open_session(self, requester: str, signer: Signer, package_id: Optional[str] = None) -> SessionKey:
        """Create a session for `requester` and have the wallet certify it."""
        session = SessionKey.create(
            requester,
            package_id or self.config.package_id,
            ttl_min=self.config.session_ttl_min,
            clock=self._clock,
        )
        signature = signer.sign(session.personal_message())
        session.set_personal_message_signature(signature, signer.public_key, signer.scheme)
        return session

    def decrypt(
        self,
        ciphertext: bytes,
        key_id: Optional[str],
        requester: str,
        session_authorizer: Union[Signer, SessionKey],
        transaction_authorizer: Optional[TransactionAuthorizer] = None,
    ) -> bytes:
        """
        Recover plaintext through the key servers.

        `session_authorizer` is either the requester's wallet (a session is
        opened and certified with it) or an already certified SessionKey.
        `transaction_authorizer(requester)` builds the authorization token;
        the default is the empty transaction naming the requester.

        Raises:
            CiphertextFormatError: if the ciphertext header is malformed
            DecryptionError: if the key id does not match the header or the
                recovered key does not open the ciphertext
            InvalidSessionError: if the wallet does not control `requester`
            AccessDeniedError: if every key server rejects the requester
            QuorumNotReachedError: if fewer than `threshold` shares arrive
            SessionExpiredError: if the session TTL elapses before quorum
        """
        obj = parse_encrypted_object(ciphertext)
        if key_id is not None and key_id != obj.key_id:
            raise DecryptionError(f"Ciphertext is for key id {obj.key_id}, not {key_id}")
        requester = requester.lower()
        self.audit.decryption_attempt(obj.key_id, requester)

        if isinstance(session_authorizer, SessionKey):
            session = session_authorizer
        else:
            session = self.open_session(requester, session_authorizer, obj.package_id)
        if session.address != requester:
            self.audit.security_event("session_identity_mismatch", severity="high",
                                      key_id=obj.key_id, requester=requester, session_address=session.address)
            raise AccessDeniedError("Session is bound to a different identity")

        token = (transaction_authorizer or build_authorization_token)(requester)
        if session.is_expired():
            raise SessionExpiredError(f"Session for {requester} expired before key servers were queried")
        proof = session.build_proof(obj.key_id, token)

        shares = self._collect_shares(obj, token, proof, session)
        return self.cipher.open(obj, shares)

    def _collect_shares(self, obj: EncryptedObject, token: bytes, proof: SessionProof,
                        session: SessionKey) -> List[KeyShare]:
        servers = [s for s in self.key_servers if s.server_id in obj.servers]
        threshold = obj.threshold
        weights = dict(zip(obj.servers, obj.weights))
        shares: List[KeyShare] = []
        collected = 0
        denials = 0
        failures = len(obj.servers) - len(servers)

        if servers:
            pool = ThreadPoolExecutor(max_workers=len(servers), thread_name_prefix="opentruth-keyserver")
            futures = {
                pool.submit(server.request_key_share, obj.key_id, token, proof): server
                for server in servers
            }
            answered = 0
            try:
                for future in as_completed(futures, timeout=self.config.key_server_timeout):
                    server = futures[future]
                    answered += 1
                    try:
                        share = future.result()
                    except AccessDeniedError as e:
                        denials += 1
                        self.audit.key_share_denied(obj.key_id, server.server_id, str(e))
                        continue
                    except (KeyServerError, OSError) as e:
                        failures += 1
                        logger.warning("Key server %s failed: %s", server.server_id, e)
                        continue
                    except Exception as e:
                        failures += 1
                        logger.warning("Key server %s raised %s: %s", server.server_id, type(e).__name__, e)
                        continue
                    if share.key_id != obj.key_id:
                        failures += 1
                        logger.warning("Key server %s returned a share for the wrong key id", server.server_id)
                        continue
                    shares.append(share)
                    collected += weights[server.server_id]
                    if collected >= threshold:
                        break
            except FuturesTimeoutError:
                failures += len(servers) - answered
                logger.warning("Key servers timed out after %.1fs: %d of %d answered",
                               self.config.key_server_timeout, answered, len(servers))
            finally:
                pool.shutdown(wait=False, cancel_futures=True)

        self.audit.quorum_result(obj.key_id, threshold, collected, denials, failures)

        if collected < threshold:
            if session.is_expired():
                raise SessionExpiredError(f"Session for {session.address} expired before quorum")
            if denials and not shares and not failures:
                raise AccessDeniedError(f"All {denials} key servers denied access to {obj.key_id}")
            raise QuorumNotReachedError(threshold, collected, denials=denials, failures=failures)
        return shares
