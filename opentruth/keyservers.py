"""
Key-server collaborators.

A key server holds one piece of the key material for each encrypted
payload and releases it only when a request passes the access policy:
a valid authorization token, a live session certified by the requester's
wallet, and a requester the policy admits.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .authorization import AuthorizationToken
from .certificate import AccessPolicy
from .config import KeyServerEntry
from .errors import AccessDeniedError, InvalidSessionError, KeyServerError, SessionExpiredError
from .session import SessionProof, verify_session_proof

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyShare:
    server_id: str
    key_id: str
    share: bytes

    def __repr__(self) -> str:
        return f"KeyShare(server_id={self.server_id!r}, key_id={self.key_id!r})"


class KeyServer(ABC):
    """Abstract interface for a threshold key server."""

    @property
    @abstractmethod
    def server_id(self) -> str:
        pass

    @property
    def weight(self) -> int:
        """Number of shares this server holds; each counts toward the threshold."""
        return 1

    @abstractmethod
    def request_key_share(self, key_id: str, authorization_token: bytes,
                          session_proof: SessionProof) -> KeyShare:
        """
        Release this server's share for `key_id`.

        Raises:
            AccessDeniedError: if the access policy rejects the requester
            KeyServerError: for any other failure
        """
        pass

    def escrow(self, key_id: str, share: bytes, policy: AccessPolicy) -> None:
        """Store a share under `key_id`, guarded by `policy`."""
        raise KeyServerError(self.server_id, "server does not accept escrowed shares")


class LocalKeyServer(KeyServer):
    """
    In-process key server.

    Thread-safe: the quorum step queries servers concurrently.
    """

    def __init__(self, server_id: str, package_id: Optional[str] = None,
                 clock: Callable[[], float] = time.time, weight: int = 1):
        if isinstance(weight, bool) or not isinstance(weight, int) or weight < 1:
            raise ValueError(f"Key server weight must be a positive integer, got {weight!r}")
        self._server_id = server_id
        self._weight = weight
        self._package_id = package_id
        self._clock = clock
        self._lock = threading.Lock()
        self._shares: Dict[str, Tuple[bytes, AccessPolicy]] = {}

    @property
    def server_id(self) -> str:
        return self._server_id

    @property
    def weight(self) -> int:
        return self._weight

    def escrow(self, key_id: str, share: bytes, policy: AccessPolicy) -> None:
        with self._lock:
            if key_id in self._shares:
                raise KeyServerError(self._server_id, f"key id {key_id} already escrowed")
            self._shares[key_id] = (bytes(share), policy)

    def revoke(self, key_id: str) -> None:
        with self._lock:
            self._shares.pop(key_id, None)

    def __contains__(self, key_id: str) -> bool:
        with self._lock:
            return key_id in self._shares

    def request_key_share(self, key_id: str, authorization_token: bytes,
                          session_proof: SessionProof) -> KeyShare:
        with self._lock:
            entry = self._shares.get(key_id)
        if entry is None:
            raise KeyServerError(self._server_id, f"unknown key id {key_id}")
        share, policy = entry

        try:
            token = AuthorizationToken.parse(authorization_token)
        except ValueError as e:
            raise AccessDeniedError(f"malformed authorization token: {e}", server_id=self._server_id)

        if self._package_id is not None and session_proof.package_id != self._package_id:
            raise AccessDeniedError("session is for a different package", server_id=self._server_id)

        try:
            verify_session_proof(session_proof, key_id, authorization_token,
                                 now_ms=int(self._clock() * 1000))
        except (InvalidSessionError, SessionExpiredError) as e:
            raise AccessDeniedError(f"session rejected: {e}", server_id=self._server_id)

        if token.sender != session_proof.address.lower():
            raise AccessDeniedError("token sender does not match session", server_id=self._server_id)
        if not policy.allows(token.sender):
            raise AccessDeniedError(f"{token.sender} is not permitted by {policy.type.value} policy",
                                    server_id=self._server_id)

        logger.debug("Key server %s released share for %s", self._server_id, key_id)
        return KeyShare(server_id=self._server_id, key_id=key_id, share=share)


def build_local_key_servers(entries: Sequence[KeyServerEntry], package_id: Optional[str] = None,
                            clock: Callable[[], float] = time.time) -> List[LocalKeyServer]:
    """One in-process server per registry entry."""
    return [LocalKeyServer(entry.id, package_id=package_id, clock=clock, weight=entry.weight)
            for entry in entries]
