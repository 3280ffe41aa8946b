"""
Configuration module for OpenTruth.

Environment defaults are read here; protocol code never consults them
directly. Callers build a `ProtocolConfig` (usually via `from_env()`) and
pass it into the encryption protocol, the issuer and the verifier.
"""

import json
import os
from dataclasses import dataclass
from typing import List, Optional

from .certificate import Network

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("OPENTRUTH_ENV", "dev")  # dev|stage|prod

DEFAULT_PACKAGE_ID = "0x" + "0" * 64
DEFAULT_THRESHOLD = 2
DEFAULT_SESSION_TTL_MIN = 30
DEFAULT_KEY_SERVER_TIMEOUT = 10.0
DEFAULT_HASH_WORKERS = 4
DEFAULT_NETWORK = "testnet"

LOG_LEVEL = os.getenv("OPENTRUTH_LOG_LEVEL", "WARNING")
KEY_SERVERS_PATH = os.getenv("OPENTRUTH_KEY_SERVERS_PATH", "config/key_servers.json")


@dataclass(frozen=True)
class ProtocolConfig:
    """Explicit protocol settings, passed into constructors."""
    package_id: str = DEFAULT_PACKAGE_ID
    threshold: int = DEFAULT_THRESHOLD
    session_ttl_min: int = DEFAULT_SESSION_TTL_MIN
    key_server_timeout: float = DEFAULT_KEY_SERVER_TIMEOUT
    hash_workers: int = DEFAULT_HASH_WORKERS
    network: Network = Network.TESTNET

    @classmethod
    def from_env(cls) -> 'ProtocolConfig':
        """Build a config from OPENTRUTH_* environment variables."""
        config = cls(
            package_id=os.getenv("OPENTRUTH_PACKAGE_ID", DEFAULT_PACKAGE_ID),
            threshold=int(os.getenv("OPENTRUTH_THRESHOLD", str(DEFAULT_THRESHOLD))),
            session_ttl_min=int(os.getenv("OPENTRUTH_SESSION_TTL_MIN", str(DEFAULT_SESSION_TTL_MIN))),
            key_server_timeout=float(os.getenv("OPENTRUTH_KEY_SERVER_TIMEOUT", str(DEFAULT_KEY_SERVER_TIMEOUT))),
            hash_workers=int(os.getenv("OPENTRUTH_HASH_WORKERS", str(DEFAULT_HASH_WORKERS))),
            network=Network(os.getenv("OPENTRUTH_NETWORK", DEFAULT_NETWORK)),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        Raises:
            ValueError: if any setting is out of range
        """
        if not isinstance(self.package_id, str) or not self.package_id.startswith("0x"):
            raise ValueError("package_id must be a 0x-prefixed object id")
        if self.threshold < 1:
            raise ValueError("threshold must be at least 1")
        if self.session_ttl_min < 1:
            raise ValueError("session_ttl_min must be at least 1 minute")
        if self.key_server_timeout <= 0:
            raise ValueError("key_server_timeout must be positive")
        if self.hash_workers < 1:
            raise ValueError("hash_workers must be at least 1")


# ============================================================
# Key Server Registry
# ============================================================

@dataclass(frozen=True)
class KeyServerEntry:
    id: str
    weight: int = 1


def load_key_server_registry(path: Optional[str] = None) -> List[KeyServerEntry]:
    """
    Load the key server registry: a JSON list of {"id": ..., "weight": ...}.

    Raises:
        FileNotFoundError: if the file does not exist
        ValueError: if the file is not a list of entries with string ids
    """
    path = path or KEY_SERVERS_PATH
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, list):
        raise ValueError(f"{path}: key server registry must be a JSON list")

    entries = []
    seen = set()
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("id"), str):
            raise ValueError(f"{path}: each key server needs a string 'id'")
        if item["id"] in seen:
            raise ValueError(f"{path}: duplicate key server id {item['id']!r}")
        seen.add(item["id"])
        weight = item.get("weight", 1)
        if isinstance(weight, bool) or not isinstance(weight, int) or weight < 1:
            raise ValueError(f"{path}: weight for {item['id']!r} must be a positive integer")
        entries.append(KeyServerEntry(id=item["id"], weight=weight))
    return entries


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("OPENTRUTH_DEBUG", "").lower() in ("1", "true", "yes")
