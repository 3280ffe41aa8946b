"""
OpenTruth Certificate Codec

The certificate value type, its canonical signing bytes, and structural
validation of untrusted certificate JSON.

A certificate moves through two states:
    Unsigned  ->  Signed
The signed payload is everything except the `proofs`, `storage` and
`encryption` sections. Those three are appended after signing and are
therefore NOT covered by the signature:
- proofs:     the signature itself
- storage:    only known after upload
- encryption: produced after signing; an unsigned annex that downstream
              policy must authenticate on its own

The artifact hash is always the digest of the original plaintext file,
even when the stored blob is ciphertext.
"""

import base64
import binascii
import dataclasses
import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .canonicalization import canonicalize
from .errors import CertificateFormatError, EmptyInputError
from .hashing import ROOT_PATTERN, Digest, digest, digest_many
from .merkle import MerkleTree

CERTIFICATE_VERSION = "1.0"
CERTIFICATE_TYPE = "opentruth.certificate"

REQUIRED_FIELDS = ("version", "type", "timestamp", "author", "artifact", "proofs")
UNSIGNED_SECTIONS = ("proofs", "storage", "encryption")

ADDRESS_PATTERN = re.compile(r'^0x[0-9a-fA-F]{64}$')


class ArtifactKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


class SignatureScheme(str, Enum):
    """Supported signature schemes."""
    ED25519 = "ED25519"
    SECP256K1 = "SECP256K1"


class PolicyType(str, Enum):
    """Access policy for threshold-encrypted payloads."""
    USER_OWNED = "userOwned"
    ALLOWLIST = "allowlist"


class Network(str, Enum):
    TESTNET = "testnet"
    MAINNET = "mainnet"
    LOCALNET = "localnet"


def is_valid_address(address: Any) -> bool:
    """Identity format: "0x" followed by 64 hex characters."""
    return isinstance(address, str) and bool(ADDRESS_PATTERN.match(address))


def infer_artifact_kind(mime_type: str) -> ArtifactKind:
    if mime_type.startswith("image/"):
        return ArtifactKind.IMAGE
    if mime_type.startswith("video/"):
        return ArtifactKind.VIDEO
    if mime_type.startswith("audio/"):
        return ArtifactKind.AUDIO
    return ArtifactKind.DOCUMENT


# ============================================================
# Sections
# ============================================================

@dataclass(frozen=True)
class Author:
    address: str
    public_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"address": self.address}
        if self.public_key is not None:
            d["publicKey"] = self.public_key
        return d

    @classmethod
    def from_dict(cls, data: Any) -> 'Author':
        data = _require_object(data, "author")
        address = data.get("address")
        if not is_valid_address(address):
            raise CertificateFormatError("author.address", "must be 0x followed by 64 hex characters")
        return cls(
            address=address,
            public_key=_optional_str(data, "publicKey", "author.publicKey"),
        )


@dataclass(frozen=True)
class Artifact:
    """Descriptor of the certified file. `hash` is over the plaintext."""
    kind: ArtifactKind
    hash: Digest
    size: int
    mime_type: str
    filename: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "type": self.kind.value,
            "hash": str(self.hash),
            "size": self.size,
            "mimeType": self.mime_type,
        }
        if self.filename is not None:
            d["filename"] = self.filename
        return d

    @classmethod
    def from_dict(cls, data: Any) -> 'Artifact':
        data = _require_object(data, "artifact")
        try:
            kind = ArtifactKind(data.get("type"))
        except ValueError:
            raise CertificateFormatError("artifact.type", f"must be one of {[k.value for k in ArtifactKind]}")
        return cls(
            kind=kind,
            hash=_require_digest(data, "hash", "artifact.hash"),
            size=_require_int(data, "size", "artifact.size"),
            mime_type=_require_str(data, "mimeType", "artifact.mimeType"),
            filename=_optional_str(data, "filename", "artifact.filename"),
        )


@dataclass(frozen=True)
class ModelInfo:
    """AI-model provenance."""
    name: str
    version: Optional[str] = None
    prompt_hash: Optional[Digest] = None
    checkpoint_hash: Optional[Digest] = None
    dataset_merkle_root: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"name": self.name}
        if self.version is not None:
            d["version"] = self.version
        if self.prompt_hash is not None:
            d["promptHash"] = str(self.prompt_hash)
        if self.checkpoint_hash is not None:
            d["checkpointHash"] = str(self.checkpoint_hash)
        if self.dataset_merkle_root is not None:
            d["datasetMerkleRoot"] = self.dataset_merkle_root
        return d

    @classmethod
    def from_dict(cls, data: Any) -> 'ModelInfo':
        data = _require_object(data, "model")
        name = _require_str(data, "name", "model.name")
        if not name:
            raise CertificateFormatError("model.name", "must not be empty")
        root = _optional_str(data, "datasetMerkleRoot", "model.datasetMerkleRoot")
        if root is not None and not ROOT_PATTERN.match(root):
            raise CertificateFormatError("model.datasetMerkleRoot", "must be 0x followed by 64 lowercase hex characters")
        return cls(
            name=name,
            version=_optional_str(data, "version", "model.version"),
            prompt_hash=_optional_digest(data, "promptHash", "model.promptHash"),
            checkpoint_hash=_optional_digest(data, "checkpointHash", "model.checkpointHash"),
            dataset_merkle_root=root,
        )


@dataclass(frozen=True)
class DatasetInfo:
    """Dataset composition: member digests in tree order and their Merkle root."""
    file_count: int
    total_size: int
    merkle_root: Digest
    file_hashes: List[Digest] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileCount": self.file_count,
            "totalSize": self.total_size,
            "merkleRoot": self.merkle_root.root_hex,
            "fileHashes": [str(h) for h in self.file_hashes],
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'DatasetInfo':
        data = _require_object(data, "dataset")
        root = data.get("merkleRoot")
        try:
            merkle_root = Digest.from_root_hex(root)
        except ValueError:
            raise CertificateFormatError("dataset.merkleRoot", "must be 0x followed by 64 lowercase hex characters")
        hashes = data.get("fileHashes")
        if not isinstance(hashes, list):
            raise CertificateFormatError("dataset.fileHashes", "must be an array")
        file_hashes = []
        for i, h in enumerate(hashes):
            try:
                file_hashes.append(Digest.parse(h))
            except ValueError:
                raise CertificateFormatError(f"dataset.fileHashes[{i}]", "must be sha256:<64 hex>")
        file_count = _require_int(data, "fileCount", "dataset.fileCount")
        if file_count != len(file_hashes):
            raise CertificateFormatError("dataset.fileCount", "does not match number of fileHashes")
        return cls(
            file_count=file_count,
            total_size=_require_int(data, "totalSize", "dataset.totalSize"),
            merkle_root=merkle_root,
            file_hashes=file_hashes,
        )

    def root_matches(self) -> bool:
        """Recompute the Merkle root from the member digests."""
        if not self.file_hashes:
            return False
        return MerkleTree.build(self.file_hashes).root == self.merkle_root


@dataclass(frozen=True)
class AccessPolicy:
    """Who may obtain decryption key shares."""
    type: PolicyType
    owner: str
    allowlist: List[str] = field(default_factory=list)

    def allows(self, address: str) -> bool:
        address = address.lower()
        if address == self.owner.lower():
            return True
        if self.type == PolicyType.ALLOWLIST:
            return address in {a.lower() for a in self.allowlist}
        return False

    def to_dict(self) -> Dict[str, Any]:
        d = {"type": self.type.value, "owner": self.owner}
        if self.type == PolicyType.ALLOWLIST:
            d["allowlist"] = list(self.allowlist)
        return d

    @classmethod
    def from_dict(cls, data: Any) -> 'AccessPolicy':
        data = _require_object(data, "encryption.policy")
        try:
            policy_type = PolicyType(data.get("type"))
        except ValueError:
            raise CertificateFormatError("encryption.policy.type", "must be userOwned or allowlist")
        owner = data.get("owner")
        if not is_valid_address(owner):
            raise CertificateFormatError("encryption.policy.owner", "must be a valid address")
        allowlist = data.get("allowlist", [])
        if not isinstance(allowlist, list) or not all(is_valid_address(a) for a in allowlist):
            raise CertificateFormatError("encryption.policy.allowlist", "must be an array of addresses")
        return cls(type=policy_type, owner=owner, allowlist=list(allowlist))

    @classmethod
    def owner_only(cls, owner: str) -> 'AccessPolicy':
        return cls(type=PolicyType.USER_OWNED, owner=owner)


@dataclass(frozen=True)
class EncryptionInfo:
    """Threshold-encryption annex. Attached after signing, never signed."""
    enabled: bool
    encrypted_blob_id: Optional[str] = None
    package_id: Optional[str] = None
    key_id: Optional[str] = None
    threshold: Optional[int] = None
    policy: Optional[AccessPolicy] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"enabled": self.enabled}
        if self.encrypted_blob_id is not None:
            d["encryptedBlobId"] = self.encrypted_blob_id
        if self.package_id is not None:
            d["packageId"] = self.package_id
        if self.key_id is not None:
            d["keyId"] = self.key_id
        if self.threshold is not None:
            d["threshold"] = self.threshold
        if self.policy is not None:
            d["policy"] = self.policy.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Any) -> 'EncryptionInfo':
        data = _require_object(data, "encryption")
        enabled = data.get("enabled")
        if not isinstance(enabled, bool):
            raise CertificateFormatError("encryption.enabled", "must be a boolean")
        threshold = None
        if "threshold" in data:
            threshold = _require_int(data, "threshold", "encryption.threshold")
            if threshold < 1:
                raise CertificateFormatError("encryption.threshold", "must be at least 1")
        policy = AccessPolicy.from_dict(data["policy"]) if "policy" in data else None
        return cls(
            enabled=enabled,
            encrypted_blob_id=_optional_str(data, "encryptedBlobId", "encryption.encryptedBlobId"),
            package_id=_optional_str(data, "packageId", "encryption.packageId"),
            key_id=_optional_str(data, "keyId", "encryption.keyId"),
            threshold=threshold,
            policy=policy,
        )


@dataclass(frozen=True)
class SignatureProof:
    scheme: SignatureScheme
    signature: bytes
    public_key: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": {
                "scheme": self.scheme.value,
                "signature": base64.b64encode(self.signature).decode('ascii'),
                "publicKey": base64.b64encode(self.public_key).decode('ascii'),
            }
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'SignatureProof':
        data = _require_object(data, "proofs")
        sig = _require_object(data.get("signature"), "proofs.signature")
        try:
            scheme = SignatureScheme(sig.get("scheme"))
        except ValueError:
            raise CertificateFormatError("proofs.signature.scheme", "must be ED25519 or SECP256K1")
        return cls(
            scheme=scheme,
            signature=_require_b64(sig, "signature", "proofs.signature.signature"),
            public_key=_require_b64(sig, "publicKey", "proofs.signature.publicKey"),
        )


@dataclass(frozen=True)
class Storage:
    """Where the (possibly encrypted) artifact blob lives."""
    blob_id: str
    network: Network
    uploaded_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blobId": self.blob_id,
            "network": self.network.value,
            "uploadedAt": self.uploaded_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'Storage':
        data = _require_object(data, "storage")
        try:
            network = Network(data.get("network"))
        except ValueError:
            raise CertificateFormatError("storage.network", f"must be one of {[n.value for n in Network]}")
        return cls(
            blob_id=_require_str(data, "blobId", "storage.blobId"),
            network=network,
            uploaded_at=_require_int(data, "uploadedAt", "storage.uploadedAt"),
        )


# ============================================================
# Certificate
# ============================================================

@dataclass(frozen=True)
class Certificate:
    """
    OpenTruth provenance certificate.

    Frozen: completing or annotating a certificate returns a new value.
    """
    timestamp: int
    author: Author
    artifact: Artifact
    model: Optional[ModelInfo] = None
    dataset: Optional[DatasetInfo] = None
    encryption: Optional[EncryptionInfo] = None
    proofs: Optional[SignatureProof] = None
    storage: Optional[Storage] = None
    version: str = CERTIFICATE_VERSION
    type: str = CERTIFICATE_TYPE

    @property
    def is_signed(self) -> bool:
        return self.proofs is not None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "version": self.version,
            "type": self.type,
            "timestamp": self.timestamp,
            "author": self.author.to_dict(),
            "artifact": self.artifact.to_dict(),
        }
        if self.model is not None:
            d["model"] = self.model.to_dict()
        if self.dataset is not None:
            d["dataset"] = self.dataset.to_dict()
        if self.encryption is not None:
            d["encryption"] = self.encryption.to_dict()
        if self.proofs is not None:
            d["proofs"] = self.proofs.to_dict()
        if self.storage is not None:
            d["storage"] = self.storage.to_dict()
        return d

    def signing_payload(self) -> Dict[str, Any]:
        """The certificate body covered by the signature."""
        body = self.to_dict()
        for section in UNSIGNED_SECTIONS:
            body.pop(section, None)
        return body

    def unsigned(self) -> 'Certificate':
        """Copy with the post-signature sections stripped."""
        return dataclasses.replace(self, proofs=None, storage=None, encryption=None)

    @classmethod
    def from_dict(cls, data: Any, require_proofs: bool = False) -> 'Certificate':
        """
        Decode and validate a certificate dict.

        Raises:
            CertificateFormatError: on any structural defect
        """
        data = _require_object(data, "certificate")
        required = REQUIRED_FIELDS if require_proofs else REQUIRED_FIELDS[:-1]
        missing = [f for f in required if f not in data]
        if missing:
            raise CertificateFormatError("certificate", f"missing required fields: {missing}")
        if data["version"] != CERTIFICATE_VERSION:
            raise CertificateFormatError("version", f"must be {CERTIFICATE_VERSION!r}")
        if data["type"] != CERTIFICATE_TYPE:
            raise CertificateFormatError("type", f"must be {CERTIFICATE_TYPE!r}")

        return cls(
            timestamp=_require_int(data, "timestamp", "timestamp"),
            author=Author.from_dict(data["author"]),
            artifact=Artifact.from_dict(data["artifact"]),
            model=ModelInfo.from_dict(data["model"]) if "model" in data else None,
            dataset=DatasetInfo.from_dict(data["dataset"]) if "dataset" in data else None,
            encryption=EncryptionInfo.from_dict(data["encryption"]) if "encryption" in data else None,
            proofs=SignatureProof.from_dict(data["proofs"]) if "proofs" in data else None,
            storage=Storage.from_dict(data["storage"]) if "storage" in data else None,
        )


CertificateLike = Union[Certificate, Mapping[str, Any]]


def _as_certificate(cert: CertificateLike) -> Certificate:
    if isinstance(cert, Certificate):
        return cert
    return Certificate.from_dict(cert)


def canonicalize_certificate(cert: CertificateLike) -> bytes:
    """
    The exact bytes that get signed.

    Omits the proofs, storage and encryption sections entirely and encodes
    the rest as canonical JSON (sorted keys, compact, UTF-8).
    """
    return canonicalize(_as_certificate(cert).signing_payload())


def validate_structure(candidate: Any, require_storage: bool = False) -> bool:
    """
    Structural validation of an untrusted certificate.

    Checks required fields, the artifact digest format, the declared
    signature scheme, and internal consistency of the dataset section.
    Returns False rather than raising on any defect.
    """
    try:
        cert = candidate if isinstance(candidate, Certificate) \
            else Certificate.from_dict(candidate, require_proofs=True)
    except (CertificateFormatError, ValueError, TypeError, KeyError, AttributeError):
        return False
    if cert.proofs is None:
        return False
    if require_storage and cert.storage is None:
        return False
    if cert.artifact.hash.algorithm != "sha256" or len(cert.artifact.hash.value) != 32:
        return False
    if cert.dataset is not None and not cert.dataset.root_matches():
        return False
    return True


def matches_file(cert: CertificateLike, file_bytes: bytes) -> bool:
    """Recompute the file digest and compare byte-exactly to artifact.hash."""
    try:
        expected = _as_certificate(cert).artifact.hash
    except (CertificateFormatError, ValueError, TypeError, AttributeError):
        return False
    if not isinstance(file_bytes, (bytes, bytearray)):
        return False
    return digest(bytes(file_bytes)) == expected


# ============================================================
# Builders
# ============================================================

def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_certificate(
    data: bytes,
    address: str,
    mime_type: str = "application/octet-stream",
    filename: Optional[str] = None,
    model_name: Optional[str] = None,
    model_version: Optional[str] = None,
    prompt: Optional[str] = None,
    checkpoint_hash: Optional[Union[Digest, str]] = None,
    dataset_merkle_root: Optional[str] = None,
    dataset: Optional[DatasetInfo] = None,
    timestamp: Optional[int] = None,
) -> Certificate:
    """
    Build the unsigned base certificate for a file.

    The artifact hash is computed here, over the plaintext bytes.
    Model info is attached only when a model name is given; the prompt
    itself is never stored, only its digest.
    """
    if not is_valid_address(address):
        raise CertificateFormatError("author.address", "must be 0x followed by 64 hex characters")

    model = None
    if model_name:
        if dataset_merkle_root is not None and not ROOT_PATTERN.match(dataset_merkle_root):
            raise CertificateFormatError("model.datasetMerkleRoot", "must be 0x followed by 64 lowercase hex characters")
        model = ModelInfo(
            name=model_name,
            version=model_version,
            prompt_hash=digest(prompt) if prompt else None,
            checkpoint_hash=Digest.coerce(checkpoint_hash) if checkpoint_hash else None,
            dataset_merkle_root=dataset_merkle_root,
        )

    return Certificate(
        timestamp=timestamp if timestamp is not None else _now_ms(),
        author=Author(address=address),
        artifact=Artifact(
            kind=infer_artifact_kind(mime_type),
            hash=digest(data),
            size=len(data),
            mime_type=mime_type,
            filename=filename,
        ),
        model=model,
        dataset=dataset,
    )


def build_dataset_info(files: Sequence[bytes], max_workers: int = 4) -> DatasetInfo:
    """Hash dataset members concurrently and commit to them in a Merkle tree."""
    if not files:
        raise EmptyInputError("A dataset needs at least one file")
    hashes = digest_many(files, max_workers=max_workers)
    tree = MerkleTree.build(hashes)
    return DatasetInfo(
        file_count=len(files),
        total_size=sum(len(f) for f in files),
        merkle_root=tree.root,
        file_hashes=hashes,
    )


def dataset_manifest(info: DatasetInfo) -> bytes:
    """The small JSON document certified as a dataset's artifact."""
    return canonicalize({
        "fileCount": info.file_count,
        "merkleRoot": info.merkle_root.root_hex,
    })


def generate_dataset_certificate(
    files: Sequence[bytes],
    address: str,
    max_workers: int = 4,
    timestamp: Optional[int] = None,
) -> Certificate:
    """
    Certificate for a dataset of files.

    The artifact is a small JSON document naming the Merkle root and file
    count; the dataset section lists every member digest in tree order.
    """
    info = build_dataset_info(files, max_workers=max_workers)
    return generate_certificate(
        dataset_manifest(info),
        address,
        mime_type="application/json",
        filename="dataset.json",
        dataset=info,
        timestamp=timestamp,
    )


def complete_certificate(base: Certificate, proofs: SignatureProof, storage: Storage) -> Certificate:
    """Append the proof and storage sections to a signed base certificate."""
    if base.proofs is not None:
        raise ValueError("Certificate already carries a proof")
    return dataclasses.replace(base, proofs=proofs, storage=storage)


def attach_encryption(
    cert: Certificate,
    encrypted_blob_id: str,
    key_id: str,
    threshold: int,
    package_id: str,
    policy: Optional[AccessPolicy] = None,
) -> Certificate:
    """Attach the (unsigned) encryption annex."""
    return dataclasses.replace(cert, encryption=EncryptionInfo(
        enabled=True,
        encrypted_blob_id=encrypted_blob_id,
        package_id=package_id,
        key_id=key_id,
        threshold=threshold,
        policy=policy,
    ))


def certificate_summary(cert: Certificate) -> Dict[str, Any]:
    """Short human-facing description of a certificate."""
    return {
        "artifact_type": cert.artifact.kind.value,
        "file_name": cert.artifact.filename or "Unknown",
        "file_size": f"{cert.artifact.size / 1024:.2f} KB",
        "author": cert.author.address,
        "timestamp": cert.timestamp,
        "has_model": cert.model is not None,
        "has_dataset": cert.dataset is not None,
        "has_encryption": bool(cert.encryption and cert.encryption.enabled),
    }


def load_certificate(raw: Union[str, bytes]) -> Certificate:
    """Parse certificate JSON text."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
        raise CertificateFormatError("certificate", f"invalid JSON: {e}")
    return Certificate.from_dict(data)


def dumps_certificate(cert: Certificate) -> str:
    """Pretty JSON for persistence. Not used for signing."""
    return json.dumps(cert.to_dict(), indent=2, sort_keys=True)


# ============================================================
# Field helpers
# ============================================================

def _require_object(value: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise CertificateFormatError(name, "must be an object")
    return value


def _require_str(data: Mapping[str, Any], key: str, name: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise CertificateFormatError(name, "must be a string")
    return value


def _optional_str(data: Mapping[str, Any], key: str, name: str) -> Optional[str]:
    if key not in data:
        return None
    return _require_str(data, key, name)


def _require_int(data: Mapping[str, Any], key: str, name: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise CertificateFormatError(name, "must be a non-negative integer")
    return value


def _require_digest(data: Mapping[str, Any], key: str, name: str) -> Digest:
    try:
        return Digest.parse(data.get(key))
    except ValueError:
        raise CertificateFormatError(name, "must be sha256:<64 lowercase hex>")


def _optional_digest(data: Mapping[str, Any], key: str, name: str) -> Optional[Digest]:
    if key not in data:
        return None
    return _require_digest(data, key, name)


def _require_b64(data: Mapping[str, Any], key: str, name: str) -> bytes:
    value = _require_str(data, key, name)
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise CertificateFormatError(name, "must be base64")
