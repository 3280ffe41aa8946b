"""
Training checkpoint provenance.

A checkpoint records a model's state after an epoch and commits to the
dataset it was trained on by Merkle root. Its hash covers every other
field, so a checkpoint can be embedded in a model certificate
(model.checkpointHash) and later checked for integrity.

Floats (accuracy, loss, learning rates) have no canonical JSON encoding;
they are hashed through their shortest round-trip decimal text.
"""

import dataclasses
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .canonicalization import canonicalize
from .encryption import EncryptionResult, ThresholdEncryption
from .errors import CertificateFormatError
from .hashing import ROOT_PATTERN, Digest, digest
from .session import SessionKey
from .signing import Signer


@dataclass(frozen=True)
class TrainingCheckpoint:
    epoch: int
    accuracy: float
    loss: float
    dataset_merkle_root: str
    checkpoint_hash: str
    timestamp: int
    model_name: Optional[str] = None
    model_version: Optional[str] = None
    hyperparameters: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        d = _fields_to_dict(self)
        d["checkpointHash"] = self.checkpoint_hash
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrainingCheckpoint':
        if not isinstance(data, dict):
            raise CertificateFormatError("checkpoint", "must be an object")
        try:
            return cls(
                epoch=int(data["epoch"]),
                accuracy=float(data["accuracy"]),
                loss=float(data["loss"]),
                dataset_merkle_root=data["datasetMerkleRoot"],
                checkpoint_hash=data["checkpointHash"],
                timestamp=int(data["timestamp"]),
                model_name=data.get("modelName"),
                model_version=data.get("modelVersion"),
                hyperparameters=data.get("hyperparameters"),
            )
        except KeyError as e:
            raise CertificateFormatError("checkpoint", f"missing field {e}")
        except (TypeError, ValueError) as e:
            raise CertificateFormatError("checkpoint", str(e))


def _fields_to_dict(checkpoint: Union[TrainingCheckpoint, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(checkpoint, TrainingCheckpoint):
        d = {
            "epoch": checkpoint.epoch,
            "accuracy": checkpoint.accuracy,
            "loss": checkpoint.loss,
            "datasetMerkleRoot": checkpoint.dataset_merkle_root,
            "timestamp": checkpoint.timestamp,
        }
        if checkpoint.model_name is not None:
            d["modelName"] = checkpoint.model_name
        if checkpoint.model_version is not None:
            d["modelVersion"] = checkpoint.model_version
        if checkpoint.hyperparameters is not None:
            d["hyperparameters"] = checkpoint.hyperparameters
        return d
    return {k: v for k, v in checkpoint.items() if k != "checkpointHash"}


def _floats_as_text(value: Any) -> Any:
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, dict):
        return {k: _floats_as_text(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_floats_as_text(v) for v in value]
    return value


def compute_checkpoint_hash(fields: Dict[str, Any]) -> Digest:
    """Digest of the canonical JSON of every field except checkpointHash."""
    body = {k: v for k, v in fields.items() if k != "checkpointHash"}
    return digest(canonicalize(_floats_as_text(body)))


def create_checkpoint(
    epoch: int,
    accuracy: float,
    loss: float,
    dataset_merkle_root: str,
    model_name: Optional[str] = None,
    model_version: Optional[str] = None,
    hyperparameters: Optional[Dict[str, Any]] = None,
    timestamp: Optional[int] = None,
) -> TrainingCheckpoint:
    """
    Record a checkpoint and compute its hash.

    Raises:
        ValueError: if the dataset root is not "0x" + 64 lowercase hex
    """
    if not ROOT_PATTERN.match(dataset_merkle_root or ""):
        raise ValueError("dataset_merkle_root must be 0x followed by 64 lowercase hex characters")
    checkpoint = TrainingCheckpoint(
        epoch=epoch,
        accuracy=float(accuracy),
        loss=float(loss),
        dataset_merkle_root=dataset_merkle_root,
        checkpoint_hash="",
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        model_name=model_name,
        model_version=model_version,
        hyperparameters=hyperparameters,
    )
    checkpoint_hash = compute_checkpoint_hash(_fields_to_dict(checkpoint))
    return dataclasses.replace(checkpoint, checkpoint_hash=str(checkpoint_hash))


def validate_checkpoint_integrity(checkpoint: Union[TrainingCheckpoint, Dict[str, Any]]) -> bool:
    """Recompute the hash over the other fields and compare."""
    try:
        declared = checkpoint.checkpoint_hash if isinstance(checkpoint, TrainingCheckpoint) \
            else checkpoint["checkpointHash"]
        return compute_checkpoint_hash(_fields_to_dict(checkpoint)) == Digest.parse(declared)
    except (KeyError, TypeError, ValueError):
        return False


def verify_checkpoint_dataset(checkpoint: TrainingCheckpoint, expected_merkle_root: Union[Digest, str]) -> bool:
    """Does the checkpoint claim training on the dataset with this root?"""
    try:
        expected = Digest.coerce(expected_merkle_root)
        return Digest.from_root_hex(checkpoint.dataset_merkle_root) == expected
    except ValueError:
        return False


def encrypt_checkpoint(protocol: ThresholdEncryption, checkpoint: TrainingCheckpoint, owner: str,
                       nonce: Optional[int] = None) -> EncryptionResult:
    """Threshold-encrypt a checkpoint for its owner."""
    payload = json.dumps(checkpoint.to_dict(), sort_keys=True).encode('utf-8')
    return protocol.encrypt_for_owner(payload, owner, nonce=nonce)


def decrypt_checkpoint(protocol: ThresholdEncryption, ciphertext: bytes, key_id: str, owner: str,
                       session_authorizer: Union[Signer, SessionKey]) -> TrainingCheckpoint:
    """
    Owner-only checkpoint recovery.

    Raises the decryption errors of ThresholdEncryption.decrypt, and
    CertificateFormatError if the plaintext is not a checkpoint.
    """
    plaintext = protocol.decrypt(ciphertext, key_id, owner, session_authorizer)
    try:
        data = json.loads(plaintext.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CertificateFormatError("checkpoint", f"decrypted payload is not JSON: {e}")
    return TrainingCheckpoint.from_dict(data)
