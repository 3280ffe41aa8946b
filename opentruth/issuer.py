"""
OpenTruth Issuance Pipeline

    file -> hash -> base certificate -> [encrypt payload] -> sign
         -> upload payload -> complete (proofs, storage) -> [encryption annex]
         -> upload certificate

The artifact hash is always taken over the plaintext. When encryption is
requested the blob store only ever receives ciphertext, and the encryption
annex is attached after signing.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from .certificate import (
    AccessPolicy,
    Certificate,
    Storage,
    complete_certificate,
    dataset_manifest,
    dumps_certificate,
    generate_certificate,
    generate_dataset_certificate,
)
from .config import ProtocolConfig
from .encryption import EncryptionResult, ThresholdEncryption
from .logging_config import AuditLogger, audit_log
from .signing import Signer, build_signature_proof, sign_certificate
from .storage import BlobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuanceResult:
    certificate: Certificate
    certificate_locator: str
    blob_id: str
    encryption: Optional[EncryptionResult] = None


class CertificateIssuer:
    """Issues certificates for one author (the signer's identity)."""

    def __init__(
        self,
        signer: Signer,
        blob_store: BlobStore,
        config: Optional[ProtocolConfig] = None,
        encryption: Optional[ThresholdEncryption] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.signer = signer
        self.blob_store = blob_store
        self.config = config or ProtocolConfig()
        self.encryption = encryption
        self.audit = audit or audit_log

    def issue(
        self,
        data: bytes,
        mime_type: str = "application/octet-stream",
        filename: Optional[str] = None,
        model_name: Optional[str] = None,
        model_version: Optional[str] = None,
        prompt: Optional[str] = None,
        checkpoint_hash: Optional[str] = None,
        dataset_merkle_root: Optional[str] = None,
        encrypt: bool = False,
        policy: Optional[AccessPolicy] = None,
        timestamp: Optional[int] = None,
    ) -> IssuanceResult:
        """
        Issue a certificate for `data`.

        Raises:
            SignerError: if the signer fails
            ValueError: if encryption is requested without a ThresholdEncryption
        """
        base = generate_certificate(
            data,
            self.signer.address,
            mime_type=mime_type,
            filename=filename,
            model_name=model_name,
            model_version=model_version,
            prompt=prompt,
            checkpoint_hash=checkpoint_hash,
            dataset_merkle_root=dataset_merkle_root,
            timestamp=timestamp,
        )
        return self._finish(base, data, encrypt, policy)

    def issue_dataset(self, files: Sequence[bytes], timestamp: Optional[int] = None) -> IssuanceResult:
        """Issue a dataset certificate; the stored blob is the dataset manifest."""
        base = generate_dataset_certificate(
            files,
            self.signer.address,
            max_workers=self.config.hash_workers,
            timestamp=timestamp,
        )
        return self._finish(base, dataset_manifest(base.dataset), False, None)

    def _finish(self, base: Certificate, payload: bytes, encrypt: bool,
                policy: Optional[AccessPolicy]) -> IssuanceResult:
        encrypted = None
        if encrypt:
            if self.encryption is None:
                raise ValueError("Encryption requested but no threshold encryption is configured")
            encrypted = self.encryption.encrypt_for_owner(payload, self.signer.address, policy=policy)
            payload = encrypted.ciphertext

        signature, public_key = sign_certificate(base, self.signer)
        proof = build_signature_proof(self.signer.scheme, signature, public_key)

        blob_id = self.blob_store.put(payload)
        storage = Storage(blob_id=blob_id, network=self.config.network, uploaded_at=int(time.time() * 1000))
        certificate = complete_certificate(base, proof, storage)
        if encrypted is not None:
            certificate = ThresholdEncryption.annotate(certificate, encrypted, blob_id)

        locator = self.blob_store.put(dumps_certificate(certificate).encode('utf-8'))
        self.audit.certificate_issued(str(certificate.artifact.hash), certificate.author.address,
                                      blob_id, encrypted=encrypted is not None)
        logger.info("Issued certificate %s for %s", locator, certificate.artifact.hash)
        return IssuanceResult(
            certificate=certificate,
            certificate_locator=locator,
            blob_id=blob_id,
            encryption=encrypted,
        )
