"""
OpenTruth Certificate Verification

Lets any third party confirm, from a fetched certificate and a candidate
file, that the file is the certified artifact and that the certificate was
signed by the author it names.

Verification steps:
1. Structure: the certificate decodes, carries a proof, dataset root is consistent
2. Hash: SHA-256 of the candidate file equals artifact.hash
3. Signature: the proof verifies over the canonical bytes and the public
   key derives to author.address

Every step is reported separately so callers can say exactly what failed.
The encryption annex is never covered by the signature; the report flags
this whenever an annex is present.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .certificate import Certificate, CertificateLike, validate_structure
from .errors import CertificateFormatError
from .hashing import digest
from .logging_config import AuditLogger, audit_log
from .signing import verify_certificate_signature
from .storage import BlobStore

logger = logging.getLogger(__name__)


class CheckStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class CheckResult:
    status: CheckStatus
    reason: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def passed(cls, details: Dict[str, Any] = None) -> 'CheckResult':
        return cls(status=CheckStatus.PASSED, details=details)

    @classmethod
    def failed(cls, reason: str, details: Dict[str, Any] = None) -> 'CheckResult':
        return cls(status=CheckStatus.FAILED, reason=reason, details=details)

    @classmethod
    def skipped(cls, reason: str) -> 'CheckResult':
        return cls(status=CheckStatus.SKIPPED, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"status": self.status.value}
        if self.reason is not None:
            d["reason"] = self.reason
        if self.details is not None:
            d["details"] = self.details
        return d


@dataclass
class VerificationReport:
    """Outcome of verifying one certificate against one candidate file."""
    structure: CheckResult
    hash: CheckResult
    signature: CheckResult
    certificate: Optional[Certificate] = None
    encryption_annex_signed: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return all(c.status == CheckStatus.PASSED for c in (self.structure, self.hash, self.signature))

    @property
    def failed_checks(self) -> List[str]:
        return [
            name for name, check in (("structure", self.structure), ("hash", self.hash),
                                     ("signature", self.signature))
            if check.status != CheckStatus.PASSED
        ]

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "valid": self.valid,
            "checks": {
                "structure": self.structure.to_dict(),
                "hash": self.hash.to_dict(),
                "signature": self.signature.to_dict(),
            },
            "encryptionAnnexSigned": self.encryption_annex_signed,
            "warnings": list(self.warnings),
        }
        if self.certificate is not None:
            d["author"] = self.certificate.author.address
            d["artifactHash"] = str(self.certificate.artifact.hash)
        return d


class CertificateVerifier:
    """
    Third-party certificate verifier.

    Never raises on adversarial certificate content; every defect is a
    failed check in the report.
    """

    def __init__(self, blob_store: Optional[BlobStore] = None, audit: Optional[AuditLogger] = None):
        self.blob_store = blob_store
        self.audit = audit or audit_log

    def verify(self, cert: Union[CertificateLike, str, bytes], file_bytes: Optional[bytes]) -> VerificationReport:
        """
        Verify a certificate (object, dict or JSON text) against a file.

        With file_bytes=None the hash check is skipped and the report is
        not valid.
        """
        certificate, structure = self._check_structure(cert)
        if certificate is None:
            report = VerificationReport(
                structure=structure,
                hash=CheckResult.skipped("structure invalid"),
                signature=CheckResult.skipped("structure invalid"),
            )
            self.audit.certificate_verified(None, False, report.failed_checks)
            return report

        report = VerificationReport(
            structure=structure,
            hash=self._check_hash(certificate, file_bytes),
            signature=self._check_signature(certificate),
            certificate=certificate,
        )
        if certificate.encryption is not None:
            report.warnings.append(
                "encryption metadata is not covered by the signature; "
                "authenticate it against the access policy before trusting it"
            )
        if certificate.storage is None:
            report.warnings.append("certificate has no storage section")

        self.audit.certificate_verified(str(certificate.artifact.hash), report.valid, report.failed_checks)
        return report

    def fetch_and_verify(self, locator: str, file_bytes: Optional[bytes]) -> VerificationReport:
        """
        Fetch a certificate from the blob store and verify it.

        Raises:
            NotFoundError: if the blob store has no object at `locator`
            ValueError: if no blob store was configured
        """
        if self.blob_store is None:
            raise ValueError("No blob store configured")
        raw = self.blob_store.get(locator)
        logger.debug("Fetched certificate %s (%d bytes)", locator, len(raw))
        return self.verify(raw, file_bytes)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _check_structure(self, cert: Any):
        if isinstance(cert, (bytes, str)):
            try:
                cert = json.loads(cert)
            except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
                return None, CheckResult.failed("certificate is not valid JSON", {"error": str(e)})

        try:
            certificate = cert if isinstance(cert, Certificate) \
                else Certificate.from_dict(cert, require_proofs=True)
        except CertificateFormatError as e:
            return None, CheckResult.failed("certificate is malformed", {"field": e.field, "error": e.message})
        except (ValueError, TypeError) as e:
            return None, CheckResult.failed("certificate is malformed", {"error": str(e)})

        if not validate_structure(certificate):
            if certificate.proofs is None:
                return None, CheckResult.failed("certificate carries no proof")
            return None, CheckResult.failed("dataset Merkle root does not match file hashes")
        return certificate, CheckResult.passed()

    def _check_hash(self, certificate: Certificate, file_bytes: Optional[bytes]) -> CheckResult:
        if file_bytes is None:
            return CheckResult.skipped("no file supplied")
        if not isinstance(file_bytes, (bytes, bytearray, memoryview)):
            return CheckResult.failed("file content must be bytes", {"type": type(file_bytes).__name__})
        computed = digest(bytes(file_bytes))
        if computed != certificate.artifact.hash:
            return CheckResult.failed(
                "file hash does not match certificate",
                {"computed": str(computed), "declared": str(certificate.artifact.hash)},
            )
        return CheckResult.passed({"hash": str(computed)})

    def _check_signature(self, certificate: Certificate) -> CheckResult:
        proof = certificate.proofs
        if not verify_certificate_signature(certificate, proof.signature, proof.public_key, proof.scheme):
            return CheckResult.failed(
                "signature does not verify for the certificate author",
                {"scheme": proof.scheme.value, "author": certificate.author.address},
            )
        return CheckResult.passed({"scheme": proof.scheme.value})
