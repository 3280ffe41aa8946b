"""
OpenTruth Provenance Protocol

Version: 1.0.0

Signed, content-addressed provenance certificates for files and AI
artifacts. A certificate binds:
- the SHA-256 of the original file
- optional AI-model metadata (model, prompt hash, checkpoint hash)
- an optional dataset commitment (Merkle root over member file hashes)
- an optional, unsigned threshold-encryption annex

Anyone can verify a certificate against a candidate file without
decrypting anything: the artifact hash is always over the plaintext.

Usage:
    from opentruth import (
        CertificateIssuer,
        CertificateVerifier,
        Ed25519Signer,
        InMemoryBlobStore,
    )

    signer = Ed25519Signer()
    issuer = CertificateIssuer(signer, InMemoryBlobStore())
    result = issuer.issue(data, mime_type="image/png", filename="art.png")

    report = CertificateVerifier().verify(result.certificate, data)
    if report.valid:
        ...
    else:
        print(report.failed_checks)
"""

__version__ = "1.0.0"

# Errors
from .errors import (
    OpenTruthError,
    CanonicalizationError,
    CertificateFormatError,
    EmptyInputError,
    IndexOutOfRangeError,
    CiphertextFormatError,
    UnsupportedSchemeError,
    NotFoundError,
    SignerError,
    KeyServerError,
    AccessDeniedError,
    InvalidSessionError,
    SessionExpiredError,
    QuorumNotReachedError,
    DecryptionError,
)

# Canonicalization and hashing
from .canonicalization import canonicalize, canonicalize_str
from .hashing import (
    Digest,
    digest,
    digest_composite,
    digest_file,
    digest_files,
    digest_many,
    sha256_hash,
    verify_hash,
)

# Merkle
from .merkle import (
    MerkleProof,
    MerkleTree,
    build_tree,
    merkle_root,
    prove_membership,
    verify_proof,
)

# Certificates
from .certificate import (
    AccessPolicy,
    Artifact,
    ArtifactKind,
    Author,
    Certificate,
    DatasetInfo,
    EncryptionInfo,
    ModelInfo,
    Network,
    PolicyType,
    SignatureProof,
    SignatureScheme,
    Storage,
    attach_encryption,
    canonicalize_certificate,
    certificate_summary,
    complete_certificate,
    generate_certificate,
    generate_dataset_certificate,
    load_certificate,
    matches_file,
    validate_structure,
)

# Signing
from .signing import (
    Signer,
    Ed25519Signer,
    Secp256k1Signer,
    CallbackSigner,
    build_signature_proof,
    derive_address,
    generate_signer,
    sign_certificate,
    verify_certificate,
    verify_certificate_signature,
    verify_signature,
)

# Threshold encryption
from .authorization import AuthorizationToken, build_authorization_token
from .session import SessionKey, SessionProof, verify_session_proof
from .keyservers import KeyServer, KeyShare, LocalKeyServer
from .encryption import (
    EncryptedObject,
    EncryptionResult,
    ShamirAesGcmCipher,
    ThresholdCipher,
    ThresholdEncryption,
    derive_identity,
    parse_encrypted_object,
    parse_identity,
)

# Pipelines
from .config import ProtocolConfig
from .storage import BlobStore, InMemoryBlobStore
from .issuer import CertificateIssuer, IssuanceResult
from .verifier import CertificateVerifier, CheckStatus, VerificationReport
from .checkpoint import (
    TrainingCheckpoint,
    create_checkpoint,
    decrypt_checkpoint,
    encrypt_checkpoint,
    validate_checkpoint_integrity,
    verify_checkpoint_dataset,
)


__all__ = [
    "__version__",

    # Errors
    "OpenTruthError",
    "CanonicalizationError",
    "CertificateFormatError",
    "EmptyInputError",
    "IndexOutOfRangeError",
    "CiphertextFormatError",
    "UnsupportedSchemeError",
    "NotFoundError",
    "SignerError",
    "KeyServerError",
    "AccessDeniedError",
    "InvalidSessionError",
    "SessionExpiredError",
    "QuorumNotReachedError",
    "DecryptionError",

    # Canonicalization and hashing
    "canonicalize",
    "canonicalize_str",
    "Digest",
    "digest",
    "digest_composite",
    "digest_file",
    "digest_files",
    "digest_many",
    "sha256_hash",
    "verify_hash",

    # Merkle
    "MerkleProof",
    "MerkleTree",
    "build_tree",
    "merkle_root",
    "prove_membership",
    "verify_proof",

    # Certificates
    "AccessPolicy",
    "Artifact",
    "ArtifactKind",
    "Author",
    "Certificate",
    "DatasetInfo",
    "EncryptionInfo",
    "ModelInfo",
    "Network",
    "PolicyType",
    "SignatureProof",
    "SignatureScheme",
    "Storage",
    "attach_encryption",
    "canonicalize_certificate",
    "certificate_summary",
    "complete_certificate",
    "generate_certificate",
    "generate_dataset_certificate",
    "load_certificate",
    "matches_file",
    "validate_structure",

    # Signing
    "Signer",
    "Ed25519Signer",
    "Secp256k1Signer",
    "CallbackSigner",
    "build_signature_proof",
    "derive_address",
    "generate_signer",
    "sign_certificate",
    "verify_certificate",
    "verify_certificate_signature",
    "verify_signature",

    # Threshold encryption
    "AuthorizationToken",
    "build_authorization_token",
    "SessionKey",
    "SessionProof",
    "verify_session_proof",
    "KeyServer",
    "KeyShare",
    "LocalKeyServer",
    "EncryptedObject",
    "EncryptionResult",
    "ShamirAesGcmCipher",
    "ThresholdCipher",
    "ThresholdEncryption",
    "derive_identity",
    "parse_encrypted_object",
    "parse_identity",

    # Pipelines
    "ProtocolConfig",
    "BlobStore",
    "InMemoryBlobStore",
    "CertificateIssuer",
    "IssuanceResult",
    "CertificateVerifier",
    "CheckStatus",
    "VerificationReport",
    "TrainingCheckpoint",
    "create_checkpoint",
    "decrypt_checkpoint",
    "encrypt_checkpoint",
    "validate_checkpoint_integrity",
    "verify_checkpoint_dataset",
]
